from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
from urllib.parse import quote_plus

import httpx
from pydantic import ValidationError

from veille.core.errors import UnsafeURLError
from veille.core.ssrf import URLValidator, validate_url
from veille.services import apifetch
from veille.services.apifetch import APIFetchConfig, APIFetchError
from veille.services.store import SearchEngine


class SearchError(Exception):
    """Raised when a search engine cannot be queried."""


@dataclass(slots=True)
class SearchResult:
    title: str
    url: str
    snippet: str


async def run_search(
    client: httpx.AsyncClient,
    engine: SearchEngine,
    query: str,
    *,
    url_validator: URLValidator = validate_url,
) -> list[SearchResult]:
    if not engine.enabled:
        return []
    if engine.strategy == "api":
        return await _search_api(client, engine, query, url_validator)
    if engine.strategy == "generic":
        raise SearchError("search: generic strategy not available")
    raise SearchError(f"search: unknown strategy {engine.strategy!r}")


def build_search_url(url_template: str, query: str) -> str:
    return url_template.replace("{query}", quote_plus(query))


async def _search_api(
    client: httpx.AsyncClient, engine: SearchEngine, query: str, url_validator: URLValidator
) -> list[SearchResult]:
    try:
        config = APIFetchConfig.model_validate(json.loads(engine.api_config or "{}"))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise SearchError(f"search: invalid api config for engine {engine.id}: {exc}") from exc

    url = build_search_url(engine.url_template, query)
    try:
        await asyncio.to_thread(url_validator, url)
    except UnsafeURLError as exc:
        raise SearchError(f"search {engine.name}: url blocked (ssrf): {exc}") from exc

    try:
        results = await apifetch.fetch(client, url, config)
    except APIFetchError as exc:
        raise SearchError(f"search {engine.name}: {exc}") from exc
    return [SearchResult(title=result.title, url=result.url, snippet=result.text) for result in results]
