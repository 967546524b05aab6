from __future__ import annotations

from dataclasses import dataclass
import json
import os
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

MAX_RESPONSE_BYTES = 10 * 1024 * 1024
_ENV_RE = re.compile(r"\$\{([^}]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class APIFetchError(Exception):
    """Raised when a JSON API call or its response traversal fails."""


class APIFetchConfig(BaseModel):
    """How to call a JSON API and map its items onto results."""

    model_config = ConfigDict(extra="ignore")

    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    result_path: str = ""
    fields: dict[str, str] | None = None
    rate_limit_ms: int = 0


@dataclass(slots=True)
class APIResult:
    title: str
    text: str
    url: str


async def fetch(client: httpx.AsyncClient, url: str, config: APIFetchConfig) -> list[APIResult]:
    headers = {key: expand_env(value) for key, value in config.headers.items()}
    if not any(key.lower() == "accept" for key in headers):
        headers["Accept"] = "application/json"

    try:
        async with client.stream(config.method.upper() or "GET", url, headers=headers) as response:
            if response.status_code < 200 or response.status_code >= 400:
                raise APIFetchError(f"apifetch: http {response.status_code}")
            body = await read_limited(response)
    except httpx.HTTPError as exc:
        raise APIFetchError(f"apifetch: http: {exc}") from exc

    try:
        raw = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise APIFetchError(f"apifetch: json decode: invalid json: {exc}") from exc

    items = walk_path(raw, config.result_path)
    return [extract_fields(item, config.fields) for item in items if isinstance(item, dict)]


def walk_path(value: Any, path: str) -> list[Any]:
    """Follow a dot-notation path to a list. An empty path requires a top-level list."""
    if not path:
        if not isinstance(value, list):
            raise APIFetchError("apifetch: walk path '': root is not an array")
        return value

    current = value
    for part in path.split("."):
        if not isinstance(current, dict):
            raise APIFetchError(f"apifetch: walk path {path!r}: expected object at {part!r}")
        if part not in current:
            raise APIFetchError(f"apifetch: walk path {path!r}: key {part!r} not found")
        current = current[part]
    if not isinstance(current, list):
        raise APIFetchError(f"apifetch: walk path {path!r}: not an array")
    return current


def extract_fields(item: dict[str, Any], fields: dict[str, str] | None) -> APIResult:
    if fields is None:
        return APIResult(title=_as_text(item.get("title")), text=_as_text(item.get("text")), url=_as_text(item.get("url")))
    return APIResult(
        title=_as_text(item.get(fields["title"])) if "title" in fields else "",
        text=_as_text(item.get(fields["text"])) if "text" in fields else "",
        url=_as_text(item.get(fields["url"])) if "url" in fields else "",
    )


def expand_env(value: str) -> str:
    return _ENV_RE.sub(lambda match: os.environ.get(match.group(1) or match.group(2), ""), value)


async def read_limited(response: httpx.Response) -> bytes:
    chunks: list[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        remaining = MAX_RESPONSE_BYTES - size
        if remaining <= 0:
            break
        chunks.append(chunk[:remaining])
        size += len(chunks[-1])
    return b"".join(chunks)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
