from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import urljoin

import httpx

from veille.core.errors import UnsafeURLError
from veille.core.ssrf import URLValidator, validate_url
from veille.jobs.classify import Action, classify
from veille.services.store import Source, Store

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 86_400_000
PROBE_USER_AGENT = "veille-probe/1.0"
PROBE_TIMEOUT_SECONDS = 10.0
PROBE_MAX_REDIRECTS = 5
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}

ALTERNATE_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
)


class Repairer:
    """Turns a classified fetch failure into a store mutation. Never fetches."""

    def __init__(self, *, max_backoff_ms: int = MAX_BACKOFF_MS) -> None:
        self.max_backoff_ms = max_backoff_ms

    async def try_repair(self, store: Store, source: Source, status_code: int, message: str) -> Action:
        error_class, action = classify(source.source_type, status_code, message)
        logger.info(
            "repair: classified source_id=%s class=%s action=%s status_code=%s",
            source.id,
            error_class,
            action,
            status_code,
        )

        if action in ("backoff", "increase_rate"):
            await store.set_source_backoff(source.id, self.max_backoff_ms)
            return action
        if action == "rotate_ua":
            return await self._rotate_user_agent(store, source)
        if action == "mark_broken":
            await store.set_source_status(source.id, "broken")
            return action
        # follow_redirect: the fetcher follows redirects itself, so there is no target to persist.
        return "none"

    async def _rotate_user_agent(self, store: Store, source: Source) -> Action:
        config = _load_config(source.config_json)
        next_ua = pick_alternate_ua(config)
        if not next_ua:
            logger.warning("repair: user agents exhausted source_id=%s", source.id)
            await store.set_source_status(source.id, "broken")
            return "mark_broken"
        await store.update_source_config(source.id, set_config_ua(config, next_ua))
        logger.info("repair: rotated user agent source_id=%s", source.id)
        return "rotate_ua"


def pick_alternate_ua(config: dict[str, Any]) -> str:
    tried = {str(ua) for ua in config.get("tried_uas") or []}
    current = config.get("user_agent")
    if current:
        tried.add(str(current))
    for candidate in ALTERNATE_USER_AGENTS:
        if candidate not in tried:
            return candidate
    return ""


def set_config_ua(config: dict[str, Any], user_agent: str) -> str:
    updated = dict(config)
    tried = [str(ua) for ua in updated.get("tried_uas") or []]
    current = updated.get("user_agent")
    if current:
        tried.append(str(current))
    updated["tried_uas"] = tried
    updated["user_agent"] = user_agent
    return json.dumps(updated)


async def probe_url(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = PROBE_TIMEOUT_SECONDS,
    url_validator: URLValidator = validate_url,
) -> tuple[int, str]:
    """HEAD the URL following at most five redirects. Returns ``(status_code, error)``; status 0 on network failure.

    The URL and every redirect target go through ``url_validator``; a refused
    hop ends the probe with status 0.
    """
    if client is not None:
        return await _probe_chain(client, url, timeout, url_validator)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as temp_client:
        return await _probe_chain(temp_client, url, timeout, url_validator)


async def _probe_chain(
    client: httpx.AsyncClient, url: str, timeout: float, url_validator: URLValidator
) -> tuple[int, str]:
    current_url = url
    status_code = 0
    prefix = "url blocked (ssrf)"
    for _ in range(PROBE_MAX_REDIRECTS + 1):
        try:
            await asyncio.to_thread(url_validator, current_url)
        except UnsafeURLError as exc:
            return 0, f"{prefix}: {exc}"
        try:
            response = await client.head(current_url, headers={"User-Agent": PROBE_USER_AGENT}, timeout=timeout)
        except httpx.HTTPError as exc:
            return 0, str(exc) or exc.__class__.__name__
        status_code = response.status_code
        location = response.headers.get("location")
        if status_code not in REDIRECT_STATUS_CODES or not location:
            break
        current_url = urljoin(str(response.url), location)
        prefix = "redirect blocked (ssrf)"
    return status_code, ""


def _load_config(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
