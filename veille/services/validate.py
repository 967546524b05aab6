from __future__ import annotations

from collections.abc import Iterable
import json
from urllib.parse import unquote

from veille.core.errors import InvalidInputError, UnsafeURLError
from veille.core.ssrf import URLValidator
from veille.services.store import Source

MAX_NAME_LENGTH = 512
MAX_URL_LENGTH = 4096
MAX_CONFIG_BYTES = 8192
MIN_FETCH_INTERVAL_MS = 60_000
MAX_FETCH_INTERVAL_MS = 604_800_000


def validate_source_input(source: Source, known_types: Iterable[str]) -> None:
    if not source.name or not source.name.strip():
        raise InvalidInputError("name is required")
    if len(source.name) > MAX_NAME_LENGTH:
        raise InvalidInputError(f"name too long (max {MAX_NAME_LENGTH})")
    if not source.url or not source.url.strip():
        raise InvalidInputError("url is required")
    if len(source.url) > MAX_URL_LENGTH:
        raise InvalidInputError(f"url too long (max {MAX_URL_LENGTH})")

    types = set(known_types)
    if source.source_type not in types:
        raise InvalidInputError(f"invalid source_type {source.source_type!r} (known: {', '.join(sorted(types))})")

    if not MIN_FETCH_INTERVAL_MS <= source.fetch_interval <= MAX_FETCH_INTERVAL_MS:
        raise InvalidInputError(
            f"fetch_interval must be between {MIN_FETCH_INTERVAL_MS} and {MAX_FETCH_INTERVAL_MS} ms"
        )

    config = source.config_json or "{}"
    if len(config.encode("utf-8")) > MAX_CONFIG_BYTES:
        raise InvalidInputError(f"config_json too large (max {MAX_CONFIG_BYTES} bytes)")
    try:
        json.loads(config)
    except json.JSONDecodeError as exc:
        raise InvalidInputError(f"config_json is not valid JSON: {exc.msg}") from exc


def check_source_url(source_type: str, url: str, validator: URLValidator) -> None:
    """Refuse URLs the fetcher must never touch. Question sources carry a synthetic URL."""
    if source_type == "question":
        return
    if source_type == "document":
        if ".." in unquote(url):
            raise InvalidInputError("document path must not contain '..'")
        return
    try:
        validator(url)
    except UnsafeURLError as exc:
        raise InvalidInputError(f"unsafe url: {exc}") from exc
