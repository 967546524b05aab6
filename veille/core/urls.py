from __future__ import annotations

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from veille.core.errors import InvalidInputError

HTTP_SCHEMES = {"http", "https"}


def normalize_source_url(raw_url: str) -> str:
    """Normalize a source URL for dedup comparison.

    http(s) URLs get a lowercased scheme and host, no fragment, no trailing
    slash and query parameters sorted by key then value. Synthetic schemes
    (``question://``) and local document paths are returned unchanged. The
    scheme is never upgraded: http and https may be different resources.
    """
    raw = (raw_url or "").strip()
    if not raw:
        raise InvalidInputError("invalid input: empty URL")

    try:
        parsed = urlsplit(raw)
    except ValueError as exc:
        raise InvalidInputError(f"invalid input: {exc}") from exc

    scheme = parsed.scheme.lower()
    if not scheme and " " in raw:
        raise InvalidInputError("invalid input: malformed URL")
    if not scheme and "/" not in raw and "." not in raw:
        raise InvalidInputError("invalid input: malformed URL")

    if scheme not in HTTP_SCHEMES:
        return raw

    if not parsed.netloc or not parsed.hostname:
        raise InvalidInputError("invalid input: missing host")
    if any(char.isspace() for char in parsed.netloc):
        raise InvalidInputError("invalid input: malformed host")

    userinfo, at, hostport = parsed.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{hostport.lower()}"

    path = parsed.path.rstrip("/")

    query = ""
    if parsed.query:
        pairs = parse_qsl(parsed.query, keep_blank_values=True)
        pairs.sort()
        query = urlencode(pairs)

    return urlunsplit((scheme, netloc, path, query, ""))


def sha256_hex(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()
