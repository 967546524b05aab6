from __future__ import annotations

import re
from typing import Literal

ErrorClass = Literal["redirect", "rate_limit", "auth", "forbidden", "not_found", "temporary", "parse", "unknown"]
Action = Literal["follow_redirect", "increase_rate", "rotate_ua", "backoff", "mark_broken", "none"]

REDIRECT_CODES = {301, 302, 307, 308}
UA_ROTATING_TYPES = {"web", "rss"}

_STATUS_RE = re.compile(r"(?:http|status):?\s+(\d{3})\b")
_PARSE_PATTERNS = (
    ("xml", ("parse", "syntax", "unexpected")),
    ("json", ("unmarshal", "invalid", "unexpected")),
    ("encoding", ("invalid",)),
)
_NETWORK_MARKERS = ("timeout", "deadline", "refused", "reset", "no such host", "dns", "eof", "tls handshake")


def classify(source_type: str, status_code: int, message: str) -> tuple[ErrorClass, Action]:
    """Map a failed fetch onto an error class and the repair action to attempt."""
    if status_code in REDIRECT_CODES:
        return "redirect", "follow_redirect"
    if status_code == 429:
        return "rate_limit", "increase_rate"
    if status_code == 401:
        return "auth", "mark_broken"
    if status_code == 403:
        if source_type in UA_ROTATING_TYPES:
            return "forbidden", "rotate_ua"
        return "forbidden", "mark_broken"
    if status_code in (404, 410):
        return "not_found", "mark_broken"
    if 500 <= status_code < 600:
        return "temporary", "backoff"

    lowered = (message or "").lower()
    if _is_parse_error(lowered):
        return "parse", "mark_broken"
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return "temporary", "backoff"
    return "unknown", "none"


def extract_status_code(message: str) -> int:
    """Return the HTTP status embedded as ``http <n>`` / ``status: <n>`` in an error message, else 0."""
    for match in _STATUS_RE.finditer((message or "").lower()):
        code = int(match.group(1))
        if 100 <= code < 600:
            return code
    return 0


def _is_parse_error(lowered: str) -> bool:
    for subject, markers in _PARSE_PATTERNS:
        if subject in lowered and any(marker in lowered for marker in markers):
            return True
    return False
