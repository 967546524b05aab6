from __future__ import annotations

import secrets
import time


def new_id() -> str:
    """Time-ordered opaque identifier: millisecond clock prefix plus random suffix."""
    return f"{time.time_ns() // 1_000_000:012x}-{secrets.token_hex(8)}"


def now_ms() -> int:
    return time.time_ns() // 1_000_000
