from __future__ import annotations

import re
import unicodedata

_INVISIBLE_CHARS = dict.fromkeys(map(ord, "\u200b\u200c\u200d\u2060\ufeff\u00ad"))
_INLINE_SPACE_RE = re.compile(r"[^\S\n]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


class ExtractError(Exception):
    """Raised when a document, page or feed cannot be parsed."""


def clean_text(text: str | None) -> str:
    """Strip invisible characters and collapse whitespace, keeping paragraph breaks."""
    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text).translate(_INVISIBLE_CHARS)
    normalized = normalized.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_SPACE_RE.sub(" ", line).strip() for line in normalized.split("\n")]
    collapsed = "\n".join(lines)
    return _BLANK_LINES_RE.sub("\n\n", collapsed).strip()
