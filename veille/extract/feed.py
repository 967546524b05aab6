from __future__ import annotations

from dataclasses import dataclass, field
import io
from typing import Any

from bs4 import BeautifulSoup
import feedparser

from veille.extract.clean import ExtractError, clean_text


@dataclass(slots=True)
class FeedEntry:
    guid: str
    title: str
    link: str
    description: str = ""
    content: str = ""
    published: str = ""
    author: str = ""


@dataclass(slots=True)
class Feed:
    title: str
    link: str
    version: str
    entries: list[FeedEntry] = field(default_factory=list)


def parse_feed(body: bytes) -> Feed:
    """Parse RSS 2.0, RDF or Atom bytes into plain-text entries."""
    parsed = feedparser.parse(io.BytesIO(body))
    if parsed.get("bozo") and not parsed.entries and not parsed.get("version"):
        reason = parsed.get("bozo_exception") or "not a feed"
        raise ExtractError(f"feed: xml parse error: {reason}")

    channel: dict[str, Any] = parsed.get("feed") or {}
    entries = [_to_entry(raw) for raw in parsed.entries]
    return Feed(
        title=clean_text(channel.get("title")),
        link=str(channel.get("link") or ""),
        version=str(parsed.get("version") or ""),
        entries=entries,
    )


def _to_entry(raw: dict[str, Any]) -> FeedEntry:
    link = str(raw.get("link") or "").strip()
    guid = str(raw.get("id") or "").strip() or link
    content = ""
    for item in raw.get("content") or []:
        value = item.get("value") if isinstance(item, dict) else None
        if value:
            content = _plain_text(value)
            break
    return FeedEntry(
        guid=guid,
        title=clean_text(raw.get("title")),
        link=link,
        description=_plain_text(raw.get("summary") or raw.get("description") or ""),
        content=content,
        published=str(raw.get("published") or raw.get("updated") or ""),
        author=str(raw.get("author") or ""),
    )


def _plain_text(value: str) -> str:
    if "<" not in value:
        return clean_text(value)
    return clean_text(BeautifulSoup(value, "lxml").get_text("\n"))
