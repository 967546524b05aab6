from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from veille.core.errors import HandlerError
from veille.core.urls import sha256_hex
from veille.extract.clean import ExtractError, clean_text
from veille.extract.feed import FeedEntry, parse_feed
from veille.extract.html import extract_html
from veille.jobs.handlers.web import load_config
from veille.services.fetcher import FetchError
from veille.services.store import Extraction, Source, Store

if TYPE_CHECKING:
    from veille.jobs.pipeline import Job, Pipeline

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50


class RSSHandler:
    """Parses RSS/Atom feeds; each entry is deduplicated by its guid (or link)."""

    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
        started = time.monotonic()
        config = load_config(source.config_json)
        max_entries = _as_int(config.get("max_entries"), DEFAULT_MAX_ENTRIES)
        if max_entries <= 0:
            max_entries = DEFAULT_MAX_ENTRIES
        follow_links = bool(config.get("follow_links"))
        user_agent = str(config.get("user_agent") or "") or None

        # Feeds are fetched unconditionally; dedup happens per entry.
        try:
            result = await pipeline.fetcher.fetch(source.url, user_agent=user_agent)
        except FetchError as exc:
            await pipeline.log_fetch(
                store, source.id, "error", started, status_code=exc.status_code or None, error_message=str(exc)
            )
            await store.record_fetch_error(source.id, str(exc))
            logger.warning("rss: fetch failed source_id=%s error=%s", source.id, exc)
            raise HandlerError(f"rss fetch: {exc}", status_code=exc.status_code) from exc

        try:
            feed = parse_feed(result.body)
        except ExtractError as exc:
            await pipeline.log_fetch(
                store,
                source.id,
                "extract_error",
                started,
                status_code=result.status_code,
                content_hash=result.hash,
                error_message=str(exc),
            )
            await store.record_fetch_error(source.id, f"parse: {exc}", status="extract_error")
            logger.warning("rss: parse failed source_id=%s error=%s", source.id, exc)
            raise HandlerError(f"rss parse: {exc}") from exc

        new_count = 0
        for entry in feed.entries[:max_entries]:
            content_hash = sha256_hex(entry.guid or entry.link)
            if await store.extraction_exists(source.id, content_hash):
                continue

            text = await self._entry_text(entry, pipeline, follow_links=follow_links, user_agent=user_agent)
            if not text:
                continue

            extraction = Extraction(
                id="",
                source_id=source.id,
                content_hash=content_hash,
                title=entry.title,
                extracted_text=text,
                url=entry.link or source.url,
            )
            if await store.insert_extraction(extraction):
                new_count += 1
                await pipeline.write_buffer(job, source, extraction)

        await pipeline.log_fetch(store, source.id, "ok", started, status_code=result.status_code, content_hash=result.hash)
        await store.record_fetch_success(source.id, result.hash)
        logger.info("rss: fetched source_id=%s entries=%s new=%s", source.id, len(feed.entries), new_count)

    async def _entry_text(
        self,
        entry: FeedEntry,
        pipeline: Pipeline,
        *,
        follow_links: bool,
        user_agent: str | None,
    ) -> str:
        text = entry.content or entry.description
        if follow_links and entry.link:
            try:
                page = await pipeline.fetcher.fetch(entry.link, user_agent=user_agent)
                extracted = extract_html(page.body)
            except (FetchError, ExtractError) as exc:
                logger.debug("rss: follow link failed link=%s error=%s", entry.link, exc)
            else:
                if extracted.text:
                    text = extracted.text
        return clean_text(text)


def _as_int(value: object, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
