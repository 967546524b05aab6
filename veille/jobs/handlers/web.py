from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from veille.core.errors import HandlerError
from veille.extract.clean import ExtractError
from veille.extract.html import extract_html, html_to_markdown
from veille.services.fetcher import FetchError
from veille.services.store import Extraction, Source, Store

if TYPE_CHECKING:
    from veille.jobs.pipeline import Job, Pipeline

logger = logging.getLogger(__name__)


class WebHandler:
    """Conditional GET of an HTML page, stored as one extraction per distinct text."""

    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
        started = time.monotonic()
        config = load_config(source.config_json)

        try:
            result = await pipeline.fetcher.fetch(
                source.url,
                prev_hash=source.last_hash,
                user_agent=str(config.get("user_agent") or "") or None,
            )
        except FetchError as exc:
            await pipeline.log_fetch(
                store, source.id, "error", started, status_code=exc.status_code or None, error_message=str(exc)
            )
            await store.record_fetch_error(source.id, str(exc))
            logger.warning("web: fetch failed source_id=%s error=%s", source.id, exc)
            raise HandlerError(f"web fetch: {exc}", status_code=exc.status_code) from exc

        if not result.changed:
            await pipeline.log_fetch(store, source.id, "unchanged", started, status_code=result.status_code)
            await store.record_fetch_unchanged(source.id)
            logger.debug("web: unchanged source_id=%s", source.id)
            return

        try:
            page = extract_html(result.body)
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
            await store.record_fetch_error(source.id, f"extract: {exc}", status="extract_error")
            raise HandlerError(f"web extract: {exc}") from exc

        if not page.text:
            await pipeline.log_fetch(
                store, source.id, "empty", started, status_code=result.status_code, content_hash=result.hash
            )
            await store.record_fetch_success(source.id, result.hash)
            logger.info("web: empty content source_id=%s", source.id)
            return

        if not await store.extraction_exists(source.id, page.hash):
            extraction = Extraction(
                id="",
                source_id=source.id,
                content_hash=page.hash,
                title=page.title,
                extracted_text=page.text,
                url=source.url,
                extracted_html=html_to_markdown(page.html),
            )
            if await store.insert_extraction(extraction):
                await pipeline.write_buffer(job, source, extraction)

        await pipeline.log_fetch(store, source.id, "ok", started, status_code=result.status_code, content_hash=result.hash)
        await store.record_fetch_success(source.id, result.hash)
        logger.info("web: fetched source_id=%s bytes=%s", source.id, len(result.body))


def load_config(raw: str) -> dict[str, Any]:
    """Decode ``config_json``; anything but a JSON object reads as an empty config."""
    if not raw or raw == "{}":
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
