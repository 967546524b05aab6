from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from veille.core.errors import HandlerError
from veille.core.urls import sha256_hex
from veille.extract.clean import ExtractError, clean_text
from veille.extract.document import parse_document
from veille.services.store import Extraction, Source, Store

if TYPE_CHECKING:
    from veille.jobs.pipeline import Job, Pipeline

logger = logging.getLogger(__name__)


class DocumentHandler:
    """Parses a local file named by ``source.url``; the cleaned text is the dedup key."""

    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
        started = time.monotonic()
        path = source.url.removeprefix("file://")

        try:
            document = await asyncio.to_thread(parse_document, path)
        except ExtractError as exc:
            await pipeline.log_fetch(store, source.id, "extract_error", started, error_message=str(exc))
            await store.record_fetch_error(source.id, str(exc), status="extract_error")
            logger.warning("document: parse failed source_id=%s error=%s", source.id, exc)
            raise HandlerError(f"document parse: {exc}") from exc

        text = clean_text(document.raw_text)
        if not text:
            await pipeline.log_fetch(store, source.id, "empty", started)
            await store.record_fetch_success(source.id, "")
            logger.info("document: empty source_id=%s", source.id)
            return

        content_hash = sha256_hex(text)
        if await store.extraction_exists(source.id, content_hash):
            await pipeline.log_fetch(store, source.id, "unchanged", started, content_hash=content_hash)
            await store.record_fetch_unchanged(source.id)
            return

        extraction = Extraction(
            id="",
            source_id=source.id,
            content_hash=content_hash,
            title=document.title,
            extracted_text=text,
            url=source.url,
        )
        if await store.insert_extraction(extraction):
            await pipeline.write_buffer(job, source, extraction)

        await pipeline.log_fetch(store, source.id, "ok", started, content_hash=content_hash)
        await store.record_fetch_success(source.id, content_hash)
        logger.info("document: extracted source_id=%s chars=%s", source.id, len(text))
