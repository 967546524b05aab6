from __future__ import annotations

from datetime import datetime, timezone
import json
import logging

import httpx

from veille.core.errors import VeilleError
from veille.core.urls import sha256_hex
from veille.extract.clean import ExtractError, clean_text
from veille.extract.html import extract_html
from veille.services.buffer import BufferWriter, Metadata
from veille.services.fetcher import FetchError, Fetcher
from veille.services.search import SearchError, SearchResult, run_search
from veille.services.store import Extraction, Store, TrackedQuestion

logger = logging.getLogger(__name__)


class QuestionRunError(VeilleError):
    """Raised when a tracked question is misconfigured."""


class QuestionRunner:
    """Runs a tracked question against its search channels and stores each new hit as an extraction.

    Extractions are filed under ``source_id = question.id``, deduplicated by
    the SHA-256 of the result URL.
    """

    def __init__(self, client: httpx.AsyncClient, fetcher: Fetcher, *, buffer: BufferWriter | None = None) -> None:
        self.client = client
        self.fetcher = fetcher
        self.buffer = buffer

    async def run(self, store: Store, question: TrackedQuestion, dossier_id: str) -> int:
        query = question.keywords or question.text
        channels = parse_channels(question.channels)
        if not channels:
            logger.warning("questions: no channels configured question_id=%s", question.id)
            return 0

        new_count = 0
        for channel in channels:
            engine = await store.get_search_engine(channel)
            if engine is None or not engine.enabled:
                logger.warning("questions: engine unavailable question_id=%s engine_id=%s", question.id, channel)
                continue
            try:
                results = await run_search(self.client, engine, query, url_validator=self.fetcher.url_validator)
            except SearchError as exc:
                logger.warning("questions: search failed question_id=%s engine_id=%s error=%s", question.id, channel, exc)
                continue

            for result in results[: max(question.max_results, 0)]:
                if await self._store_result(store, question, dossier_id, channel, query, result):
                    new_count += 1

        await store.record_question_run(question.id, new_count)
        logger.info("questions: run complete question_id=%s new=%s", question.id, new_count)
        return new_count

    async def _store_result(
        self,
        store: Store,
        question: TrackedQuestion,
        dossier_id: str,
        channel: str,
        query: str,
        result: SearchResult,
    ) -> bool:
        if not result.url:
            return False
        content_hash = sha256_hex(result.url)
        if await store.extraction_exists(question.id, content_hash):
            return False

        text = result.snippet
        title = result.title
        if question.follow_links:
            try:
                page = await self.fetcher.fetch(result.url)
                extracted = extract_html(page.body)
            except (FetchError, ExtractError) as exc:
                logger.debug("questions: follow link failed url=%s error=%s", result.url, exc)
            else:
                if extracted.text:
                    text = extracted.text
                    title = title or extracted.title
        text = clean_text(text)
        if not text:
            return False

        extraction = Extraction(
            id="",
            source_id=question.id,
            content_hash=content_hash,
            title=title,
            extracted_text=text,
            url=result.url,
            metadata_json=json.dumps({"question_id": question.id, "channel": channel, "query": query}),
        )
        if not await store.insert_extraction(extraction):
            return False

        if self.buffer is not None:
            metadata = Metadata(
                id=extraction.id,
                source_id=question.id,
                dossier_id=dossier_id,
                source_url=result.url,
                source_type="question",
                title=title,
                content_hash=content_hash,
                extracted_at=datetime.fromtimestamp(extraction.extracted_at / 1000, tz=timezone.utc),
            )
            try:
                await self.buffer.write(metadata, text)
            except OSError:
                logger.exception("questions: buffer write failed extraction_id=%s", extraction.id)
        return True


def parse_channels(raw: str) -> list[str]:
    try:
        parsed = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise QuestionRunError(f"invalid channels json: {exc}") from exc
    if not isinstance(parsed, list):
        raise QuestionRunError("channels must be a JSON array of engine ids")
    return [str(item) for item in parsed if item]
