from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from veille.core.errors import HandlerError
from veille.core.urls import sha256_hex
from veille.extract.clean import clean_text
from veille.services.rpc import RPCError, ServiceRouter
from veille.services.store import Extraction, Source, Store

if TYPE_CHECKING:
    from veille.jobs.pipeline import Job, Pipeline

logger = logging.getLogger(__name__)


class BridgeRequest(BaseModel):
    source_id: str
    url: str
    config: Any = None
    source_type: str


class BridgeExtraction(BaseModel):
    title: str = ""
    content: str = ""
    url: str = ""
    content_hash: str | None = None


class BridgeResponse(BaseModel):
    extractions: list[BridgeExtraction] = Field(default_factory=list)


class BridgeHandler:
    """Delegates acquisition to an external ``<source_type>_fetch`` service over the RPC router."""

    def __init__(self, router: ServiceRouter, service_name: str) -> None:
        self.router = router
        self.service_name = service_name

    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
        started = time.monotonic()
        request = BridgeRequest(
            source_id=source.id,
            url=source.url,
            config=_parse_config(source.config_json),
            source_type=source.source_type,
        )

        try:
            raw = await self.router.call(self.service_name, request.model_dump_json().encode("utf-8"))
        except RPCError as exc:
            await pipeline.log_fetch(store, source.id, "error", started, error_message=str(exc))
            await store.record_fetch_error(source.id, str(exc))
            logger.warning("bridge: call failed service=%s source_id=%s error=%s", self.service_name, source.id, exc)
            raise HandlerError(f"bridge {self.service_name}: {exc}") from exc

        try:
            response = BridgeResponse.model_validate_json(raw)
        except ValidationError as exc:
            message = f"bridge {self.service_name}: invalid json response: {exc.error_count()} errors"
            await pipeline.log_fetch(store, source.id, "extract_error", started, error_message=message)
            await store.record_fetch_error(source.id, message, status="extract_error")
            raise HandlerError(message) from exc

        new_count = 0
        for item in response.extractions:
            url = item.url or source.url
            content_hash = item.content_hash or sha256_hex(f"{url}|{item.title}")
            if await store.extraction_exists(source.id, content_hash):
                continue
            text = clean_text(item.content)
            if not text:
                continue
            extraction = Extraction(
                id="",
                source_id=source.id,
                content_hash=content_hash,
                title=item.title,
                extracted_text=text,
                url=url,
            )
            if await store.insert_extraction(extraction):
                new_count += 1
                await pipeline.write_buffer(job, source, extraction)

        await pipeline.log_fetch(store, source.id, "ok", started)
        await store.record_fetch_success(source.id, "")
        logger.info(
            "bridge: fetched service=%s source_id=%s items=%s new=%s",
            self.service_name,
            source.id,
            len(response.extractions),
            new_count,
        )


def _parse_config(raw: str) -> Any:
    try:
        return json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
