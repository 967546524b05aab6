from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Protocol

from opentelemetry import trace

from veille.core.errors import HandlerCrashError, HandlerError
from veille.core.telemetry import job_log_context
from veille.jobs.classify import extract_status_code
from veille.jobs.handlers.bridge import BridgeHandler
from veille.jobs.repair import Repairer
from veille.services.buffer import BufferWriter, Metadata
from veille.services.fetcher import Fetcher
from veille.services.rpc import ServiceRouter
from veille.services.store import Extraction, FetchLogEntry, Source, Store, StoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FALLBACK_SOURCE_TYPE = "web"


@dataclass(slots=True, frozen=True)
class Job:
    dossier_id: str
    source_id: str
    url: str


class SourceHandler(Protocol):
    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None: ...


class Pipeline:
    """Dispatches a job to the handler registered for its source type.

    The job travels as an argument, so one pipeline can serve many jobs
    concurrently.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        *,
        buffer: BufferWriter | None = None,
        repairer: Repairer | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.buffer = buffer
        self.repairer = repairer
        self.handlers: dict[str, SourceHandler] = {}

    def register(self, source_type: str, handler: SourceHandler) -> None:
        self.handlers[source_type] = handler

    def has_handler(self, source_type: str) -> bool:
        return source_type in self.handlers

    def source_types(self) -> list[str]:
        return sorted(self.handlers)

    async def handle_job(self, store: Store, job: Job) -> None:
        with tracer.start_as_current_span("pipeline.handle_job") as span, job_log_context(job.dossier_id, job.source_id):
            span.set_attribute("dossier.id", job.dossier_id)
            span.set_attribute("source.id", job.source_id)

            source = await store.get_source(job.source_id)
            if source is None:
                logger.warning("pipeline: source not found dossier_id=%s source_id=%s", job.dossier_id, job.source_id)
                return
            if not source.enabled:
                logger.debug("pipeline: source disabled source_id=%s", source.id)
                return
            span.set_attribute("source.type", source.source_type)

            handler = self.handlers.get(source.source_type) or self.handlers.get(FALLBACK_SOURCE_TYPE)
            if handler is None:
                raise HandlerError(f"no handler for source type {source.source_type!r}")

            started = time.monotonic()
            try:
                await handler.handle(store, source, job, self)
            except HandlerError as exc:
                await self._repair(store, source.id, exc)
                raise
            except StoreError:
                raise
            except Exception as exc:
                logger.exception("pipeline: handler crashed source_id=%s type=%s", source.id, source.source_type)
                message = f"handler crashed: {exc.__class__.__name__}: {exc}"
                await self.log_fetch(store, source.id, "error", started, error_message=message)
                await store.record_fetch_error(source.id, message)
                raise HandlerCrashError(message) from exc

    async def log_fetch(
        self,
        store: Store,
        source_id: str,
        status: str,
        started: float,
        *,
        status_code: int | None = None,
        content_hash: str = "",
        error_message: str = "",
    ) -> None:
        await store.insert_fetch_log(
            FetchLogEntry(
                id="",
                source_id=source_id,
                status=status,
                status_code=status_code,
                content_hash=content_hash,
                error_message=error_message,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        )

    async def write_buffer(self, job: Job, source: Source, extraction: Extraction, *, source_type: str = "") -> None:
        """Hand a freshly inserted extraction to the buffer sink, when one is configured."""
        if self.buffer is None:
            return
        metadata = Metadata(
            id=extraction.id,
            source_id=source.id,
            dossier_id=job.dossier_id,
            source_url=extraction.url or source.url,
            source_type=source_type or source.source_type,
            title=extraction.title,
            content_hash=extraction.content_hash,
            extracted_at=datetime.fromtimestamp(extraction.extracted_at / 1000, tz=timezone.utc),
        )
        try:
            await self.buffer.write(metadata, extraction.extracted_text)
        except OSError:
            logger.exception("pipeline: buffer write failed extraction_id=%s", extraction.id)

    async def _repair(self, store: Store, source_id: str, exc: HandlerError) -> None:
        if self.repairer is None:
            return
        source = await store.get_source(source_id)
        if source is None:
            return
        status_code = exc.status_code or extract_status_code(str(exc))
        action = await self.repairer.try_repair(store, source, status_code, str(exc))
        if action != "none":
            logger.info("pipeline: auto-repair applied source_id=%s action=%s", source_id, action)


def discover_handlers(pipeline: Pipeline, router: ServiceRouter) -> list[str]:
    """Register a bridge handler for every ``<type>_fetch`` service that has no built-in handler."""
    discovered: list[str] = []
    for service in router.list_services():
        if not service.name.endswith("_fetch"):
            continue
        source_type = service.name.removesuffix("_fetch")
        if not source_type or pipeline.has_handler(source_type):
            continue
        pipeline.register(source_type, BridgeHandler(router, service.name))
        discovered.append(source_type)
        logger.info("pipeline: bridge handler discovered source_type=%s service=%s", source_type, service.name)
    return discovered
