from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging

from opentelemetry import trace

from veille.jobs.pipeline import Job
from veille.services.store import Store

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

StoreResolver = Callable[[str], Awaitable[Store]]
DossierLister = Callable[[], Awaitable[list[str]]]
JobSink = Callable[[Job], Awaitable[None]]

DEFAULT_CHECK_INTERVAL_SECONDS = 60.0
DEFAULT_MAX_FAIL_COUNT = 10


class Scheduler:
    """Emits a job for every due source of every active dossier, once per tick."""

    def __init__(
        self,
        resolve: StoreResolver,
        list_dossiers: DossierLister,
        sink: JobSink,
        *,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        max_fail_count: int = DEFAULT_MAX_FAIL_COUNT,
    ) -> None:
        self.resolve = resolve
        self.list_dossiers = list_dossiers
        self.sink = sink
        self.check_interval = check_interval if check_interval > 0 else DEFAULT_CHECK_INTERVAL_SECONDS
        self.max_fail_count = max_fail_count if max_fail_count > 0 else DEFAULT_MAX_FAIL_COUNT

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("scheduler: started interval=%.1fs max_fail_count=%s", self.check_interval, self.max_fail_count)
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("scheduler: stopped")

    async def run_once(self) -> int:
        """Run one cycle and return the number of jobs emitted."""
        with tracer.start_as_current_span("scheduler.cycle") as span:
            try:
                dossier_ids = await self.list_dossiers()
            except Exception:
                logger.exception("scheduler: list dossiers failed")
                return 0

            emitted = 0
            for dossier_id in dossier_ids:
                try:
                    store = await self.resolve(dossier_id)
                    sources = await store.due_sources(self.max_fail_count)
                except Exception as exc:
                    logger.warning("scheduler: dossier skipped dossier_id=%s error=%s", dossier_id, exc)
                    continue

                for source in sources:
                    try:
                        await self.sink(Job(dossier_id=dossier_id, source_id=source.id, url=source.url))
                    except Exception as exc:
                        logger.warning(
                            "scheduler: submit failed dossier_id=%s source_id=%s error=%s", dossier_id, source.id, exc
                        )
                        continue
                    emitted += 1

            span.set_attribute("scheduler.dossiers", len(dossier_ids))
            span.set_attribute("scheduler.jobs", emitted)
            if emitted:
                logger.info("scheduler: emitted jobs: %s", emitted)
            return emitted
