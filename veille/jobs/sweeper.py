from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from opentelemetry import trace

from veille.jobs.repair import probe_url
from veille.services.store import Store, StoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 6 * 3600.0
NON_HTTP_SOURCE_TYPES = {"question", "document"}

Prober = Callable[[str], Awaitable[tuple[int, str]]]


@dataclass(slots=True)
class SweepResult:
    dossier_id: str
    source_id: str
    source_name: str
    url: str
    status_code: int
    recovered: bool
    error: str = ""


class Sweeper:
    """Probes broken sources and resets the ones that answer 2xx/3xx again."""

    def __init__(
        self,
        resolve: Callable[[str], Awaitable[Store]],
        list_dossiers: Callable[[], Awaitable[list[str]]],
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        prober: Prober = probe_url,
    ) -> None:
        self.resolve = resolve
        self.list_dossiers = list_dossiers
        self.interval = interval if interval > 0 else DEFAULT_SWEEP_INTERVAL_SECONDS
        self.prober = prober

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("sweeper: started interval=%.1fs", self.interval)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("sweeper: cycle failed")
        logger.info("sweeper: stopped")

    async def run_once(self) -> list[SweepResult]:
        with tracer.start_as_current_span("sweeper.cycle") as span:
            try:
                dossier_ids = await self.list_dossiers()
            except Exception:
                logger.exception("sweeper: list dossiers failed")
                return []

            results: list[SweepResult] = []
            for dossier_id in dossier_ids:
                try:
                    store = await self.resolve(dossier_id)
                    broken = await store.list_broken_sources()
                except Exception as exc:
                    logger.warning("sweeper: dossier skipped dossier_id=%s error=%s", dossier_id, exc)
                    continue

                for source in broken:
                    if source.source_type in NON_HTTP_SOURCE_TYPES:
                        continue
                    status_code, error = await self.prober(source.url)
                    recovered = 200 <= status_code < 400
                    if recovered:
                        try:
                            await store.reset_source(source.id)
                        except StoreError as exc:
                            recovered = False
                            error = f"reset failed: {exc}"
                            logger.warning(
                                "sweeper: reset failed dossier_id=%s source_id=%s error=%s", dossier_id, source.id, exc
                            )
                        else:
                            logger.info("sweeper: source recovered dossier_id=%s source_id=%s", dossier_id, source.id)
                    elif not error:
                        error = f"http {status_code}"
                    results.append(
                        SweepResult(
                            dossier_id=dossier_id,
                            source_id=source.id,
                            source_name=source.name,
                            url=source.url,
                            status_code=status_code,
                            recovered=recovered,
                            error=error,
                        )
                    )

            recovered_count = sum(1 for result in results if result.recovered)
            span.set_attribute("sweeper.probed", len(results))
            span.set_attribute("sweeper.recovered", recovered_count)
            logger.info("sweeper: cycle complete probed=%s recovered=%s", len(results), recovered_count)
            return results
