from __future__ import annotations

import asyncio
import logging
import random
import signal

from veille.core.config import get_settings
from veille.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from veille.services.veille import VeilleService

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run the scheduler and sweeper without the HTTP API until stopped."""
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, service_suffix="-worker")
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    service = VeilleService(settings)
    backoff = 1.0
    try:
        while not stop_event.is_set():
            try:
                await service.open_shards()
                await service.start()
                await stop_event.wait()
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker start failed: %s; retry in %.1fs", exc, sleep_for)
                await service.stop()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=sleep_for)
                except asyncio.TimeoutError:
                    pass
                backoff = sleep_for
    finally:
        await service.aclose()
        shutdown_telemetry(telemetry_runtime)
        logger.info("worker stopped")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal handlers unavailable for %s", sig)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
