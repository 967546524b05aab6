from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from veille.api.router import api_router
from veille.core.config import get_settings
from veille.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from veille.services.veille import get_service

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        # Resolved per lifespan so a cleared settings cache takes effect on restart.
        service = get_service()
        if service.settings.scheduler_enabled:
            await service.start()
        logger.info("api: started service=%s scheduler=%s", telemetry.service_name, service.settings.scheduler_enabled)
        try:
            yield
        finally:
            # Shards hold open SQLite connections bound to this event loop.
            await service.aclose()
            get_service.cache_clear()
            shutdown_telemetry(telemetry)

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    telemetry = setup_telemetry(settings, service_suffix="-api", app=application)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        response.headers["x-response-time-ms"] = f"{elapsed_ms:.2f}"
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "api: %s %s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    application.include_router(api_router)
    return application


app = create_app()
