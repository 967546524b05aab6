from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from veille.core.config import Settings

if TYPE_CHECKING:
    from fastapi import FastAPI

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s "
    "dossier_id=%(dossier_id)s source_id=%(source_id)s %(message)s"
)

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_FACTORY_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
# (dossier_id, source_id) of the job running in the current task; tasks copy it on creation.
_JOB_CONTEXT: ContextVar[tuple[str, str]] = ContextVar("veille_job_context", default=("-", "-"))


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    service_name: str
    provider: TracerProvider | None
    app: FastAPI | None = None


def configure_logging(level: int | str = logging.INFO) -> None:
    _install_record_factory()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


@contextmanager
def job_log_context(dossier_id: str, source_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with the job's dossier and source."""
    token = _JOB_CONTEXT.set((dossier_id, source_id))
    try:
        yield
    finally:
        _JOB_CONTEXT.reset(token)


def setup_telemetry(settings: Settings, *, service_suffix: str = "", app: FastAPI | None = None) -> TelemetryRuntime:
    """Install the tracer provider for the API (``-api``) or the worker (``-worker``) process.

    When ``app`` is given its requests get server spans as well.
    """
    service_name = settings.otel_service_name + service_suffix
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, service_name=service_name, provider=None)

    if settings.otel_log_correlation:
        _install_record_factory()

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings, service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    return TelemetryRuntime(enabled=True, service_name=service_name, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings, service_name: str) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info("telemetry: no OTLP endpoint, spans stay local service=%s", service_name)
        return None
    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by ``OTEL_EXPORTER_OTLP_HEADERS``."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _install_record_factory() -> None:
    global _LOG_FACTORY_INSTALLED
    if _LOG_FACTORY_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        record.dossier_id, record.source_id = _JOB_CONTEXT.get()
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_FACTORY_INSTALLED = True
