from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind
import pytest

from veille.core.config import Settings
from veille.core.telemetry import (
    configure_logging,
    job_log_context,
    parse_headers,
    setup_telemetry,
    shutdown_telemetry,
)

logger = logging.getLogger("veille.tests.telemetry")


def test_parse_headers() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = ops ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "ops",
    }
    assert parse_headers(None) == {}


def test_job_log_context_tags_records(caplog: pytest.LogCaptureFixture) -> None:
    configure_logging()
    with caplog.at_level(logging.INFO, logger="veille.tests.telemetry"):
        logger.info("outside")
        with job_log_context("city", "council"):
            logger.info("inside")
        logger.info("after")

    tagged = [(record.getMessage(), record.dossier_id, record.source_id) for record in caplog.records]
    assert tagged == [("outside", "-", "-"), ("inside", "city", "council"), ("after", "-", "-")]
    assert all(record.trace_id == "0" * 32 for record in caplog.records)


def test_job_log_context_is_isolated_between_tasks(caplog: pytest.LogCaptureFixture) -> None:
    configure_logging()

    async def job(dossier_id: str) -> None:
        with job_log_context(dossier_id, "s1"):
            await asyncio.sleep(0.01)
            logger.info("done")

    async def run() -> None:
        await asyncio.gather(job("alpha"), job("beta"))

    with caplog.at_level(logging.INFO, logger="veille.tests.telemetry"):
        asyncio.run(run())

    assert sorted(record.dossier_id for record in caplog.records) == ["alpha", "beta"]


def test_setup_telemetry_disabled() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), service_suffix="-worker")
    assert runtime.enabled is False
    assert runtime.service_name == "veille-worker"
    assert runtime.provider is None


def test_setup_telemetry_adds_server_spans_to_app(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    app = FastAPI()

    @app.get("/dossiers/{dossier_id}/stats")
    async def stats(dossier_id: str) -> dict[str, str]:
        return {"dossier_id": dossier_id}

    runtime = setup_telemetry(Settings(otel_enabled=True), service_suffix="-api", app=app)
    exporter = InMemorySpanExporter()
    assert runtime.provider is not None
    runtime.provider.add_span_processor(SimpleSpanProcessor(exporter))
    try:
        with TestClient(app) as client:
            assert client.get("/dossiers/city/stats").status_code == 200
    finally:
        shutdown_telemetry(runtime)

    server_spans = [span for span in exporter.get_finished_spans() if span.kind == SpanKind.SERVER]
    assert [span.name for span in server_spans] == ["GET /dossiers/{dossier_id}/stats"]
    assert runtime.app is app
