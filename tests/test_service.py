from __future__ import annotations

import asyncio
from functools import partial
import json
from pathlib import Path

import httpx
import pytest

from veille.core.config import Settings
from veille.core.errors import (
    DuplicateSourceError,
    InvalidInputError,
    NotFoundError,
    QuotaExceededError,
)
from veille.core.ssrf import validate_url
from veille.jobs.pipeline import Job
from veille.services.store import SearchEngine, Source, TrackedQuestion
from veille.services.veille import VeilleService, question_source_name


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "data_dir": str(tmp_path / "data"),
        "scheduler_enabled": False,
        "otel_enabled": False,
        "allow_private_networks": True,
        "max_sources_per_dossier": 3,
    }
    values.update(overrides)
    return Settings(**values)


def _run(tmp_path: Path, scenario, handler=None, **kwargs) -> None:
    async def default_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<p>page</p>", request=request)

    async def run() -> None:
        transport = httpx.MockTransport(handler or default_handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            service = VeilleService(_settings(tmp_path, **kwargs.pop("settings", {})), client=client, **kwargs)
            try:
                await scenario(service)
            finally:
                await service.aclose()

    asyncio.run(run())


def test_add_source_applies_defaults_and_normalizes_url(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        created = await service.add_source(
            "dossier-1", Source(id="", name="News", url="HTTPS://Example.TEST/news/?b=2&a=1#top", fetch_interval=0)
        )
        assert created.url == "https://example.test/news?a=1&b=2"
        assert created.source_type == "web"
        assert created.fetch_interval == 3_600_000
        assert created.last_status == "pending"
        assert [source.id for source in await service.list_sources("dossier-1")] == [created.id]

        with pytest.raises(DuplicateSourceError):
            await service.add_source("dossier-1", Source(id="", name="Again", url="https://example.test/news/?a=1&b=2"))

    _run(tmp_path, scenario)


def test_add_source_rejections(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        with pytest.raises(InvalidInputError, match="invalid source_type"):
            await service.add_source("dossier-1", Source(id="", name="X", url="https://example.test/x", source_type="ftp"))
        with pytest.raises(InvalidInputError, match=r"'\.\.'"):
            await service.add_source(
                "dossier-1", Source(id="", name="Doc", url="/srv/docs/../secret.txt", source_type="document")
            )
        with pytest.raises(InvalidInputError, match="invalid dossier id"):
            await service.add_source("../escape", Source(id="", name="X", url="https://example.test/x"))

        for index in range(3):
            await service.add_source("dossier-1", Source(id="", name=f"S{index}", url=f"https://example.test/{index}"))
        with pytest.raises(QuotaExceededError):
            await service.add_source("dossier-1", Source(id="", name="S3", url="https://example.test/3"))

    _run(tmp_path, scenario)


def test_private_urls_are_refused_unless_allowed(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        with pytest.raises(InvalidInputError, match="unsafe url"):
            await service.add_source("dossier-1", Source(id="", name="Local", url="http://127.0.0.1:8080/admin"))
        with pytest.raises(InvalidInputError, match="unsafe url"):
            await service.probe_url("http://169.254.169.254/latest/meta-data")
        with pytest.raises(InvalidInputError, match="url_template refused"):
            await service.add_search_engine(
                "dossier-1",
                SearchEngine(id="meta", name="Meta", url_template="http://169.254.169.254/latest/meta-data?q={query}"),
            )
        assert await service.list_search_engines("dossier-1") == []

    _run(
        tmp_path,
        scenario,
        url_validator=partial(validate_url, resolver=lambda host: []),
        settings={"allow_private_networks": False},
    )


def test_update_get_delete_source(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        first = await service.add_source("dossier-1", Source(id="", name="One", url="https://example.test/1"))
        second = await service.add_source("dossier-1", Source(id="", name="Two", url="https://example.test/2"))

        updated = await service.update_source(
            "dossier-1", first.id, name="Renamed", url="https://EXAMPLE.test/renamed/", enabled=False
        )
        assert updated.name == "Renamed"
        assert updated.url == "https://example.test/renamed"
        assert updated.enabled is False
        assert (await service.get_source("dossier-1", first.id)).name == "Renamed"

        with pytest.raises(DuplicateSourceError):
            await service.update_source("dossier-1", first.id, url="https://example.test/2")
        with pytest.raises(InvalidInputError):
            await service.update_source("dossier-1", second.id, fetch_interval=1)

        await service.delete_source("dossier-1", first.id)
        with pytest.raises(NotFoundError):
            await service.get_source("dossier-1", first.id)
        with pytest.raises(NotFoundError):
            await service.delete_source("dossier-1", first.id)

    _run(tmp_path, scenario)


def test_fetch_now_returns_state_after_failure_and_reset_clears_it(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    async def scenario(service: VeilleService) -> None:
        source = await service.add_source("dossier-1", Source(id="", name="Flaky", url="https://example.test/flaky"))
        after = await service.fetch_now("dossier-1", source.id)
        assert after.last_status == "error"
        assert after.fail_count == 1
        assert after.fetch_interval == 7_200_000
        assert [entry.status_code for entry in await service.fetch_history("dossier-1", source.id)] == [503]

        reset = await service.reset_source("dossier-1", source.id)
        assert reset.fail_count == 0
        assert reset.last_status == "pending"
        assert reset.fetch_interval == 3_600_000
        assert reset.original_fetch_interval is None

    _run(tmp_path, scenario, handler=handler)


def test_fetch_now_then_search_and_search_log(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        html = b"<html><head><title>Cycling</title></head><body><p>The council approved the cycling plan.</p></body></html>"
        return httpx.Response(200, content=html, request=request)

    async def scenario(service: VeilleService) -> None:
        source = await service.add_source("dossier-1", Source(id="", name="News", url="https://example.test/news"))
        fetched = await service.fetch_now("dossier-1", source.id)
        assert fetched.last_status == "ok"

        [extraction] = await service.list_extractions("dossier-1")
        assert (await service.get_extraction("dossier-1", extraction.id)).title == "Cycling"
        with pytest.raises(NotFoundError):
            await service.get_extraction("dossier-1", "missing")

        hits = await service.search("dossier-1", "cycling")
        assert [hit.extraction_id for hit in hits] == [extraction.id]
        assert await service.search("dossier-1", "tramway") == []
        with pytest.raises(InvalidInputError):
            await service.search("dossier-1", "   ")
        with pytest.raises(InvalidInputError, match="invalid search query"):
            await service.search("dossier-1", '"unbalanced')

        log = await service.search_log("dossier-1")
        assert [(entry.query, entry.result_count) for entry in log] == [("tramway", 0), ("cycling", 1)]

        stats = await service.stats("dossier-1")
        assert stats.sources == 1
        assert stats.extractions == 1
        assert stats.by_status == {"ok": 1}

    _run(tmp_path, scenario, handler=handler)


def test_question_lifecycle_keeps_backing_source_in_sync(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        question = await service.add_question(
            "dossier-1", TrackedQuestion(id="", text="Is the tramway extension funded?", schedule_ms=3_600_000)
        )
        backing = await service.get_source("dossier-1", question.id)
        assert backing.source_type == "question"
        assert backing.url == f"question://{question.id}"
        assert backing.name == "Q: Is the tramway extension funded?"
        assert backing.fetch_interval == 3_600_000
        assert json.loads(backing.config_json) == {"question_id": question.id}

        await service.update_question("dossier-1", question.id, schedule_ms=7_200_000, enabled=False)
        backing = await service.get_source("dossier-1", question.id)
        assert backing.fetch_interval == 7_200_000
        assert backing.enabled is False

        assert await service.run_question_now("dossier-1", question.id) == 0
        assert await service.question_results("dossier-1", question.id) == []

        await service.delete_question("dossier-1", question.id)
        with pytest.raises(NotFoundError):
            await service.get_source("dossier-1", question.id)
        with pytest.raises(NotFoundError):
            await service.get_question("dossier-1", question.id)

    _run(tmp_path, scenario)


def test_question_validation(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        with pytest.raises(InvalidInputError, match="question text is required"):
            await service.add_question("dossier-1", TrackedQuestion(id="", text=" "))
        with pytest.raises(InvalidInputError):
            await service.add_question("dossier-1", TrackedQuestion(id="", text="ok", channels='{"x": 1}'))
        with pytest.raises(InvalidInputError, match="fetch_interval"):
            await service.add_question("dossier-1", TrackedQuestion(id="q-fast", text="too often", schedule_ms=1000))
        assert await service.list_questions("dossier-1") == []

    _run(tmp_path, scenario)


def test_question_source_name_truncates() -> None:
    assert question_source_name("short") == "Q: short"
    long_name = question_source_name("x" * 100)
    assert long_name == "Q: " + "x" * 77 + "..."
    assert len(long_name) == 83


def test_search_engines(tmp_path: Path) -> None:
    async def scenario(service: VeilleService) -> None:
        engine = await service.add_search_engine(
            "dossier-1", SearchEngine(id="news", name="News", url_template="https://s.test/?q={query}")
        )
        assert engine.strategy == "api"
        with pytest.raises(DuplicateSourceError):
            await service.add_search_engine(
                "dossier-1", SearchEngine(id="news", name="Other", url_template="https://s.test/?q={query}")
            )
        with pytest.raises(InvalidInputError, match="invalid strategy"):
            await service.add_search_engine(
                "dossier-1", SearchEngine(id="", name="Bad", url_template="https://s.test/", strategy="scrape")
            )
        with pytest.raises(InvalidInputError, match="api_config"):
            await service.add_search_engine(
                "dossier-1", SearchEngine(id="", name="Bad", url_template="https://s.test/", api_config="{x")
            )
        assert [item.id for item in await service.list_search_engines("dossier-1")] == ["news"]
        await service.delete_search_engine("dossier-1", "news")
        with pytest.raises(NotFoundError):
            await service.delete_search_engine("dossier-1", "news")

    _run(tmp_path, scenario)


def test_dossiers_and_source_health(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    async def prober(url: str) -> tuple[int, str]:
        return 200, ""

    async def scenario(service: VeilleService) -> None:
        await service.create_dossier("alpha")
        with pytest.raises(InvalidInputError, match="already exists"):
            await service.create_dossier("alpha")

        source = await service.add_source("beta", Source(id="", name="Gone", url="https://example.test/gone"))
        await service.fetch_now("beta", source.id)
        assert await service.list_dossiers() == ["alpha", "beta"]

        [health] = await service.list_source_health()
        assert (health.dossier_id, health.source_id, health.last_status) == ("beta", source.id, "broken")

        [result] = await service.sweep_now()
        assert result.recovered is True
        assert (await service.get_source("beta", source.id)).last_status == "pending"
        assert await service.probe_url("https://example.test/anything") == (200, "")

    _run(tmp_path, scenario, handler=handler, prober=prober)


def test_submit_skips_sources_already_in_flight(tmp_path: Path) -> None:
    requests: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        await asyncio.sleep(0.05)
        return httpx.Response(200, content=b"<p>slow page</p>", request=request)

    async def scenario(service: VeilleService) -> None:
        source = await service.add_source("dossier-1", Source(id="", name="Slow", url="https://example.test/slow"))
        job = Job(dossier_id="dossier-1", source_id=source.id, url=source.url)
        await service.submit(job)
        await service.submit(job)
        await service.stop()

        assert requests == ["https://example.test/slow"]
        assert (await service.get_source("dossier-1", source.id)).last_status == "ok"

        await service.submit(job)
        await service.stop()
        assert len(requests) == 2

    _run(tmp_path, scenario, handler=handler)


def test_process_job_reports_failure(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, request=request)

    async def scenario(service: VeilleService) -> None:
        source = await service.add_source("dossier-1", Source(id="", name="Down", url="https://example.test/down"))
        assert await service.process_job(Job(dossier_id="dossier-1", source_id=source.id, url=source.url)) is False

    _run(tmp_path, scenario, handler=handler)
