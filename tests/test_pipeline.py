from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from pathlib import Path

import httpx
import pytest

from veille.core.errors import HandlerCrashError, HandlerError
from veille.core.ssrf import validate_url
from veille.jobs.handlers.document import DocumentHandler
from veille.jobs.handlers.question import QuestionHandler
from veille.jobs.handlers.rss import RSSHandler
from veille.jobs.handlers.web import WebHandler
from veille.jobs.pipeline import Job, Pipeline
from veille.jobs.repair import ALTERNATE_USER_AGENTS, Repairer
from veille.services.buffer import BufferWriter, read_buffer_file
from veille.services.fetcher import Fetcher
from veille.services.questions import QuestionRunner
from veille.services.shards import ShardPool
from veille.services.store import Source, Store, TrackedQuestion

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]

FEED = b"""<?xml version="1.0"?>
<rss version="2.0">
  <channel>
    <title>Council news</title>
    <link>https://example.test/</link>
    <description>Updates</description>
    <item>
      <guid>item-001</guid>
      <title>First</title>
      <link>https://example.test/news/1</link>
      <description>First item body</description>
    </item>
    <item>
      <guid>item-002</guid>
      <title>Second</title>
      <link>https://example.test/news/2</link>
      <description>Second item body</description>
    </item>
  </channel>
</rss>
"""

LINKED_FEED = b"""<?xml version="1.0"?>
<rss version="2.0">
  <channel>
    <title>Linked</title>
    <link>https://example.test/</link>
    <item>
      <guid>full-1</guid>
      <title>Full story</title>
      <link>https://example.test/full</link>
      <description>Short</description>
    </item>
  </channel>
</rss>
"""

LONG_ARTICLE = "The council met on Tuesday and approved the new cycling plan after a long debate."


def _pipeline(client: httpx.AsyncClient, *, buffer: BufferWriter | None = None) -> Pipeline:
    fetcher = Fetcher(client=client, url_validator=partial(validate_url, resolver=lambda host: []))
    pipeline = Pipeline(fetcher, buffer=buffer, repairer=Repairer())
    pipeline.register("web", WebHandler())
    pipeline.register("rss", RSSHandler())
    pipeline.register("document", DocumentHandler())
    pipeline.register("question", QuestionHandler(QuestionRunner(client, fetcher)))
    return pipeline


def _run(tmp_path: Path, handler: Handler, scenario, *, buffer: BufferWriter | None = None) -> None:
    async def run() -> None:
        pool = ShardPool(tmp_path / "shards")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False) as client:
            try:
                store = await pool.resolve("dossier-1")
                await scenario(store, _pipeline(client, buffer=buffer))
            finally:
                await pool.close()

    asyncio.run(run())


async def _add(store: Store, url: str, source_type: str = "web", config_json: str = "{}") -> Source:
    return await store.insert_source(
        Source(id="", name="Source", url=url, source_type=source_type, config_json=config_json)
    )


def _job(source: Source, dossier_id: str = "dossier-1") -> Job:
    return Job(dossier_id=dossier_id, source_id=source.id, url=source.url)


def test_conditional_get_records_unchanged_on_304(tmp_path: Path) -> None:
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(200, content=b"hello world", request=request)
        return httpx.Response(304, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/a")
        await pipeline.handle_job(store, _job(source))

        first = await store.get_source(source.id)
        assert first is not None
        assert first.last_status == "ok"
        assert first.last_hash == "b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9"
        extractions = await store.list_extractions(source_id=source.id)
        assert [extraction.extracted_text for extraction in extractions] == ["hello world"]

        await pipeline.handle_job(store, _job(source))
        second = await store.get_source(source.id)
        assert second is not None
        assert second.last_status == "unchanged"
        assert len(await store.list_extractions(source_id=source.id)) == 1
        assert [entry.status for entry in await store.fetch_history(source.id)] == ["unchanged", "ok"]

    _run(tmp_path, handler, scenario)


def test_rss_replay_does_not_duplicate_entries(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=FEED, headers={"content-type": "application/rss+xml"}, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/feed.xml", source_type="rss")
        await pipeline.handle_job(store, _job(source))
        await pipeline.handle_job(store, _job(source))

        extractions = await store.list_extractions(source_id=source.id)
        assert sorted(extraction.title for extraction in extractions) == ["First", "Second"]
        assert sorted(extraction.url for extraction in extractions) == [
            "https://example.test/news/1",
            "https://example.test/news/2",
        ]
        current = await store.get_source(source.id)
        assert current is not None and current.last_status == "ok"

    _run(tmp_path, handler, scenario)


def test_rss_follow_links_extracts_linked_page(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/full":
            html = f"<html><head><title>Full</title></head><body><nav>Menu</nav><article><p>{LONG_ARTICLE}</p></article></body></html>"
            return httpx.Response(200, content=html.encode(), request=request)
        return httpx.Response(200, content=LINKED_FEED, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/linked.xml", source_type="rss", config_json='{"follow_links": true}')
        await pipeline.handle_job(store, _job(source))

        extractions = await store.list_extractions(source_id=source.id)
        assert len(extractions) == 1
        assert extractions[0].extracted_text == LONG_ARTICLE
        assert extractions[0].url == "https://example.test/full"

    _run(tmp_path, handler, scenario)


def test_rss_max_entries_limits_processing(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=FEED, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/feed.xml", source_type="rss", config_json='{"max_entries": 1}')
        await pipeline.handle_job(store, _job(source))
        assert [extraction.title for extraction in await store.list_extractions(source_id=source.id)] == ["First"]

    _run(tmp_path, handler, scenario)


def test_backoff_ladder_then_recovery(tmp_path: Path) -> None:
    responses = [503, 503, 503, 200]

    async def handler(request: httpx.Request) -> httpx.Response:
        code = responses.pop(0)
        return httpx.Response(code, content=b"<p>back online</p>" if code == 200 else b"", request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/flaky")
        for expected_interval in (7_200_000, 14_400_000, 28_800_000):
            with pytest.raises(HandlerError):
                await pipeline.handle_job(store, _job(source))
            current = await store.get_source(source.id)
            assert current is not None
            assert current.fetch_interval == expected_interval
            assert current.original_fetch_interval == 3_600_000

        current = await store.get_source(source.id)
        assert current is not None and current.fail_count == 3

        await pipeline.handle_job(store, _job(source))
        current = await store.get_source(source.id)
        assert current is not None
        assert current.fetch_interval == 3_600_000
        assert current.original_fetch_interval is None
        assert current.fail_count == 0
        assert current.last_status == "ok"

    _run(tmp_path, handler, scenario)


def test_forbidden_rotates_user_agents_until_broken(tmp_path: Path) -> None:
    seen_agents: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen_agents.append(request.headers.get("user-agent", ""))
        return httpx.Response(403, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/guarded")
        for _ in range(4):
            with pytest.raises(HandlerError):
                await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.last_status == "broken"
        assert current.fail_count == 4

    _run(tmp_path, handler, scenario)
    assert seen_agents == ["veille/1.0", *ALTERNATE_USER_AGENTS]


def test_redirect_to_private_address_is_refused(tmp_path: Path) -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.host == "example.test":
            return httpx.Response(302, headers={"location": "http://10.255.255.1/admin"}, request=request)
        return httpx.Response(200, content=b"internal", request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/start")
        with pytest.raises(HandlerError) as exc_info:
            await pipeline.handle_job(store, _job(source))
        assert "ssrf" in str(exc_info.value)

        history = await store.fetch_history(source.id)
        assert history[0].status == "error"
        assert "ssrf" in history[0].error_message
        assert await store.list_extractions(source_id=source.id) == []

    _run(tmp_path, handler, scenario)
    assert requested == ["https://example.test/start"]


def test_missing_and_disabled_sources_are_skipped(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        await pipeline.handle_job(store, Job(dossier_id="dossier-1", source_id="missing", url=""))
        disabled = await store.insert_source(Source(id="", name="Off", url="https://example.test/off", enabled=False))
        await pipeline.handle_job(store, _job(disabled))
        assert await store.fetch_history(disabled.id) == []

    _run(tmp_path, handler, scenario)


def test_unknown_source_type_falls_back_to_web(tmp_path: Path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<p>fallback page</p>", request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "https://example.test/x", source_type="legacy")
        await pipeline.handle_job(store, _job(source))
        extractions = await store.list_extractions(source_id=source.id)
        assert [extraction.extracted_text for extraction in extractions] == ["fallback page"]

    _run(tmp_path, handler, scenario)


def test_handler_crash_is_recorded_and_wrapped(tmp_path: Path) -> None:
    class ExplodingHandler:
        async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
            raise RuntimeError("boom")

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, request=request)

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        pipeline.register("exploding", ExplodingHandler())
        source = await _add(store, "https://example.test/boom", source_type="exploding")
        with pytest.raises(HandlerCrashError):
            await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.fail_count == 1
        assert current.last_status == "error"
        assert "boom" in current.last_error
        assert (await store.fetch_history(source.id))[0].status == "error"

    _run(tmp_path, handler, scenario)


def test_concurrent_jobs_write_buffer_with_their_own_dossier(tmp_path: Path) -> None:
    buffer = BufferWriter(tmp_path / "buffer")

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.01)
        return httpx.Response(200, content=f"<p>page {request.url.path}</p>".encode(), request=request)

    async def run() -> None:
        pool = ShardPool(tmp_path / "shards")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False) as client:
            pipeline = _pipeline(client, buffer=buffer)
            try:
                store_a = await pool.resolve("alpha")
                store_b = await pool.resolve("beta")
                source_a = await _add(store_a, "https://example.test/a")
                source_b = await _add(store_b, "https://example.test/b")
                await asyncio.gather(
                    pipeline.handle_job(store_a, _job(source_a, "alpha")),
                    pipeline.handle_job(store_b, _job(source_b, "beta")),
                )
            finally:
                await pool.close()

    asyncio.run(run())

    written = {}
    for path in (tmp_path / "buffer").glob("*.md"):
        metadata, body = read_buffer_file(path)
        written[metadata["dossier_id"]] = (metadata["source_url"], body)
    assert written == {
        "alpha": ("https://example.test/a", "page /a"),
        "beta": ("https://example.test/b", "page /b"),
    }


async def _no_http(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.url}")


def test_document_unchanged_file_is_not_extracted_twice(tmp_path: Path) -> None:
    notes = tmp_path / "minutes.md"
    notes.write_text("Council minutes\n\nThe budget was approved.", encoding="utf-8")

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, f"file://{notes}", source_type="document")
        await pipeline.handle_job(store, _job(source))
        await pipeline.handle_job(store, _job(source))

        extractions = await store.list_extractions(source_id=source.id)
        assert len(extractions) == 1
        assert extractions[0].title == "Council minutes"
        assert extractions[0].extracted_text == "Council minutes\n\nThe budget was approved."
        current = await store.get_source(source.id)
        assert current is not None
        assert current.last_status == "unchanged"
        assert current.fail_count == 0
        assert [entry.status for entry in await store.fetch_history(source.id)] == ["unchanged", "ok"]

    _run(tmp_path, _no_http, scenario)


def test_document_changed_file_adds_extraction(tmp_path: Path) -> None:
    notes = tmp_path / "notes.txt"
    notes.write_text("first draft", encoding="utf-8")

    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, str(notes), source_type="document")
        await pipeline.handle_job(store, _job(source))
        notes.write_text("second draft", encoding="utf-8")
        await pipeline.handle_job(store, _job(source))

        texts = sorted(extraction.extracted_text for extraction in await store.list_extractions(source_id=source.id))
        assert texts == ["first draft", "second draft"]

    _run(tmp_path, _no_http, scenario)


def test_document_parse_failure_records_extract_error(tmp_path: Path) -> None:
    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, str(tmp_path / "report.docx"), source_type="document")
        with pytest.raises(HandlerError, match="unsupported document type"):
            await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.last_status == "extract_error"
        assert current.fail_count == 1
        assert "unsupported document type" in current.last_error
        history = await store.fetch_history(source.id)
        assert [entry.status for entry in history] == ["extract_error"]
        assert await store.list_extractions(source_id=source.id) == []

    _run(tmp_path, _no_http, scenario)


def test_question_source_without_question_is_a_no_op(tmp_path: Path) -> None:
    async def scenario(store: Store, pipeline: Pipeline) -> None:
        source = await _add(store, "question://ghost", source_type="question", config_json='{"question_id": "ghost"}')
        await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.last_status == "pending"
        assert current.fail_count == 0
        assert await store.fetch_history(source.id) == []

    _run(tmp_path, _no_http, scenario)


def test_question_run_error_is_logged_as_fetch_error(tmp_path: Path) -> None:
    async def scenario(store: Store, pipeline: Pipeline) -> None:
        question = await store.insert_question(TrackedQuestion(id="q-bad", text="Broken channels", channels="[oops"))
        source = await store.insert_source(
            Source(
                id=question.id,
                name="Q: Broken channels",
                url=f"question://{question.id}",
                source_type="question",
                config_json='{"question_id": "q-bad"}',
            )
        )
        with pytest.raises(HandlerError, match="invalid channels json"):
            await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.fail_count == 1
        assert "invalid channels json" in current.last_error
        history = await store.fetch_history(source.id)
        assert [entry.status for entry in history] == ["error"]
        assert "invalid channels json" in history[0].error_message

    _run(tmp_path, _no_http, scenario)


def test_question_source_runs_its_question(tmp_path: Path) -> None:
    async def scenario(store: Store, pipeline: Pipeline) -> None:
        question = await store.insert_question(TrackedQuestion(id="q-1", text="No channels yet", channels="[]"))
        source = await store.insert_source(
            Source(id=question.id, name="Q", url="question://q-1", source_type="question", config_json='{"question_id": "q-1"}')
        )
        await pipeline.handle_job(store, _job(source))

        current = await store.get_source(source.id)
        assert current is not None
        assert current.last_status == "ok"
        assert [entry.status for entry in await store.fetch_history(source.id)] == ["ok"]

    _run(tmp_path, _no_http, scenario)
