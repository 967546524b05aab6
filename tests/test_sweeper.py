from __future__ import annotations

import asyncio
from pathlib import Path

from veille.jobs.sweeper import SweepResult, Sweeper
from veille.services.shards import ShardPool
from veille.services.store import Source, StoreError


def test_sweep_resets_recovered_sources_and_reports_the_rest(tmp_path: Path) -> None:
    probed: list[str] = []

    async def prober(url: str) -> tuple[int, str]:
        probed.append(url)
        if url.endswith("/back"):
            return 200, ""
        if url.endswith("/gone"):
            return 404, ""
        return 0, "connection refused"

    async def run() -> tuple[list[SweepResult], Source | None, Source | None, list[str], list[SweepResult]]:
        pool = ShardPool(tmp_path)
        try:
            store = await pool.resolve("alpha")
            await store.insert_source(
                Source(
                    id="back",
                    name="Back",
                    url="https://example.test/back",
                    last_status="broken",
                    fail_count=5,
                    fetch_interval=28_800_000,
                    original_fetch_interval=3_600_000,
                )
            )
            await store.insert_source(
                Source(id="gone", name="Gone", url="https://example.test/gone", last_status="broken", fail_count=3)
            )
            await store.insert_source(
                Source(id="down", name="Down", url="https://down.test/", last_status="error", fail_count=1)
            )
            await store.insert_source(
                Source(
                    id="q",
                    name="Question",
                    url="question://q",
                    source_type="question",
                    last_status="error",
                    fail_count=2,
                )
            )
            await store.insert_source(Source(id="healthy", name="Healthy", url="https://example.test/ok", last_status="ok"))

            sweeper = Sweeper(pool.resolve, pool.list_active_dossiers, prober=prober)
            results = await sweeper.run_once()
            due = [source.id for source in await store.due_sources(10)]
            second = await sweeper.run_once()
            return results, await store.get_source("back"), await store.get_source("gone"), due, second
        finally:
            await pool.close()

    results, back, gone, due, second = asyncio.run(run())

    assert sorted(probed) == [
        "https://down.test/",
        "https://down.test/",
        "https://example.test/back",
        "https://example.test/gone",
        "https://example.test/gone",
    ]
    by_id = {result.source_id: result for result in results}
    assert set(by_id) == {"back", "gone", "down"}
    assert by_id["back"].recovered is True
    assert by_id["back"].status_code == 200
    assert by_id["back"].error == ""
    assert by_id["gone"].recovered is False
    assert by_id["gone"].error == "http 404"
    assert by_id["down"].status_code == 0
    assert by_id["down"].error == "connection refused"
    assert by_id["down"].dossier_id == "alpha"

    assert back is not None
    assert back.fail_count == 0
    assert back.last_status == "pending"
    assert back.fetch_interval == 3_600_000
    assert back.original_fetch_interval is None

    assert gone is not None
    assert gone.last_status == "broken"
    assert gone.fail_count == 3

    assert "back" in due
    assert "back" not in {result.source_id for result in second}


def test_sweeper_waits_before_first_cycle() -> None:
    calls: list[int] = []

    async def list_dossiers() -> list[str]:
        calls.append(1)
        return []

    async def resolve(dossier_id: str):
        raise AssertionError("no dossiers")

    async def run() -> None:
        stop_event = asyncio.Event()
        task = asyncio.create_task(Sweeper(resolve, list_dossiers, interval=3600).run(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(run())
    assert calls == []


class FlakyStore:
    def __init__(self, sources: list[Source], *, fail_reset: bool = False) -> None:
        self.sources = sources
        self.fail_reset = fail_reset
        self.reset_ids: list[str] = []

    async def list_broken_sources(self) -> list[Source]:
        return self.sources

    async def reset_source(self, source_id: str) -> None:
        if self.fail_reset:
            raise StoreError("disk I/O error")
        self.reset_ids.append(source_id)


def test_reset_failure_is_reported_and_other_dossiers_still_swept() -> None:
    stores = {
        "a": FlakyStore(
            [
                Source(id="a1", name="A1", url="https://a.test/1", last_status="broken"),
                Source(id="a2", name="A2", url="https://a.test/2", last_status="broken"),
            ],
            fail_reset=True,
        ),
        "b": FlakyStore([Source(id="b1", name="B1", url="https://b.test/1", last_status="broken", fail_count=2)]),
    }

    async def resolve(dossier_id: str) -> FlakyStore:
        return stores[dossier_id]

    async def list_dossiers() -> list[str]:
        return ["a", "b"]

    async def prober(url: str) -> tuple[int, str]:
        return 200, ""

    results = asyncio.run(Sweeper(resolve, list_dossiers, prober=prober).run_once())

    by_id = {result.source_id: result for result in results}
    assert set(by_id) == {"a1", "a2", "b1"}
    assert by_id["a1"].recovered is False
    assert by_id["a1"].error == "reset failed: disk I/O error"
    assert by_id["a2"].recovered is False
    assert by_id["b1"].recovered is True
    assert stores["b"].reset_ids == ["b1"]


def test_sweeper_keeps_running_after_a_failed_cycle() -> None:
    cycles: list[int] = []

    async def list_dossiers() -> list[str]:
        return ["a"]

    async def resolve(dossier_id: str) -> FlakyStore:
        return FlakyStore([Source(id="a1", name="A1", url="https://a.test/1", last_status="broken")])

    async def prober(url: str) -> tuple[int, str]:
        cycles.append(1)
        raise RuntimeError("prober exploded")

    async def run() -> None:
        stop_event = asyncio.Event()
        task = asyncio.create_task(Sweeper(resolve, list_dossiers, interval=0.01, prober=prober).run(stop_event))
        for _ in range(200):
            if len(cycles) >= 2:
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(run())
    assert len(cycles) >= 2
