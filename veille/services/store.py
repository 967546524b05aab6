from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
import sqlite3
from typing import Any, Literal

import aiosqlite

from veille.core.ids import new_id, now_ms

SourceStatus = Literal["pending", "ok", "unchanged", "error", "extract_error", "empty", "broken"]
FetchStatus = Literal["ok", "unchanged", "error", "extract_error", "empty"]

DEFAULT_FETCH_INTERVAL_MS = 3_600_000
BROKEN_STATUSES = ("error", "extract_error", "broken")
FTS_QUERY_ERROR_MARKERS = ("fts5", "syntax error", "unterminated string", "no such column")


class StoreError(Exception):
    """Raised when the shard database fails."""


class StoreConflictError(StoreError):
    """Raised when a write violates a uniqueness constraint."""


class StoreQueryError(StoreError):
    """Raised when a full-text query cannot be parsed."""


@dataclass(slots=True)
class Source:
    id: str
    name: str
    url: str
    source_type: str = "web"
    fetch_interval: int = DEFAULT_FETCH_INTERVAL_MS
    enabled: bool = True
    config_json: str = "{}"
    last_fetched_at: int | None = None
    last_hash: str = ""
    last_status: str = "pending"
    last_error: str = ""
    fail_count: int = 0
    original_fetch_interval: int | None = None
    created_at: int = 0
    updated_at: int = 0


@dataclass(slots=True)
class Extraction:
    id: str
    source_id: str
    content_hash: str
    title: str
    extracted_text: str
    url: str
    extracted_html: str = ""
    extracted_at: int = 0
    metadata_json: str = "{}"


@dataclass(slots=True)
class FetchLogEntry:
    id: str
    source_id: str
    status: str = ""
    status_code: int | None = None
    content_hash: str = ""
    error_message: str = ""
    duration_ms: int = 0
    fetched_at: int = 0


@dataclass(slots=True)
class TrackedQuestion:
    id: str
    text: str
    keywords: str = ""
    channels: str = "[]"
    schedule_ms: int = 86_400_000
    max_results: int = 20
    follow_links: bool = True
    enabled: bool = True
    last_run_at: int | None = None
    last_result_count: int = 0
    total_results: int = 0
    created_at: int = 0
    updated_at: int = 0


@dataclass(slots=True)
class SearchEngine:
    id: str
    name: str
    url_template: str
    strategy: str = "api"
    api_config: str = "{}"
    selectors: str = "{}"
    stealth_level: int = 1
    rate_limit_ms: int = 2000
    max_pages: int = 3
    enabled: bool = True
    created_at: int = 0
    updated_at: int = 0


@dataclass(slots=True)
class SearchHit:
    extraction_id: str
    source_id: str
    title: str
    text: str
    rank: float


@dataclass(slots=True)
class SearchLogEntry:
    id: str
    query: str
    result_count: int
    searched_at: int


@dataclass(slots=True)
class ShardStats:
    sources: int = 0
    extractions: int = 0
    fetch_logs: int = 0
    questions: int = 0
    broken_sources: int = 0
    by_status: dict[str, int] = field(default_factory=dict)


_SOURCE_COLUMNS = (
    "id, name, url, source_type, fetch_interval, enabled, config_json, last_fetched_at, last_hash, "
    "last_status, last_error, fail_count, original_fetch_interval, created_at, updated_at"
)
_EXTRACTION_COLUMNS = (
    "id, source_id, content_hash, title, extracted_text, extracted_html, url, extracted_at, metadata_json"
)
_FETCH_LOG_COLUMNS = "id, source_id, status, status_code, content_hash, error_message, duration_ms, fetched_at"
_QUESTION_COLUMNS = (
    "id, text, keywords, channels, schedule_ms, max_results, follow_links, enabled, last_run_at, "
    "last_result_count, total_results, created_at, updated_at"
)
_ENGINE_COLUMNS = (
    "id, name, strategy, url_template, api_config, selectors, stealth_level, rate_limit_ms, max_pages, "
    "enabled, created_at, updated_at"
)


class Store:
    """Typed access to one dossier shard.

    The connection runs in autocommit mode: every runtime mutation is a
    single statement and therefore atomic. Multi-row migrations open their
    own transaction.
    """

    def __init__(self, db: aiosqlite.Connection, dossier_id: str = "") -> None:
        self.db = db
        self.dossier_id = dossier_id

    # sources

    async def insert_source(self, source: Source) -> Source:
        now = now_ms()
        if not source.id:
            source.id = new_id()
        source.created_at = source.created_at or now
        source.updated_at = source.updated_at or now
        source.source_type = source.source_type or "web"
        source.fetch_interval = source.fetch_interval or DEFAULT_FETCH_INTERVAL_MS
        source.config_json = source.config_json or "{}"
        source.last_status = source.last_status or "pending"
        await self._execute(
            f"INSERT INTO sources ({_SOURCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                source.id,
                source.name,
                source.url,
                source.source_type,
                source.fetch_interval,
                int(source.enabled),
                source.config_json,
                source.last_fetched_at,
                source.last_hash,
                source.last_status,
                source.last_error,
                source.fail_count,
                source.original_fetch_interval,
                source.created_at,
                source.updated_at,
            ),
        )
        return source

    async def get_source(self, source_id: str) -> Source | None:
        row = await self._fetchone(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,))
        return _source_from_row(row) if row is not None else None

    async def get_source_by_url(self, url: str) -> Source | None:
        row = await self._fetchone(f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE url = ? LIMIT 1", (url,))
        return _source_from_row(row) if row is not None else None

    async def list_sources(self) -> list[Source]:
        rows = await self._fetchall(f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY created_at DESC, id DESC")
        return [_source_from_row(row) for row in rows]

    async def count_sources(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM sources")

    async def update_source(self, source: Source) -> None:
        source.updated_at = now_ms()
        await self._execute(
            """
            UPDATE sources SET name = ?, url = ?, source_type = ?, fetch_interval = ?,
              enabled = ?, config_json = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                source.name,
                source.url,
                source.source_type,
                source.fetch_interval,
                int(source.enabled),
                source.config_json,
                source.updated_at,
                source.id,
            ),
        )

    async def delete_source(self, source_id: str) -> bool:
        changed = await self._execute("DELETE FROM sources WHERE id = ?", (source_id,))
        return changed > 0

    async def due_sources(self, max_fail_count: int, *, now: int | None = None) -> list[Source]:
        rows = await self._fetchall(
            f"""
            SELECT {_SOURCE_COLUMNS} FROM sources
            WHERE enabled = 1
              AND fail_count < ?
              AND (last_fetched_at IS NULL OR last_fetched_at + fetch_interval <= ?)
            ORDER BY last_fetched_at ASC NULLS FIRST
            """,
            (max_fail_count, now if now is not None else now_ms()),
        )
        return [_source_from_row(row) for row in rows]

    async def list_broken_sources(self) -> list[Source]:
        rows = await self._fetchall(
            f"""
            SELECT {_SOURCE_COLUMNS} FROM sources
            WHERE last_status IN (?, ?, ?) OR fail_count > 0
            ORDER BY updated_at DESC
            """,
            BROKEN_STATUSES,
        )
        return [_source_from_row(row) for row in rows]

    async def record_fetch_success(self, source_id: str, content_hash: str) -> None:
        now = now_ms()
        await self._execute(
            """
            UPDATE sources SET last_fetched_at = ?, last_hash = ?, last_status = 'ok', last_error = '',
              fail_count = 0, fetch_interval = COALESCE(original_fetch_interval, fetch_interval),
              original_fetch_interval = NULL, updated_at = ?
            WHERE id = ?
            """,
            (now, content_hash, now, source_id),
        )

    async def record_fetch_unchanged(self, source_id: str) -> None:
        now = now_ms()
        await self._execute(
            """
            UPDATE sources SET last_fetched_at = ?, last_status = 'unchanged', last_error = '',
              fail_count = 0, fetch_interval = COALESCE(original_fetch_interval, fetch_interval),
              original_fetch_interval = NULL, updated_at = ?
            WHERE id = ?
            """,
            (now, now, source_id),
        )

    async def record_fetch_error(self, source_id: str, message: str, *, status: str = "error") -> None:
        now = now_ms()
        await self._execute(
            """
            UPDATE sources SET last_fetched_at = ?, last_status = ?, last_error = ?,
              fail_count = fail_count + 1, updated_at = ?
            WHERE id = ?
            """,
            (now, status, message, now, source_id),
        )

    async def set_source_backoff(self, source_id: str, max_interval_ms: int) -> None:
        await self._execute(
            """
            UPDATE sources SET original_fetch_interval = COALESCE(original_fetch_interval, fetch_interval),
              fetch_interval = MIN(fetch_interval * 2, ?), updated_at = ?
            WHERE id = ?
            """,
            (max_interval_ms, now_ms(), source_id),
        )

    async def reset_source(self, source_id: str) -> None:
        await self._execute(
            """
            UPDATE sources SET fail_count = 0, last_status = 'pending', last_error = '',
              fetch_interval = COALESCE(original_fetch_interval, fetch_interval),
              original_fetch_interval = NULL, updated_at = ?
            WHERE id = ?
            """,
            (now_ms(), source_id),
        )

    async def update_source_url(self, source_id: str, url: str) -> None:
        await self._execute("UPDATE sources SET url = ?, updated_at = ? WHERE id = ?", (url, now_ms(), source_id))

    async def set_source_status(self, source_id: str, status: str) -> None:
        await self._execute(
            "UPDATE sources SET last_status = ?, updated_at = ? WHERE id = ?",
            (status, now_ms(), source_id),
        )

    async def update_source_config(self, source_id: str, config_json: str) -> None:
        await self._execute(
            "UPDATE sources SET config_json = ?, updated_at = ? WHERE id = ?",
            (config_json, now_ms(), source_id),
        )

    # extractions

    async def insert_extraction(self, extraction: Extraction) -> bool:
        """Insert unless ``(source_id, content_hash)`` already exists. Returns whether a row was added."""
        if not extraction.id:
            extraction.id = new_id()
        extraction.extracted_at = extraction.extracted_at or now_ms()
        changed = await self._execute(
            f"INSERT OR IGNORE INTO extractions ({_EXTRACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                extraction.id,
                extraction.source_id,
                extraction.content_hash,
                extraction.title,
                extraction.extracted_text,
                extraction.extracted_html,
                extraction.url,
                extraction.extracted_at,
                extraction.metadata_json or "{}",
            ),
        )
        return changed > 0

    async def get_extraction(self, extraction_id: str) -> Extraction | None:
        row = await self._fetchone(f"SELECT {_EXTRACTION_COLUMNS} FROM extractions WHERE id = ?", (extraction_id,))
        return _extraction_from_row(row) if row is not None else None

    async def list_extractions(self, source_id: str | None = None, limit: int = 50) -> list[Extraction]:
        limit = limit if limit > 0 else 50
        if source_id:
            rows = await self._fetchall(
                f"""
                SELECT {_EXTRACTION_COLUMNS} FROM extractions WHERE source_id = ?
                ORDER BY extracted_at DESC, rowid DESC LIMIT ?
                """,
                (source_id, limit),
            )
        else:
            rows = await self._fetchall(
                f"SELECT {_EXTRACTION_COLUMNS} FROM extractions ORDER BY extracted_at DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        return [_extraction_from_row(row) for row in rows]

    async def extraction_exists(self, source_id: str, content_hash: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM extractions WHERE source_id = ? AND content_hash = ? LIMIT 1",
            (source_id, content_hash),
        )
        return row is not None

    # fetch log

    async def insert_fetch_log(self, entry: FetchLogEntry) -> None:
        if not entry.id:
            entry.id = new_id()
        entry.fetched_at = entry.fetched_at or now_ms()
        await self._execute(
            f"INSERT INTO fetch_log ({_FETCH_LOG_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.source_id,
                entry.status,
                entry.status_code,
                entry.content_hash,
                entry.error_message,
                entry.duration_ms,
                entry.fetched_at,
            ),
        )

    async def fetch_history(self, source_id: str, limit: int = 50) -> list[FetchLogEntry]:
        rows = await self._fetchall(
            f"""
            SELECT {_FETCH_LOG_COLUMNS} FROM fetch_log WHERE source_id = ?
            ORDER BY fetched_at DESC, rowid DESC LIMIT ?
            """,
            (source_id, limit if limit > 0 else 50),
        )
        return [
            FetchLogEntry(
                id=row["id"],
                source_id=row["source_id"],
                status=row["status"],
                status_code=row["status_code"],
                content_hash=row["content_hash"],
                error_message=row["error_message"],
                duration_ms=row["duration_ms"],
                fetched_at=row["fetched_at"],
            )
            for row in rows
        ]

    # full-text search

    async def search(self, query: str, limit: int = 20) -> list[SearchHit]:
        try:
            async with self.db.execute(
                """
                SELECT e.id, e.source_id, e.title, e.extracted_text, rank
                FROM extractions_fts f
                JOIN extractions e ON e.rowid = f.rowid
                WHERE extractions_fts MATCH ?
                ORDER BY rank
                LIMIT ?
                """,
                (query, limit if limit > 0 else 20),
            ) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.OperationalError as exc:
            if any(marker in str(exc) for marker in FTS_QUERY_ERROR_MARKERS):
                raise StoreQueryError(f"search: {exc}") from exc
            raise StoreError(f"search: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreError(f"search: {exc}") from exc
        return [
            SearchHit(extraction_id=row[0], source_id=row[1], title=row[2], text=row[3], rank=float(row[4]))
            for row in rows
        ]

    async def insert_search_log(self, query: str, result_count: int) -> None:
        await self._execute(
            "INSERT INTO search_log (id, query, result_count, searched_at) VALUES (?, ?, ?, ?)",
            (new_id(), query, result_count, now_ms()),
        )

    async def list_search_log(self, limit: int = 50) -> list[SearchLogEntry]:
        rows = await self._fetchall(
            "SELECT id, query, result_count, searched_at FROM search_log ORDER BY searched_at DESC, rowid DESC LIMIT ?",
            (limit if limit > 0 else 50,),
        )
        return [
            SearchLogEntry(id=row[0], query=row[1], result_count=row[2], searched_at=row[3]) for row in rows
        ]

    async def stats(self) -> ShardStats:
        stats = ShardStats(
            sources=await self._scalar("SELECT COUNT(*) FROM sources"),
            extractions=await self._scalar("SELECT COUNT(*) FROM extractions"),
            fetch_logs=await self._scalar("SELECT COUNT(*) FROM fetch_log"),
            questions=await self._scalar("SELECT COUNT(*) FROM tracked_questions"),
            broken_sources=await self._scalar("SELECT COUNT(*) FROM sources WHERE last_status = 'broken'"),
        )
        rows = await self._fetchall("SELECT last_status, COUNT(*) FROM sources GROUP BY last_status")
        stats.by_status = {row[0]: row[1] for row in rows}
        return stats

    # tracked questions

    async def insert_question(self, question: TrackedQuestion) -> TrackedQuestion:
        now = now_ms()
        if not question.id:
            question.id = new_id()
        question.created_at = question.created_at or now
        question.updated_at = question.updated_at or now
        question.channels = question.channels or "[]"
        question.schedule_ms = question.schedule_ms or 86_400_000
        question.max_results = question.max_results or 20
        await self._execute(
            f"INSERT INTO tracked_questions ({_QUESTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                question.id,
                question.text,
                question.keywords,
                question.channels,
                question.schedule_ms,
                question.max_results,
                int(question.follow_links),
                int(question.enabled),
                question.last_run_at,
                question.last_result_count,
                question.total_results,
                question.created_at,
                question.updated_at,
            ),
        )
        return question

    async def get_question(self, question_id: str) -> TrackedQuestion | None:
        row = await self._fetchone(f"SELECT {_QUESTION_COLUMNS} FROM tracked_questions WHERE id = ?", (question_id,))
        return _question_from_row(row) if row is not None else None

    async def list_questions(self) -> list[TrackedQuestion]:
        rows = await self._fetchall(f"SELECT {_QUESTION_COLUMNS} FROM tracked_questions ORDER BY created_at DESC")
        return [_question_from_row(row) for row in rows]

    async def update_question(self, question: TrackedQuestion) -> None:
        question.updated_at = now_ms()
        await self._execute(
            """
            UPDATE tracked_questions SET text = ?, keywords = ?, channels = ?, schedule_ms = ?,
              max_results = ?, follow_links = ?, enabled = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                question.text,
                question.keywords,
                question.channels,
                question.schedule_ms,
                question.max_results,
                int(question.follow_links),
                int(question.enabled),
                question.updated_at,
                question.id,
            ),
        )

    async def delete_question(self, question_id: str) -> bool:
        changed = await self._execute("DELETE FROM tracked_questions WHERE id = ?", (question_id,))
        return changed > 0

    async def due_questions(self, *, now: int | None = None) -> list[TrackedQuestion]:
        rows = await self._fetchall(
            f"""
            SELECT {_QUESTION_COLUMNS} FROM tracked_questions
            WHERE enabled = 1 AND (last_run_at IS NULL OR last_run_at + schedule_ms <= ?)
            ORDER BY last_run_at ASC NULLS FIRST
            """,
            (now if now is not None else now_ms(),),
        )
        return [_question_from_row(row) for row in rows]

    async def record_question_run(self, question_id: str, new_count: int) -> None:
        now = now_ms()
        await self._execute(
            """
            UPDATE tracked_questions SET last_run_at = ?, last_result_count = ?,
              total_results = total_results + ?, updated_at = ?
            WHERE id = ?
            """,
            (now, new_count, new_count, now, question_id),
        )

    # search engines

    async def insert_search_engine(self, engine: SearchEngine) -> SearchEngine:
        now = now_ms()
        if not engine.id:
            engine.id = new_id()
        engine.created_at = engine.created_at or now
        engine.updated_at = engine.updated_at or now
        await self._execute(
            f"INSERT INTO search_engines ({_ENGINE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                engine.id,
                engine.name,
                engine.strategy or "api",
                engine.url_template,
                engine.api_config or "{}",
                engine.selectors or "{}",
                engine.stealth_level,
                engine.rate_limit_ms,
                engine.max_pages,
                int(engine.enabled),
                engine.created_at,
                engine.updated_at,
            ),
        )
        return engine

    async def get_search_engine(self, engine_id: str) -> SearchEngine | None:
        row = await self._fetchone(f"SELECT {_ENGINE_COLUMNS} FROM search_engines WHERE id = ?", (engine_id,))
        return _engine_from_row(row) if row is not None else None

    async def list_search_engines(self) -> list[SearchEngine]:
        rows = await self._fetchall(f"SELECT {_ENGINE_COLUMNS} FROM search_engines ORDER BY name ASC")
        return [_engine_from_row(row) for row in rows]

    async def delete_search_engine(self, engine_id: str) -> bool:
        changed = await self._execute("DELETE FROM search_engines WHERE id = ?", (engine_id,))
        return changed > 0

    # plumbing

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            async with self.db.execute(sql, params) as cursor:
                return cursor.rowcount
        except sqlite3.IntegrityError as exc:
            raise StoreConflictError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        try:
            async with self.db.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> Iterable[aiosqlite.Row]:
        try:
            async with self.db.execute(sql, params) as cursor:
                return await cursor.fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    async def _scalar(self, sql: str, params: Sequence[Any] = ()) -> int:
        row = await self._fetchone(sql, params)
        return int(row[0]) if row is not None and row[0] is not None else 0


def _source_from_row(row: aiosqlite.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        source_type=row["source_type"],
        fetch_interval=row["fetch_interval"],
        enabled=bool(row["enabled"]),
        config_json=row["config_json"],
        last_fetched_at=row["last_fetched_at"],
        last_hash=row["last_hash"],
        last_status=row["last_status"],
        last_error=row["last_error"],
        fail_count=row["fail_count"],
        original_fetch_interval=row["original_fetch_interval"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _extraction_from_row(row: aiosqlite.Row) -> Extraction:
    return Extraction(
        id=row["id"],
        source_id=row["source_id"],
        content_hash=row["content_hash"],
        title=row["title"],
        extracted_text=row["extracted_text"],
        extracted_html=row["extracted_html"],
        url=row["url"],
        extracted_at=row["extracted_at"],
        metadata_json=row["metadata_json"],
    )


def _question_from_row(row: aiosqlite.Row) -> TrackedQuestion:
    return TrackedQuestion(
        id=row["id"],
        text=row["text"],
        keywords=row["keywords"],
        channels=row["channels"],
        schedule_ms=row["schedule_ms"],
        max_results=row["max_results"],
        follow_links=bool(row["follow_links"]),
        enabled=bool(row["enabled"]),
        last_run_at=row["last_run_at"],
        last_result_count=row["last_result_count"],
        total_results=row["total_results"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _engine_from_row(row: aiosqlite.Row) -> SearchEngine:
    return SearchEngine(
        id=row["id"],
        name=row["name"],
        strategy=row["strategy"],
        url_template=row["url_template"],
        api_config=row["api_config"],
        selectors=row["selectors"],
        stealth_level=row["stealth_level"],
        rate_limit_ms=row["rate_limit_ms"],
        max_pages=row["max_pages"],
        enabled=bool(row["enabled"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
