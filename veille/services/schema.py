from __future__ import annotations

import logging
import sqlite3

import aiosqlite

from veille.core.errors import InvalidInputError
from veille.core.urls import normalize_source_url

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id                      TEXT PRIMARY KEY,
    name                    TEXT NOT NULL,
    url                     TEXT NOT NULL,
    source_type             TEXT NOT NULL DEFAULT 'web',
    fetch_interval          INTEGER NOT NULL DEFAULT 3600000,
    enabled                 INTEGER NOT NULL DEFAULT 1,
    config_json             TEXT NOT NULL DEFAULT '{}',
    last_fetched_at         INTEGER,
    last_hash               TEXT NOT NULL DEFAULT '',
    last_status             TEXT NOT NULL DEFAULT 'pending',
    last_error              TEXT NOT NULL DEFAULT '',
    fail_count              INTEGER NOT NULL DEFAULT 0 CHECK (fail_count >= 0),
    created_at              INTEGER NOT NULL,
    updated_at              INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sources_enabled ON sources(enabled, last_fetched_at);

CREATE TABLE IF NOT EXISTS extractions (
    id              TEXT PRIMARY KEY,
    source_id       TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    content_hash    TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    extracted_text  TEXT NOT NULL,
    extracted_html  TEXT NOT NULL DEFAULT '',
    url             TEXT NOT NULL,
    extracted_at    INTEGER NOT NULL,
    metadata_json   TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_extractions_source ON extractions(source_id);
CREATE INDEX IF NOT EXISTS idx_extractions_time ON extractions(extracted_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS extractions_fts USING fts5(
    title, extracted_text, content='extractions', content_rowid='rowid',
    tokenize='unicode61 remove_diacritics 2'
);

CREATE TRIGGER IF NOT EXISTS extractions_ai AFTER INSERT ON extractions BEGIN
    INSERT INTO extractions_fts(rowid, title, extracted_text) VALUES (new.rowid, new.title, new.extracted_text);
END;
CREATE TRIGGER IF NOT EXISTS extractions_ad AFTER DELETE ON extractions BEGIN
    INSERT INTO extractions_fts(extractions_fts, rowid, title, extracted_text)
    VALUES ('delete', old.rowid, old.title, old.extracted_text);
END;
CREATE TRIGGER IF NOT EXISTS extractions_au AFTER UPDATE ON extractions BEGIN
    INSERT INTO extractions_fts(extractions_fts, rowid, title, extracted_text)
    VALUES ('delete', old.rowid, old.title, old.extracted_text);
    INSERT INTO extractions_fts(rowid, title, extracted_text) VALUES (new.rowid, new.title, new.extracted_text);
END;

CREATE TABLE IF NOT EXISTS fetch_log (
    id              TEXT PRIMARY KEY,
    source_id       TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    status          TEXT NOT NULL,
    status_code     INTEGER,
    content_hash    TEXT NOT NULL DEFAULT '',
    error_message   TEXT NOT NULL DEFAULT '',
    duration_ms     INTEGER NOT NULL DEFAULT 0,
    fetched_at      INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_fetch_log_source ON fetch_log(source_id, fetched_at DESC);

CREATE TABLE IF NOT EXISTS search_engines (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL UNIQUE,
    strategy      TEXT NOT NULL DEFAULT 'api',
    url_template  TEXT NOT NULL,
    api_config    TEXT NOT NULL DEFAULT '{}',
    selectors     TEXT NOT NULL DEFAULT '{}',
    stealth_level INTEGER NOT NULL DEFAULT 1,
    rate_limit_ms INTEGER NOT NULL DEFAULT 2000,
    max_pages     INTEGER NOT NULL DEFAULT 3,
    enabled       INTEGER NOT NULL DEFAULT 1,
    created_at    INTEGER NOT NULL,
    updated_at    INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tracked_questions (
    id                TEXT PRIMARY KEY,
    text              TEXT NOT NULL,
    keywords          TEXT NOT NULL DEFAULT '',
    channels          TEXT NOT NULL DEFAULT '[]',
    schedule_ms       INTEGER NOT NULL DEFAULT 86400000,
    max_results       INTEGER NOT NULL DEFAULT 20,
    follow_links      INTEGER NOT NULL DEFAULT 1,
    enabled           INTEGER NOT NULL DEFAULT 1,
    last_run_at       INTEGER,
    last_result_count INTEGER NOT NULL DEFAULT 0,
    total_results     INTEGER NOT NULL DEFAULT 0,
    created_at        INTEGER NOT NULL,
    updated_at        INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tracked_questions_enabled ON tracked_questions(enabled, last_run_at);

CREATE TABLE IF NOT EXISTS search_log (
    id           TEXT PRIMARY KEY,
    query        TEXT NOT NULL,
    result_count INTEGER NOT NULL DEFAULT 0,
    searched_at  INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_search_log_time ON search_log(searched_at DESC);
"""

UNIQUE_INDEXES_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_sources_url_unique ON sources(url);
CREATE UNIQUE INDEX IF NOT EXISTS idx_extractions_source_hash ON extractions(source_id, content_hash);
"""


async def apply_schema(db: aiosqlite.Connection) -> None:
    """Create tables, run data migrations, then add the unique indexes they make possible."""
    await db.executescript(SCHEMA_SQL)
    await _add_column_if_missing(db, "sources", "original_fetch_interval", "INTEGER")
    await migrate_normalize_urls(db)
    await db.executescript(UNIQUE_INDEXES_SQL)


async def migrate_normalize_urls(db: aiosqlite.Connection) -> tuple[int, int]:
    """Normalize stored source URLs and drop duplicates, keeping the oldest row per URL.

    Deleted sources take their extractions and fetch log with them. Duplicate
    extractions per ``(source_id, content_hash)`` are also collapsed. Runs in a
    single transaction and is a no-op once the data is clean. Returns
    ``(deleted, normalized)``.
    """
    async with db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='sources'") as cursor:
        row = await cursor.fetchone()
    if row is None or row[0] == 0:
        return 0, 0

    async with db.execute("SELECT id, url FROM sources ORDER BY created_at ASC, rowid ASC") as cursor:
        rows = await cursor.fetchall()

    groups: dict[str, list[tuple[str, str]]] = {}
    for source_id, url in rows:
        try:
            normalized = normalize_source_url(url)
        except InvalidInputError:
            normalized = url
        groups.setdefault(normalized, []).append((source_id, url))

    deleted = 0
    normalized_count = 0
    await db.execute("BEGIN")
    try:
        for normalized, entries in groups.items():
            keep_id, keep_url = entries[0]
            for duplicate_id, _ in entries[1:]:
                await db.execute("DELETE FROM sources WHERE id = ?", (duplicate_id,))
                deleted += 1
            if keep_url != normalized:
                await db.execute("UPDATE sources SET url = ? WHERE id = ?", (normalized, keep_id))
                normalized_count += 1
        await db.execute(
            """
            DELETE FROM extractions
            WHERE rowid NOT IN (SELECT MIN(rowid) FROM extractions GROUP BY source_id, content_hash)
            """
        )
        await db.execute("COMMIT")
    except sqlite3.Error:
        await db.execute("ROLLBACK")
        raise

    if deleted or normalized_count:
        logger.info("url migration complete deleted=%s normalized=%s", deleted, normalized_count)
    return deleted, normalized_count


async def _add_column_if_missing(db: aiosqlite.Connection, table: str, column: str, ddl_type: str) -> None:
    async with db.execute("SELECT COUNT(*) FROM pragma_table_info(?) WHERE name = ?", (table, column)) as cursor:
        row = await cursor.fetchone()
    if row is not None and row[0] > 0:
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")
