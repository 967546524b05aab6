from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import re
import sqlite3

import aiosqlite

from veille.core.errors import InvalidInputError
from veille.services.schema import apply_schema
from veille.services.store import Store, StoreError

logger = logging.getLogger(__name__)

SHARD_SUFFIX = ".db"
DOSSIER_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,256}$")


def validate_dossier_id(dossier_id: str) -> str:
    if not dossier_id or not DOSSIER_ID_RE.match(dossier_id) or ".." in dossier_id or dossier_id.startswith("."):
        raise InvalidInputError(f"invalid dossier id: {dossier_id!r}")
    return dossier_id


class ShardPool:
    """One SQLite file per dossier under ``data_dir``, opened lazily and kept open."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)
        self._stores: dict[str, Store] = {}
        self._lock = asyncio.Lock()

    def shard_path(self, dossier_id: str) -> Path:
        return self.data_dir / f"{validate_dossier_id(dossier_id)}{SHARD_SUFFIX}"

    async def resolve(self, dossier_id: str) -> Store:
        """Return the store for a dossier, creating and migrating the shard on first use."""
        store = self._stores.get(dossier_id)
        if store is not None:
            return store
        path = self.shard_path(dossier_id)
        async with self._lock:
            store = self._stores.get(dossier_id)
            if store is not None:
                return store
            db = await self._connect(path)
            store = Store(db, dossier_id=dossier_id)
            self._stores[dossier_id] = store
            logger.info("shard opened dossier_id=%s path=%s", dossier_id, path)
            return store

    async def create(self, dossier_id: str) -> Store:
        """Open a shard that must not exist yet."""
        if self.shard_path(dossier_id).exists() or dossier_id in self._stores:
            raise InvalidInputError(f"dossier already exists: {dossier_id}")
        return await self.resolve(dossier_id)

    async def open_all(self) -> list[str]:
        """Create ``data_dir`` if needed and open every existing shard so migrations run before scheduling."""
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"data dir {self.data_dir}: {exc}") from exc
        dossier_ids = await self.list_active_dossiers()
        for dossier_id in dossier_ids:
            await self.resolve(dossier_id)
        return dossier_ids

    async def list_active_dossiers(self) -> list[str]:
        if not self.data_dir.is_dir():
            return []
        names = {path.stem for path in self.data_dir.glob(f"*{SHARD_SUFFIX}") if path.is_file()}
        names.update(self._stores)
        return sorted(name for name in names if DOSSIER_ID_RE.match(name))

    async def close(self) -> None:
        async with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            await store.db.close()

    async def _connect(self, path: Path) -> aiosqlite.Connection:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(path), isolation_level=None)
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"open shard {path}: {exc}") from exc
        try:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.execute("PRAGMA busy_timeout=5000")
            await apply_schema(db)
        except sqlite3.Error as exc:
            await db.close()
            raise StoreError(f"initialize shard {path}: {exc}") from exc
        return db
