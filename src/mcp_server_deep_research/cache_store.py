"""SQLite-backed persistence for cache entries."""

import asyncio
import json
from pathlib import Path

import aiosqlite

from .cache import CacheEntry, CacheType


class CacheStore:
    """Async SQLite store mirroring the in-memory cache.

    Rows survive server restarts; the cache reloads them on startup and
    drops anything that expired while the server was down.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize CacheStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/mcp-server-deep-research/cache.db
        """
        if db_path is None:
            from .config import get_config_dir

            db_path = get_config_dir() / "cache.db"
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        id TEXT NOT NULL,
                        type TEXT NOT NULL,
                        data TEXT NOT NULL,
                        request_params TEXT,
                        created_at REAL NOT NULL,
                        expires_at REAL NOT NULL,
                        ttl REAL NOT NULL,
                        hit_count INTEGER DEFAULT 0,
                        last_accessed_at REAL NOT NULL
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_cache_type ON cache_entries(type)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)")
                await db.commit()

            self._initialized = True

    async def save(self, entry: CacheEntry) -> None:
        """Insert or replace one entry."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                (key, id, type, data, request_params, created_at, expires_at, ttl, hit_count, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.key,
                    entry.id,
                    entry.type.value,
                    json.dumps(entry.data),
                    json.dumps(entry.request_params),
                    entry.created_at,
                    entry.expires_at,
                    entry.ttl,
                    entry.hit_count,
                    entry.last_accessed_at,
                ),
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await db.commit()

    async def clear(self, kind: CacheType | None = None) -> int:
        """Delete all rows, or only those of one kind."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            if kind is None:
                cursor = await db.execute("DELETE FROM cache_entries")
            else:
                cursor = await db.execute("DELETE FROM cache_entries WHERE type = ?", (kind.value,))
            await db.commit()
            return cursor.rowcount

    async def load_all(self) -> list[CacheEntry]:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM cache_entries ORDER BY last_accessed_at ASC") as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_entry(row) for row in rows]

    def _row_to_entry(self, row: aiosqlite.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            id=row["id"],
            type=CacheType(row["type"]),
            data=json.loads(row["data"]),
            request_params=json.loads(row["request_params"]) if row["request_params"] else {},
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ttl=row["ttl"],
            hit_count=row["hit_count"],
            last_accessed_at=row["last_accessed_at"],
        )
