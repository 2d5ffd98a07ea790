"""Durable key-value stores backing the persisted pipeline state."""

import logging
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS beacon_state (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  REAL NOT NULL
);
"""


@runtime_checkable
class KeyValueStore(Protocol):
    """Async string -> string store. Values survive process restarts."""

    async def get(self, key: str) -> str | None:
        """Return stored value or None."""

    async def set_many(self, values: dict[str, str]) -> None:
        """Write all values atomically."""

    async def delete(self, key: str) -> None:
        """Remove key. No-op if absent."""

    async def close(self) -> None:
        """Release resources."""


class MemoryStore:
    """In-process store. Survives pipeline rebuilds within one process only."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self.writes = 0

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_many(self, values: dict[str, str]) -> None:
        self._data.update(values)
        self.writes += 1

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        pass

    def keys(self) -> list[str]:
        return sorted(self._data)


class SQLiteStore:
    """SQLite-backed store. One connection per instance, WAL journal."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("state store opened at %s", self._db_path)
        return self._conn

    async def get(self, key: str) -> str | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "SELECT value FROM beacon_state WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set_many(self, values: dict[str, str]) -> None:
        """Upsert all values in one transaction."""
        if not values:
            return
        conn = await self._ensure_conn()
        now = time.time()
        try:
            await conn.executemany(
                """
                INSERT INTO beacon_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                [(k, v, now) for k, v in values.items()],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def delete(self, key: str) -> None:
        conn = await self._ensure_conn()
        await conn.execute("DELETE FROM beacon_state WHERE key = ?", (key,))
        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
