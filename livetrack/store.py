import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import aiosqlite

from .config import settings

Clock = Callable[[], float]
Apply = Callable[[Optional[Any]], Any]


class StoreError(Exception):
    """A counter store operation failed."""


class CounterStore(Protocol):
    """Key-value store with per-key time-to-live used by the engine."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def update(self, key: str, apply: Apply, ttl: Optional[int] = None) -> Any: ...

    async def swap(self, key: str, value: Any, ttl: Optional[int] = None) -> Optional[Any]: ...

    async def count_prefix(self, prefix: str) -> int: ...

    async def pop_expired(self, prefix: str) -> list[tuple[str, Any]]: ...

    async def purge_expired(self) -> int: ...


class SqliteCounterStore:
    """Counter store kept in a single SQLite table.

    Values are JSON documents. Expiry is enforced lazily on read, expired rows
    are removed by ``purge_expired`` / ``pop_expired``.
    """

    def __init__(self, db_path: Optional[Path] = None, clock: Clock = time.time):
        self.db_path = db_path
        self.clock = clock
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and create the key table if needed."""
        path = self.db_path or settings.database_path_resolved
        self._connection = await aiosqlite.connect(path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Store not connected")
        return self._connection

    async def _create_tables(self) -> None:
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)
        await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv(expires_at)")
        await self.conn.commit()

    def _expires_at(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is None:
            return None
        return self.clock() + ttl

    def _is_live(self, row: aiosqlite.Row) -> bool:
        return row["expires_at"] is None or row["expires_at"] > self.clock()

    async def _read(self, key: str) -> Optional[Any]:
        cursor = await self.conn.execute(
            "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        if row is None or not self._is_live(row):
            return None
        return json.loads(row["value"])

    async def _write(self, key: str, value: Any, ttl: Optional[int]) -> None:
        await self.conn.execute(
            """
            INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                expires_at = excluded.expires_at
            """,
            (key, json.dumps(value, separators=(",", ":")), self._expires_at(ttl)),
        )

    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when absent or expired."""
        try:
            return await self._read(key)
        except aiosqlite.Error as e:
            raise StoreError(f"get {key} failed: {e}") from e

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value, replacing any previous value and TTL."""
        try:
            async with self._write_lock:
                await self._write(key, value, ttl)
                await self.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"set {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self._write_lock:
                await self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                await self.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"delete {key} failed: {e}") from e

    async def update(self, key: str, apply: Apply, ttl: Optional[int] = None) -> Any:
        """Atomically read, transform and write back a single key.

        ``apply`` receives the current value (None when absent or expired) and
        returns the value to store. The read and the write run in one
        ``BEGIN IMMEDIATE`` transaction, so concurrent updates of the same key,
        from this process or another one sharing the database, are never lost.
        """
        async with self._write_lock:
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StoreError(f"update {key} failed: {e}") from e
            try:
                value = apply(await self._read(key))
                await self._write(key, value, ttl)
                await self.conn.commit()
            except aiosqlite.Error as e:
                await self.conn.rollback()
                raise StoreError(f"update {key} failed: {e}") from e
            except Exception:
                await self.conn.rollback()
                raise
        return value

    async def swap(self, key: str, value: Any, ttl: Optional[int] = None) -> Optional[Any]:
        """Store a value and return the row it replaced, even an expired one.

        Replacing and reading happen in one transaction, so an expired row
        handed back here is never also returned by ``pop_expired``.
        """
        async with self._write_lock:
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StoreError(f"swap {key} failed: {e}") from e
            try:
                cursor = await self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,))
                row = await cursor.fetchone()
                await self._write(key, value, ttl)
                await self.conn.commit()
            except aiosqlite.Error as e:
                await self.conn.rollback()
                raise StoreError(f"swap {key} failed: {e}") from e
        return json.loads(row["value"]) if row is not None else None

    async def count_prefix(self, prefix: str) -> int:
        """Count live keys starting with ``prefix``."""
        try:
            cursor = await self.conn.execute(
                """
                SELECT COUNT(*) as count FROM kv
                WHERE substr(key, 1, length(?)) = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (prefix, prefix, self.clock()),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(f"count {prefix} failed: {e}") from e
        return row["count"]

    async def pop_expired(self, prefix: str) -> list[tuple[str, Any]]:
        """Remove expired keys under ``prefix`` and return their last values."""
        async with self._write_lock:
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise StoreError(f"pop expired {prefix} failed: {e}") from e
            try:
                cursor = await self.conn.execute(
                    """
                    SELECT key, value FROM kv
                    WHERE substr(key, 1, length(?)) = ?
                      AND expires_at IS NOT NULL AND expires_at <= ?
                    """,
                    (prefix, prefix, self.clock()),
                )
                rows = await cursor.fetchall()
                await self.conn.executemany(
                    "DELETE FROM kv WHERE key = ?", [(row["key"],) for row in rows]
                )
                await self.conn.commit()
            except aiosqlite.Error as e:
                await self.conn.rollback()
                raise StoreError(f"pop expired {prefix} failed: {e}") from e
        return [(row["key"], json.loads(row["value"])) for row in rows]

    async def purge_expired(self) -> int:
        """Delete every expired key."""
        try:
            async with self._write_lock:
                cursor = await self.conn.execute(
                    "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (self.clock(),),
                )
                await self.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"purge failed: {e}") from e
        return cursor.rowcount


# Global store instance
store = SqliteCounterStore()
