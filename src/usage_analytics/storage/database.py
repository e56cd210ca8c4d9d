"""
Async SQLite access for the durable event store.

A thin wrapper around aiosqlite: one connection, one lock, WAL journaling.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, List, Union, Iterable

import aiosqlite

from ..utils.logging import get_logger
from ..utils.errors import StorageError

logger = get_logger("usage-analytics.database")


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: Union[Path, str]):
        """
        Args:
            db_path: Path to the SQLite file, or ":memory:"
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection if it is not open yet."""
        if self._connection is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        except (aiosqlite.Error, OSError) as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}", cause=e) from e
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        logger.info("database_connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close the connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", path=str(self.db_path))

    async def _conn(self) -> aiosqlite.Connection:
        if not self._connection:
            await self.connect()
        return self._connection

    async def executescript(self, script: str) -> None:
        """Run several statements, e.g. schema creation."""
        async with self._lock:
            conn = await self._conn()
            await conn.executescript(script)

    async def execute(self, sql: str, parameters: Iterable = ()) -> int:
        """Execute a statement and return the affected row count."""
        async with self._lock:
            conn = await self._conn()
            cursor = await conn.execute(sql, tuple(parameters))
            rowcount = cursor.rowcount
            await cursor.close()
            return rowcount

    async def executemany(self, sql: str, parameters: List[tuple]) -> None:
        """Execute a statement for every parameter tuple inside one transaction."""
        async with self.transaction() as conn:
            await conn.executemany(sql, parameters)

    async def fetchone(self, sql: str, parameters: Iterable = ()) -> Optional[aiosqlite.Row]:
        """Execute a query and fetch one row."""
        async with self._lock:
            conn = await self._conn()
            async with conn.execute(sql, tuple(parameters)) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: Iterable = ()) -> List[aiosqlite.Row]:
        """Execute a query and fetch every row."""
        async with self._lock:
            conn = await self._conn()
            async with conn.execute(sql, tuple(parameters)) as cursor:
                return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self):
        """Hold the lock and wrap the block in BEGIN/COMMIT."""
        async with self._lock:
            conn = await self._conn()
            await conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
