"""Durable storage for client registrations and user bindings.

Backed by SQLite through aiosqlite. Writes that need check-then-insert
atomicity run inside ``transaction()``, which takes the SQLite write
lock up front (``BEGIN IMMEDIATE``).
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from shared.logging import get_logger

logger = get_logger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS oauth_clients (
        oauth_client_id TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_client_users (
        oauth_client_id TEXT NOT NULL,
        google_user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        token_info TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (oauth_client_id, google_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mcp_auth_users (
        client_id TEXT NOT NULL,
        google_user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        token_info TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (client_id, google_user_id)
    )
    """,
)


class Database:
    """
    Async SQLite connection shared by the client registry and binding store.

    A single connection is serialised with an ``asyncio.Lock`` so that a
    transaction is never interleaved with another coroutine's statements.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    async def connect(self) -> None:
        """Open the connection and create tables."""
        if self._conn is not None:
            return

        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        # Explicit BEGIN/COMMIT only
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        for statement in SCHEMA:
            await self._conn.execute(statement)
        logger.info("Database connected", path=self.path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("Database closed", path=self.path)

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._lock:
            async with self.connection.execute(query, params) as cursor:
                return await cursor.fetchone()

    async def fetch_all(self, query: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._lock:
            async with self.connection.execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def execute(self, query: str, params: tuple = ()) -> None:
        """Run a single write statement in its own transaction."""
        async with self.transaction() as conn:
            await conn.execute(query, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run statements atomically.

        Commits when the block exits normally, rolls back on any exception
        and re-raises it.
        """
        async with self._lock:
            conn = self.connection
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
