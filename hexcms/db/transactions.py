"""Transaction scopes for the content store.

SQLite has one connection per process, so writers serialize on a lock held
for exactly one transaction. The lock belongs to the manager; components
that write through the same connection must share one manager. Postgres
hands every transaction its own pooled connection and relies on row-level
conflict handling.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiosqlite

logger = logging.getLogger("hexcms.db")


class SqliteTransactionManager:
    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock | None = None):
        self.db = db
        self.lock = lock or asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.lock:
            if self.db.in_transaction:
                # Left open by a writer outside this manager; do not absorb it silently.
                logger.warning("Committing a dangling SQLite transaction before BEGIN")
                await self.db.commit()
            await self.db.execute("BEGIN IMMEDIATE")
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()


class PostgresTransactionManager:
    def __init__(self, pool: Any):
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn
