"""Database connection factory.

Provides a singleton async connection to SQLite (default) with WAL mode,
or an asyncpg pool when HEXCMS_DB_BACKEND=postgres.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite
import asyncpg

from hexcms import config

logger = logging.getLogger("hexcms.db")

DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None


async def open_sqlite(path: str | Path) -> aiosqlite.Connection:
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    _connection = await open_sqlite(config.DB_PATH)
    logger.info(f"Database connection established: {config.DB_PATH}")
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")


async def ping(db: DbConnection) -> bool:
    """Round-trip ``SELECT 1`` against the store."""
    try:
        if isinstance(db, aiosqlite.Connection):
            async with db.execute("SELECT 1") as cur:
                row = await cur.fetchone()
            return bool(row and row[0] == 1)
        return await db.fetchval("SELECT 1") == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
