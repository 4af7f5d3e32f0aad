"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

import asyncio
from typing import Any

import aiosqlite

from hexcms.db.repositories.entities import SqliteEntityRepository
from hexcms.db.repositories.labels import SqliteLabelRepository
from hexcms.db.repositories.ledger import SqliteLedgerRepository
from hexcms.db.transactions import PostgresTransactionManager, SqliteTransactionManager


def get_entity_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteEntityRepository(db)
    from hexcms.db.repositories.postgres.entities import PostgresEntityRepository
    return PostgresEntityRepository(db)


def get_label_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteLabelRepository(db)
    from hexcms.db.repositories.postgres.labels import PostgresLabelRepository
    return PostgresLabelRepository(db)


def get_ledger_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteLedgerRepository(db)
    from hexcms.db.repositories.postgres.ledger import PostgresLedgerRepository
    return PostgresLedgerRepository(db)


def get_transaction_manager(db: Any, lock: asyncio.Lock | None = None):
    """Build a transaction manager. SQLite writers sharing a connection must share its lock."""
    if isinstance(db, aiosqlite.Connection):
        return SqliteTransactionManager(db, lock)
    return PostgresTransactionManager(db)
