"""PostgreSQL implementation of the append-only sync ledger."""
from __future__ import annotations

from typing import Any

import asyncpg

from hexcms.db.repositories.ledger import LEDGER_COLUMNS, ledger_filters


def _pg_placeholder(index: int) -> str:
    return f"${index}"


class PostgresLedgerRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def append(self, entry: dict[str, Any]) -> int:
        placeholders = ", ".join(_pg_placeholder(i) for i in range(1, len(LEDGER_COLUMNS) + 1))
        return await self.db.fetchval(
            f"INSERT INTO sync_logs ({', '.join(LEDGER_COLUMNS)}) VALUES ({placeholders}) RETURNING id",
            *(entry.get(column) for column in LEDGER_COLUMNS),
        ) or 0

    async def list_recent(
        self,
        limit: int = 50,
        offset: int = 0,
        *,
        status: str | None = None,
        revision: str | None = None,
        changeset_id: str | None = None,
        file_path: str | None = None,
    ) -> list[dict]:
        where, params = ledger_filters(
            status=status,
            revision=revision,
            changeset_id=changeset_id,
            file_path=file_path,
            placeholder=_pg_placeholder,
        )
        limit_param = len(params) + 1
        rows = await self.db.fetch(
            f"SELECT * FROM sync_logs {where} ORDER BY id DESC LIMIT ${limit_param} OFFSET ${limit_param + 1}",
            *params,
            limit,
            offset,
        )
        return [dict(r) for r in rows]

    async def summary(self, *, revision: str | None = None, changeset_id: str | None = None) -> dict[str, Any]:
        where, params = ledger_filters(revision=revision, changeset_id=changeset_id, placeholder=_pg_placeholder)
        rows = await self.db.fetch(f"SELECT status, COUNT(*) AS n FROM sync_logs {where} GROUP BY status", *params)
        by_status = {row["status"]: int(row["n"]) for row in rows}
        error_where = f"{where} AND status = 'error'" if where else "WHERE status = 'error'"
        rows = await self.db.fetch(
            f"SELECT error_kind, COUNT(*) AS n FROM sync_logs {error_where} GROUP BY error_kind", *params,
        )
        by_error_kind = {(row["error_kind"] or "internal"): int(row["n"]) for row in rows}
        last_at = await self.db.fetchval(f"SELECT MAX(created_at) FROM sync_logs {where}", *params)
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "byErrorKind": by_error_kind,
            "lastEntryAt": last_at or "",
        }
