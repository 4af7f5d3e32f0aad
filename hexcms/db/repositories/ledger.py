"""SQLite implementation of the append-only sync ledger."""
from __future__ import annotations

from typing import Any

import aiosqlite

LEDGER_COLUMNS = (
    "changeset_id", "event_type", "resource_type", "resource_id", "slug", "file_path",
    "commit_sha", "status", "error_kind", "error_message", "metadata_json", "created_at",
)


def ledger_filters(
    *,
    status: str | None = None,
    revision: str | None = None,
    changeset_id: str | None = None,
    file_path: str | None = None,
    placeholder: Any = lambda index: "?",
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("status", status),
        ("commit_sha", revision),
        ("changeset_id", changeset_id),
        ("file_path", file_path),
    ):
        if value:
            params.append(value)
            clauses.append(f"{column} = {placeholder(len(params))}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class SqliteLedgerRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def append(self, entry: dict[str, Any]) -> int:
        async with self.db.execute(
            f"INSERT INTO sync_logs ({', '.join(LEDGER_COLUMNS)}) VALUES ({', '.join('?' for _ in LEDGER_COLUMNS)})",
            tuple(entry.get(column) for column in LEDGER_COLUMNS),
        ) as cur:
            return cur.lastrowid or 0

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
            status=status, revision=revision, changeset_id=changeset_id, file_path=file_path,
        )
        async with self.db.execute(
            f"SELECT * FROM sync_logs {where} ORDER BY id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def summary(self, *, revision: str | None = None, changeset_id: str | None = None) -> dict[str, Any]:
        where, params = ledger_filters(revision=revision, changeset_id=changeset_id)
        async with self.db.execute(
            f"SELECT status, COUNT(*) AS n FROM sync_logs {where} GROUP BY status", params,
        ) as cur:
            by_status = {row["status"]: int(row["n"]) for row in await cur.fetchall()}
        error_where = f"{where} AND status = 'error'" if where else "WHERE status = 'error'"
        async with self.db.execute(
            f"SELECT error_kind, COUNT(*) AS n FROM sync_logs {error_where} GROUP BY error_kind", params,
        ) as cur:
            by_error_kind = {(row["error_kind"] or "internal"): int(row["n"]) for row in await cur.fetchall()}
        async with self.db.execute(f"SELECT MAX(created_at) FROM sync_logs {where}", params) as cur:
            row = await cur.fetchone()
            last_at = row[0] if row and row[0] else ""
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "byErrorKind": by_error_kind,
            "lastEntryAt": last_at,
        }
