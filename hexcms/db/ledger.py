"""Append-only audit trail of every attempted sync operation."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from hexcms.date_utils import utc_now_iso
from hexcms.db.factory import get_ledger_repository, get_transaction_manager

logger = logging.getLogger("hexcms.sync")


@dataclass
class LedgerEntry:
    changeset_id: str
    event_type: str  # create | update | delete | sync
    resource_type: str
    file_path: str
    commit_sha: str
    status: str  # success | error | skipped
    resource_id: str | None = None
    slug: str = ""
    error_kind: str = ""
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> dict[str, Any]:
        return {
            "changeset_id": self.changeset_id,
            "event_type": self.event_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "slug": self.slug,
            "file_path": self.file_path,
            "commit_sha": self.commit_sha,
            "status": self.status,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "metadata_json": json.dumps(self.metadata, default=str, sort_keys=True),
            "created_at": utc_now_iso(),
        }


def _row_to_api(row: dict[str, Any]) -> dict[str, Any]:
    try:
        metadata = json.loads(row.get("metadata_json") or "{}")
    except (TypeError, ValueError):
        metadata = {}
    return {
        "id": row.get("id"),
        "changesetId": row.get("changeset_id") or "",
        "eventType": row.get("event_type") or "",
        "resourceType": row.get("resource_type") or "",
        "resourceId": row.get("resource_id"),
        "slug": row.get("slug") or "",
        "filePath": row.get("file_path") or "",
        "commitSha": row.get("commit_sha") or "",
        "status": row.get("status") or "",
        "errorKind": row.get("error_kind") or "",
        "errorMessage": row.get("error_message"),
        "metadata": metadata,
        "createdAt": row.get("created_at") or "",
    }


class SyncLedger:
    """Best-effort writer and reader for ``sync_logs``.

    ``record`` never raises: a ledger failure is logged and swallowed so it
    cannot abort the changeset that produced it.
    """

    def __init__(self, db: Any, transactions: Any | None = None):
        self.db = db
        self.transactions = transactions or get_transaction_manager(db)

    async def record(self, entry: LedgerEntry) -> bool:
        try:
            async with self.transactions.transaction() as conn:
                await get_ledger_repository(conn).append(entry.to_row())
            return True
        except Exception:
            logger.exception(
                "Failed to write ledger entry for %s (%s/%s)", entry.file_path, entry.event_type, entry.status
            )
            return False

    async def list_recent(
        self,
        limit: int = 50,
        offset: int = 0,
        *,
        status: str | None = None,
        revision: str | None = None,
        changeset_id: str | None = None,
        file_path: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = await get_ledger_repository(self.db).list_recent(
            limit,
            offset,
            status=status,
            revision=revision,
            changeset_id=changeset_id,
            file_path=file_path,
        )
        return [_row_to_api(row) for row in rows]

    async def summary(self, *, revision: str | None = None, changeset_id: str | None = None) -> dict[str, Any]:
        return await get_ledger_repository(self.db).summary(revision=revision, changeset_id=changeset_id)
