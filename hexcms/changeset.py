"""Turn push notifications or explicit path lists into normalized changesets."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from hexcms.content_paths import kind_for_path, normalize_content_path
from hexcms.date_utils import normalize_revision_at
from hexcms.models import ChangeEntry, ChangeSet, PushCommit, PushNotification

logger = logging.getLogger("hexcms.changeset")

# Upstream change tags mapped onto the two operations the engine applies.
_OPERATION_ALIASES = {
    "added": "upsert",
    "modified": "upsert",
    "upsert": "upsert",
    "removed": "delete",
    "deleted": "delete",
    "delete": "delete",
}


def normalize_operation(value: str) -> str:
    token = (value or "").strip().lower()
    operation = _OPERATION_ALIASES.get(token)
    if operation is None:
        raise ValueError(f"Unknown change operation: {value!r}")
    return operation


class _ChangeCollector:
    """Ordered path -> operation map where delete beats upsert."""

    def __init__(self, content_root: str | None):
        self.content_root = content_root
        self._order: list[str] = []
        self._operations: dict[str, str] = {}
        self._revisions: dict[str, tuple[str, str]] = {}
        self.dropped = 0

    def add(self, raw_path: str, operation: str, revision: str = "", revision_at: str = "") -> None:
        path = normalize_content_path(raw_path)
        if not path or kind_for_path(path, self.content_root) is None:
            self.dropped += 1
            logger.debug("Ignoring non-content path %r", raw_path)
            return
        if path not in self._operations:
            self._order.append(path)
            self._operations[path] = operation
            self._revisions[path] = (revision, revision_at)
            return
        if operation == "delete":
            self._operations[path] = "delete"
        if revision:
            self._revisions[path] = (revision, revision_at)

    def entries(self, default_revision: str, default_revision_at: str) -> list[ChangeEntry]:
        result: list[ChangeEntry] = []
        for path in self._order:
            revision, revision_at = self._revisions.get(path, ("", ""))
            result.append(
                ChangeEntry(
                    path=path,
                    operation=self._operations[path],
                    revision=revision or default_revision,
                    revisionAt=revision_at or default_revision_at,
                )
            )
        return result


def _push_commits(payload: PushNotification) -> list[PushCommit]:
    if payload.commits:
        return list(payload.commits)
    if payload.head_commit is not None:
        return [payload.head_commit]
    return []


def changeset_from_push(
    payload: PushNotification | Mapping[str, Any],
    *,
    content_root: str | None = None,
) -> ChangeSet:
    """Build a changeset from a GitHub-style push event.

    The target revision is ``after`` (falling back to the head commit id) and
    every entry is fetched at that revision, so intermediate commits only
    contribute their path lists.
    """
    if not isinstance(payload, PushNotification):
        payload = PushNotification.model_validate(payload)

    head = payload.head_commit
    revision = (payload.after or (head.id if head else "")).strip()
    if not revision:
        raise ValueError("Push notification does not name a target revision")
    revision_at = normalize_revision_at(head.timestamp if head else "")

    collector = _ChangeCollector(content_root)
    for commit in _push_commits(payload):
        for path in commit.added:
            collector.add(path, "upsert")
        for path in commit.modified:
            collector.add(path, "upsert")
        for path in commit.removed:
            collector.add(path, "delete")

    changeset = ChangeSet(
        revision=revision,
        revisionAt=revision_at,
        entries=collector.entries(revision, revision_at),
        trigger="webhook",
    )
    logger.info(
        "Extracted %d content change(s) at %s (%d path(s) outside content roots)",
        len(changeset.entries),
        revision[:12],
        collector.dropped,
    )
    return changeset


def changeset_from_entries(
    entries: Iterable[Any],
    revision: str,
    *,
    revision_at: Any = "",
    content_root: str | None = None,
    force: bool = False,
    trigger: str = "manual",
) -> ChangeSet:
    """Build a changeset from explicit ``(path, operation[, revision])`` entries.

    Entries may be bare paths (upserts), tuples or mappings with ``path``/``operation``/``revision``
    keys. Operations accept the push tags (added, modified, removed) as well
    as ``upsert``/``delete``.
    """
    default_revision_at = normalize_revision_at(revision_at)
    collector = _ChangeCollector(content_root)
    for item in entries:
        if isinstance(item, str):
            path, operation, entry_revision, entry_at = item, "upsert", "", ""
        elif isinstance(item, ChangeEntry):
            path, operation, entry_revision, entry_at = item.path, item.operation, item.revision, item.revisionAt
        elif isinstance(item, Mapping):
            path = str(item.get("path") or "")
            operation = str(item.get("operation") or "upsert")
            entry_revision = str(item.get("revision") or "")
            entry_at = normalize_revision_at(item.get("revisionAt") or item.get("revision_at"))
        else:
            values = tuple(item)
            path = str(values[0])
            operation = str(values[1]) if len(values) > 1 else "upsert"
            entry_revision = str(values[2]) if len(values) > 2 else ""
            entry_at = ""
        collector.add(path, normalize_operation(operation), entry_revision, entry_at)

    return ChangeSet(
        revision=revision,
        revisionAt=default_revision_at,
        entries=collector.entries(revision, default_revision_at),
        force=force,
        trigger=trigger,
    )


def extract_changeset(source: Any, revision: str = "", **kwargs: Any) -> ChangeSet:
    """Dispatch on the input shape: push payloads or explicit entry lists."""
    if isinstance(source, (PushNotification, Mapping)):
        return changeset_from_push(source, content_root=kwargs.get("content_root"))
    if not revision:
        raise ValueError("Explicit changesets require a target revision")
    return changeset_from_entries(source, revision, **kwargs)
