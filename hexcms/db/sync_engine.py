"""Changeset-driven repository → DB sync engine.

Takes a changeset (from a push notification, an explicit path list or a
full resync), fetches and decodes every entry concurrently, then reconciles
the store in dependency order and writes one ledger entry per changeset
entry.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from hexcms import config
from hexcms.changeset import changeset_from_entries, changeset_from_push
from hexcms.content_paths import AUTHOR, ContentKind, content_roots, kind_for_path
from hexcms.db.factory import get_entity_repository, get_transaction_manager
from hexcms.db.ledger import LedgerEntry, SyncLedger
from hexcms.db.reconciler import DeletionHandler, Reconciler
from hexcms.errors import DocumentNotFound, StaleRevision, SyncError
from hexcms.fetcher import DocumentFetcher
from hexcms.models import ChangeEntry, ChangeSet, EntryOutcome, SyncErrorItem, SyncResult
from hexcms.observability import record_changeset, record_sync_entry, start_span
from hexcms.parsers.documents import DecodedDocument, decode_document
from hexcms.parsers.markdown import RenderedBody, render_body

logger = logging.getLogger("hexcms.sync")

# Reconciliation tiers: authors first so posts in the same changeset can
# reference them, then the remaining upserts, deletions last.
_TIER_AUTHOR_UPSERTS = 0
_TIER_UPSERTS = 1
_TIER_DELETES = 2


@dataclass
class SyncSettings:
    fetch_concurrency: int = 8
    deferred_threshold: int = 25
    changeset_timeout_seconds: float = 300.0
    words_per_minute: int = 200
    content_root: str = "content"
    default_branch: str = "main"

    @classmethod
    def from_config(cls) -> "SyncSettings":
        return cls(
            fetch_concurrency=max(1, config.SYNC_FETCH_CONCURRENCY),
            deferred_threshold=max(0, config.SYNC_DEFERRED_THRESHOLD),
            changeset_timeout_seconds=max(1.0, config.SYNC_CHANGESET_TIMEOUT_SECONDS),
            words_per_minute=max(1, config.WORDS_PER_MINUTE),
            content_root=config.CONTENT_ROOT,
            default_branch=config.GITHUB_BRANCH,
        )


@dataclass
class SyncContext:
    """State scoped to one changeset run; never shared between changesets."""

    changeset_id: str
    operation_id: str
    revision: str
    revision_at: str
    force: bool
    trigger: str
    semaphore: asyncio.Semaphore
    deadline: float

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass
class _EntryWork:
    entry: ChangeEntry
    kind: ContentKind
    operation: str
    started: float = field(default_factory=time.monotonic)
    doc: DecodedDocument | None = None
    rendered: RenderedBody | None = None
    reason: str = ""
    labels: dict[str, list[str]] | None = None
    outcome: EntryOutcome | None = None
    recorded: bool = False

    @property
    def tier(self) -> int:
        if self.operation == "delete":
            return _TIER_DELETES
        return _TIER_AUTHOR_UPSERTS if self.kind is AUTHOR else _TIER_UPSERTS

    def elapsed_ms(self) -> int:
        return max(0, int((time.monotonic() - self.started) * 1000))


class SyncEngine:
    """Applies changesets to the content store.

    Small changesets run inside the caller's request; changesets above
    ``deferred_threshold`` are queued on a tracked background task. Both paths
    share ``_run_changeset``.
    """

    def __init__(
        self,
        db: Any,
        fetcher: DocumentFetcher,
        settings: SyncSettings | None = None,
        *,
        transactions: Any | None = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.settings = settings or SyncSettings.from_config()
        # One manager (and, on SQLite, one write lock) for every writer below.
        self.transactions = transactions or get_transaction_manager(db)
        self.reconciler = Reconciler(db, transactions=self.transactions)
        self.deletions = DeletionHandler(db, transactions=self.transactions)
        self.ledger = SyncLedger(db, transactions=self.transactions)
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40
        self._background_tasks: set[asyncio.Task] = set()

    # ── Operation tracking ──────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        """Return a single operation snapshot."""
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live sync observability payload for API status."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
                "backgroundTaskCount": len(self._background_tasks),
            }

    async def _start_operation(
        self,
        kind: str,
        revision: str,
        trigger: str,
        metadata: dict[str, Any],
    ) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "revision": revision,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "counters": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (revision=%s trigger=%s)", op_id, kind, revision[:12], trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        progress: dict[str, Any] | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        log_message = ""
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase and phase != operation.get("phase"):
                operation["phase"] = phase
                log_message = message or phase
            if message is not None:
                operation["message"] = message
            if progress:
                operation.setdefault("progress", {}).update(progress)
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = now

        if log_message:
            logger.info("Operation update [%s] %s", operation_id, log_message)

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now_dt = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = status
            operation["updatedAt"] = now_dt.isoformat()
            operation["finishedAt"] = now_dt.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(str(operation["startedAt"]))
            operation["durationMs"] = max(0, int((now_dt - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Entry points ────────────────────────────────────────────────

    async def sync_push(self, payload: Any, *, wait: bool = False) -> SyncResult:
        changeset = changeset_from_push(payload, content_root=self.settings.content_root)
        return await self.sync_changeset(changeset, wait=wait)

    async def sync_paths(
        self,
        entries: Iterable[Any],
        revision: str,
        *,
        revision_at: str = "",
        force: bool = False,
        trigger: str = "manual",
        wait: bool = False,
    ) -> SyncResult:
        changeset = changeset_from_entries(
            entries,
            revision,
            revision_at=revision_at,
            content_root=self.settings.content_root,
            force=force,
            trigger=trigger,
        )
        return await self.sync_changeset(changeset, wait=wait)

    async def full_resync(self, ref: str | None = None, *, wait: bool = False) -> SyncResult:
        """Upsert every content file at the latest revision of ``ref``.

        Runs with ``force`` so stored revisions never block the reload, and
        goes through the same per-entry pipeline as incremental syncs.
        """
        revision, revision_at = await self.fetcher.resolve_revision(ref or self.settings.default_branch)
        paths = await self.fetcher.list_files(revision, content_roots(self.settings.content_root))
        changeset = changeset_from_entries(
            [(path, "upsert") for path in paths],
            revision,
            revision_at=revision_at,
            content_root=self.settings.content_root,
            force=True,
            trigger="resync",
        )
        logger.info("Full resync of %d file(s) at %s", len(changeset.entries), revision[:12])
        return await self.sync_changeset(changeset, wait=wait)

    async def sync_changeset(self, changeset: ChangeSet, *, wait: bool = False) -> SyncResult:
        changeset_id = f"CS-{uuid.uuid4()}"
        operation_id = await self._start_operation(
            "full_resync" if changeset.trigger == "resync" else "sync_changeset",
            changeset.revision,
            changeset.trigger,
            {"changesetId": changeset_id, "entryCount": len(changeset.entries), "force": changeset.force},
        )

        if not wait and len(changeset.entries) > self.settings.deferred_threshold:
            task = asyncio.create_task(
                self._run_tracked(changeset, changeset_id, operation_id),
                name=f"hexcms-sync-{changeset_id}",
            )
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
            await self._update_operation(
                operation_id,
                phase="queued",
                message=f"Queued {len(changeset.entries)} entries for background processing",
            )
            return SyncResult(
                operationId=operation_id,
                changesetId=changeset_id,
                revision=changeset.revision,
                status="queued",
                total=len(changeset.entries),
            )

        return await self._run_tracked(changeset, changeset_id, operation_id)

    async def wait_for_background(self) -> None:
        """Block until every queued changeset has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def preview(self, changeset: ChangeSet) -> list[EntryOutcome]:
        """Fetch and decode every entry without touching the store."""
        ctx = self._new_context(changeset, changeset_id="preview", operation_id="")
        works = self._collect_works(changeset)
        await self._prepare_all(works, ctx)
        outcomes: list[EntryOutcome] = []
        for work in works:
            if work.outcome is None:
                work.outcome = self._outcome(
                    work,
                    status="success",
                    slug=work.doc.slug if work.doc else "",
                    reason="dry_run",
                )
            outcomes.append(work.outcome)
        return outcomes

    # ── Pipeline ────────────────────────────────────────────────────

    def _new_context(self, changeset: ChangeSet, *, changeset_id: str, operation_id: str) -> SyncContext:
        return SyncContext(
            changeset_id=changeset_id,
            operation_id=operation_id,
            revision=changeset.revision,
            revision_at=changeset.revisionAt,
            force=changeset.force,
            trigger=changeset.trigger,
            semaphore=asyncio.Semaphore(self.settings.fetch_concurrency),
            deadline=time.monotonic() + self.settings.changeset_timeout_seconds,
        )

    async def _run_tracked(self, changeset: ChangeSet, changeset_id: str, operation_id: str) -> SyncResult:
        try:
            result = await self._run_changeset(changeset, changeset_id, operation_id)
        except asyncio.CancelledError:
            await self._finish_operation(operation_id, status="cancelled", error="cancelled before completion")
            record_changeset(changeset.trigger, "cancelled")
            raise
        except Exception as exc:
            logger.exception("Changeset %s at %s aborted", changeset_id, changeset.revision[:12])
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            record_changeset(changeset.trigger, "failed")
            return SyncResult(
                operationId=operation_id,
                changesetId=changeset_id,
                revision=changeset.revision,
                status="failed",
                total=len(changeset.entries),
                errors=[SyncErrorItem(path="", kind="internal", error=str(exc))],
            )
        await self._finish_operation(
            operation_id,
            status="completed",
            stats={
                "total": result.total,
                "succeeded": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        record_changeset(changeset.trigger, "completed" if result.success else "partial")
        return result

    async def _run_changeset(self, changeset: ChangeSet, changeset_id: str, operation_id: str) -> SyncResult:
        started = time.monotonic()
        ctx = self._new_context(changeset, changeset_id=changeset_id, operation_id=operation_id)
        total = len(changeset.entries)
        works = self._collect_works(changeset)

        with start_span(
            "hexcms.sync.changeset",
            {"hexcms.revision": changeset.revision, "hexcms.entries": total, "hexcms.trigger": changeset.trigger},
        ):
            try:
                await self._update_operation(operation_id, phase="fetching", message=f"Fetching {total} entries")
                await self._prepare_all(works, ctx)
                for work in works:
                    if work.outcome is not None:
                        await self._settle(work, ctx)

                await self._update_operation(operation_id, phase="reconciling", message="Reconciling store")
                done = 0
                for tier in (_TIER_AUTHOR_UPSERTS, _TIER_UPSERTS, _TIER_DELETES):
                    for work in works:
                        if work.outcome is not None or work.tier != tier:
                            continue
                        if ctx.expired():
                            work.reason = "deferred"
                            work.outcome = self._outcome(work, status="skipped", reason="deferred")
                        else:
                            await self._reconcile_entry(work, ctx)
                        await self._settle(work, ctx)
                        done += 1
                        if done % 10 == 0:
                            await self._update_operation(operation_id, progress={"reconciled": done, "total": total})

                for work in works:
                    await self._settle(work, ctx)
            except asyncio.CancelledError:
                # Settled entries keep their rows; every other entry gets one now.
                pending = [work for work in works if not work.recorded]
                logger.warning("Changeset %s cancelled with %d entries unfinished", changeset_id, len(pending))
                for work in pending:
                    if work.outcome is None:
                        work.reason = "deferred"
                        work.outcome = self._outcome(work, status="skipped", reason="deferred")
                    await self._settle(work, ctx)
                raise

        outcomes = [work.outcome for work in works if work.outcome is not None]
        result = SyncResult(
            operationId=operation_id,
            changesetId=changeset_id,
            revision=changeset.revision,
            status="completed",
            total=total,
            succeeded=sum(1 for o in outcomes if o.status == "success"),
            failed=sum(1 for o in outcomes if o.status == "error"),
            skipped=sum(1 for o in outcomes if o.status == "skipped"),
            errors=[
                SyncErrorItem(path=o.path, kind=str((o.error or {}).get("kind") or "internal"), error=str((o.error or {}).get("message") or ""))
                for o in outcomes
                if o.status == "error"
            ],
            outcomes=outcomes,
            durationMs=int((time.monotonic() - started) * 1000),
        )
        await self._update_operation(
            operation_id,
            counters={"succeeded": result.succeeded, "failed": result.failed, "skipped": result.skipped},
        )
        logger.info(
            "Changeset %s at %s: %d succeeded, %d failed, %d skipped",
            changeset_id,
            changeset.revision[:12],
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result

    async def _settle(self, work: _EntryWork, ctx: SyncContext) -> None:
        """Write the ledger row for a finished entry, exactly once."""
        if work.recorded:
            return
        if work.outcome is None:
            work.outcome = self._outcome(work, status="error", kind="internal", message="entry was never processed")
        await self.ledger.record(self._ledger_entry(work, work.outcome, ctx))
        work.recorded = True
        record_sync_entry(work.outcome.kind, work.outcome.operation, work.outcome.status, work.outcome.durationMs)

    def _collect_works(self, changeset: ChangeSet) -> list[_EntryWork]:
        works: list[_EntryWork] = []
        for entry in changeset.entries:
            kind = kind_for_path(entry.path, self.settings.content_root)
            if kind is None:
                # Extractors filter these out; explicit ChangeSet objects may not have.
                logger.debug("Dropping non-content entry %s", entry.path)
                continue
            works.append(_EntryWork(entry=entry, kind=kind, operation=entry.operation))
        return works

    async def _prepare_all(self, works: list[_EntryWork], ctx: SyncContext) -> None:
        await asyncio.gather(*(self._prepare_entry(work, ctx) for work in works))

    async def _prepare_entry(self, work: _EntryWork, ctx: SyncContext) -> None:
        """Fetch, decode and render one upsert; deletes need no preparation."""
        if work.operation == "delete":
            return
        if ctx.expired():
            work.outcome = self._outcome(work, status="skipped", reason="deferred")
            return
        try:
            raw = await asyncio.wait_for(
                self.fetcher.fetch(work.entry.path, work.entry.revision, ctx.semaphore),
                timeout=ctx.remaining(),
            )
            work.doc = decode_document(work.entry.path, raw, content_root=self.settings.content_root)
            if work.kind.has_body:
                work.rendered = render_body(work.doc.body, words_per_minute=self.settings.words_per_minute)
        except asyncio.TimeoutError:
            work.outcome = self._outcome(work, status="skipped", reason="deferred")
        except DocumentNotFound:
            # Absent at the target revision: reconcile as a deletion.
            logger.info("%s missing at %s; treating as delete", work.entry.path, work.entry.revision[:12])
            work.operation = "delete"
            work.reason = "missing_at_revision"
        except SyncError as exc:
            work.outcome = self._error_outcome(work, exc)
        except Exception as exc:
            logger.exception("Unexpected failure preparing %s", work.entry.path)
            work.outcome = self._outcome(work, status="error", kind="internal", message=str(exc))

    async def _reconcile_entry(self, work: _EntryWork, ctx: SyncContext) -> None:
        entry = work.entry
        revision_at = entry.revisionAt or ctx.revision_at
        try:
            with start_span("hexcms.sync.reconcile", {"hexcms.path": entry.path, "hexcms.operation": work.operation}):
                if work.operation == "delete":
                    deleted = await self.deletions.delete_path(
                        work.kind, entry.path, revision_at=revision_at, force=ctx.force,
                    )
                    if deleted.status == "deleted":
                        work.outcome = self._outcome(work, status="success", slug=deleted.slug, entity_id=deleted.entity_id)
                    else:
                        work.outcome = self._outcome(work, status="skipped", slug=deleted.slug, reason="not_found")
                    return

                assert work.doc is not None
                result = await self.reconciler.reconcile(
                    work.doc,
                    work.rendered,
                    revision=entry.revision,
                    revision_at=revision_at,
                    force=ctx.force,
                )
                work.reason = "created" if result.created else "updated"
                work.outcome = self._outcome(work, status="success", slug=result.slug, entity_id=result.entity_id)
                if result.labels is not None:
                    work.labels = result.labels.to_dict()
        except StaleRevision as exc:
            logger.info("Skipping stale %s for %s: %s", work.operation, entry.path, exc)
            work.outcome = self._outcome(
                work,
                status="skipped",
                slug=work.doc.slug if work.doc else "",
                reason="stale",
            )
        except SyncError as exc:
            work.outcome = self._error_outcome(work, exc)
        except Exception as exc:
            logger.exception("Unexpected failure reconciling %s", entry.path)
            work.outcome = self._outcome(work, status="error", kind="internal", message=str(exc))

    # ── Outcomes and ledger rows ────────────────────────────────────

    def _outcome(
        self,
        work: _EntryWork,
        *,
        status: str,
        slug: str = "",
        entity_id: str | None = None,
        reason: str = "",
        kind: str = "",
        message: str = "",
        detail: dict[str, Any] | None = None,
    ) -> EntryOutcome:
        error = None
        if status == "error":
            error = dict(detail or {"kind": kind or "internal", "message": message})
        return EntryOutcome(
            path=work.entry.path,
            operation=work.operation,
            kind=work.kind.name,
            slug=slug or (work.doc.slug if work.doc else ""),
            status=status,
            reason=reason or work.reason,
            entityId=entity_id,
            error=error,
            durationMs=work.elapsed_ms(),
        )

    def _error_outcome(self, work: _EntryWork, exc: SyncError) -> EntryOutcome:
        logger.warning("Sync failed for %s [%s]: %s", work.entry.path, exc.kind, exc.message)
        return self._outcome(work, status="error", detail=exc.detail())

    def _ledger_entry(self, work: _EntryWork, outcome: EntryOutcome, ctx: SyncContext) -> LedgerEntry:
        if work.operation == "delete":
            event_type = "delete"
        elif outcome.status == "success":
            event_type = "create" if work.reason == "created" else "update"
        else:
            event_type = "sync"

        metadata: dict[str, Any] = {
            "operation": work.operation,
            "requestedOperation": work.entry.operation,
            "revisionAt": work.entry.revisionAt or ctx.revision_at,
            "trigger": ctx.trigger,
            "force": ctx.force,
            "durationMs": outcome.durationMs,
        }
        if outcome.reason:
            metadata["reason"] = outcome.reason
        if outcome.error:
            metadata["error"] = outcome.error
        if work.labels:
            metadata["labels"] = work.labels

        error_kind = ""
        if outcome.status == "error":
            error_kind = str((outcome.error or {}).get("kind") or "internal")
        elif outcome.status == "skipped":
            error_kind = outcome.reason

        return LedgerEntry(
            changeset_id=ctx.changeset_id,
            event_type=event_type,
            resource_type=work.kind.name,
            file_path=work.entry.path,
            commit_sha=work.entry.revision,
            status=outcome.status,
            resource_id=outcome.entityId,
            slug=outcome.slug,
            error_kind=error_kind,
            error_message=str((outcome.error or {}).get("message")) if outcome.error else None,
            metadata=metadata,
        )

    # ── Read helpers used by the API and CLI ────────────────────────

    async def get_entity(self, kind: ContentKind, slug: str) -> dict | None:
        return await get_entity_repository(self.db).get_by_slug(kind, slug)

    async def ledger_entries(self, **filters: Any) -> list[dict[str, Any]]:
        return await self.ledger.list_recent(**filters)

    async def ledger_summary(self, **filters: Any) -> Mapping[str, Any]:
        return await self.ledger.summary(**filters)
