"""Store reconciliation: entity upserts, label diffs and deletions.

Every mutation of the content projection goes through this module. Each
operation runs in one transaction scope, so an entity write and its label
diff are visible together or not at all.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import aiosqlite
import asyncpg
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from hexcms.content_paths import AUTHOR, PAGE, POST, ContentKind, slug_from_path
from hexcms.date_utils import date_to_iso, utc_now_iso
from hexcms.db.factory import get_entity_repository, get_label_repository, get_transaction_manager
from hexcms.errors import DanglingReference, StaleRevision, StoreWriteConflict
from hexcms.parsers.documents import DecodedDocument
from hexcms.parsers.markdown import RenderedBody

logger = logging.getLogger("hexcms.db")

_CONFLICT_ERRORS = (aiosqlite.IntegrityError, asyncpg.IntegrityConstraintViolationError)
_RETRYABLE_ERRORS = (asyncpg.SerializationError, asyncpg.DeadlockDetectedError)
_WRITE_ATTEMPTS = 2


@dataclass
class RelationshipDiff:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"added": self.added, "removed": self.removed, "unchanged": self.unchanged}


@dataclass
class ReconcileResult:
    entity_id: str
    slug: str
    created: bool
    labels: RelationshipDiff | None = None


def _json(value: Any) -> str:
    return json.dumps(value, default=str)


def entity_values(doc: DecodedDocument, rendered: RenderedBody | None, *, author_id: str | None) -> dict[str, Any]:
    """Column values for ``doc`` excluding id, slug and timestamps."""
    meta = doc.metadata
    toc = [item.to_dict() for item in rendered.toc] if rendered else []
    if doc.kind is POST:
        excerpt = meta.excerpt or (rendered.excerpt if rendered else "") or None
        return {
            "title": meta.title,
            "excerpt": excerpt,
            "content": doc.body,
            "content_html": rendered.html if rendered else "",
            "author_id": author_id,
            "status": meta.status,
            "featured_image": meta.featuredImage,
            "featured": bool(meta.featured),
            "reading_time": rendered.reading_time if rendered else 1,
            "word_count": rendered.word_count if rendered else 0,
            "published_at": date_to_iso(meta.publishedAt),
            "content_updated_at": date_to_iso(meta.updatedAt),
            "meta_description": meta.metaDescription or (excerpt[:160] if excerpt else None),
            "meta_keywords_json": _json(list(meta.metaKeywords)),
            "toc_json": _json(toc),
        }
    if doc.kind is AUTHOR:
        social = meta.social.model_dump(exclude_none=True) if meta.social else {}
        return {
            "name": meta.name,
            "email": meta.email,
            "bio": meta.bio or doc.body.strip() or None,
            "avatar_url": meta.avatar,
            "website": social.get("website"),
            "social_json": _json(social),
        }
    if doc.kind is PAGE:
        return {
            "title": meta.title,
            "content": doc.body,
            "content_html": rendered.html if rendered else "",
            "status": meta.status,
            "template": meta.template,
            "meta_description": meta.metaDescription,
            "published_at": date_to_iso(meta.publishedAt),
            "content_updated_at": date_to_iso(meta.updatedAt),
            "toc_json": _json(toc),
        }
    raise ValueError(f"Unsupported content kind: {doc.kind.name}")


class RelationshipSynchronizer:
    """Diffs a post's desired label set against the stored associations."""

    async def sync(self, conn: Any, post_id: str, desired: dict[str, str], *, now: str) -> RelationshipDiff:
        labels = get_label_repository(conn)
        stored = {row["tag_id"]: row["slug"] for row in await labels.list_post_tags(post_id)}
        desired_ids = await labels.get_or_create_many(desired, now=now)

        stored_ids = set(stored)
        wanted_ids = set(desired_ids.values())
        to_add = [desired_ids[slug] for slug in desired if desired_ids[slug] not in stored_ids]
        to_remove = sorted(stored_ids - wanted_ids)

        if to_add:
            await labels.add_post_tags(post_id, to_add, now=now)
        if to_remove:
            await labels.remove_post_tags(post_id, to_remove)

        return RelationshipDiff(
            added=[slug for slug in desired if desired_ids[slug] not in stored_ids],
            removed=sorted(stored[tag_id] for tag_id in to_remove),
            unchanged=[slug for slug in desired if desired_ids[slug] in stored_ids],
        )


class Reconciler:
    def __init__(self, db: Any, *, transactions: Any | None = None, relationships: RelationshipSynchronizer | None = None):
        self.transactions = transactions or get_transaction_manager(db)
        self.relationships = relationships or RelationshipSynchronizer()

    async def reconcile(
        self,
        doc: DecodedDocument,
        rendered: RenderedBody | None,
        *,
        revision: str,
        revision_at: str = "",
        force: bool = False,
    ) -> ReconcileResult:
        """Upsert ``doc`` and its labels in one transaction.

        Raises ``DanglingReference`` for an unknown author, ``StaleRevision``
        when the stored entity is newer, and ``StoreWriteConflict`` when the
        store keeps rejecting the write.
        """
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning("Retrying conflicting write for %s %s: %s", doc.kind.name, doc.slug, exc)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RETRYABLE_ERRORS),
                stop=stop_after_attempt(_WRITE_ATTEMPTS),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    result = await self._reconcile_once(doc, rendered, revision=revision, revision_at=revision_at, force=force)
        except _RETRYABLE_ERRORS as exc:
            raise StoreWriteConflict(f"Write for {doc.kind.name} {doc.slug!r} kept conflicting: {exc}", path=doc.path) from exc
        except _CONFLICT_ERRORS as exc:
            raise StoreWriteConflict(f"Store rejected {doc.kind.name} {doc.slug!r}: {exc}", path=doc.path) from exc
        return result

    async def _reconcile_once(
        self,
        doc: DecodedDocument,
        rendered: RenderedBody | None,
        *,
        revision: str,
        revision_at: str,
        force: bool,
    ) -> ReconcileResult:
        now = utc_now_iso()
        async with self.transactions.transaction() as conn:
            entities = get_entity_repository(conn)

            # Rows this file produced under an earlier slug.
            superseded = [row for row in await entities.list_by_source_path(doc.kind, doc.path) if row["slug"] != doc.slug]
            if revision_at and not force:
                tombstone = await entities.get_tombstone(doc.kind, doc.path)
                if tombstone and tombstone["revision_at"] > revision_at:
                    raise StaleRevision(
                        f"{doc.path} was deleted at a newer revision ({tombstone['revision_at']})",
                        path=doc.path,
                    )
                newer = [row for row in superseded if (row["revision_at"] or "") > revision_at]
                if newer:
                    raise StaleRevision(
                        f"{doc.path} already synced as {newer[0]['slug']!r} at a newer revision",
                        path=doc.path,
                        stored_revision=str(newer[0]["revision"] or ""),
                    )

            author_id: str | None = None
            if doc.kind is POST:
                author_id = await entities.get_id_by_slug(AUTHOR, doc.author_slug)
                if not author_id:
                    raise DanglingReference(
                        f"Post {doc.slug!r} references unknown author {doc.author_slug!r}",
                        path=doc.path,
                        field="author",
                        target=doc.author_slug,
                    )

            values = entity_values(doc, rendered, author_id=author_id)
            values.update({"source_path": doc.path, "revision": revision, "revision_at": revision_at})
            outcome = await entities.upsert(doc.kind, str(uuid.uuid4()), doc.slug, values, now=now, force=force)
            if outcome is None:
                stored = await entities.get_by_slug(doc.kind, doc.slug) or {}
                raise StaleRevision(
                    f"{doc.kind.name} {doc.slug!r} already at a newer revision",
                    path=doc.path,
                    stored_revision=str(stored.get("revision") or ""),
                )
            entity_id, created = outcome

            for row in superseded:
                await entities.delete(doc.kind, row["slug"], force=True)
                logger.info("Removed %s %r: %s now declares slug %r", doc.kind.name, row["slug"], doc.path, doc.slug)
            await entities.clear_tombstone(doc.kind, doc.path)

            diff = None
            if doc.kind.has_labels:
                diff = await self.relationships.sync(conn, entity_id, doc.labels, now=now)

        return ReconcileResult(entity_id=entity_id, slug=doc.slug, created=created, labels=diff)


@dataclass
class DeletionResult:
    status: str  # deleted | not_found
    slug: str
    entity_id: str | None = None


class DeletionHandler:
    """Deletes entities; post_tags rows go with them through ON DELETE CASCADE.

    Every deletion with a known revision time leaves a tombstone for its
    source file, so an older upsert that arrives late is rejected as stale.
    """

    def __init__(self, db: Any, *, transactions: Any | None = None):
        self.transactions = transactions or get_transaction_manager(db)

    async def delete(
        self,
        kind: ContentKind,
        slug: str,
        *,
        revision_at: str = "",
        force: bool = False,
        path: str = "",
    ) -> DeletionResult:
        async with self.transactions.transaction() as conn:
            if not path:
                row = await get_entity_repository(conn).get_by_slug(kind, slug)
                path = (row or {}).get("source_path") or ""
            return await self._delete_slug(conn, kind, slug, revision_at=revision_at, force=force, path=path)

    async def delete_path(
        self,
        kind: ContentKind,
        path: str,
        *,
        revision_at: str = "",
        force: bool = False,
    ) -> DeletionResult:
        """Delete the entity whose source file was ``path``.

        The stored ``source_path`` wins because an explicit slug override
        cannot be recovered from a removed file. The path-derived slug is
        only used for rows not owned by another file.
        """
        async with self.transactions.transaction() as conn:
            entities = get_entity_repository(conn)
            row = await entities.get_by_source_path(kind, path)
            if row:
                slug = row["slug"]
            else:
                slug = slug_from_path(path, kind)
                row = await entities.get_by_slug(kind, slug)
                if not row or (row.get("source_path") or "") not in ("", path):
                    await self._remember(entities, kind, path, slug, revision_at)
                    return DeletionResult(status="not_found", slug=slug)
            return await self._delete_slug(conn, kind, slug, revision_at=revision_at, force=force, path=path)

    async def _delete_slug(
        self,
        conn: Any,
        kind: ContentKind,
        slug: str,
        *,
        revision_at: str,
        force: bool,
        path: str,
    ) -> DeletionResult:
        entities = get_entity_repository(conn)
        outcome, entity_id = await entities.delete(kind, slug, revision_at=revision_at, force=force)
        if outcome == "stale":
            raise StaleRevision(f"{kind.name} {slug!r} was updated after this deletion", path=path)
        await self._remember(entities, kind, path, slug, revision_at)
        return DeletionResult(status=outcome, slug=slug, entity_id=entity_id)

    async def _remember(self, entities: Any, kind: ContentKind, path: str, slug: str, revision_at: str) -> None:
        if path and revision_at:
            await entities.put_tombstone(kind, path, slug, revision_at=revision_at, now=utc_now_iso())
