"""SQLite implementation of the post/author/page entity repository.

Writes never commit; callers run them inside a transaction scope.
"""
from __future__ import annotations

from typing import Any

import aiosqlite

from hexcms.content_paths import ContentKind

ENTITY_COLUMNS: dict[str, tuple[str, ...]] = {
    "posts": (
        "title", "excerpt", "content", "content_html", "author_id", "status",
        "featured_image", "featured", "reading_time", "word_count", "published_at",
        "content_updated_at", "meta_description", "meta_keywords_json", "toc_json",
    ),
    "authors": ("name", "email", "bio", "avatar_url", "website", "social_json"),
    "pages": (
        "title", "content", "content_html", "status", "template", "meta_description",
        "published_at", "content_updated_at", "toc_json",
    ),
}
TRACKING_COLUMNS = ("source_path", "revision", "revision_at")


def writable_columns(table: str, values: dict[str, Any]) -> list[str]:
    allowed = ENTITY_COLUMNS[table]
    unknown = set(values) - set(allowed) - set(TRACKING_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")
    return [column for column in (*allowed, *TRACKING_COLUMNS) if column in values]


class SqliteEntityRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_slug(self, kind: ContentKind, slug: str) -> dict | None:
        async with self.db.execute(f"SELECT * FROM {kind.table} WHERE slug = ?", (slug,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_by_source_path(self, kind: ContentKind, source_path: str) -> dict | None:
        async with self.db.execute(
            f"SELECT * FROM {kind.table} WHERE source_path = ? ORDER BY updated_at DESC LIMIT 1",
            (source_path,),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_by_source_path(self, kind: ContentKind, source_path: str) -> list[dict]:
        async with self.db.execute(
            f"SELECT id, slug, revision, revision_at FROM {kind.table} WHERE source_path = ?",
            (source_path,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_id_by_slug(self, kind: ContentKind, slug: str) -> str | None:
        async with self.db.execute(f"SELECT id FROM {kind.table} WHERE slug = ?", (slug,)) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def get_tombstone(self, kind: ContentKind, source_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM content_tombstones WHERE resource_type = ? AND source_path = ?",
            (kind.name, source_path),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def put_tombstone(self, kind: ContentKind, source_path: str, slug: str, *, revision_at: str, now: str) -> None:
        """Remember a deletion; an older deletion never replaces a newer one."""
        await self.db.execute(
            """INSERT INTO content_tombstones (resource_type, source_path, slug, revision_at, deleted_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(resource_type, source_path) DO UPDATE SET
                   slug=excluded.slug, revision_at=excluded.revision_at, deleted_at=excluded.deleted_at
               WHERE excluded.revision_at >= content_tombstones.revision_at""",
            (kind.name, source_path, slug, revision_at, now),
        )

    async def clear_tombstone(self, kind: ContentKind, source_path: str) -> None:
        await self.db.execute(
            "DELETE FROM content_tombstones WHERE resource_type = ? AND source_path = ?",
            (kind.name, source_path),
        )

    async def list_all(self, kind: ContentKind) -> list[dict]:
        async with self.db.execute(f"SELECT * FROM {kind.table} ORDER BY slug") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def upsert(
        self,
        kind: ContentKind,
        entity_id: str,
        slug: str,
        values: dict[str, Any],
        *,
        now: str,
        force: bool = False,
    ) -> tuple[str, bool] | None:
        """Insert or update by slug unless the stored revision is newer.

        Returns ``(id, created)`` or ``None`` when the revision guard rejected
        the write.
        """
        table = kind.table
        columns = writable_columns(table, values)
        existing_id = await self.get_id_by_slug(kind, slug)

        insert_cols = ["id", "slug", *columns, "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in insert_cols)
        updates = ", ".join(f"{column}=excluded.{column}" for column in (*columns, "updated_at"))
        query = f"""
            INSERT INTO {table} ({", ".join(insert_cols)}) VALUES ({placeholders})
            ON CONFLICT(slug) DO UPDATE SET {updates}
            WHERE ? OR excluded.revision_at = '' OR {table}.revision_at = ''
               OR excluded.revision_at >= {table}.revision_at
            RETURNING id
        """
        params = (entity_id, slug, *(values[c] for c in columns), now, now, 1 if force else 0)
        async with self.db.execute(query, params) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return row[0], existing_id is None

    async def delete(
        self,
        kind: ContentKind,
        slug: str,
        *,
        revision_at: str = "",
        force: bool = False,
    ) -> tuple[str, str | None]:
        """Delete by slug. Returns ``(outcome, id)`` with outcome deleted|not_found|stale."""
        async with self.db.execute(f"SELECT id FROM {kind.table} WHERE slug = ?", (slug,)) as cur:
            row = await cur.fetchone()
        if not row:
            return "not_found", None
        entity_id = row[0]
        async with self.db.execute(
            f"""DELETE FROM {kind.table}
                WHERE id = ? AND (? OR ? = '' OR revision_at = '' OR revision_at <= ?)""",
            (entity_id, 1 if force else 0, revision_at, revision_at),
        ) as cur:
            deleted = cur.rowcount
        return ("deleted" if deleted else "stale"), entity_id

    async def search_posts(self, query: str, limit: int = 20) -> list[dict]:
        async with self.db.execute(
            """SELECT p.id, p.slug, p.title, p.excerpt
               FROM posts_fts f JOIN posts p ON p.rowid = f.rowid
               WHERE posts_fts MATCH ?
               ORDER BY rank
               LIMIT ?""",
            (query, limit),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
