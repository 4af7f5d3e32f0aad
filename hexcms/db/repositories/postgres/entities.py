"""PostgreSQL implementation of the post/author/page entity repository."""
from __future__ import annotations

from typing import Any

import asyncpg

from hexcms.content_paths import ContentKind
from hexcms.db.repositories.entities import writable_columns


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 1"
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresEntityRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_by_slug(self, kind: ContentKind, slug: str) -> dict | None:
        row = await self.db.fetchrow(f"SELECT * FROM {kind.table} WHERE slug = $1", slug)
        return dict(row) if row else None

    async def get_by_source_path(self, kind: ContentKind, source_path: str) -> dict | None:
        row = await self.db.fetchrow(
            f"SELECT * FROM {kind.table} WHERE source_path = $1 ORDER BY updated_at DESC LIMIT 1",
            source_path,
        )
        return dict(row) if row else None

    async def list_by_source_path(self, kind: ContentKind, source_path: str) -> list[dict]:
        rows = await self.db.fetch(
            f"SELECT id, slug, revision, revision_at FROM {kind.table} WHERE source_path = $1 FOR UPDATE",
            source_path,
        )
        return [dict(r) for r in rows]

    async def get_id_by_slug(self, kind: ContentKind, slug: str) -> str | None:
        return await self.db.fetchval(f"SELECT id FROM {kind.table} WHERE slug = $1", slug)

    async def get_tombstone(self, kind: ContentKind, source_path: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM content_tombstones WHERE resource_type = $1 AND source_path = $2",
            kind.name,
            source_path,
        )
        return dict(row) if row else None

    async def put_tombstone(self, kind: ContentKind, source_path: str, slug: str, *, revision_at: str, now: str) -> None:
        await self.db.execute(
            """INSERT INTO content_tombstones (resource_type, source_path, slug, revision_at, deleted_at)
               VALUES ($1, $2, $3, $4, $5)
               ON CONFLICT(resource_type, source_path) DO UPDATE SET
                   slug=EXCLUDED.slug, revision_at=EXCLUDED.revision_at, deleted_at=EXCLUDED.deleted_at
               WHERE EXCLUDED.revision_at >= content_tombstones.revision_at""",
            kind.name,
            source_path,
            slug,
            revision_at,
            now,
        )

    async def clear_tombstone(self, kind: ContentKind, source_path: str) -> None:
        await self.db.execute(
            "DELETE FROM content_tombstones WHERE resource_type = $1 AND source_path = $2",
            kind.name,
            source_path,
        )

    async def list_all(self, kind: ContentKind) -> list[dict]:
        rows = await self.db.fetch(f"SELECT * FROM {kind.table} ORDER BY slug")
        return [dict(r) for r in rows]

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
        table = kind.table
        columns = writable_columns(table, values)
        insert_cols = ["id", "slug", *columns, "created_at", "updated_at"]
        placeholders = ", ".join(f"${i}" for i in range(1, len(insert_cols) + 1))
        force_param = len(insert_cols) + 1
        updates = ", ".join(f"{column}=EXCLUDED.{column}" for column in (*columns, "updated_at"))
        query = f"""
            INSERT INTO {table} ({", ".join(insert_cols)}) VALUES ({placeholders})
            ON CONFLICT(slug) DO UPDATE SET {updates}
            WHERE ${force_param}::boolean OR EXCLUDED.revision_at = '' OR {table}.revision_at = ''
               OR EXCLUDED.revision_at >= {table}.revision_at
            RETURNING id, (xmax = 0) AS inserted
        """
        row = await self.db.fetchrow(query, entity_id, slug, *(values[c] for c in columns), now, now, force)
        if not row:
            return None
        return row["id"], bool(row["inserted"])

    async def delete(
        self,
        kind: ContentKind,
        slug: str,
        *,
        revision_at: str = "",
        force: bool = False,
    ) -> tuple[str, str | None]:
        entity_id = await self.db.fetchval(f"SELECT id FROM {kind.table} WHERE slug = $1 FOR UPDATE", slug)
        if not entity_id:
            return "not_found", None
        status = await self.db.execute(
            f"""DELETE FROM {kind.table}
                WHERE id = $1 AND ($2::boolean OR $3 = '' OR revision_at = '' OR revision_at <= $3)""",
            entity_id,
            force,
            revision_at,
        )
        return ("deleted" if _affected_rows(status) else "stale"), entity_id

    async def search_posts(self, query: str, limit: int = 20) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT id, slug, title, excerpt
               FROM posts
               WHERE search_vector @@ websearch_to_tsquery('english', $1)
               ORDER BY ts_rank(search_vector, websearch_to_tsquery('english', $1)) DESC
               LIMIT $2""",
            query,
            limit,
        )
        return [dict(r) for r in rows]
