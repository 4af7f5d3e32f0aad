"""PostgreSQL implementation of the tag and post-tag association repository."""
from __future__ import annotations

import uuid
from typing import Iterable

import asyncpg


class PostgresLabelRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_or_create_many(self, labels: dict[str, str], *, now: str) -> dict[str, str]:
        ids: dict[str, str] = {}
        for slug, name in labels.items():
            await self.db.execute(
                "INSERT INTO tags (id, slug, name, created_at) VALUES ($1, $2, $3, $4) ON CONFLICT (slug) DO NOTHING",
                str(uuid.uuid4()), slug, name or slug, now,
            )
            ids[slug] = await self.db.fetchval("SELECT id FROM tags WHERE slug = $1", slug)
        return ids

    async def get_by_slug(self, slug: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM tags WHERE slug = $1", slug)
        return dict(row) if row else None

    async def add_post_tags(self, post_id: str, tag_ids: Iterable[str], *, now: str) -> None:
        await self.db.executemany(
            "INSERT INTO post_tags (post_id, tag_id, created_at) VALUES ($1, $2, $3) ON CONFLICT DO NOTHING",
            [(post_id, tag_id, now) for tag_id in tag_ids],
        )

    async def remove_post_tags(self, post_id: str, tag_ids: Iterable[str]) -> None:
        await self.db.executemany(
            "DELETE FROM post_tags WHERE post_id = $1 AND tag_id = $2",
            [(post_id, tag_id) for tag_id in tag_ids],
        )

    async def list_post_tags(self, post_id: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT t.slug, t.name, pt.tag_id, pt.created_at
               FROM post_tags pt JOIN tags t ON t.id = pt.tag_id
               WHERE pt.post_id = $1
               ORDER BY t.slug""",
            post_id,
        )
        return [dict(r) for r in rows]
