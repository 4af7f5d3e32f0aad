"""SQLite implementation of the tag and post-tag association repository."""
from __future__ import annotations

import uuid
from typing import Iterable

import aiosqlite


class SqliteLabelRepository:
    """Tags are create-or-fetch by slug; associations are written row by row."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_or_create_many(self, labels: dict[str, str], *, now: str) -> dict[str, str]:
        """Ensure every ``slug -> name`` label exists and return ``slug -> id``."""
        ids: dict[str, str] = {}
        for slug, name in labels.items():
            await self.db.execute(
                "INSERT INTO tags (id, slug, name, created_at) VALUES (?, ?, ?, ?) ON CONFLICT(slug) DO NOTHING",
                (str(uuid.uuid4()), slug, name or slug, now),
            )
            async with self.db.execute("SELECT id FROM tags WHERE slug = ?", (slug,)) as cur:
                row = await cur.fetchone()
            ids[slug] = row[0]
        return ids

    async def get_by_slug(self, slug: str) -> dict | None:
        async with self.db.execute("SELECT * FROM tags WHERE slug = ?", (slug,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def add_post_tags(self, post_id: str, tag_ids: Iterable[str], *, now: str) -> None:
        await self.db.executemany(
            "INSERT INTO post_tags (post_id, tag_id, created_at) VALUES (?, ?, ?) ON CONFLICT DO NOTHING",
            [(post_id, tag_id, now) for tag_id in tag_ids],
        )

    async def remove_post_tags(self, post_id: str, tag_ids: Iterable[str]) -> None:
        await self.db.executemany(
            "DELETE FROM post_tags WHERE post_id = ? AND tag_id = ?",
            [(post_id, tag_id) for tag_id in tag_ids],
        )

    async def list_post_tags(self, post_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT t.slug, t.name, pt.tag_id, pt.created_at
               FROM post_tags pt JOIN tags t ON t.id = pt.tag_id
               WHERE pt.post_id = ?
               ORDER BY t.slug""",
            (post_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
