"""PostgreSQL schema creation and versioning.

Mirrors ``sqlite_migrations`` with native full-text search: posts carry a
generated, weighted ``search_vector`` with a GIN index.
"""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("hexcms.db")

SCHEMA_VERSION = 4

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS authors (
    id           TEXT PRIMARY KEY,
    slug         TEXT NOT NULL UNIQUE,
    name         TEXT NOT NULL,
    email        TEXT,
    bio          TEXT,
    avatar_url   TEXT,
    website      TEXT,
    social_json  TEXT DEFAULT '{}',
    source_path  TEXT NOT NULL DEFAULT '',
    revision     TEXT NOT NULL DEFAULT '',
    revision_at  TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
    id                 TEXT PRIMARY KEY,
    slug               TEXT NOT NULL UNIQUE,
    title              TEXT NOT NULL,
    excerpt            TEXT,
    content            TEXT NOT NULL DEFAULT '',
    content_html       TEXT NOT NULL DEFAULT '',
    author_id          TEXT REFERENCES authors(id) ON DELETE SET NULL,
    status             TEXT NOT NULL DEFAULT 'draft'
                       CHECK (status IN ('draft', 'published', 'archived')),
    featured_image     TEXT,
    featured           BOOLEAN NOT NULL DEFAULT FALSE,
    reading_time       INTEGER NOT NULL DEFAULT 1,
    word_count         INTEGER NOT NULL DEFAULT 0,
    views              INTEGER NOT NULL DEFAULT 0,
    published_at       TEXT,
    content_updated_at TEXT,
    meta_description   TEXT,
    meta_keywords_json TEXT DEFAULT '[]',
    toc_json           TEXT DEFAULT '[]',
    source_path        TEXT NOT NULL DEFAULT '',
    revision           TEXT NOT NULL DEFAULT '',
    revision_at        TEXT NOT NULL DEFAULT '',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    search_vector      TSVECTOR GENERATED ALWAYS AS (
        setweight(to_tsvector('english', coalesce(title, '')), 'A') ||
        setweight(to_tsvector('english', coalesce(excerpt, '')), 'B') ||
        setweight(to_tsvector('english', coalesce(content, '')), 'C')
    ) STORED
);

CREATE INDEX IF NOT EXISTS idx_posts_status_published ON posts(status, published_at DESC);
CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);
CREATE INDEX IF NOT EXISTS idx_posts_search ON posts USING GIN(search_vector);

CREATE TABLE IF NOT EXISTS pages (
    id                 TEXT PRIMARY KEY,
    slug               TEXT NOT NULL UNIQUE,
    title              TEXT NOT NULL,
    content            TEXT NOT NULL DEFAULT '',
    content_html       TEXT NOT NULL DEFAULT '',
    status             TEXT NOT NULL DEFAULT 'draft'
                       CHECK (status IN ('draft', 'published')),
    template           TEXT,
    meta_description   TEXT,
    published_at       TEXT,
    content_updated_at TEXT,
    toc_json           TEXT DEFAULT '[]',
    source_path        TEXT NOT NULL DEFAULT '',
    revision           TEXT NOT NULL DEFAULT '',
    revision_at        TEXT NOT NULL DEFAULT '',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    id           TEXT PRIMARY KEY,
    slug         TEXT NOT NULL UNIQUE,
    name         TEXT NOT NULL,
    description  TEXT,
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS post_tags (
    post_id     TEXT NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    tag_id      TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    created_at  TEXT NOT NULL,
    PRIMARY KEY (post_id, tag_id)
);

CREATE INDEX IF NOT EXISTS idx_post_tags_tag ON post_tags(tag_id);

CREATE TABLE IF NOT EXISTS sync_logs (
    id             BIGSERIAL PRIMARY KEY,
    changeset_id   TEXT NOT NULL DEFAULT '',
    event_type     TEXT NOT NULL,
    resource_type  TEXT NOT NULL DEFAULT '',
    resource_id    TEXT,
    slug           TEXT DEFAULT '',
    file_path      TEXT DEFAULT '',
    commit_sha     TEXT DEFAULT '',
    status         TEXT NOT NULL DEFAULT 'success'
                   CHECK (status IN ('success', 'error', 'skipped')),
    error_kind     TEXT DEFAULT '',
    error_message  TEXT,
    metadata_json  TEXT DEFAULT '{}',
    created_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_logs_created_at ON sync_logs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_sync_logs_status ON sync_logs(status);
CREATE INDEX IF NOT EXISTS idx_sync_logs_commit ON sync_logs(commit_sha);
CREATE INDEX IF NOT EXISTS idx_sync_logs_changeset ON sync_logs(changeset_id);

-- ── 6. Deletion tombstones ─────────────────────────────────────────
-- Newest deletion revision per source file, so a delayed older upsert
-- cannot resurrect a deleted document.
CREATE TABLE IF NOT EXISTS content_tombstones (
    resource_type  TEXT NOT NULL,
    source_path    TEXT NOT NULL,
    slug           TEXT NOT NULL DEFAULT '',
    revision_at    TEXT NOT NULL DEFAULT '',
    deleted_at     TEXT NOT NULL,
    PRIMARY KEY (resource_type, source_path)
);
"""

_UPGRADES = (
    "ALTER TABLE posts ADD COLUMN IF NOT EXISTS word_count INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE posts ADD COLUMN IF NOT EXISTS meta_keywords_json TEXT DEFAULT '[]'",
    "ALTER TABLE pages ADD COLUMN IF NOT EXISTS content_updated_at TEXT",
    "ALTER TABLE sync_logs ADD COLUMN IF NOT EXISTS changeset_id TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE sync_logs ADD COLUMN IF NOT EXISTS error_kind TEXT DEFAULT ''",
    "CREATE INDEX IF NOT EXISTS idx_posts_source_path ON posts(source_path)",
    "CREATE INDEX IF NOT EXISTS idx_authors_source_path ON authors(source_path)",
    "CREATE INDEX IF NOT EXISTS idx_pages_source_path ON pages(source_path)",
)


async def run_migrations(db: Any) -> None:
    """Create all tables and indexes on a pool or connection. Idempotent."""
    async with db.acquire() as conn:
        current_version = 0
        exists = await conn.fetchval("SELECT to_regclass('public.schema_version') IS NOT NULL")
        if exists:
            current_version = await conn.fetchval("SELECT COALESCE(MAX(version), 0) FROM schema_version") or 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            for ddl in _UPGRADES:
                await conn.execute(ddl)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
