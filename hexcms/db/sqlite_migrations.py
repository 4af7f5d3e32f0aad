"""SQLite schema creation and versioning.

All CREATE statements for the content projection and the sync ledger.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("hexcms.db")

SCHEMA_VERSION = 4

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Authors ─────────────────────────────────────────────────────
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

-- ── 2. Posts ───────────────────────────────────────────────────────
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
    featured           INTEGER NOT NULL DEFAULT 0,
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
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_posts_status_published ON posts(status, published_at DESC);
CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);

-- ── 3. Pages ───────────────────────────────────────────────────────
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

-- ── 4. Tags + post associations ────────────────────────────────────
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

-- ── 5. Sync ledger (append-only) ───────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_logs (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
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

# External-content FTS5 index over posts, kept current by triggers so every
# upsert and delete (including cascades) updates it in the same transaction.
_POSTS_FTS = """
CREATE VIRTUAL TABLE IF NOT EXISTS posts_fts USING fts5(
    title, excerpt, content,
    content='posts', content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS posts_fts_ai AFTER INSERT ON posts BEGIN
    INSERT INTO posts_fts(rowid, title, excerpt, content)
    VALUES (new.rowid, new.title, coalesce(new.excerpt, ''), new.content);
END;

CREATE TRIGGER IF NOT EXISTS posts_fts_ad AFTER DELETE ON posts BEGIN
    INSERT INTO posts_fts(posts_fts, rowid, title, excerpt, content)
    VALUES ('delete', old.rowid, old.title, coalesce(old.excerpt, ''), old.content);
END;

CREATE TRIGGER IF NOT EXISTS posts_fts_au AFTER UPDATE ON posts BEGIN
    INSERT INTO posts_fts(posts_fts, rowid, title, excerpt, content)
    VALUES ('delete', old.rowid, old.title, coalesce(old.excerpt, ''), old.content);
    INSERT INTO posts_fts(rowid, title, excerpt, content)
    VALUES (new.rowid, new.title, coalesce(new.excerpt, ''), new.content);
END;
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def fts5_available(db: aiosqlite.Connection) -> bool:
    async with db.execute("SELECT sqlite_compileoption_used('ENABLE_FTS5')") as cur:
        row = await cur.fetchone()
    return bool(row and row[0])


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and indexes. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Explicit table upgrades for databases created by earlier versions.
    await _ensure_column(db, "posts", "word_count", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "posts", "meta_keywords_json", "TEXT DEFAULT '[]'")
    await _ensure_column(db, "pages", "content_updated_at", "TEXT")
    await _ensure_column(db, "sync_logs", "changeset_id", "TEXT NOT NULL DEFAULT ''")
    await _ensure_column(db, "sync_logs", "error_kind", "TEXT DEFAULT ''")

    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_posts_source_path ON posts(source_path)")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_authors_source_path ON authors(source_path)")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_pages_source_path ON pages(source_path)")

    if await fts5_available(db):
        await db.executescript(_POSTS_FTS)
        await db.execute("INSERT INTO posts_fts(posts_fts) VALUES ('rebuild')")
    else:
        logger.warning("SQLite build lacks FTS5; post full-text search disabled")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
