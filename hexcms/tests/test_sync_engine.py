import asyncio
import unittest

from hexcms.content_paths import AUTHOR, POST
from hexcms.db.connection import open_sqlite
from hexcms.db.migrations import run_migrations
from hexcms.db.sync_engine import SyncEngine, SyncSettings
from hexcms.errors import DocumentNotFound, TransientFetchFailure
from hexcms.fetcher import DocumentFetcher
from hexcms.models import ChangeEntry, ChangeSet

AUTHOR_PATH = "authors/jane-doe.md"
POST_PATH = "posts/2024-01-15-hello.md"

AUTHOR_SOURCE = b"---\nname: Jane Doe\n---\n"
HELLO_SOURCE = b"""---
title: Hello
author: jane-doe
publishedAt: 2024-01-15
tags: [Intro, Python]
status: published
---

## Welcome

Hello from the repository.
"""


def _post(title: str) -> bytes:
    return f"---\ntitle: {title}\nauthor: jane-doe\npublishedAt: 2024-02-01\n---\nBody of {title}.\n".encode()


class _FakeRepositoryClient:
    """In-memory repository keyed by path; every revision sees the same files."""

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files = dict(files or {})
        self.failing: set[str] = set()
        self.fetched: list[tuple[str, str]] = []
        self.by_revision: dict[tuple[str, str], bytes] = {}

    def get_file_at(self, path: str, revision: str) -> bytes:
        self.fetched.append((path, revision))
        if path in self.failing:
            raise TransientFetchFailure("upstream unavailable", path=path)
        if (path, revision) in self.by_revision:
            return self.by_revision[(path, revision)]
        if path not in self.files:
            raise DocumentNotFound(f"{path} not found", path=path)
        return self.files[path]

    def list_files(self, revision, roots):
        return sorted(p for p in self.files if any(p.startswith(f"{root}/") for root in roots))

    def resolve_revision(self, ref):
        return "head-sha", "2024-03-01T00:00:00Z"


async def _no_sleep(delay: float) -> None:
    return None


def _push(after: str, timestamp: str, added=(), modified=(), removed=()):
    return {
        "ref": "refs/heads/main",
        "after": after,
        "head_commit": {
            "id": after,
            "timestamp": timestamp,
            "added": list(added),
            "modified": list(modified),
            "removed": list(removed),
        },
    }


class SyncEngineTestCase(unittest.IsolatedAsyncioTestCase):
    settings = SyncSettings(
        fetch_concurrency=4,
        deferred_threshold=50,
        changeset_timeout_seconds=30.0,
        words_per_minute=200,
        content_root="",
        default_branch="main",
    )

    async def asyncSetUp(self) -> None:
        self.db = await open_sqlite(":memory:")
        await run_migrations(self.db)
        self.client = _FakeRepositoryClient({AUTHOR_PATH: AUTHOR_SOURCE, POST_PATH: HELLO_SOURCE})
        self.fetcher = DocumentFetcher(self.client, max_attempts=2, base_delay=0.0, max_delay=0.0, sleep=_no_sleep)
        self.engine = SyncEngine(self.db, self.fetcher, self.settings)

    async def asyncTearDown(self) -> None:
        await self.engine.shutdown()
        await self.db.close()


class EndToEndTests(SyncEngineTestCase):
    async def test_push_creates_post_author_and_labels(self) -> None:
        result = await self.engine.sync_push(
            _push("sha1", "2024-01-15T10:00:00Z", added=[POST_PATH, AUTHOR_PATH, "README.md"])
        )

        self.assertEqual(result.status, "completed")
        self.assertEqual((result.total, result.succeeded, result.failed, result.skipped), (2, 2, 0, 0))
        self.assertTrue(result.success)

        post = await self.engine.get_entity(POST, "hello")
        author = await self.engine.get_entity(AUTHOR, "jane-doe")
        self.assertEqual(post["title"], "Hello")
        self.assertEqual(post["author_id"], author["id"])
        self.assertEqual(post["revision"], "sha1")
        self.assertIn('<h2 id="welcome">Welcome</h2>', post["content_html"])

        entries = await self.engine.ledger_entries(changeset_id=result.changesetId)
        self.assertEqual(len(entries), 2)
        self.assertEqual({e["eventType"] for e in entries}, {"create"})
        self.assertEqual({e["commitSha"] for e in entries}, {"sha1"})
        post_entry = next(e for e in entries if e["filePath"] == POST_PATH)
        self.assertEqual(post_entry["metadata"]["labels"]["added"], ["intro", "python"])

    async def test_replaying_a_push_is_idempotent(self) -> None:
        payload = _push("sha1", "2024-01-15T10:00:00Z", added=[AUTHOR_PATH, POST_PATH])
        await self.engine.sync_push(payload)
        before = await self.engine.get_entity(POST, "hello")

        replay = await self.engine.sync_push(payload)
        after = await self.engine.get_entity(POST, "hello")

        self.assertEqual(replay.succeeded, 2)
        self.assertEqual(before["id"], after["id"])
        self.assertEqual(before["created_at"], after["created_at"])
        events = {e["eventType"] for e in await self.engine.ledger_entries(changeset_id=replay.changesetId)}
        self.assertEqual(events, {"update"})

    async def test_out_of_order_push_is_skipped_as_stale(self) -> None:
        self.client.files[POST_PATH] = HELLO_SOURCE.replace(b"title: Hello", b"title: Newer")
        await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", added=[AUTHOR_PATH, POST_PATH]))

        self.client.files[POST_PATH] = HELLO_SOURCE
        late = await self.engine.sync_push(_push("sha1", "2024-01-15T00:00:00Z", modified=[POST_PATH]))

        self.assertEqual((late.succeeded, late.failed, late.skipped), (0, 0, 1))
        self.assertEqual(late.outcomes[0].reason, "stale")
        self.assertEqual((await self.engine.get_entity(POST, "hello"))["title"], "Newer")
        ledger = await self.engine.ledger_entries(changeset_id=late.changesetId)
        self.assertEqual(ledger[0]["status"], "skipped")
        self.assertEqual(ledger[0]["errorKind"], "stale")

    async def test_removed_file_is_deleted_and_redelete_is_skipped(self) -> None:
        await self.engine.sync_push(_push("sha1", "2024-01-15T10:00:00Z", added=[AUTHOR_PATH, POST_PATH]))

        removed = await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", removed=[POST_PATH]))
        again = await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", removed=[POST_PATH]))

        self.assertEqual(removed.succeeded, 1)
        self.assertIsNone(await self.engine.get_entity(POST, "hello"))
        self.assertEqual((again.succeeded, again.skipped), (0, 1))
        self.assertEqual(again.outcomes[0].reason, "not_found")
        self.assertEqual((await self.engine.ledger_entries(changeset_id=again.changesetId))[0]["eventType"], "delete")

    async def test_missing_file_at_revision_becomes_delete(self) -> None:
        await self.engine.sync_push(_push("sha1", "2024-01-15T10:00:00Z", added=[AUTHOR_PATH, POST_PATH]))
        del self.client.files[POST_PATH]

        result = await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", modified=[POST_PATH]))

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(result.outcomes[0].operation, "delete")
        self.assertIsNone(await self.engine.get_entity(POST, "hello"))

    async def test_slug_change_in_place_replaces_the_old_entity(self) -> None:
        await self.engine.sync_push(_push("sha1", "2024-01-15T10:00:00Z", added=[AUTHOR_PATH, POST_PATH]))
        self.client.files[POST_PATH] = HELLO_SOURCE.replace(b"status: published", b"status: published\nslug: renamed")

        await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", modified=[POST_PATH]))

        self.assertIsNone(await self.engine.get_entity(POST, "hello"))
        self.assertEqual((await self.engine.get_entity(POST, "renamed"))["source_path"], POST_PATH)

        await self.engine.sync_push(_push("sha3", "2024-01-17T00:00:00Z", removed=[POST_PATH]))
        async with self.db.execute("SELECT slug FROM posts") as cur:
            self.assertEqual(await cur.fetchall(), [])

    async def test_late_older_upsert_does_not_resurrect_a_deleted_document(self) -> None:
        await self.engine.sync_push(_push("sha1", "2024-01-15T00:00:00Z", added=[AUTHOR_PATH, POST_PATH]))
        await self.engine.sync_push(_push("sha3", "2024-01-17T00:00:00Z", removed=[POST_PATH]))

        late = await self.engine.sync_push(_push("sha2", "2024-01-16T00:00:00Z", modified=[POST_PATH]))

        self.assertEqual((late.succeeded, late.skipped), (0, 1))
        self.assertEqual(late.outcomes[0].reason, "stale")
        self.assertIsNone(await self.engine.get_entity(POST, "hello"))

        readded = await self.engine.sync_push(_push("sha4", "2024-01-18T00:00:00Z", added=[POST_PATH]))
        self.assertEqual(readded.succeeded, 1)
        self.assertEqual((await self.engine.get_entity(POST, "hello"))["revision"], "sha4")

    async def test_author_in_same_changeset_resolves_before_posts(self) -> None:
        result = await self.engine.sync_paths(
            [(POST_PATH, "added"), (AUTHOR_PATH, "added")],
            "sha1",
            revision_at="2024-01-15T10:00:00Z",
        )
        self.assertEqual(result.succeeded, 2)
        self.assertEqual([o.path for o in result.outcomes], [POST_PATH, AUTHOR_PATH])


class PartialFailureTests(SyncEngineTestCase):
    async def test_one_bad_file_does_not_block_siblings(self) -> None:
        self.client.files.update(
            {
                "posts/one.md": _post("One"),
                "posts/two.md": _post("Two"),
                "posts/broken.md": b"---\nauthor: jane-doe\npublishedAt: 2024-02-01\n---\nNo title.\n",
            }
        )
        result = await self.engine.sync_paths(
            [AUTHOR_PATH, POST_PATH, "posts/one.md", "posts/two.md", "posts/broken.md"],
            "sha1",
            revision_at="2024-02-01T00:00:00Z",
        )

        self.assertEqual((result.total, result.succeeded, result.failed), (5, 4, 1))
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0].path, "posts/broken.md")
        self.assertEqual(result.errors[0].kind, "validation_error")
        for slug in ("hello", "one", "two"):
            self.assertIsNotNone(await self.engine.get_entity(POST, slug))

        summary = await self.engine.ledger_summary(changeset_id=result.changesetId)
        self.assertEqual(summary["total"], 5)
        self.assertEqual(summary["byStatus"], {"success": 4, "error": 1})
        self.assertEqual(summary["byErrorKind"], {"validation_error": 1})

    async def test_dangling_author_and_transient_fetch_are_recorded(self) -> None:
        self.client.files["posts/orphan.md"] = _post("Orphan").replace(b"jane-doe", b"ghost")
        self.client.files["posts/flaky.md"] = _post("Flaky")
        self.client.failing.add("posts/flaky.md")

        result = await self.engine.sync_paths(
            [AUTHOR_PATH, "posts/orphan.md", "posts/flaky.md"],
            "sha1",
        )

        kinds = {e.path: e.kind for e in result.errors}
        self.assertEqual(kinds, {"posts/orphan.md": "dangling_reference", "posts/flaky.md": "transient_fetch_failure"})
        self.assertEqual(self.client.fetched.count(("posts/flaky.md", "sha1")), 2)
        self.assertEqual(result.succeeded, 1)


class DeferredExecutionTests(SyncEngineTestCase):
    async def test_large_changeset_is_queued(self) -> None:
        self.engine.settings = SyncSettings(**{**self.settings.__dict__, "deferred_threshold": 1})

        result = await self.engine.sync_paths([AUTHOR_PATH, POST_PATH], "sha1")
        self.assertEqual(result.status, "queued")
        self.assertEqual(result.total, 2)

        await self.engine.wait_for_background()

        self.assertIsNotNone(await self.engine.get_entity(POST, "hello"))
        operation = await self.engine.get_operation(result.operationId)
        self.assertEqual(operation["status"], "completed")
        self.assertEqual(operation["stats"]["succeeded"], 2)
        self.assertEqual(len(await self.engine.ledger_entries(changeset_id=result.changesetId)), 2)

    async def test_cancelled_changeset_still_records_every_entry(self) -> None:
        self.engine.settings = SyncSettings(**{**self.settings.__dict__, "deferred_threshold": 0})
        reconcile = self.engine.reconciler.reconcile
        post_reached = asyncio.Event()

        async def held_reconcile(doc, rendered, **kwargs):
            if doc.kind is POST:
                post_reached.set()
                await asyncio.Event().wait()
            return await reconcile(doc, rendered, **kwargs)

        self.engine.reconciler.reconcile = held_reconcile
        result = await self.engine.sync_paths([AUTHOR_PATH, POST_PATH], "sha1", revision_at="2024-01-15T00:00:00Z")
        self.assertEqual(result.status, "queued")
        await asyncio.wait_for(post_reached.wait(), timeout=5)

        await self.engine.shutdown()

        self.assertIsNotNone(await self.engine.get_entity(AUTHOR, "jane-doe"))
        self.assertIsNone(await self.engine.get_entity(POST, "hello"))
        entries = {e["filePath"]: e for e in await self.engine.ledger_entries(changeset_id=result.changesetId)}
        self.assertEqual(entries[AUTHOR_PATH]["status"], "success")
        self.assertEqual(entries[POST_PATH]["status"], "skipped")
        self.assertEqual(entries[POST_PATH]["errorKind"], "deferred")
        self.assertEqual((await self.engine.get_operation(result.operationId))["status"], "cancelled")

    async def test_expired_deadline_defers_remaining_entries(self) -> None:
        self.engine.settings = SyncSettings(**{**self.settings.__dict__, "changeset_timeout_seconds": 0.0})

        result = await self.engine.sync_paths([AUTHOR_PATH, (POST_PATH, "removed")], "sha1")

        self.assertEqual((result.succeeded, result.skipped), (0, 2))
        self.assertEqual({o.reason for o in result.outcomes}, {"deferred"})
        self.assertIsNone(await self.engine.get_entity(AUTHOR, "jane-doe"))
        self.assertEqual(len(await self.engine.ledger_entries(changeset_id=result.changesetId)), 2)


class ConcurrencyTests(SyncEngineTestCase):
    async def test_concurrent_changesets_converge_on_newest_revision(self) -> None:
        await self.engine.sync_paths([AUTHOR_PATH], "sha0", revision_at="2024-01-01T00:00:00Z")
        self.client.by_revision[(POST_PATH, "old")] = (
            HELLO_SOURCE.replace(b"title: Hello", b"title: Older").replace(b"[Intro, Python]", b"[Shared, Old]")
        )
        self.client.by_revision[(POST_PATH, "new")] = (
            HELLO_SOURCE.replace(b"title: Hello", b"title: Newer").replace(b"[Intro, Python]", b"[Shared, New]")
        )

        older, newer = await asyncio.gather(
            self.engine.sync_paths([POST_PATH], "old", revision_at="2024-01-15T00:00:00Z"),
            self.engine.sync_paths([POST_PATH], "new", revision_at="2024-01-16T00:00:00Z"),
        )

        self.assertEqual((older.failed, newer.failed), (0, 0))
        self.assertEqual(newer.succeeded, 1)
        async with self.db.execute("SELECT slug, title, revision FROM posts") as cur:
            self.assertEqual([tuple(r) for r in await cur.fetchall()], [("hello", "Newer", "new")])
        async with self.db.execute("SELECT COUNT(*) FROM tags WHERE slug = 'shared'") as cur:
            self.assertEqual((await cur.fetchone())[0], 1)
        async with self.db.execute(
            "SELECT t.slug FROM post_tags pt JOIN tags t ON t.id = pt.tag_id ORDER BY t.slug"
        ) as cur:
            self.assertEqual([r[0] for r in await cur.fetchall()], ["new", "shared"])


class ResyncAndOperationsTests(SyncEngineTestCase):
    async def test_full_resync_overrides_newer_stored_revisions(self) -> None:
        await self.engine.sync_push(_push("future", "2030-01-01T00:00:00Z", added=[AUTHOR_PATH, POST_PATH]))
        self.client.files[POST_PATH] = HELLO_SOURCE.replace(b"title: Hello", b"title: Reloaded")

        result = await self.engine.full_resync(wait=True)

        self.assertEqual(result.revision, "head-sha")
        self.assertEqual(result.succeeded, 2)
        post = await self.engine.get_entity(POST, "hello")
        self.assertEqual(post["title"], "Reloaded")
        self.assertEqual(post["revision"], "head-sha")

    async def test_operations_are_tracked(self) -> None:
        result = await self.engine.sync_paths([AUTHOR_PATH], "sha1", trigger="api")

        operations = await self.engine.list_operations()
        self.assertEqual(operations[0]["id"], result.operationId)
        self.assertEqual(operations[0]["kind"], "sync_changeset")
        self.assertEqual(operations[0]["trigger"], "api")
        self.assertEqual(operations[0]["status"], "completed")
        snapshot = await self.engine.get_observability_snapshot()
        self.assertEqual(snapshot["activeOperationCount"], 0)

    async def test_preview_does_not_write(self) -> None:
        changeset = ChangeSet(
            revision="sha1",
            entries=[ChangeEntry(path=POST_PATH, operation="upsert", revision="sha1")],
        )
        outcomes = await self.engine.preview(changeset)

        self.assertEqual(outcomes[0].status, "success")
        self.assertEqual(outcomes[0].slug, "hello")
        self.assertIsNone(await self.engine.get_entity(POST, "hello"))
        self.assertEqual(await self.engine.ledger_entries(), [])


if __name__ == "__main__":
    unittest.main()
