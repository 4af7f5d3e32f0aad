import asyncio
import unittest

from hexcms.content_paths import AUTHOR, POST
from hexcms.db.connection import open_sqlite
from hexcms.db.migrations import run_migrations
from hexcms.db.reconciler import DeletionHandler, Reconciler
from hexcms.db.repositories import SqliteEntityRepository, SqliteLabelRepository
from hexcms.db.sqlite_migrations import fts5_available
from hexcms.errors import DanglingReference, StaleRevision
from hexcms.parsers.documents import decode_document
from hexcms.parsers.markdown import render_body

AUTHOR_SOURCE = b"---\nname: Jane Doe\nbio: Writes things.\n---\n"


def _post_source(title: str = "Hello", tags: str = "[alpha, beta]", slug: str = "", body: str = "Hello **world**.") -> bytes:
    slug_line = f"slug: {slug}\n" if slug else ""
    return (
        f"---\ntitle: {title}\nauthor: jane-doe\npublishedAt: 2024-01-15\n"
        f"tags: {tags}\nstatus: published\n{slug_line}---\n\n{body}\n"
    ).encode()


class ReconcilerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await open_sqlite(":memory:")
        await run_migrations(self.db)
        self.reconciler = Reconciler(self.db)
        self.deletions = DeletionHandler(self.db)
        self.entities = SqliteEntityRepository(self.db)
        self.labels = SqliteLabelRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _apply(self, path: str, raw: bytes, *, revision: str = "r1", revision_at: str = "2024-01-15T10:00:00Z", force: bool = False):
        doc = decode_document(path, raw, content_root="content")
        rendered = render_body(doc.body) if doc.kind.has_body else None
        return await self.reconciler.reconcile(doc, rendered, revision=revision, revision_at=revision_at, force=force)

    async def _apply_author(self) -> None:
        await self._apply("content/authors/jane-doe.md", AUTHOR_SOURCE, revision="r0", revision_at="2024-01-01T00:00:00Z")

    async def _post_tag_slugs(self, post_id: str) -> list[str]:
        return [row["slug"] for row in await self.labels.list_post_tags(post_id)]


class ReconcileTests(ReconcilerTestCase):
    async def test_post_upsert_writes_entity_and_labels(self) -> None:
        await self._apply_author()
        result = await self._apply("content/posts/2024-01-15-hello.md", _post_source())

        self.assertTrue(result.created)
        self.assertEqual(result.slug, "hello")
        self.assertEqual(result.labels.added, ["alpha", "beta"])

        post = await self.entities.get_by_slug(POST, "hello")
        author = await self.entities.get_by_slug(AUTHOR, "jane-doe")
        self.assertEqual(post["author_id"], author["id"])
        self.assertEqual(post["source_path"], "content/posts/2024-01-15-hello.md")
        self.assertEqual(post["revision"], "r1")
        self.assertEqual(post["revision_at"], "2024-01-15T10:00:00Z")
        self.assertEqual(post["published_at"], "2024-01-15")
        self.assertIn("<strong>world</strong>", post["content_html"])
        self.assertEqual(post["excerpt"], "Hello world.")
        self.assertEqual(post["reading_time"], 1)
        self.assertEqual(await self._post_tag_slugs(post["id"]), ["alpha", "beta"])
        self.assertEqual(author["bio"], "Writes things.")

    async def test_reapplying_the_same_revision_is_idempotent(self) -> None:
        await self._apply_author()
        first = await self._apply("content/posts/2024-01-15-hello.md", _post_source())
        before = await self.entities.get_by_slug(POST, "hello")

        second = await self._apply("content/posts/2024-01-15-hello.md", _post_source())
        after = await self.entities.get_by_slug(POST, "hello")

        self.assertFalse(second.created)
        self.assertEqual(first.entity_id, second.entity_id)
        self.assertEqual(second.labels.added, [])
        self.assertEqual(second.labels.removed, [])
        self.assertEqual(second.labels.unchanged, ["alpha", "beta"])
        before.pop("updated_at")
        after.pop("updated_at")
        self.assertEqual(before, after)
        self.assertEqual(len(await self.entities.list_all(POST)), 1)

    async def test_older_revision_is_rejected_as_stale(self) -> None:
        await self._apply_author()
        await self._apply(
            "content/posts/2024-01-15-hello.md",
            _post_source(title="Newer"),
            revision="r2",
            revision_at="2024-01-16T00:00:00Z",
        )

        with self.assertRaises(StaleRevision):
            await self._apply(
                "content/posts/2024-01-15-hello.md",
                _post_source(title="Older", tags="[gamma]"),
                revision="r1",
                revision_at="2024-01-15T00:00:00Z",
            )

        post = await self.entities.get_by_slug(POST, "hello")
        self.assertEqual(post["title"], "Newer")
        self.assertEqual(post["revision"], "r2")
        self.assertEqual(await self._post_tag_slugs(post["id"]), ["alpha", "beta"])
        self.assertIsNone(await self.labels.get_by_slug("gamma"))

    async def test_force_overrides_the_revision_guard(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source(title="Newer"), revision_at="2024-01-16T00:00:00Z")
        await self._apply(
            "content/posts/2024-01-15-hello.md",
            _post_source(title="Reloaded"),
            revision="r9",
            revision_at="2024-01-15T00:00:00Z",
            force=True,
        )
        post = await self.entities.get_by_slug(POST, "hello")
        self.assertEqual(post["title"], "Reloaded")
        self.assertEqual(post["revision"], "r9")

    async def test_unknown_author_is_a_dangling_reference(self) -> None:
        with self.assertRaises(DanglingReference) as ctx:
            await self._apply("content/posts/2024-01-15-hello.md", _post_source())

        self.assertEqual(ctx.exception.target, "jane-doe")
        self.assertIsNone(await self.entities.get_by_slug(POST, "hello"))
        self.assertIsNone(await self.labels.get_by_slug("alpha"))

    async def test_label_diff_touches_only_changed_associations(self) -> None:
        await self._apply_author()
        result = await self._apply("content/posts/2024-01-15-hello.md", _post_source(tags="[alpha, beta]"))
        beta = await self.labels.get_by_slug("beta")
        await self.db.execute(
            "UPDATE post_tags SET created_at = ? WHERE post_id = ? AND tag_id = ?",
            ("2000-01-01T00:00:00Z", result.entity_id, beta["id"]),
        )
        await self.db.commit()

        diff = (await self._apply("content/posts/2024-01-15-hello.md", _post_source(tags="[beta, gamma]"))).labels

        self.assertEqual(diff.added, ["gamma"])
        self.assertEqual(diff.removed, ["alpha"])
        self.assertEqual(diff.unchanged, ["beta"])
        rows = {row["slug"]: row for row in await self.labels.list_post_tags(result.entity_id)}
        self.assertEqual(sorted(rows), ["beta", "gamma"])
        self.assertEqual(rows["beta"]["created_at"], "2000-01-01T00:00:00Z")
        # Labels are never garbage-collected.
        self.assertIsNotNone(await self.labels.get_by_slug("alpha"))

    async def test_changing_explicit_slug_drops_the_previous_row(self) -> None:
        await self._apply_author()
        path = "content/posts/2024-01-15-hello.md"
        await self._apply(path, _post_source())

        result = await self._apply(path, _post_source(slug="renamed"), revision="r2", revision_at="2024-01-16T00:00:00Z")

        self.assertTrue(result.created)
        self.assertIsNone(await self.entities.get_by_slug(POST, "hello"))
        self.assertEqual([row["slug"] for row in await self.entities.list_by_source_path(POST, path)], ["renamed"])

        with self.assertRaises(StaleRevision):
            await self._apply(path, _post_source(), revision="r1", revision_at="2024-01-15T10:00:00Z")
        self.assertIsNone(await self.entities.get_by_slug(POST, "hello"))

    async def test_concurrent_reconciles_share_new_labels(self) -> None:
        await self._apply_author()

        await asyncio.gather(
            self._apply("content/posts/one.md", _post_source(title="One", tags="[fresh, one]")),
            self._apply("content/posts/two.md", _post_source(title="Two", tags="[fresh, two]")),
        )

        async with self.db.execute("SELECT COUNT(*) FROM tags WHERE slug = 'fresh'") as cur:
            self.assertEqual((await cur.fetchone())[0], 1)
        for slug in ("one", "two"):
            post = await self.entities.get_by_slug(POST, slug)
            self.assertIn("fresh", await self._post_tag_slugs(post["id"]))

    async def test_full_text_index_follows_upserts(self) -> None:
        if not await fts5_available(self.db):
            self.skipTest("SQLite built without FTS5")
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source(body="Quantum teleportation explained."))
        self.assertEqual([r["slug"] for r in await self.entities.search_posts("teleportation")], ["hello"])

        await self._apply("content/posts/2024-01-15-hello.md", _post_source(body="Now about gardening."))
        self.assertEqual(await self.entities.search_posts("teleportation"), [])
        self.assertEqual([r["slug"] for r in await self.entities.search_posts("gardening")], ["hello"])


class DeletionTests(ReconcilerTestCase):
    async def test_delete_cascades_associations_but_keeps_labels(self) -> None:
        await self._apply_author()
        result = await self._apply("content/posts/2024-01-15-hello.md", _post_source())

        deleted = await self.deletions.delete_path(POST, "content/posts/2024-01-15-hello.md", revision_at="2024-01-16T00:00:00Z")

        self.assertEqual(deleted.status, "deleted")
        self.assertEqual(deleted.entity_id, result.entity_id)
        self.assertIsNone(await self.entities.get_by_slug(POST, "hello"))
        self.assertEqual(await self.labels.list_post_tags(result.entity_id), [])
        self.assertIsNotNone(await self.labels.get_by_slug("alpha"))

    async def test_repeated_delete_is_not_found(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source())

        first = await self.deletions.delete(POST, "hello")
        second = await self.deletions.delete(POST, "hello")

        self.assertEqual(first.status, "deleted")
        self.assertEqual(second.status, "not_found")

    async def test_delete_older_than_stored_revision_is_stale(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source(), revision_at="2024-01-16T00:00:00Z")

        with self.assertRaises(StaleRevision):
            await self.deletions.delete(POST, "hello", revision_at="2024-01-15T00:00:00Z")
        self.assertIsNotNone(await self.entities.get_by_slug(POST, "hello"))

    async def test_deletion_tombstone_rejects_older_upserts(self) -> None:
        await self._apply_author()
        path = "content/posts/2024-01-15-hello.md"
        await self._apply(path, _post_source(), revision_at="2024-01-15T00:00:00Z")
        await self.deletions.delete_path(POST, path, revision_at="2024-01-17T00:00:00Z")

        with self.assertRaises(StaleRevision):
            await self._apply(path, _post_source(), revision="r2", revision_at="2024-01-16T00:00:00Z")
        self.assertIsNone(await self.entities.get_by_slug(POST, "hello"))

        forced = await self._apply(path, _post_source(), revision="r2", revision_at="2024-01-16T00:00:00Z", force=True)
        self.assertTrue(forced.created)
        self.assertIsNone(await self.entities.get_tombstone(POST, path))

    async def test_delete_before_add_still_leaves_a_tombstone(self) -> None:
        await self._apply_author()
        path = "content/posts/2024-01-15-hello.md"

        missing = await self.deletions.delete_path(POST, path, revision_at="2024-01-17T00:00:00Z")

        self.assertEqual(missing.status, "not_found")
        self.assertEqual((await self.entities.get_tombstone(POST, path))["revision_at"], "2024-01-17T00:00:00Z")
        with self.assertRaises(StaleRevision):
            await self._apply(path, _post_source(), revision_at="2024-01-16T00:00:00Z")
        newer = await self._apply(path, _post_source(), revision="r3", revision_at="2024-01-18T00:00:00Z")
        self.assertTrue(newer.created)

    async def test_delete_path_resolves_explicit_slug(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source(slug="custom-slug"))

        deleted = await self.deletions.delete_path(POST, "content/posts/2024-01-15-hello.md")

        self.assertEqual(deleted.status, "deleted")
        self.assertEqual(deleted.slug, "custom-slug")

    async def test_delete_path_leaves_rows_owned_by_other_files(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/renamed.md", _post_source(slug="hello"))

        deleted = await self.deletions.delete_path(POST, "content/posts/2024-01-15-hello.md")

        self.assertEqual(deleted.status, "not_found")
        self.assertIsNotNone(await self.entities.get_by_slug(POST, "hello"))

    async def test_deleting_an_author_detaches_posts(self) -> None:
        await self._apply_author()
        await self._apply("content/posts/2024-01-15-hello.md", _post_source())

        await self.deletions.delete(AUTHOR, "jane-doe")

        post = await self.entities.get_by_slug(POST, "hello")
        self.assertIsNone(post["author_id"])


if __name__ == "__main__":
    unittest.main()
