#!/usr/bin/env python3
"""Manually sync content files from the content repository into the store.

Usage:
  python -m hexcms.scripts.manual_sync --all
  python -m hexcms.scripts.manual_sync --dry-run --all
  python -m hexcms.scripts.manual_sync --file content/posts/my-post.md
  python -m hexcms.scripts.manual_sync --type posts --revision 1a2b3c4
"""
from __future__ import annotations

import argparse
import asyncio
import logging

from hexcms import config
from hexcms.changeset import changeset_from_entries
from hexcms.content_paths import KINDS, content_roots
from hexcms.content_source import build_repository_client
from hexcms.db import connection, migrations
from hexcms.db.sync_engine import SyncEngine, SyncSettings
from hexcms.errors import SyncError
from hexcms.fetcher import DocumentFetcher
from hexcms.models import EntryOutcome

_TYPE_CHOICES = [kind.directory for kind in KINDS]


def _print_outcome(outcome: EntryOutcome, verbose: bool) -> None:
    marker = {"success": "ok  ", "skipped": "skip", "error": "FAIL"}.get(outcome.status, outcome.status)
    line = f"  [{marker}] {outcome.operation:<6} {outcome.path}"
    if outcome.slug:
        line += f" -> {outcome.kind}:{outcome.slug}"
    if outcome.reason and outcome.status != "success":
        line += f" ({outcome.reason})"
    print(line)
    if outcome.error and (verbose or outcome.status == "error"):
        print(f"         {outcome.error.get('kind')}: {outcome.error.get('message')}")
        for violation in outcome.error.get("violations") or []:
            print(f"           - {violation.get('field')}: {violation.get('message')}")


async def _select_paths(fetcher: DocumentFetcher, settings: SyncSettings, args: argparse.Namespace, revision: str) -> list[str]:
    if args.file:
        return [args.file]
    roots = content_roots(settings.content_root)
    if args.type:
        roots = [root for root, kind in zip(roots, KINDS) if kind.directory == args.type]
    return await fetcher.list_files(revision, roots)


async def _run(args: argparse.Namespace) -> int:
    settings = SyncSettings.from_config()
    fetcher = DocumentFetcher(build_repository_client())

    print(f"Source: {fetcher.source_name} (content root {settings.content_root!r})")
    print(f"Dry run: {'yes' if args.dry_run else 'no'}")

    try:
        if args.revision:
            revision, revision_at = args.revision, ""
        else:
            revision, revision_at = await fetcher.resolve_revision(settings.default_branch)
        paths = await _select_paths(fetcher, settings, args, revision)
    except SyncError as exc:
        print(f"Could not read the content repository: {exc}")
        return 1

    if args.verbose:
        print(f"Revision: {revision} ({revision_at or 'timestamp unknown'})")

    try:
        changeset = changeset_from_entries(
            [(path, "upsert") for path in paths],
            revision,
            revision_at=revision_at,
            content_root=settings.content_root,
            force=args.all,
            trigger="cli",
        )
    except ValueError as exc:
        print(f"Invalid entry: {exc}")
        return 1

    if not changeset.entries:
        print("No content files to sync.")
        return 0
    print(f"Syncing {len(changeset.entries)} file(s)")

    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        engine = SyncEngine(db, fetcher, settings)
        if args.dry_run:
            outcomes = await engine.preview(changeset)
            failed = sum(1 for o in outcomes if o.status == "error")
        else:
            result = await engine.sync_changeset(changeset, wait=True)
            outcomes = result.outcomes
            failed = result.failed
            print(
                f"Done in {result.durationMs}ms: {result.succeeded} succeeded, "
                f"{result.failed} failed, {result.skipped} skipped"
            )
        for outcome in outcomes:
            if args.verbose or outcome.status != "success":
                _print_outcome(outcome, args.verbose)
    finally:
        await connection.close_connection()

    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync content files into the heXcms store")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--all", action="store_true", help="Sync every content file (full resync)")
    target.add_argument("--file", default="", help="Sync one file, e.g. content/posts/hello-world.md")
    target.add_argument("--type", choices=_TYPE_CHOICES, help="Sync every file of one content type")
    parser.add_argument("--revision", default="", help=f"Revision to read (default: head of {config.GITHUB_BRANCH})")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and validate without writing to the store")
    parser.add_argument("--verbose", action="store_true", help="Show per-file detail")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
