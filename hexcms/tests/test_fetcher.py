import asyncio
import time
import unittest
from unittest.mock import MagicMock, patch

import requests

from hexcms.content_source import GitHubContentsClient
from hexcms.errors import DocumentNotFound, FetchRejected, TransientFetchFailure
from hexcms.fetcher import DocumentFetcher


class _FlakyClient:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def get_file_at(self, path: str, revision: str) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.calls <= self.failures:
            raise TransientFetchFailure("503", path=path)
        return f"{path}@{revision}".encode()

    def list_files(self, revision, roots):
        return []

    def resolve_revision(self, ref):
        return "sha", ""


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class DocumentFetcherTests(unittest.IsolatedAsyncioTestCase):
    async def test_backoff_doubles_and_caps(self) -> None:
        client = _FlakyClient(failures=4)
        sleep = _SleepRecorder()
        fetcher = DocumentFetcher(client, max_attempts=5, base_delay=0.5, max_delay=3.0, sleep=sleep)

        await fetcher.fetch("content/posts/a.md", "r1")

        self.assertEqual(sleep.delays, [0.5, 1.0, 2.0, 3.0])

    async def test_transient_failures_are_retried(self) -> None:
        client = _FlakyClient(failures=2)
        sleep = _SleepRecorder()
        fetcher = DocumentFetcher(client, max_attempts=4, base_delay=0.5, max_delay=8.0, sleep=sleep)

        raw = await fetcher.fetch("content/posts/a.md", "r1")

        self.assertEqual(raw, b"content/posts/a.md@r1")
        self.assertEqual(client.calls, 3)
        self.assertEqual(sleep.delays, [0.5, 1.0])

    async def test_gives_up_after_max_attempts(self) -> None:
        client = _FlakyClient(failures=10)
        sleep = _SleepRecorder()
        fetcher = DocumentFetcher(client, max_attempts=3, base_delay=0.1, max_delay=1.0, sleep=sleep)

        with self.assertRaises(TransientFetchFailure) as ctx:
            await fetcher.fetch("content/posts/a.md", "r1")

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(client.calls, 3)
        self.assertEqual(len(sleep.delays), 2)

    async def test_not_found_is_not_retried(self) -> None:
        client = _FlakyClient(failures=0, error=DocumentNotFound("gone"))
        sleep = _SleepRecorder()
        fetcher = DocumentFetcher(client, max_attempts=4, sleep=sleep)

        with self.assertRaises(DocumentNotFound):
            await fetcher.fetch("content/posts/a.md", "r1")
        self.assertEqual(client.calls, 1)
        self.assertEqual(sleep.delays, [])

    async def test_semaphore_bounds_concurrency(self) -> None:
        active = 0
        peak = 0

        class _SlowClient(_FlakyClient):
            def get_file_at(self, path, revision):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                try:
                    time.sleep(0.01)
                    return b"ok"
                finally:
                    active -= 1

        fetcher = DocumentFetcher(_SlowClient(0), max_attempts=1)
        semaphore = asyncio.Semaphore(2)
        await asyncio.gather(*(fetcher.fetch(f"content/posts/{i}.md", "r", semaphore) for i in range(6)))
        self.assertLessEqual(peak, 2)


def _response(status: int, headers: dict | None = None, content: bytes = b"", payload: dict | None = None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.content = content
    response.text = content.decode("utf-8", errors="replace")
    response.json.return_value = payload or {}
    return response


class GitHubContentsClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = GitHubContentsClient("acme", "content", token="t0ken")
        self.session = MagicMock()
        self.client._thread_local.session = self.session

    def test_raw_contents_are_requested_at_revision(self) -> None:
        self.session.get.return_value = _response(200, content=b"---\ntitle: x\n---\n")

        raw = self.client.get_file_at("content/posts/a b.md", "abc123")

        self.assertEqual(raw, b"---\ntitle: x\n---\n")
        url = self.session.get.call_args.args[0]
        kwargs = self.session.get.call_args.kwargs
        self.assertEqual(url, "https://api.github.com/repos/acme/content/contents/content/posts/a%20b.md")
        self.assertEqual(kwargs["params"], {"ref": "abc123"})
        self.assertEqual(kwargs["headers"], {"Accept": "application/vnd.github.raw"})

    def test_status_codes_map_to_failure_kinds(self) -> None:
        cases = [
            (_response(404), DocumentNotFound),
            (_response(503), TransientFetchFailure),
            (_response(429), TransientFetchFailure),
            (_response(403, headers={"X-RateLimit-Remaining": "0"}), TransientFetchFailure),
            (_response(403), FetchRejected),
            (_response(401), FetchRejected),
        ]
        for response, expected in cases:
            with self.subTest(status=response.status_code, expected=expected.__name__):
                self.session.get.return_value = response
                with self.assertRaises(expected):
                    self.client.get_file_at("content/posts/a.md", "abc")

    def test_unknown_ref_is_transient_not_missing(self) -> None:
        self.session.get.return_value = _response(
            404,
            content=b'{"message": "No commit found for the ref abc123", "documentation_url": "https://docs.github.com"}',
        )
        with self.assertRaises(TransientFetchFailure):
            self.client.get_file_at("content/posts/a.md", "abc123")

        self.session.get.return_value = _response(404, content=b'{"message": "Not Found"}')
        with self.assertRaises(DocumentNotFound):
            self.client.get_file_at("content/posts/a.md", "abc123")

    def test_connection_errors_are_transient(self) -> None:
        self.session.get.side_effect = requests.ConnectionError("reset")
        with self.assertRaises(TransientFetchFailure):
            self.client.get_file_at("content/posts/a.md", "abc")

    def test_list_files_filters_blobs_under_roots(self) -> None:
        self.session.get.return_value = _response(
            200,
            payload={
                "tree": [
                    {"path": "content/posts", "type": "tree"},
                    {"path": "content/posts/b.md", "type": "blob"},
                    {"path": "content/posts/a.md", "type": "blob"},
                    {"path": "README.md", "type": "blob"},
                ]
            },
        )
        files = self.client.list_files("abc", ["content/posts", "content/pages"])
        self.assertEqual(files, ["content/posts/a.md", "content/posts/b.md"])

    def test_resolve_revision_normalizes_commit_date(self) -> None:
        self.session.get.return_value = _response(
            200,
            payload={"sha": "abc", "commit": {"committer": {"date": "2024-01-15T10:30:00+01:00"}}},
        )
        self.assertEqual(self.client.resolve_revision("main"), ("abc", "2024-01-15T09:30:00Z"))

    def test_requires_owner_and_repo(self) -> None:
        with patch("hexcms.content_source.config") as cfg:
            cfg.GITHUB_REPO_OWNER = ""
            cfg.GITHUB_REPO_NAME = "content"
            cfg.GITHUB_TOKEN = ""
            cfg.GITHUB_API_URL = "https://api.github.com"
            with self.assertRaises(ValueError):
                GitHubContentsClient.from_config()


if __name__ == "__main__":
    unittest.main()
