"""Clients that read content files from the source repository at a revision.

Clients are synchronous; ``hexcms.fetcher`` runs them in worker threads and
owns retry and concurrency policy.
"""
from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path
from typing import Iterable, Protocol
from urllib.parse import quote

import requests

from hexcms import config
from hexcms.date_utils import normalize_revision_at
from hexcms.errors import DocumentNotFound, FetchRejected, TransientFetchFailure

logger = logging.getLogger("hexcms.fetch")

_TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
_UNKNOWN_REF_MARKER = "No commit found"


class DocumentRepositoryClient(Protocol):
    def get_file_at(self, path: str, revision: str) -> bytes: ...

    def list_files(self, revision: str, roots: Iterable[str]) -> list[str]: ...

    def resolve_revision(self, ref: str) -> tuple[str, str]: ...


def _under_roots(path: str, roots: list[str]) -> bool:
    return any(path.startswith(f"{root}/") if root else True for root in roots)


class GitHubContentsClient:
    """GitHub REST client for file contents, trees and commit lookup."""

    def __init__(
        self,
        owner: str,
        repo: str,
        *,
        token: str = "",
        api_url: str = "https://api.github.com",
        timeout: tuple[float, float] = (10, 30),
    ):
        if not owner or not repo:
            raise ValueError("GitHub owner and repository name are required")
        self.owner = owner
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._thread_local = threading.local()

    @classmethod
    def from_config(cls) -> "GitHubContentsClient":
        return cls(
            config.GITHUB_REPO_OWNER,
            config.GITHUB_REPO_NAME,
            token=config.GITHUB_TOKEN,
            api_url=config.GITHUB_API_URL,
        )

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.headers["Accept"] = "application/vnd.github+json"
            session.headers["X-GitHub-Api-Version"] = "2022-11-28"
            if self.token:
                session.headers["Authorization"] = f"Bearer {self.token}"
            self._thread_local.session = session
        return self._thread_local.session

    def _repo_url(self, suffix: str) -> str:
        return f"{self.api_url}/repos/{quote(self.owner)}/{quote(self.repo)}/{suffix}"

    def _get(self, url: str, *, path: str, params: dict | None = None, accept: str | None = None) -> requests.Response:
        headers = {"Accept": accept} if accept else None
        try:
            response = self._get_session().get(url, params=params, headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientFetchFailure(f"GitHub request failed: {exc}", path=path) from exc

        if response.status_code == 404:
            # GitHub also answers 404 for a commit it cannot see yet.
            if _UNKNOWN_REF_MARKER in (response.text or ""):
                raise TransientFetchFailure(f"GitHub does not know the requested revision yet: {response.text[:200]}", path=path)
            raise DocumentNotFound(f"{path} not found", path=path)
        if response.status_code in _TRANSIENT_STATUS_CODES:
            raise TransientFetchFailure(f"GitHub returned {response.status_code}", path=path)
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            raise TransientFetchFailure("GitHub rate limit exhausted", path=path)
        if response.status_code >= 400:
            raise FetchRejected(f"GitHub returned {response.status_code}: {response.text[:200]}", path=path)
        return response

    def get_file_at(self, path: str, revision: str) -> bytes:
        url = self._repo_url(f"contents/{quote(path)}")
        response = self._get(url, path=path, params={"ref": revision}, accept="application/vnd.github.raw")
        return response.content

    def list_files(self, revision: str, roots: Iterable[str]) -> list[str]:
        root_list = [str(root).strip("/") for root in roots]
        response = self._get(
            self._repo_url(f"git/trees/{quote(revision)}"),
            path="",
            params={"recursive": "1"},
        )
        payload = response.json()
        if payload.get("truncated"):
            logger.warning("GitHub tree listing for %s was truncated; resync may be incomplete", revision)
        files = [
            str(item.get("path") or "")
            for item in payload.get("tree", [])
            if item.get("type") == "blob"
        ]
        return sorted(path for path in files if path and _under_roots(path, root_list))

    def resolve_revision(self, ref: str) -> tuple[str, str]:
        response = self._get(self._repo_url(f"commits/{quote(ref)}"), path="")
        payload = response.json()
        commit = payload.get("commit") or {}
        committer = commit.get("committer") or {}
        return str(payload.get("sha") or ""), normalize_revision_at(committer.get("date"))


class LocalGitCheckoutClient:
    """Reads files from a local clone with ``git show``."""

    def __init__(self, checkout_dir: str | Path):
        self.checkout_dir = Path(checkout_dir)

    @classmethod
    def from_config(cls) -> "LocalGitCheckoutClient":
        if not config.CONTENT_CHECKOUT_DIR:
            raise ValueError("HEXCMS_CONTENT_CHECKOUT_DIR is required for the local content source")
        return cls(config.CONTENT_CHECKOUT_DIR)

    def _git(self, *args: str, path: str = "") -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["git", "-C", str(self.checkout_dir), *args],
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise TransientFetchFailure(f"git unavailable: {exc}", path=path) from exc

    def get_file_at(self, path: str, revision: str) -> bytes:
        result = self._git("show", f"{revision}:{path}", path=path)
        if result.returncode == 0:
            return result.stdout
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        lowered = stderr.lower()
        if "does not exist" in lowered or "exists on disk, but not in" in lowered:
            raise DocumentNotFound(f"{path} not found at {revision}", path=path)
        # An unknown revision usually means the mirror has not fetched it yet.
        raise TransientFetchFailure(f"git show failed: {stderr}", path=path)

    def list_files(self, revision: str, roots: Iterable[str]) -> list[str]:
        root_list = [str(root).strip("/") for root in roots]
        result = self._git("ls-tree", "-r", "--name-only", revision, "--", *[r for r in root_list if r])
        if result.returncode != 0:
            raise TransientFetchFailure(result.stderr.decode("utf-8", errors="replace").strip())
        lines = result.stdout.decode("utf-8", errors="replace").splitlines()
        return sorted(line.strip() for line in lines if line.strip() and _under_roots(line.strip(), root_list))

    def resolve_revision(self, ref: str) -> tuple[str, str]:
        result = self._git("log", "-1", "--format=%H%n%cI", ref)
        if result.returncode != 0:
            raise TransientFetchFailure(result.stderr.decode("utf-8", errors="replace").strip())
        lines = result.stdout.decode("utf-8").strip().splitlines()
        sha = lines[0].strip() if lines else ""
        committed_at = normalize_revision_at(lines[1]) if len(lines) > 1 else ""
        return sha, committed_at


def build_repository_client(source: str | None = None) -> DocumentRepositoryClient:
    kind = (source or config.CONTENT_SOURCE).strip().lower()
    if kind == "local":
        return LocalGitCheckoutClient.from_config()
    if kind == "github":
        return GitHubContentsClient.from_config()
    raise ValueError(f"Unknown content source: {kind!r}")
