"""Async document fetcher with bounded retry over a repository client."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from hexcms import config
from hexcms.content_source import DocumentRepositoryClient
from hexcms.errors import TransientFetchFailure
from hexcms.observability import record_fetch_retry

logger = logging.getLogger("hexcms.fetch")


class DocumentFetcher:
    """Fetches raw file bytes at a revision.

    Only ``TransientFetchFailure`` is retried, with exponential backoff
    ``base_delay * 2**n`` capped at ``max_delay``. ``DocumentNotFound`` and
    any other ``SyncError`` propagate on the first attempt.
    """

    def __init__(
        self,
        client: DocumentRepositoryClient,
        *,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.max_attempts = max(1, max_attempts if max_attempts is not None else config.SYNC_FETCH_MAX_ATTEMPTS)
        self.base_delay = base_delay if base_delay is not None else config.SYNC_FETCH_BASE_DELAY_SECONDS
        self.max_delay = max_delay if max_delay is not None else config.SYNC_FETCH_MAX_DELAY_SECONDS
        self._sleep = sleep

    @property
    def source_name(self) -> str:
        return type(self.client).__name__

    async def fetch(self, path: str, revision: str, semaphore: asyncio.Semaphore | None = None) -> bytes:
        if semaphore is None:
            return await self._fetch_with_retry(path, revision)
        async with semaphore:
            return await self._fetch_with_retry(path, revision)

    async def _fetch_with_retry(self, path: str, revision: str) -> bytes:
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Transient fetch failure for %s@%s (attempt %d/%d), retrying in %.2fs: %s",
                path,
                revision[:12],
                retry_state.attempt_number,
                self.max_attempts,
                delay,
                exc,
            )
            record_fetch_retry(self.source_name)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientFetchFailure),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
                sleep=self._sleep,
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    raw = await asyncio.to_thread(self.client.get_file_at, path, revision)
        except TransientFetchFailure as exc:
            logger.error("Giving up on %s@%s after %d attempt(s): %s", path, revision[:12], self.max_attempts, exc)
            raise TransientFetchFailure(str(exc), path=path, attempts=self.max_attempts) from exc
        return raw

    async def list_files(self, revision: str, roots: list[str]) -> list[str]:
        return await asyncio.to_thread(self.client.list_files, revision, roots)

    async def resolve_revision(self, ref: str) -> tuple[str, str]:
        return await asyncio.to_thread(self.client.resolve_revision, ref)
