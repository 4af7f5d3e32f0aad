"""Observability helpers."""

from hexcms.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_changeset,
    record_fetch_retry,
    record_sync_entry,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_changeset",
    "record_fetch_retry",
    "record_sync_entry",
]
