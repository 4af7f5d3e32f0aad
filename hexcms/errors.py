"""Sync failure taxonomy.

Every per-entry failure raised inside the pipeline is a ``SyncError`` whose
``kind`` is written verbatim to the ledger ``error_kind`` column.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for per-entry sync failures."""

    kind = "internal"

    def __init__(self, message: str, *, path: str = ""):
        super().__init__(message)
        self.message = message
        self.path = path

    def detail(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class TransientFetchFailure(SyncError):
    kind = "transient_fetch_failure"

    def __init__(self, message: str, *, path: str = "", attempts: int = 0):
        super().__init__(message, path=path)
        self.attempts = attempts

    def detail(self) -> dict:
        return {**super().detail(), "attempts": self.attempts}


class FetchRejected(SyncError):
    """The repository refused the request for a non-transient reason (auth, bad request)."""

    kind = "fetch_rejected"


class DocumentNotFound(SyncError):
    """File absent at the requested revision. Treated as a delete."""

    kind = "not_found"


class MalformedDocument(SyncError):
    kind = "malformed_document"


class ValidationError(SyncError):
    """Front-matter failed its kind schema. Carries every violation, not just the first."""

    kind = "validation_error"

    def __init__(self, path: str, violations: list[dict]):
        fields = ", ".join(str(v.get("field") or "<root>") for v in violations)
        super().__init__(f"Invalid front-matter in {path}: {fields}", path=path)
        self.violations = violations

    def detail(self) -> dict:
        return {**super().detail(), "violations": self.violations}


class DanglingReference(SyncError):
    kind = "dangling_reference"

    def __init__(self, message: str, *, path: str = "", field: str = "", target: str = ""):
        super().__init__(message, path=path)
        self.field = field
        self.target = target

    def detail(self) -> dict:
        return {**super().detail(), "field": self.field, "target": self.target}


class RenderFailure(SyncError):
    kind = "render_failure"


class StoreWriteConflict(SyncError):
    kind = "store_write_conflict"


class StaleRevision(SyncError):
    """Incoming revision is older than the stored one. Logged as skipped, never as an error."""

    kind = "stale"

    def __init__(self, message: str, *, path: str = "", stored_revision: str = ""):
        super().__init__(message, path=path)
        self.stored_revision = stored_revision
