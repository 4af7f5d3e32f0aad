"""Pydantic models for content front-matter, changesets and sync results."""
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

ChangeOperation = Literal["upsert", "delete"]
EntryStatus = Literal["success", "error", "skipped"]

_DATE_PATTERN_HINT = "YYYY-MM-DD"
_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_URL_PATTERN = r"^https?://\S+$"


def _coerce_date(value: Any) -> Any:
    # YAML turns unquoted 2024-01-15 into a date and timestamps into datetimes.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        token = value.strip()
        if len(token) != len(_DATE_PATTERN_HINT):
            raise ValueError(f"expected a {_DATE_PATTERN_HINT} date")
        return token
    return value


def _coerce_string_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) if isinstance(item, (int, float)) and not isinstance(item, bool) else item for item in value]
    return value


ContentDate = Annotated[date, BeforeValidator(_coerce_date)]
StringList = Annotated[list[str], BeforeValidator(_coerce_string_list)]


# ── Front-matter schemas ────────────────────────────────────────────

class ContentFrontmatter(BaseModel):
    """Fields shared by every document kind."""

    model_config = ConfigDict(extra="allow")

    slug: Optional[str] = None


class PostFrontmatter(ContentFrontmatter):
    title: str = Field(min_length=1, max_length=500)
    excerpt: Optional[str] = Field(default=None, max_length=500)
    author: str = Field(min_length=1)  # author slug
    publishedAt: ContentDate
    updatedAt: Optional[ContentDate] = None
    featuredImage: Optional[str] = None
    featured: bool = False
    tags: StringList = Field(default_factory=list)
    status: Literal["draft", "published", "archived"] = "draft"
    metaDescription: Optional[str] = Field(default=None, max_length=160)
    metaKeywords: StringList = Field(default_factory=list)


class AuthorSocial(BaseModel):
    twitter: Optional[str] = None
    github: Optional[str] = None
    linkedin: Optional[str] = None
    website: Optional[str] = Field(default=None, pattern=_URL_PATTERN)
    youtube: Optional[str] = Field(default=None, pattern=_URL_PATTERN)
    instagram: Optional[str] = None


class AuthorFrontmatter(ContentFrontmatter):
    name: str = Field(min_length=1)
    email: Optional[str] = Field(default=None, pattern=_EMAIL_PATTERN)
    bio: Optional[str] = None
    avatar: Optional[str] = None
    social: Optional[AuthorSocial] = None


class PageFrontmatter(ContentFrontmatter):
    title: str = Field(min_length=1, max_length=500)
    status: Literal["draft", "published"] = "draft"
    publishedAt: Optional[ContentDate] = None
    updatedAt: Optional[ContentDate] = None
    metaDescription: Optional[str] = Field(default=None, max_length=160)
    template: Optional[str] = None


# ── Changesets ──────────────────────────────────────────────────────

class ChangeEntry(BaseModel):
    """One normalized (path, operation) pair at a target revision."""

    model_config = ConfigDict(frozen=True)

    path: str
    operation: ChangeOperation
    revision: str
    revisionAt: str = ""  # UTC ISO timestamp; empty when ordering is unknown


class ChangeSet(BaseModel):
    revision: str
    revisionAt: str = ""
    entries: list[ChangeEntry] = Field(default_factory=list)
    force: bool = False
    trigger: str = "webhook"


class PushCommit(BaseModel):
    id: str = ""
    timestamp: str = ""
    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)


class PushNotification(BaseModel):
    """Subset of a GitHub push event the extractor needs."""

    model_config = ConfigDict(extra="ignore")

    ref: str = ""
    before: str = ""
    after: str = ""
    head_commit: Optional[PushCommit] = None
    commits: list[PushCommit] = Field(default_factory=list)


# ── Results ─────────────────────────────────────────────────────────

class EntryOutcome(BaseModel):
    path: str
    operation: ChangeOperation
    kind: str = ""
    slug: str = ""
    status: EntryStatus
    reason: str = ""  # e.g. "stale", "deferred", "not_found"
    entityId: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    durationMs: int = 0


class SyncErrorItem(BaseModel):
    path: str
    kind: str
    error: str


class SyncResult(BaseModel):
    operationId: str = ""
    changesetId: str = ""
    revision: str = ""
    status: Literal["completed", "queued", "failed"] = "completed"
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SyncErrorItem] = Field(default_factory=list)
    outcomes: list[EntryOutcome] = Field(default_factory=list)
    durationMs: int = 0

    @property
    def success(self) -> bool:
        return self.failed == 0
