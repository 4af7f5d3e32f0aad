"""Content path normalization, kind dispatch and slug derivation.

Document kind is resolved once from the path prefix into a ``ContentKind``
that carries the front-matter schema, the storage table and the slug rules,
so nothing downstream has to inspect paths or types again.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from pydantic import BaseModel

from hexcms import config
from hexcms.models import AuthorFrontmatter, PageFrontmatter, PostFrontmatter

DOCUMENT_EXTENSION = ".md"

_DATE_PREFIX_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}-")
_NON_ALNUM_RUN_PATTERN = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ContentKind:
    name: str
    directory: str
    table: str
    schema: type[BaseModel]
    strips_date_prefix: bool = False
    has_labels: bool = False
    has_body: bool = True


POST = ContentKind(
    name="post",
    directory="posts",
    table="posts",
    schema=PostFrontmatter,
    strips_date_prefix=True,
    has_labels=True,
)
AUTHOR = ContentKind(
    name="author",
    directory="authors",
    table="authors",
    schema=AuthorFrontmatter,
    has_body=False,
)
PAGE = ContentKind(
    name="page",
    directory="pages",
    table="pages",
    schema=PageFrontmatter,
)

KINDS: tuple[ContentKind, ...] = (POST, AUTHOR, PAGE)


def normalize_content_path(raw: str) -> str:
    value = (raw or "").strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    value = value.lstrip("/")
    if not value or value.startswith("../") or "/../" in value:
        return ""
    return value


def kind_for_path(path: str, content_root: str | None = None) -> ContentKind | None:
    """Return the kind whose content root contains ``path``, or None."""
    root = (content_root if content_root is not None else config.CONTENT_ROOT).strip("/")
    normalized = normalize_content_path(path)
    if not normalized.endswith(DOCUMENT_EXTENSION):
        return None
    for kind in KINDS:
        prefix = f"{root}/{kind.directory}/" if root else f"{kind.directory}/"
        if normalized.startswith(prefix) and len(normalized) > len(prefix):
            return kind
    return None


def content_roots(content_root: str | None = None) -> list[str]:
    root = (content_root if content_root is not None else config.CONTENT_ROOT).strip("/")
    return [f"{root}/{kind.directory}" if root else kind.directory for kind in KINDS]


def slugify(text: str) -> str:
    """Lower-case ``text`` and collapse every non-alphanumeric run into one hyphen.

    >>> slugify("Hello World!")
    'hello-world'
    >>> slugify("TypeScript & React")
    'typescript-react'
    """
    return _NON_ALNUM_RUN_PATTERN.sub("-", (text or "").strip().lower()).strip("-")


def slug_from_path(path: str, kind: ContentKind) -> str:
    """Derive the canonical slug from a file name.

    >>> slug_from_path("content/posts/2024-01-15-hello-world.md", POST)
    'hello-world'
    >>> slug_from_path("content/pages/About_Us.md", PAGE)
    'about-us'
    """
    stem = PurePosixPath(normalize_content_path(path)).stem
    if kind.strips_date_prefix:
        stem = _DATE_PREFIX_PATTERN.sub("", stem)
    return slugify(stem)
