"""Decode fetched content files into validated, kind-tagged documents."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import pydantic
import yaml

from hexcms.content_paths import ContentKind, kind_for_path, normalize_content_path, slug_from_path, slugify
from hexcms.errors import MalformedDocument, ValidationError

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)", re.DOTALL)


@dataclass
class DecodedDocument:
    path: str
    kind: ContentKind
    slug: str
    metadata: pydantic.BaseModel
    body: str
    # label slug -> display name, in declaration order
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def author_slug(self) -> str:
        return slugify(str(getattr(self.metadata, "author", "") or ""))


def _extract_frontmatter(path: str, text: str) -> tuple[dict[str, Any], str]:
    match = _FRONTMATTER_RE.match(text)
    if not match:
        raise MalformedDocument(f"{path} has no front-matter block", path=path)
    try:
        fm = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise MalformedDocument(f"{path} front-matter is not valid YAML: {exc}", path=path) from exc
    if not isinstance(fm, dict):
        raise MalformedDocument(f"{path} front-matter is not a mapping", path=path)
    return fm, match.group(2)


def _violation_from_error(error: dict[str, Any]) -> dict[str, Any]:
    loc = ".".join(str(part) for part in error.get("loc") or ())
    return {
        "field": loc,
        "message": str(error.get("msg") or "invalid value"),
        "type": str(error.get("type") or ""),
    }


def _labels_from(metadata: pydantic.BaseModel) -> dict[str, str]:
    labels: dict[str, str] = {}
    for raw in getattr(metadata, "tags", None) or []:
        name = str(raw).strip()
        label_slug = slugify(name)
        if label_slug and label_slug not in labels:
            labels[label_slug] = name
    return labels


def decode_document(path: str, raw: bytes, *, content_root: str | None = None) -> DecodedDocument:
    """Split, validate and identify one content file.

    Raises ``MalformedDocument`` when the header block is missing or is not
    a YAML mapping, and ``ValidationError`` listing every schema violation
    (including an empty slug) when the mapping does not fit the kind.
    """
    normalized = normalize_content_path(path)
    kind = kind_for_path(normalized, content_root)
    if kind is None:
        raise MalformedDocument(f"{path} is not under a recognized content root", path=path)

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedDocument(f"{path} is not valid UTF-8", path=normalized) from exc
    text = text.lstrip("\ufeff").replace("\r\n", "\n")

    fm, body = _extract_frontmatter(normalized, text)
    fm = {str(key): value for key, value in fm.items()}

    violations: list[dict[str, Any]] = []
    metadata: pydantic.BaseModel | None = None
    try:
        metadata = kind.schema.model_validate(fm)
    except pydantic.ValidationError as exc:
        violations.extend(_violation_from_error(error) for error in exc.errors())

    explicit_slug = fm.get("slug")
    if explicit_slug is not None and str(explicit_slug).strip():
        slug = slugify(str(explicit_slug))
    else:
        slug = slug_from_path(normalized, kind)
    if not slug:
        violations.append({"field": "slug", "message": "slug resolves to an empty string", "type": "value_error"})

    if violations or metadata is None:
        raise ValidationError(normalized, violations)

    return DecodedDocument(
        path=normalized,
        kind=kind,
        slug=slug,
        metadata=metadata,
        body=body.strip("\n"),
        labels=_labels_from(metadata) if kind.has_labels else {},
    )
