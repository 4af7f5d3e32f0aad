"""Markdown body rendering and derived metrics."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

import mistune

from hexcms import config
from hexcms.content_paths import slugify
from hexcms.errors import RenderFailure

EXCERPT_MAX_LENGTH = 160
TOC_MIN_LEVEL = 2
TOC_MAX_LEVEL = 3

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_HEADING_MARK_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(?<![\w*])[*_](.+?)[*_](?![\w*])")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


@dataclass
class TocItem:
    id: str
    level: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "level": self.level, "text": self.text}


@dataclass
class RenderedBody:
    html: str
    reading_time: int
    toc: list[TocItem] = field(default_factory=list)
    excerpt: str = ""
    word_count: int = 0


def strip_markdown(text: str) -> str:
    plain = _FENCED_CODE_RE.sub("", text or "")
    plain = _HEADING_MARK_RE.sub("", plain)
    plain = _IMAGE_RE.sub(r"\1", plain)
    plain = _LINK_RE.sub(r"\1", plain)
    plain = _BOLD_RE.sub(r"\1", plain)
    plain = _ITALIC_RE.sub(r"\1", plain)
    plain = _INLINE_CODE_RE.sub(r"\1", plain)
    plain = _HTML_TAG_RE.sub("", plain)
    return plain.strip()


def count_words(text: str) -> int:
    return len((text or "").split())


def reading_time_minutes(word_count: int, words_per_minute: int | None = None) -> int:
    """Whole minutes at ``words_per_minute``, never less than one."""
    wpm = max(1, words_per_minute or config.WORDS_PER_MINUTE)
    return max(1, math.ceil(word_count / wpm))


def extract_excerpt(body: str, max_length: int = EXCERPT_MAX_LENGTH) -> str:
    plain = strip_markdown(body)
    if not plain:
        return ""
    first_paragraph = " ".join(_PARAGRAPH_SPLIT_RE.split(plain, maxsplit=1)[0].split())
    if len(first_paragraph) <= max_length:
        return first_paragraph
    return first_paragraph[:max_length].strip() + "..."


def _heading_outline_hook(md: mistune.Markdown, state: Any) -> None:
    # Runs after block parsing and before inline rendering, so heading tokens
    # still carry their raw text and any id set here is emitted by the renderer.
    used: dict[str, int] = {}
    items: list[TocItem] = []
    for token in state.tokens:
        if token.get("type") != "heading":
            continue
        attrs = token.setdefault("attrs", {})
        level = int(attrs.get("level") or 0)
        if level < TOC_MIN_LEVEL or level > TOC_MAX_LEVEL:
            continue
        text = strip_markdown(str(token.get("text") or ""))
        base_id = slugify(text) or "section"
        seen = used.get(base_id, 0)
        used[base_id] = seen + 1
        heading_id = base_id if seen == 0 else f"{base_id}-{seen}"
        attrs["id"] = heading_id
        items.append(TocItem(id=heading_id, level=level, text=text))
    state.env["toc_items"] = items


def build_markdown() -> mistune.Markdown:
    md = mistune.create_markdown(
        escape=True,
        plugins=["table", "strikethrough", "task_lists", "url"],
    )
    md.before_render_hooks.append(_heading_outline_hook)
    return md


def render_body(body: str, *, words_per_minute: int | None = None) -> RenderedBody:
    """Render a Markdown body to HTML with reading time, outline and excerpt."""
    text = body or ""
    try:
        md = build_markdown()
        html, state = md.parse(text)
    except Exception as exc:
        raise RenderFailure(f"Markdown rendering failed: {exc}") from exc

    plain = strip_markdown(text)
    words = count_words(plain)
    return RenderedBody(
        html=str(html),
        reading_time=reading_time_minutes(words, words_per_minute),
        toc=list(state.env.get("toc_items") or []),
        excerpt=extract_excerpt(text),
        word_count=words,
    )
