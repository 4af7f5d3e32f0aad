"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def normalize_revision_at(value: Any) -> str:
    """Convert a commit timestamp into a lexically comparable UTC string.

    Revision ordering is a string comparison in both stores, so every
    timestamp is reduced to ``YYYY-MM-DDTHH:MM:SSZ``. Bare dates become
    midnight UTC. Unparseable input yields ``""`` (ordering unknown).
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if isinstance(value, date):
        return _format_datetime_utc(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return ""
        if _DATE_ONLY_RE.match(token):
            try:
                day = date.fromisoformat(token)
            except ValueError:
                return ""
            return normalize_revision_at(day)
        parsed_dt = _parse_datetime_token(token)
        if parsed_dt:
            return _format_datetime_utc(parsed_dt)
    return ""


def date_to_iso(value: date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()
