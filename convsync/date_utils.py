"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

_DIGITS_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_COMPACT_STRIP_RE = re.compile(r"[:.\-]")
# Epoch values below this are seconds, above are milliseconds.
_EPOCH_MS_THRESHOLD = 1e12


def _ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime | None:
    seconds = value / 1000.0 if abs(value) >= _EPOCH_MS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S", "%Y/%m/%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Convert mixed upstream timestamp inputs into aware UTC datetimes.

    Accepts datetimes, dates, epoch numbers (seconds or milliseconds), ISO
    strings with or without a trailing ``Z`` and numeric strings. Returns
    ``None`` for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        if _DIGITS_RE.match(token):
            return _from_epoch(float(token))
        parsed = _parse_datetime_token(token)
        return _ensure_utc(parsed) if parsed else None
    return None


def to_iso(value: datetime | None) -> str | None:
    """Serialize to a fixed-width UTC ISO string so stored values sort correctly."""
    if value is None:
        return None
    return _ensure_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def compact_timestamp(raw: str) -> str:
    """Squash a raw upstream timestamp into an id-safe token."""
    return _COMPACT_STRIP_RE.sub("", raw or "").replace("Z", "")[:15]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
