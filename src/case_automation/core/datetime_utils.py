"""Datetime helpers shared across the application."""

from __future__ import annotations

import time
from datetime import UTC, datetime

__all__ = [
    "utc_now",
    "unix_now",
    "to_utc",
    "ensure_utc",
    "serialize_datetime",
    "parse_iso",
    "parse_datetime",
]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=UTC)


def unix_now() -> int:
    """Return the current Unix time in whole seconds."""
    return int(time.time())


def to_utc(value: datetime) -> datetime:
    """Convert ``value`` to UTC, treating naive values as UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    return None if value is None else to_utc(value)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC."""
    if value is None:
        return None
    return to_utc(value).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 date or datetime; ``Z`` suffixes are accepted."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_datetime(value: str | None, *, assume_utc: bool = True) -> datetime | None:
    """Parse an ISO 8601 string into a ``datetime`` instance."""
    if value is None:
        return None
    parsed = parse_iso(value)
    if parsed.tzinfo is None and assume_utc:
        return parsed.replace(tzinfo=UTC)
    return parsed
