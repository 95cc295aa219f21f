"""Timestamp helpers for backup naming."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

# Sortable, filesystem-safe backup stamp: YYYYMMDDTHHMMSSffffffZ
STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_stamp(dt: datetime) -> str:
    """Format a datetime as a backup directory stamp."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(STAMP_FORMAT)


def parse_stamp(value: str) -> datetime | None:
    """Parse a backup directory stamp, returning None for foreign names."""
    try:
        parsed = datetime.strptime(value, STAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC)


def next_stamp(after: datetime) -> datetime:
    """Return the smallest stamp-distinct instant following ``after``."""
    return after + timedelta(microseconds=1)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()
