"""Date helpers shared by the importers and the job store.

All timestamps are stored as timezone-aware UTC. Source API timestamps that
arrive without an offset are treated as UTC.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_source_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the source API.

    Returns None for missing or unparsable values instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def time_key(value: Any) -> str | None:
    """Normalise a timestamp into the key used for schedule lookups.

    Two timestamps referring to the same instant produce the same key
    regardless of their original offset notation.
    """
    parsed = parse_source_datetime(value)
    if parsed is None:
        return None
    return parsed.replace(tzinfo=None).isoformat()


def format_api_date(value: date) -> str:
    """YYYY-MM-DD as expected by date-window query parameters."""
    return value.strftime("%Y-%m-%d")


def start_of_day(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
