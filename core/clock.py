"""
core/clock.py -- UTC time helpers shared by the stores and services.

Timestamps are persisted as ISO 8601 strings with a fixed UTC offset and
microsecond precision, so lexicographic order in SQL matches chronological
order. Services accept an injectable `clock` callable (defaulting to utcnow)
so tests can move time without patching datetime.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize an aware datetime in the canonical storage format."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def utc_day_window(moment: datetime) -> tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar day containing moment."""
    start = moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
