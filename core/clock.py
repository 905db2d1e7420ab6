"""
core/clock.py -- UTC time helpers shared by every store and service.

Timestamps are persisted as fixed-width ISO 8601 strings (microsecond
precision, explicit +00:00 offset). Fixed width matters: the identity and
audit stores compare timestamps inside SQL WHERE clauses as plain strings, and
lexicographic order only matches chronological order when every value has the
same shape. datetime.isoformat() drops the fractional part when microsecond
is 0, so always go through to_iso().

Services accept a `clock` callable (default: utcnow) so tests can move time
forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware (or UTC-naive) datetime to the fixed-width storage format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp. Empty and None both mean "unset"."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
