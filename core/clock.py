"""
core/clock.py -- Time source and timestamp helpers shared by every store.

Stores and services take a `clock` callable (default utcnow) so tests can
move time forward without sleeping, e.g. to watch a lockout expire.

Timestamps are persisted as fixed-width ISO 8601 UTC strings. isoformat()
drops the fractional part when microsecond == 0, which would break lexical
ordering, so to_iso() always pins timespec="microseconds".
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render a datetime as a sortable UTC ISO string. Naive values are treated as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
