"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``.

    SQLite drops the offset on round-trip, so values read back from the store
    are naive and always interpreted as UTC.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` as an ISO-8601 string with a ``Z`` suffix."""

    if dt is None:
        return None
    text = ensure_utc(dt).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def remaining_label(expires_at: datetime, now: datetime) -> str:
    """Return a human readable countdown such as ``"1 day remaining"``."""

    diff = ensure_utc(expires_at) - ensure_utc(now)
    if diff <= timedelta(0):
        return "Expired"
    hours, remainder = divmod(int(diff.total_seconds()), 3600)
    minutes = remainder // 60
    if hours > 24:
        days = hours // 24
        return f"{days} day{'s' if days > 1 else ''} remaining"
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m remaining"


__all__ = ["Clock", "utc_now", "ensure_utc", "isoformat_utc", "remaining_label"]
