"""
Timestamp utilities for consistent UTC time handling across the store.

All timestamps are persisted as ISO-8601 strings in UTC so that
lexicographic comparison in SQL matches chronological order.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

SECONDS_PER_DAY = 24 * 3600


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to the store's canonical ISO format.

    Args:
        value: datetime to serialize (None passes through)

    Returns:
        ISO-8601 string with microseconds and +00:00 offset, or None
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec='microseconds')


def parse_iso(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime.

    Args:
        value: ISO string, datetime, or None

    Returns:
        Aware UTC datetime, or None
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return ensure_utc(datetime.fromisoformat(text))


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from earlier to later (negative if reversed)."""
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / SECONDS_PER_DAY


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    """Point in time the given number of days before now."""
    return (now or utc_now()) - timedelta(days=days)
