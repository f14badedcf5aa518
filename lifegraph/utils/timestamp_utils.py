"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_seconds_str(timestamp: Optional[float] = None) -> str:
    """Convert timestamp to seconds string format.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        Seconds timestamp as string
    """
    if timestamp is None:
        timestamp = time.time()
    return str(int(timestamp))


def to_datetime(value: Union[None, int, float, str, datetime] = None) -> datetime:
    """Normalize a unix timestamp, ISO string or datetime to an aware UTC datetime.

    Args:
        value: Unix seconds, ISO-8601 string or datetime (uses current time if None)

    Returns:
        Timezone-aware datetime in UTC
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def days_since(moment: Union[str, datetime], now: Optional[datetime] = None) -> float:
    """Fractional days elapsed between moment and now."""
    now = to_datetime(now)
    return (now - to_datetime(moment)).total_seconds() / SECONDS_PER_DAY
