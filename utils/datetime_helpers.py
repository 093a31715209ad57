"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All DateTime columns are timezone-naive and hold UTC. Anything arriving from
the API may be timezone-aware and must go through ensure_naive_datetime first.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SECONDS_PER_DAY = 86400


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without tzinfo, for database columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, never negative"""
    delta = ensure_naive_datetime(end) - ensure_naive_datetime(start)
    return max(0, int(delta.total_seconds()))


def isoformat_or_none(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
