"""
Timezone utilities.

All timestamps are stored and compared in UTC. SQLite drops tzinfo on
round-trip, so values read back are normalised with ``ensure_utc``.
"""

import calendar
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def subtract_months(value: datetime, months: int) -> datetime:
    """Same wall-clock time ``months`` calendar months earlier, clamped to month end."""
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
