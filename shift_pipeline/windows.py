"""Shift window calculation.

A business date's shift is a fixed local-time interval, not calendar
midnight-to-midnight. With the default 17:00-03:00 Asia/Bangkok hours the
2024-03-01 shift runs from 2024-03-01T10:00Z up to (not including)
2024-03-01T20:00Z.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from shift_pipeline.config import Settings, settings
from shift_pipeline.errors import InvalidDateError

DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)


def parse_business_date(value: Optional[str]) -> date:
    if value is None or not isinstance(value, str):
        raise InvalidDateError(value)
    text = value.strip()
    if not DATE_PATTERN.fullmatch(text):
        raise InvalidDateError(value)
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidDateError(value) from None


def _local_bounds(business_date: date, tz: ZoneInfo, start: time, end: time) -> tuple[datetime, datetime]:
    starts_at = datetime.combine(business_date, start, tzinfo=tz)
    ends_at = datetime.combine(business_date, end, tzinfo=tz)
    if ends_at <= starts_at:
        ends_at = datetime.combine(business_date + timedelta(days=1), end, tzinfo=tz)
    return starts_at, ends_at


def window_for(business_date: date, config: Settings = settings) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC bounds of the shift for ``business_date``."""
    if isinstance(business_date, datetime) or not isinstance(business_date, date):
        raise InvalidDateError(str(business_date))
    tz = ZoneInfo(config.shift_timezone)
    starts_at, ends_at = _local_bounds(
        business_date, tz, config.shift_start_local, config.shift_end_local
    )
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


def business_date_for(at: datetime, config: Settings = settings) -> Optional[date]:
    """Map a timestamp to the business date whose shift contains it, if any."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    tz = ZoneInfo(config.shift_timezone)
    local_at = at.astimezone(tz)
    for candidate in (local_at.date(), local_at.date() - timedelta(days=1)):
        starts_at, ends_at = window_for(candidate, config)
        if starts_at <= at < ends_at:
            return candidate
    return None


def iter_business_dates(start: date, end: date) -> Iterator[date]:
    if end < start:
        raise InvalidDateError(f"{start.isoformat()}..{end.isoformat()}")
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
