"""Window arithmetic shared by the rollup, daily energy and retention jobs.

All windows are aligned to the Unix epoch in UTC. Local calendar days are
resolved through ``zoneinfo`` so DST transitions produce 23h/25h days instead
of a fixed offset.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_to_window(value: datetime, window_seconds: int) -> datetime:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    elapsed = (to_utc(value) - _EPOCH).total_seconds()
    return _EPOCH + timedelta(seconds=math.floor(elapsed / window_seconds) * window_seconds)


def is_window_aligned(value: datetime, window_seconds: int) -> bool:
    return floor_to_window(value, window_seconds) == to_utc(value)


def iter_windows(start: datetime, end: datetime, window_seconds: int):
    """Yield aligned window starts in ``[floor(start), end)``."""
    step = timedelta(seconds=window_seconds)
    cursor = floor_to_window(start, window_seconds)
    end_utc = to_utc(end)
    while cursor < end_utc:
        yield cursor
        cursor = cursor + step


def resolve_timezone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def local_day_of(value: datetime, tz: ZoneInfo) -> date:
    return to_utc(value).astimezone(tz).date()


def parse_local_time(value: str) -> time:
    hours_text, minutes_text = value.split(":", 1)
    return time(hour=int(hours_text), minute=int(minutes_text))
