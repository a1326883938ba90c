# calendar_engine/clock.py
import re
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional

import pandas as pd

from .models import QUARTERS_PER_DAY, SlotKey

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?\s*(?:[+-]\d{1,2}(?::?\d{2})?|Z)?\s*$")

DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def parse_clock(value: str) -> float:
    """
    Parse "HH:MM", "HH:MM:SS" or a time with a zone suffix ("13:00:00+00")
    into fractional hours. The zone suffix is ignored.
    """
    m = _CLOCK_RE.match(value or "")
    if not m:
        raise ValueError(f"invalid time of day: {value!r}")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes):
        raise ValueError(f"invalid time of day: {value!r}")
    return hours + minutes / 60


def format_clock(hours: float) -> str:
    minutes = int(round(hours * 60))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def to_minutes(hours: float) -> int:
    return int(round(hours * 60))


def floor_quarter(hours: float) -> int:
    return to_minutes(hours) // 15


def ceil_quarter(hours: float) -> int:
    return -(-to_minutes(hours) // 15)


def quarter_keys(day: date, start: float, duration: float) -> List[SlotKey]:
    """Quarter keys covered by [start, start + duration), clipped at midnight."""
    first = max(0, floor_quarter(start))
    last = min(QUARTERS_PER_DAY, ceil_quarter(start + duration))
    return [SlotKey(day, q) for q in range(first, last)]


def hours_of(ts: datetime) -> float:
    return ts.hour + ts.minute / 60


def day_name(day: date) -> str:
    return DAY_NAMES[day.weekday()]


def day_range(start: date, days: int) -> List[date]:
    return [start + timedelta(days=i) for i in range(days)]


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def now_in(tz: str, now: Optional[datetime] = None) -> pd.Timestamp:
    """Current wall-clock time in `tz`; naive `now` values are taken as local to `tz`."""
    if now is None:
        return pd.Timestamp.now(tz=tz)
    ts = pd.Timestamp(now)
    if ts.tzinfo is None:
        return ts.tz_localize(tz)
    return ts.tz_convert(tz)


def next_quarter_at_or_after(ts: datetime) -> int:
    """Quarter index of the next 15-minute boundary at or after `ts`."""
    minutes = ts.hour * 60 + ts.minute
    if ts.second or ts.microsecond:
        minutes += 1
    return -(-minutes // 15)
