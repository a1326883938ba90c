# calendar_engine/availability.py
from datetime import date, datetime
from typing import Collection, Iterable, List, Optional

import numpy as np

from .clock import ceil_quarter, day_name, floor_quarter, next_quarter_at_or_after, quarter_keys
from .conflicts import ConflictMaps
from .models import QUARTERS_PER_DAY, ScheduledChunk, SlotKey, TimeSlot, WorkHours


def build_blocked_mask(day: date,
                       maps: ConflictMaps,
                       scheduled: Iterable[ScheduledChunk] = (),
                       extra_occupied: Optional[Collection[SlotKey]] = None) -> np.ndarray:
    """Boolean mask over the day's 96 quarters; True where something already sits."""
    blocked = np.zeros(QUARTERS_PER_DAY, dtype=bool)

    for key in maps.occupied_keys(day):
        blocked[key.quarter] = True

    for chunk in scheduled:
        if chunk.day != day:
            continue
        for key in quarter_keys(chunk.day, chunk.start, chunk.duration):
            blocked[key.quarter] = True

    for key in extra_occupied or ():
        if key.day == day:
            blocked[key.quarter] = True

    return blocked


def first_offered_quarter(day: date, work_hours: WorkHours, now: Optional[datetime]) -> Optional[int]:
    """
    Earliest quarter that may still be offered on `day`: the work-hours
    start, or the next quarter boundary at or after `now` today. None for
    days already in the past.
    """
    first = ceil_quarter(work_hours.start)
    if now is None:
        return first
    today = now.date()
    if day < today:
        return None
    if day == today:
        first = max(first, next_quarter_at_or_after(now))
    return first


def scan_availability(day: date,
                      maps: ConflictMaps,
                      work_hours: WorkHours,
                      scheduled: Iterable[ScheduledChunk] = (),
                      weekend_days: Collection[str] = (),
                      now: Optional[datetime] = None,
                      extra_occupied: Optional[Collection[SlotKey]] = None) -> List[TimeSlot]:
    """
    Enumerate the day's work-hour quarters in order with their availability.

    Weekend and past days yield nothing. A quarter is available only when no
    conflict map, in-pass chunk or extra occupied key touches it.
    """
    if day_name(day) in weekend_days:
        return []

    first = first_offered_quarter(day, work_hours, now)
    if first is None:
        return []
    last = min(QUARTERS_PER_DAY, floor_quarter(work_hours.end))

    scheduled = [c for c in scheduled if c.day == day]
    blocked = build_blocked_mask(day, maps, scheduled, extra_occupied)
    chunk_keys = set()
    for chunk in scheduled:
        chunk_keys.update(quarter_keys(chunk.day, chunk.start, chunk.duration))
    extra = set(extra_occupied or ())

    slots = []
    for quarter in range(first, last):
        key = SlotKey(day, quarter)
        reasons = maps.reasons_at(key) if blocked[quarter] else []
        if key in chunk_keys:
            reasons.append("task")
        if key in extra:
            reasons.append("buffer")
        slots.append(TimeSlot(day=day, quarter=quarter, available=not blocked[quarter], reasons=reasons))
    return slots
