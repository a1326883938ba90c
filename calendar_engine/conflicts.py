# calendar_engine/conflicts.py
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import pandas as pd

from .clock import hours_of, parse_clock, quarter_keys, to_minutes
from .habits import resolve_habit_duration, resolve_habit_start_time
from .models import (
    EventKind,
    FixedEvent,
    Habit,
    Meeting,
    Session,
    SlotKey,
    TaskLog,
)

logger = logging.getLogger(__name__)

WIND_DOWN_START = 19.0
WIND_DOWN_HOURS = 1.0
WIND_DOWN_TODAY_HOURS = 0.5
WIND_DOWN_EXPIRES_AT = 13.0
WIND_DOWN_LATEST_START = 23.0
DEFAULT_TASK_LOG_HOURS = 1.0

ConflictMap = Dict[SlotKey, FixedEvent]


@dataclass
class ConflictMaps:
    habits: ConflictMap = field(default_factory=dict)
    sessions: ConflictMap = field(default_factory=dict)
    meetings: ConflictMap = field(default_factory=dict)
    task_logs: ConflictMap = field(default_factory=dict)
    buffers: ConflictMap = field(default_factory=dict)

    def named(self) -> Iterator[Tuple[str, ConflictMap]]:
        yield "habit", self.habits
        yield "session", self.sessions
        yield "meeting", self.meetings
        yield "task_log", self.task_logs
        yield "wind_down", self.buffers

    def reasons_at(self, key: SlotKey) -> List[str]:
        return [name for name, mapping in self.named() if key in mapping]

    def is_occupied(self, key: SlotKey) -> bool:
        return any(key in mapping for _, mapping in self.named())

    def occupied_keys(self, day: Optional[date] = None) -> set:
        keys = set()
        for _, mapping in self.named():
            keys.update(k for k in mapping if day is None or k.day == day)
        return keys


def mark(mapping: ConflictMap, event: FixedEvent) -> None:
    for key in quarter_keys(event.day, event.start, event.duration):
        mapping[key] = event


def meeting_span(meeting: Meeting, tz: Optional[str] = None) -> Tuple[date, float, float]:
    """(day, start, end) of a meeting in local hours. Ends past midnight clip to 24:00."""
    start, end = pd.Timestamp(meeting.start_time), pd.Timestamp(meeting.end_time)
    if tz is not None and start.tzinfo is not None:
        start, end = start.tz_convert(tz), end.tz_convert(tz)
    end_hours = hours_of(end)
    if end.date() > start.date():
        end_hours = 24.0
    return start.date(), hours_of(start), end_hours


def displaced_start(end: float) -> float:
    """
    Where a habit pushed out by an event ending at `end` restarts:
    on the hour stays, up to :30 rounds to :30, past :30 rounds to the next hour.
    """
    hour, minutes = divmod(to_minutes(end), 60)
    if minutes == 0:
        return float(hour)
    if minutes <= 30:
        return hour + 0.5
    return float(hour + 1)


def _first_overlap(spans: Sequence[Tuple[float, float]], start: float, end: float) -> Optional[Tuple[float, float]]:
    for span_start, span_end in spans:
        if start < span_end and end > span_start:
            return span_start, span_end
    return None


def session_start(session: Session, work_hours_start: float) -> float:
    if session.actual_start_time:
        return parse_clock(session.actual_start_time)
    return work_hours_start


def task_log_event(log: TaskLog) -> Optional[FixedEvent]:
    if not log.start_time:
        return None
    duration = log.actual_duration or log.scheduled_duration or log.estimated_hours or DEFAULT_TASK_LOG_HOURS
    return FixedEvent(
        kind=EventKind.TASK_LOG,
        source_id=log.id or f"{log.task_id}-{log.log_date.isoformat()}-{log.start_time}",
        day=log.log_date,
        start=parse_clock(log.start_time),
        duration=float(duration),
    )


def generate_wind_down_buffers(days: Iterable[date],
                               meetings: Sequence[Meeting],
                               now: datetime,
                               tz: Optional[str] = None) -> List[FixedEvent]:
    """
    One end-of-day wind-down block per non-past day.

    19:00 for an hour; today it shrinks to 30 minutes and disappears once
    the clock passes 13:00. A clashing meeting pushes it to the meeting end,
    and it is dropped if that lands at or after 23:00.
    """
    today = now.date()
    spans_by_day: Dict[date, List[Tuple[float, float]]] = {}
    for meeting in meetings:
        day, start, end = meeting_span(meeting, tz)
        spans_by_day.setdefault(day, []).append((start, end))

    events = []
    for day in days:
        if day < today:
            continue
        start, duration = WIND_DOWN_START, WIND_DOWN_HOURS
        if day == today:
            if hours_of(now) >= WIND_DOWN_EXPIRES_AT:
                continue
            duration = WIND_DOWN_TODAY_HOURS

        clash = _first_overlap(spans_by_day.get(day, []), start, start + duration)
        if clash is not None:
            start = clash[1]
            if start >= WIND_DOWN_LATEST_START:
                logger.debug("Dropping wind-down block on %s, meeting runs until %.2f", day, start)
                continue

        events.append(FixedEvent(
            kind=EventKind.WIND_DOWN,
            source_id=f"wind-down-{day.isoformat()}",
            day=day,
            start=start,
            duration=duration,
        ))
    return events


def build_conflict_maps(habits: Sequence[Habit],
                        sessions: Sequence[Session],
                        meetings: Sequence[Meeting],
                        task_logs: Sequence[TaskLog],
                        days: Sequence[date],
                        work_hours_start: float = 10.0,
                        wind_down: Optional[Sequence[FixedEvent]] = None,
                        tz: Optional[str] = None) -> ConflictMaps:
    """
    Index every fixed event in `days` by the quarter-hours it occupies.

    Habits are resolved per day (pull-back, log overrides) and pushed past
    any meeting they collide with, then past any session.

    Returns:
        ConflictMaps with one mapping per event kind.
    """
    maps = ConflictMaps()
    wanted = set(days)

    meeting_spans: Dict[date, List[Tuple[float, float]]] = {}
    for meeting in meetings:
        day, start, end = meeting_span(meeting, tz)
        if day not in wanted:
            continue
        meeting_spans.setdefault(day, []).append((start, end))
        mark(maps.meetings, FixedEvent(
            kind=EventKind.MEETING,
            source_id=meeting.id,
            day=day,
            start=start,
            duration=max(0.0, end - start),
            category_id=meeting.category_id,
        ))

    session_spans: Dict[date, List[Tuple[float, float]]] = {}
    for session in sessions:
        if session.scheduled_date not in wanted:
            continue
        start = session_start(session, work_hours_start)
        session_spans.setdefault(session.scheduled_date, []).append((start, start + session.duration_hours))
        mark(maps.sessions, FixedEvent(
            kind=EventKind.SESSION,
            source_id=session.id,
            day=session.scheduled_date,
            start=start,
            duration=session.duration_hours,
            category_id=session.category_id,
        ))

    for habit in habits:
        if not habit.show_on_calendar:
            continue
        for day in days:
            log = habit.log_for(day)
            start_time = resolve_habit_start_time(habit, day, log)
            if start_time is None:
                continue
            start = parse_clock(start_time)
            duration = resolve_habit_duration(habit, day, log) / 60
            if duration <= 0:
                continue

            clash = _first_overlap(meeting_spans.get(day, []), start, start + duration)
            if clash is not None:
                start = displaced_start(clash[1])
            clash = _first_overlap(session_spans.get(day, []), start, start + duration)
            if clash is not None:
                start = displaced_start(clash[1])

            mark(maps.habits, FixedEvent(
                kind=EventKind.HABIT,
                source_id=habit.id,
                day=day,
                start=start,
                duration=duration,
                category_id=habit.category_id,
            ))

    for log in task_logs:
        if log.log_date not in wanted:
            continue
        event = task_log_event(log)
        if event is not None:
            mark(maps.task_logs, event)

    for event in wind_down or []:
        if event.day in wanted:
            mark(maps.buffers, event)

    logger.debug(
        "Conflict maps: %d habit, %d session, %d meeting, %d task-log, %d buffer slots",
        len(maps.habits), len(maps.sessions), len(maps.meetings), len(maps.task_logs), len(maps.buffers),
    )
    return maps
