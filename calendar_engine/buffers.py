# calendar_engine/buffers.py
"""
Weekly protected time per category.

Each `BufferConfig` asks for a number of hours per week for one category.
Hours already spent on that category this week (meetings, sessions, habit
logs, task logs) count against the quota; what is left is carved out of the
free quarter-hours that remain after fixed events and task chunks.
"""
import logging
import math
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .availability import scan_availability
from .clock import parse_clock, quarter_keys
from .conflicts import ConflictMaps, meeting_span
from .habits import resolve_habit_duration, resolve_habit_start_time
from .metrics import BUFFER_HOURS
from .models import (
    SLOT_HOURS,
    BufferBlock,
    BufferConfig,
    CategoryActivity,
    EventKind,
    Habit,
    Meeting,
    ScheduledChunk,
    Session,
    SlotKey,
    Task,
    TaskLog,
    TimeSlot,
    UserPrefs,
)

logger = logging.getLogger(__name__)

MAX_WEEKLY_HOURS = 168
MIN_PRIORITY, MAX_PRIORITY = 0, 10
DEFAULT_MORNING_ROUTINE_MINUTES = 120

FreeSlots = Dict[date, List[TimeSlot]]


class BufferConfigError(ValueError):
    """Raised when one or more buffer configs cannot be allocated."""

    def __init__(self, problems: Sequence[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


def validate_buffer_config(config: BufferConfig) -> List[str]:
    problems = []
    label = config.category_name or config.id
    if not config.category_id:
        problems.append(f"buffer {label}: category is required")
    if config.weekly_hours is None or config.weekly_hours <= 0:
        problems.append(f"buffer {label}: weekly_hours must be positive, got {config.weekly_hours}")
    elif config.weekly_hours > MAX_WEEKLY_HOURS:
        problems.append(f"buffer {label}: weekly_hours cannot exceed {MAX_WEEKLY_HOURS}, got {config.weekly_hours}")
    if config.priority is None or not MIN_PRIORITY <= config.priority <= MAX_PRIORITY:
        problems.append(f"buffer {label}: priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {config.priority}")
    return problems


def validate_buffer_configs(configs: Iterable[BufferConfig]) -> None:
    problems: List[str] = []
    for config in configs:
        problems.extend(validate_buffer_config(config))
    if problems:
        raise BufferConfigError(problems)


def extract_categorized_activities(meetings: Sequence[Meeting],
                                   sessions: Sequence[Session],
                                   habits: Sequence[Habit],
                                   task_logs: Sequence[TaskLog],
                                   tasks: Sequence[Task],
                                   week_start: date,
                                   week_end: date,
                                   tz: Optional[str] = None) -> List[CategoryActivity]:
    """Everything in [week_start, week_end] that carries a category, as hours."""
    def in_week(day: date) -> bool:
        return week_start <= day <= week_end

    activities: List[CategoryActivity] = []

    for meeting in meetings:
        if not meeting.category_id:
            continue
        day, start, end = meeting_span(meeting, tz)
        if in_week(day) and end > start:
            activities.append(CategoryActivity(meeting.id, meeting.category_id, end - start, day, EventKind.MEETING))

    for session in sessions:
        if session.category_id and in_week(session.scheduled_date):
            activities.append(CategoryActivity(
                session.id, session.category_id, session.duration_hours, session.scheduled_date, EventKind.SESSION,
            ))

    for habit in habits:
        if not habit.category_id:
            continue
        for log in habit.logs:
            if log.is_skipped or not in_week(log.log_date):
                continue
            minutes = resolve_habit_duration(habit, log.log_date, log)
            if minutes > 0:
                activities.append(CategoryActivity(
                    log.id or f"{habit.id}-{log.log_date.isoformat()}",
                    habit.category_id, minutes / 60, log.log_date, EventKind.HABIT,
                ))

    task_categories = {t.id: t.category_id for t in tasks}
    for log in task_logs:
        category = task_categories.get(log.task_id)
        if category and in_week(log.log_date) and log.hours > 0:
            activities.append(CategoryActivity(
                log.id or f"{log.task_id}-{log.log_date.isoformat()}",
                category, log.hours, log.log_date, EventKind.TASK_LOG,
            ))

    return activities


def spent_hours_by_category(activities: Iterable[CategoryActivity]) -> Dict[str, float]:
    spent: Dict[str, float] = defaultdict(float)
    for activity in activities:
        spent[activity.category_id] += activity.duration
    return dict(spent)


def _is_wind_down(habit: Habit, prefs: UserPrefs) -> bool:
    return habit.is_wind_down or habit.name.strip().lower() == prefs.wind_down_habit_name.strip().lower()


def day_cutoffs(days: Sequence[date],
                habits: Sequence[Habit],
                prefs: UserPrefs,
                week_end_day: Optional[date] = None) -> Dict[date, float]:
    """
    Latest hour a buffer may run to on each day: the wind-down habit's start,
    and on the week-ending day no later than the week-ending time.
    Days without either are left out.
    """
    wind_down = [h for h in habits if _is_wind_down(h, prefs)]
    cutoffs: Dict[date, float] = {}
    for day in days:
        for habit in wind_down:
            start = resolve_habit_start_time(habit, day)
            if start is not None:
                cutoffs[day] = min(cutoffs.get(day, 24.0), parse_clock(start))
        if day == week_end_day:
            cutoffs[day] = min(cutoffs.get(day, 24.0), parse_clock(prefs.week_ending_time))
    return cutoffs


def _is_morning_routine(habit: Habit, prefs: UserPrefs) -> bool:
    return habit.is_morning_routine or habit.name.strip().lower() == prefs.morning_routine_habit_name.strip().lower()


def day_floors(days: Sequence[date], habits: Sequence[Habit], prefs: UserPrefs) -> Dict[date, float]:
    """
    Earliest hour a buffer may start on each day: the end of the morning
    routine (its effective start plus its duration, two hours when unset).
    Days where the routine has no time or is skipped are left out.
    """
    routines = [h for h in habits if _is_morning_routine(h, prefs)]
    floors: Dict[date, float] = {}
    for day in days:
        for habit in routines:
            log = habit.log_for(day)
            start = resolve_habit_start_time(habit, day, log)
            if start is None:
                continue
            minutes = resolve_habit_duration(habit, day, log) or DEFAULT_MORNING_ROUTINE_MINUTES
            floors[day] = max(floors.get(day, 0.0), parse_clock(start) + minutes / 60)
    return floors


def find_free_slots(days: Sequence[date],
                    maps: ConflictMaps,
                    prefs: UserPrefs,
                    now: Optional[datetime] = None,
                    scheduled: Sequence[ScheduledChunk] = (),
                    existing_blocks: Sequence[BufferBlock] = (),
                    week_end_day: Optional[date] = None) -> FreeSlots:
    """
    Available quarters per day for buffers. Weekends count here; days past
    the week boundary do not. Task chunks and already placed buffer blocks
    are occupied.
    """
    occupied = set(buffer_conflict_map(existing_blocks))
    free: FreeSlots = {}
    for day in days:
        if week_end_day is not None and day > week_end_day:
            continue
        slots = scan_availability(
            day, maps, prefs.work_hours, scheduled, weekend_days=(), now=now, extra_occupied=occupied,
        )
        available = [s for s in slots if s.available]
        if available:
            free[day] = available
    return free


def _runs_latest_first(quarters: Sequence[int]) -> List[List[int]]:
    """Group quarters into contiguous runs, latest run first, each run latest quarter first."""
    runs: List[List[int]] = []
    for quarter in sorted(quarters, reverse=True):
        if runs and runs[-1][-1] == quarter + 1:
            runs[-1].append(quarter)
        else:
            runs.append([quarter])
    return runs


def _quarters_in(hours: float) -> int:
    return int(math.floor(round(hours / SLOT_HOURS, 6)))


def _usable_quarters(day: date,
                     slots: Sequence[TimeSlot],
                     used: set,
                     cutoff: Optional[float],
                     floor: Optional[float] = None) -> List[int]:
    return [
        s.quarter for s in slots
        if s.available
        and SlotKey(day, s.quarter) not in used
        and (cutoff is None or s.start + SLOT_HOURS <= cutoff)
        and (floor is None or s.start >= floor)
    ]


def allocate_buffers(configs: Sequence[BufferConfig],
                     spent_hours: Mapping[str, float],
                     free_slots: FreeSlots,
                     cutoffs: Optional[Mapping[date, float]] = None,
                     floors: Optional[Mapping[date, float]] = None) -> List[BufferBlock]:
    """
    Fill free slots with buffer blocks, most under-served category first.

    Categories are ordered by utilization (spent / quota) ascending, then by
    quota descending. Each one walks days and slots from the latest backwards,
    taking whole contiguous runs until its remaining hours are used. Slots
    taken by one category are gone for the next. Per-day `cutoffs` cap where
    a block may end and `floors` where it may start.

    Raises:
        BufferConfigError: if any config is invalid
    """
    validate_buffer_configs(configs)
    cutoffs = cutoffs or {}
    floors = floors or {}

    pending = []
    for config in configs:
        spent = spent_hours.get(config.category_id, 0.0)
        remaining = config.weekly_hours - spent
        if remaining <= 0:
            logger.debug("Buffer %s already met (%.2fh spent of %.2fh)", config.id, spent, config.weekly_hours)
            continue
        utilization = spent / config.weekly_hours * 100
        pending.append((utilization, -config.weekly_hours, config.category_id, config, remaining))
    pending.sort(key=lambda p: (p[0], p[1], p[2]))

    used: set = set()
    blocks: List[BufferBlock] = []
    for _, _, _, config, remaining in pending:
        for day in sorted(free_slots, reverse=True):
            if _quarters_in(remaining) == 0:
                break
            quarters = _usable_quarters(day, free_slots[day], used, cutoffs.get(day), floors.get(day))
            for run in _runs_latest_first(quarters):
                take = min(len(run), _quarters_in(remaining))
                if take == 0:
                    break
                taken = run[:take]
                block = BufferBlock(
                    category_id=config.category_id,
                    buffer_config_id=config.id,
                    day=day,
                    start=min(taken) * SLOT_HOURS,
                    duration=take * SLOT_HOURS,
                    remaining_hours=remaining,
                    priority=config.priority,
                )
                used.update(SlotKey(day, q) for q in taken)
                blocks.append(block)
                remaining = round(remaining - block.duration, 6)
        logger.debug("Buffer %s left with %.2fh unplaced", config.id, max(0.0, remaining))

    blocks.sort(key=lambda b: (b.day, b.start))
    return blocks


def allocate_buffers_by_priority(configs: Sequence[BufferConfig],
                                 spent_hours: Mapping[str, float],
                                 free_slots: FreeSlots,
                                 cutoffs: Optional[Mapping[date, float]] = None,
                                 floors: Optional[Mapping[date, float]] = None) -> List[BufferBlock]:
    """
    Spread each config's remaining hours evenly over the days, earliest first,
    highest priority first. Configs do not see each other's blocks here;
    overlaps are settled afterwards by `resolve_buffer_conflicts`.
    """
    validate_buffer_configs(configs)
    cutoffs = cutoffs or {}
    floors = floors or {}
    days = sorted(free_slots)

    blocks: List[BufferBlock] = []
    for config in sorted(configs, key=lambda c: -c.priority):
        remaining = config.weekly_hours - spent_hours.get(config.category_id, 0.0)
        if remaining <= 0:
            continue
        for position, day in enumerate(days):
            left = _quarters_in(remaining)
            if left == 0:
                break
            share = max(1, math.ceil(left / (len(days) - position)))
            quarters = sorted(_usable_quarters(day, free_slots[day], set(), cutoffs.get(day), floors.get(day)))
            taken: List[int] = []
            for quarter in quarters:
                if len(taken) == share:
                    break
                if taken and quarter != taken[-1] + 1:
                    blocks.append(_block_from(config, day, taken, remaining))
                    remaining = round(remaining - len(taken) * SLOT_HOURS, 6)
                    share -= len(taken)
                    taken = []
                    if share == 0:
                        break
                taken.append(quarter)
            if taken:
                blocks.append(_block_from(config, day, taken, remaining))
                remaining = round(remaining - len(taken) * SLOT_HOURS, 6)

    return resolve_buffer_conflicts(blocks)


def _block_from(config: BufferConfig, day: date, quarters: Sequence[int], remaining: float) -> BufferBlock:
    return BufferBlock(
        category_id=config.category_id,
        buffer_config_id=config.id,
        day=day,
        start=quarters[0] * SLOT_HOURS,
        duration=len(quarters) * SLOT_HOURS,
        remaining_hours=remaining,
        priority=config.priority,
    )


def resolve_buffer_conflicts(blocks: Sequence[BufferBlock]) -> List[BufferBlock]:
    """
    Keep, for every contested quarter, only the block with the highest
    priority. Ties go to the block listed first. Losing blocks are dropped
    whole. Survivors keep their input order.
    """
    claimed: set = set()
    keep: set = set()
    ranked = sorted(range(len(blocks)), key=lambda i: -blocks[i].priority)
    for i in ranked:
        keys = set(quarter_keys(blocks[i].day, blocks[i].start, blocks[i].duration))
        if keys & claimed:
            logger.debug("Dropping buffer block %s, outranked", blocks[i].block_id)
            continue
        claimed |= keys
        keep.add(i)
    return [b for i, b in enumerate(blocks) if i in keep]


def buffer_conflict_map(blocks: Iterable[BufferBlock]) -> Dict[SlotKey, BufferBlock]:
    mapping: Dict[SlotKey, BufferBlock] = {}
    for block in blocks:
        for key in quarter_keys(block.day, block.start, block.duration):
            mapping[key] = block
    return mapping


def buffer_statistics(configs: Sequence[BufferConfig],
                      blocks: Sequence[BufferBlock],
                      spent_hours: Mapping[str, float]) -> pd.DataFrame:
    """One row per config: quota, spent, allocated, remaining, utilization and spread."""
    rows = []
    for config in configs:
        mine = [b for b in blocks if b.buffer_config_id == config.id]
        allocated = sum(b.duration for b in mine)
        spent = spent_hours.get(config.category_id, 0.0)
        rows.append({
            "buffer_config_id": config.id,
            "category_id": config.category_id,
            "category_name": config.category_name,
            "weekly_hours": config.weekly_hours,
            "spent_hours": spent,
            "allocated_hours": allocated,
            "remaining_hours": max(0.0, config.weekly_hours - spent - allocated),
            "utilization_pct": (spent + allocated) / config.weekly_hours * 100 if config.weekly_hours else 0.0,
            "block_count": len(mine),
            "days_with_buffers": len({b.day for b in mine}),
        })
    return pd.DataFrame(rows, columns=[
        "buffer_config_id", "category_id", "category_name", "weekly_hours", "spent_hours",
        "allocated_hours", "remaining_hours", "utilization_pct", "block_count", "days_with_buffers",
    ])


def plan_buffers(configs: Sequence[BufferConfig],
                 spent_hours: Mapping[str, float],
                 free_slots: FreeSlots,
                 cutoffs: Optional[Mapping[date, float]] = None,
                 strategy: str = "utilization",
                 floors: Optional[Mapping[date, float]] = None) -> List[BufferBlock]:
    if strategy == "priority":
        blocks = allocate_buffers_by_priority(configs, spent_hours, free_slots, cutoffs, floors)
    else:
        blocks = allocate_buffers(configs, spent_hours, free_slots, cutoffs, floors)
    hours = sum(b.duration for b in blocks)
    BUFFER_HOURS.inc(hours)
    logger.info("Allocated %d buffer blocks (%.2fh) using %s strategy", len(blocks), hours, strategy)
    return blocks
