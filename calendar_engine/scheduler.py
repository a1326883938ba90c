# calendar_engine/scheduler.py
import dataclasses
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .buffers import (
    day_cutoffs,
    day_floors,
    extract_categorized_activities,
    find_free_slots,
    plan_buffers,
    spent_hours_by_category,
    validate_buffer_configs,
)
from .clock import format_clock, now_in
from .conflicts import ConflictMaps, build_conflict_maps, generate_wind_down_buffers
from .metrics import SCHEDULE_CACHE, SCHEDULE_TIME
from .models import BufferBlock, CalendarInputs, ScheduledChunk, UserPrefs
from .persistence import DataProvider, LogStore
from .placement import carried_task_logs, schedule_all_tasks
from .revenue import WorkHoursSummary, calculate_work_hours, week_window

logger = logging.getLogger(__name__)


@dataclass
class ScheduleCache:
    """Result of one scheduling pass, keyed by the hash of its inputs."""
    input_hash: str
    chunks_by_date: Dict[date, List[ScheduledChunk]] = field(default_factory=dict)
    buffer_blocks: List[BufferBlock] = field(default_factory=list)
    work_hours: Optional[WorkHoursSummary] = None
    conflict_maps: ConflictMaps = field(default_factory=ConflictMaps)
    generated_at: Optional[datetime] = None

    @property
    def chunks(self) -> List[ScheduledChunk]:
        return [c for day in sorted(self.chunks_by_date) for c in self.chunks_by_date[day]]


def _json_default(value):
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def input_hash(inputs: CalendarInputs, prefs: UserPrefs) -> str:
    """sha256 over the canonical JSON of every scheduling input and setting."""
    payload = {
        "inputs": dataclasses.asdict(inputs),
        "prefs": dataclasses.asdict(prefs),
    }
    raw = json.dumps(payload, sort_keys=True, default=_json_default)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_schedule(inputs: CalendarInputs,
                      prefs: UserPrefs,
                      store: Optional[LogStore] = None,
                      cache: Optional[ScheduleCache] = None,
                      now: Optional[datetime] = None) -> ScheduleCache:
    """
    Run a full pass: conflict maps, task chunks, buffer blocks, week totals.

    When `cache` was built from identical inputs it is returned untouched and
    nothing is written to `store`.

    Raises:
        BufferConfigError: if a buffer config is invalid (before anything is persisted)
    """
    with SCHEDULE_TIME.time():
        digest = input_hash(inputs, prefs)
        if cache is not None and cache.input_hash == digest:
            SCHEDULE_CACHE.labels(outcome="hit").inc()
            logger.debug("Inputs unchanged for user %s, reusing schedule", inputs.user_id)
            return cache
        SCHEDULE_CACHE.labels(outcome="miss").inc()

        validate_buffer_configs(inputs.buffer_configs)
        now = now_in(prefs.tz, now)
        days = sorted(inputs.days)
        # today's stored plans from the replan point on are placed again below
        task_logs = carried_task_logs(inputs.task_logs, prefs.work_hours, now)

        wind_down = generate_wind_down_buffers(days, inputs.meetings, now, prefs.tz)
        maps = build_conflict_maps(
            habits=inputs.habits,
            sessions=inputs.sessions,
            meetings=inputs.meetings,
            task_logs=task_logs,
            days=days,
            work_hours_start=prefs.work_hours_start,
            wind_down=wind_down,
            tz=prefs.tz,
        )

        chunks_by_date = schedule_all_tasks(
            tasks=inputs.tasks,
            conflict_maps=maps,
            days=days,
            work_hours=prefs.work_hours,
            store=store,
            prefs=prefs,
            user_id=inputs.user_id,
            task_logs=task_logs,
            now=now,
        )

        blocks: List[BufferBlock] = []
        if inputs.buffer_configs:
            previous_end, week_end = week_window(prefs, now)
            week_end_day = week_end.date()
            activities = extract_categorized_activities(
                inputs.meetings, inputs.sessions, inputs.habits, task_logs, inputs.tasks,
                week_start=previous_end.date() + timedelta(days=1),
                week_end=week_end_day,
                tz=prefs.tz,
            )
            placed = [c for chunks in chunks_by_date.values() for c in chunks]
            free = find_free_slots(days, maps, prefs, now, placed, week_end_day=week_end_day)
            blocks = plan_buffers(
                inputs.buffer_configs,
                spent_hours_by_category(activities),
                free,
                day_cutoffs(days, inputs.habits, prefs, week_end_day),
                prefs.buffer_strategy,
                day_floors(days, inputs.habits, prefs),
            )

        summary = calculate_work_hours(chunks_by_date, inputs.tasks, task_logs, prefs, now)
        logger.info(
            "Schedule for user %s: %d chunks, %d buffer blocks, %.2f planned billable hours",
            inputs.user_id, sum(len(c) for c in chunks_by_date.values()), len(blocks), summary.planned_hours,
        )
        return ScheduleCache(
            input_hash=digest,
            chunks_by_date=chunks_by_date,
            buffer_blocks=blocks,
            work_hours=summary,
            conflict_maps=maps,
            generated_at=now.to_pydatetime(),
        )


def run_for_user(provider: DataProvider,
                 store: Optional[LogStore],
                 user_id: str,
                 days: Sequence[date],
                 prefs: UserPrefs,
                 cache: Optional[ScheduleCache] = None,
                 now: Optional[datetime] = None) -> ScheduleCache:
    inputs = provider.fetch_calendar_data(user_id, days)
    return generate_schedule(inputs, prefs, store, cache=cache, now=now)


def chunks_frame(cache: ScheduleCache) -> pd.DataFrame:
    rows = [{
        "chunk_id": c.chunk_id,
        "task_id": c.task_id,
        "title": c.title,
        "date": c.day,
        "start": format_clock(c.start),
        "end": format_clock(c.end),
        "hours": c.duration,
        "placeholder": c.is_placeholder,
    } for c in cache.chunks]
    return pd.DataFrame(rows, columns=["chunk_id", "task_id", "title", "date", "start", "end", "hours", "placeholder"])


def buffers_frame(cache: ScheduleCache) -> pd.DataFrame:
    rows = [{
        "block_id": b.block_id,
        "category_id": b.category_id,
        "buffer_config_id": b.buffer_config_id,
        "date": b.day,
        "start": format_clock(b.start),
        "end": format_clock(b.end),
        "hours": b.duration,
        "remaining_hours": b.remaining_hours,
        "priority": b.priority,
    } for b in cache.buffer_blocks]
    return pd.DataFrame(rows, columns=[
        "block_id", "category_id", "buffer_config_id", "date", "start", "end", "hours", "remaining_hours", "priority",
    ])
