# calendar_engine/revenue.py
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .clock import DAY_NAMES, format_clock, now_in, parse_clock
from .models import Priority, Project, ScheduledChunk, Task, TaskLog, UserPrefs

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "Billable Work"
BREAKDOWN_COLUMNS = ["session_name", "project_name", "hours", "date", "hourly_rate", "is_completed"]


@dataclass
class WorkHoursSummary:
    planned_hours: float
    actual_hours: float
    billable_revenue: float
    planned_breakdown: pd.DataFrame
    actual_breakdown: pd.DataFrame


def week_window(prefs: UserPrefs, now: Optional[datetime] = None) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """
    (previous week end, current week end) as tz-aware timestamps.

    The week ends at the next `week_ending_day` / `week_ending_time` in the
    week-ending timezone; if that moment already passed today, the week
    rolls over to the following one.
    """
    tz = prefs.week_ending_timezone
    local = now_in(tz, now)
    days_until = (DAY_NAMES.index(prefs.week_ending_day) - local.weekday()) % 7
    cutoff = pd.Timedelta(minutes=int(round(parse_clock(prefs.week_ending_time) * 60)))

    naive_day = local.tz_localize(None).normalize()
    week_end = (naive_day + pd.Timedelta(days=days_until) + cutoff).tz_localize(tz)
    if week_end <= local:
        week_end = (naive_day + pd.Timedelta(days=days_until + 7) + cutoff).tz_localize(tz)
    previous_end = (week_end.tz_localize(None) - pd.Timedelta(days=7)).tz_localize(tz)
    return previous_end, week_end


def _is_billable(task: Optional[Task]) -> bool:
    return task is not None and task.is_billable and task.hourly_rate > 0


def _log_moment(log: TaskLog, tz: str) -> pd.Timestamp:
    start = parse_clock(log.start_time) if log.start_time else 0.0
    return (pd.Timestamp(log.log_date) + pd.Timedelta(minutes=int(round(start * 60)))).tz_localize(tz)


def logged_billable_revenue(task_logs: Sequence[TaskLog],
                            tasks: Sequence[Task],
                            prefs: UserPrefs,
                            now: Optional[datetime] = None) -> float:
    """Revenue already booked this week: logged hours on billable tasks times their rate."""
    by_id = {t.id: t for t in tasks}
    previous_end, week_end = week_window(prefs, now)
    revenue = 0.0
    for log in task_logs:
        task = by_id.get(log.task_id)
        if not _is_billable(task):
            continue
        moment = _log_moment(log, prefs.week_ending_timezone)
        if previous_end < moment < week_end:
            revenue += log.hours * task.hourly_rate
    return revenue


def remaining_revenue(tasks: Sequence[Task],
                      completed_hours: Mapping[str, float],
                      completed_revenue: float,
                      target: float) -> float:
    booked = 0.0
    for task in tasks:
        if _is_billable(task):
            hours = max(0.0, task.estimated_hours - completed_hours.get(task.id, 0.0))
            booked += hours * task.hourly_rate
    return max(0.0, target - booked - completed_revenue)


def billable_placeholder(tasks: Sequence[Task],
                         completed_hours: Mapping[str, float],
                         completed_revenue: float,
                         prefs: UserPrefs,
                         week_end: Optional[date] = None) -> Optional[Task]:
    """
    A synthetic lowest-priority task sized to close the gap to the weekly
    revenue target, or None when the feature is off or the target is met.
    """
    if not prefs.billable_hours_enabled:
        return None
    gap = remaining_revenue(tasks, completed_hours, completed_revenue, prefs.weekly_revenue_target)
    if gap <= 0:
        return None

    hours = math.ceil(gap / prefs.default_hourly_rate)
    suffix = week_end.isoformat() if week_end else "week"
    logger.info("Revenue gap %.2f, adding %dh placeholder", gap, hours)
    return Task(
        id=f"placeholder-{suffix}",
        title=PLACEHOLDER_TITLE,
        estimated_hours=float(hours),
        priority=Priority.PLACEHOLDER.value,
        is_billable=True,
        project=Project(id="placeholder-project", name=PLACEHOLDER_TITLE, hourly_rate=prefs.default_hourly_rate),
        is_placeholder=True,
    )


def _chunk_moment(chunk: ScheduledChunk, tz: str) -> pd.Timestamp:
    return (pd.Timestamp(chunk.day) + pd.Timedelta(minutes=int(round(chunk.start * 60)))).tz_localize(tz)


def calculate_work_hours(chunks_by_date: Mapping[date, Sequence[ScheduledChunk]],
                         tasks: Sequence[Task],
                         task_logs: Sequence[TaskLog],
                         prefs: UserPrefs,
                         now: Optional[datetime] = None) -> WorkHoursSummary:
    """
    Planned vs actual billable hours for the current week.

    Chunks count when they start before the week end (clipped at it); logs
    count when they fall inside the week window. Only billable tasks are
    broken down, and only positive-rate ones add to the totals. Actual hours
    are the completed-task subset; revenue comes from logged hours only.
    """
    tz = prefs.week_ending_timezone
    by_id: Dict[str, Task] = {t.id: t for t in tasks}
    previous_end, week_end = week_window(prefs, now)
    rows: List[dict] = []

    for day, chunks in chunks_by_date.items():
        for chunk in chunks:
            task = by_id.get(chunk.task_id)
            if task is None or not task.is_billable:
                continue
            start = _chunk_moment(chunk, tz)
            if start >= week_end:
                continue
            end = start + pd.Timedelta(minutes=int(round(chunk.duration * 60)))
            hours = chunk.duration
            if end > week_end:
                hours = (week_end - start).total_seconds() / 3600
            rows.append({
                "session_name": f"{task.title} ({format_clock(chunk.start)})",
                "project_name": task.project.name if task.project else "Project",
                "hours": hours,
                "date": day,
                "hourly_rate": task.hourly_rate,
                "is_completed": task.is_complete,
            })

    for log in task_logs:
        task = by_id.get(log.task_id)
        if task is None or not task.is_billable:
            continue
        moment = _log_moment(log, tz)
        if not previous_end < moment < week_end:
            continue
        rows.append({
            "session_name": f"{task.title} ({log.start_time or '00:00'})",
            "project_name": task.project.name if task.project else "Project",
            "hours": log.hours,
            "date": log.log_date,
            "hourly_rate": task.hourly_rate,
            "is_completed": task.is_complete,
        })

    planned = pd.DataFrame(rows, columns=BREAKDOWN_COLUMNS)
    rated = planned[planned["hourly_rate"] > 0]
    actual = planned[planned["is_completed"].astype(bool)].drop(columns=["is_completed"])
    rated_actual = rated[rated["is_completed"].astype(bool)]

    return WorkHoursSummary(
        planned_hours=float(rated["hours"].sum()),
        actual_hours=float(rated_actual["hours"].sum()),
        billable_revenue=logged_billable_revenue(task_logs, tasks, prefs, now),
        planned_breakdown=planned.reset_index(drop=True),
        actual_breakdown=actual.reset_index(drop=True),
    )
