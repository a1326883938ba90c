# calendar_engine/placement.py
import logging
from datetime import date, datetime
from typing import Collection, Dict, List, Optional, Sequence

from .availability import scan_availability
from .clock import format_clock, hours_of, next_quarter_at_or_after, now_in, parse_clock
from .conflicts import ConflictMaps
from .metrics import CHUNKS_PERSISTED, PERSIST_FAILURES
from .models import SLOT_HOURS, ScheduledChunk, Task, TaskLog, TimeSlot, UserPrefs, WorkHours
from .persistence import LogStore
from .revenue import billable_placeholder, logged_billable_revenue, week_window

logger = logging.getLogger(__name__)

ChunksByDate = Dict[date, List[ScheduledChunk]]


def eligible_tasks(tasks: Sequence[Task]) -> List[Task]:
    """Top-level, unfinished tasks with an estimate."""
    return [
        t for t in tasks
        if not t.parent_task_id
        and t.status != "completed"
        and t.estimated_hours
        and t.estimated_hours > 0
    ]


def replan_from(work_hours: WorkHours, now: datetime) -> float:
    """Hour of today from which stored plans are cleared and placed again."""
    if hours_of(now) < work_hours.start:
        return 0.0
    return next_quarter_at_or_after(now) * SLOT_HOURS


def _is_plan_only(log: TaskLog) -> bool:
    return not (log.actual_duration or log.actual_start_time)


def is_replaced_plan(log: TaskLog, work_hours: WorkHours, now: datetime) -> bool:
    """A stored chunk for later today that this pass will clear and redo."""
    return (
        _is_plan_only(log)
        and log.log_date == now.date()
        and bool(log.scheduled_start_time)
        and parse_clock(log.scheduled_start_time) >= replan_from(work_hours, now)
    )


def carried_task_logs(task_logs: Sequence[TaskLog], work_hours: WorkHours, now: datetime) -> List[TaskLog]:
    return [log for log in task_logs if not is_replaced_plan(log, work_hours, now)]


def is_worked(log: TaskLog, work_hours: WorkHours, now: datetime) -> bool:
    """
    Whether a log stands for work done (or under way) rather than a plan.

    Logs with actual times always count. A plan counts once its day has
    passed, or today when it starts before the point this pass replans from.
    """
    if not _is_plan_only(log):
        return True
    today = now.date()
    if log.log_date != today:
        return log.log_date < today
    if not log.scheduled_start_time:
        return False
    return parse_clock(log.scheduled_start_time) < replan_from(work_hours, now)


def completed_hours_by_task(task_logs: Sequence[TaskLog], work_hours: WorkHours, now: datetime) -> Dict[str, float]:
    completed: Dict[str, float] = {}
    for log in task_logs:
        if log.task_id and is_worked(log, work_hours, now):
            completed[log.task_id] = completed.get(log.task_id, 0.0) + log.hours
    return completed


def sort_tasks_by_priority(tasks: Sequence[Task]) -> List[Task]:
    # sorted() is stable, so equal ranks keep input order
    return sorted(tasks, key=lambda t: t.rank)


def chunks_from_slots(task: Task,
                      remaining: float,
                      slots: Sequence[TimeSlot],
                      first_index: int = 0) -> List[ScheduledChunk]:
    """
    Walk slots left to right, turning each contiguous available run into a
    chunk until `remaining` hours are used up.
    """
    chunks: List[ScheduledChunk] = []
    run_start: Optional[TimeSlot] = None
    run_quarters = 0

    def close_run():
        nonlocal remaining
        if run_start is None or run_quarters == 0 or remaining <= 0:
            return
        duration = min(run_quarters * SLOT_HOURS, remaining)
        index = first_index + len(chunks)
        chunks.append(ScheduledChunk(
            task_id=task.id,
            day=run_start.day,
            start=run_start.start,
            duration=duration,
            index=index,
            title=task.title if index == 0 else f"{task.title} ({index + 1})",
            is_placeholder=task.is_placeholder,
        ))
        remaining = round(remaining - duration, 6)

    for slot in slots:
        if remaining <= 0:
            break
        if slot.available:
            if run_start is None:
                run_start, run_quarters = slot, 0
            run_quarters += 1
        else:
            close_run()
            run_start, run_quarters = None, 0
    close_run()
    return chunks


def _persist_today(chunks: Sequence[ScheduledChunk],
                   store: Optional[LogStore],
                   user_id: str,
                   work_hours: WorkHours,
                   now: datetime,
                   days: Collection[date]) -> None:
    today = now.date()
    if store is None or today not in days:
        return
    todays = [c for c in chunks if c.day == today]
    try:
        if hours_of(now) < work_hours.start:
            store.clear_logs_for_date(user_id, today)
        else:
            store.clear_logs_from_time_forward(user_id, today, format_clock(replan_from(work_hours, now)))
        if todays:
            store.save_task_chunks(todays, user_id)
    except Exception:
        PERSIST_FAILURES.inc()
        logger.exception("Error persisting %d task chunks for %s", len(todays), today)
        return
    CHUNKS_PERSISTED.inc(len(todays))
    logger.info("Persisted %d task chunks for %s", len(todays), today)


def schedule_all_tasks(tasks: Sequence[Task],
                       conflict_maps: ConflictMaps,
                       days: Sequence[date],
                       work_hours: WorkHours,
                       store: Optional[LogStore],
                       prefs: UserPrefs,
                       user_id: str = "",
                       task_logs: Sequence[TaskLog] = (),
                       now: Optional[datetime] = None,
                       weekend_days: Optional[Collection[str]] = None) -> ChunksByDate:
    """
    Greedily place flexible tasks into free quarter-hours, day by day.

    Tasks go in priority order (high, medium, low, placeholder). Each day the
    first task that still fits is placed, then the scan restarts, until no
    task fits. Hours left over at the end of `days` stay unscheduled.
    With billable hours enabled, a placeholder task covering the gap to the
    weekly revenue target joins the queue last.
    Only today's chunks are written to `store`; failures there are logged
    and the schedule is still returned. Stored plans for later today are
    replaced by this pass, so they do not count as completed.

    Returns:
        dict of day -> chunks ordered by start time
    """
    now = now_in(prefs.tz, now)
    weekend = prefs.weekend_days if weekend_days is None else weekend_days
    task_logs = carried_task_logs(task_logs, work_hours, now)
    completed = completed_hours_by_task(task_logs, work_hours, now)

    queue = list(eligible_tasks(tasks))
    if prefs.billable_hours_enabled:
        _, week_end = week_window(prefs, now)
        revenue = logged_billable_revenue(task_logs, tasks, prefs, now)
        placeholder = billable_placeholder(queue, completed, revenue, prefs, week_end.date())
        if placeholder is not None:
            queue.append(placeholder)
    queue = sort_tasks_by_priority(queue)

    remaining: List[List] = []  # [task, hours left]
    for task in queue:
        hours = max(0.0, task.estimated_hours - completed.get(task.id, 0.0))
        if hours > 0:
            remaining.append([task, hours])

    placed: List[ScheduledChunk] = []
    chunk_counts: Dict[str, int] = {}

    for day in days:
        if not remaining:
            break
        while remaining:
            progressed = False
            for entry in remaining:
                task, hours = entry
                slots = scan_availability(day, conflict_maps, work_hours, placed, weekend, now)
                chunks = chunks_from_slots(task, hours, slots, chunk_counts.get(task.id, 0))
                if not chunks:
                    continue
                scheduled = sum(c.duration for c in chunks)
                placed.extend(chunks)
                chunk_counts[task.id] = chunk_counts.get(task.id, 0) + len(chunks)
                entry[1] = round(hours - scheduled, 6)
                logger.debug("Scheduled %.2fh for %r on %s, remaining %.2fh", scheduled, task.title, day, entry[1])
                if entry[1] <= 0:
                    remaining.remove(entry)
                progressed = True
                break
            if not progressed:
                break

    for task, hours in remaining:
        logger.debug("Left %.2fh of %r unscheduled", hours, task.title)

    by_date: ChunksByDate = {}
    for chunk in placed:
        by_date.setdefault(chunk.day, []).append(chunk)
    for chunks in by_date.values():
        chunks.sort(key=lambda c: c.start)

    logger.info("Placed %d chunks across %d days, %d tasks left over", len(placed), len(by_date), len(remaining))
    _persist_today(placed, store, user_id, work_hours, now, days)
    return by_date
