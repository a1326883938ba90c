# calendar_engine/habits.py
from datetime import date
from typing import Optional

from .clock import format_clock, parse_clock
from .models import Habit, HabitLog

PULL_BACK_RULE = "pull_back_15min"
PULL_BACK_MINUTES = 15


def _pull_back(habit: Habit, day: date, base_start: Optional[str]) -> Optional[str]:
    """
    Shift the anchor time 15 minutes earlier for every day since the most
    recent log at or before `day`. Floors at 00:00.
    """
    earlier = [log for log in habit.logs if log.log_date <= day]
    if not earlier:
        return base_start

    anchor_log = max(earlier, key=lambda log: log.log_date)
    anchor_time = anchor_log.scheduled_start_time or base_start
    if not anchor_time:
        return None
    days_after = (day - anchor_log.log_date).days
    if days_after <= 0:
        return anchor_time

    minutes = int(round(parse_clock(anchor_time) * 60)) - days_after * PULL_BACK_MINUTES
    return format_clock(max(minutes, 0) / 60)


def resolve_habit_start_time(habit: Habit, day: date, log: Optional[HabitLog] = None) -> Optional[str]:
    """
    Effective "HH:MM" start of `habit` on `day`, or None when the habit has
    no time or is skipped that day.

    An explicit start on the day's log wins. Habits with the pull-back rule
    drift 15 minutes earlier per day after their last log.
    """
    if log is None:
        log = habit.log_for(day)
    if log is not None and log.is_skipped:
        return None

    if log is not None and log.scheduled_start_time:
        start = log.scheduled_start_time
    elif habit.scheduling_rule == PULL_BACK_RULE:
        start = _pull_back(habit, day, habit.current_start_time)
    else:
        start = habit.current_start_time
    return format_clock(parse_clock(start)) if start else None


def resolve_habit_duration(habit: Habit, day: date, log: Optional[HabitLog] = None) -> int:
    """Duration in minutes: the day's log override, else the habit default."""
    if log is None:
        log = habit.log_for(day)
    if log is not None and log.duration:
        return int(log.duration)
    return int(habit.duration or 0)
