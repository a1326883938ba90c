# calendar_engine/config.py
import logging
from typing import Any, Iterable, Mapping, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .clock import DAY_NAMES, format_clock, parse_clock
from .models import UserPrefs

logger = logging.getLogger(__name__)

DEFAULT_WORK_HOURS_START = 10.0
DEFAULT_WORK_HOURS_END = 22.0
DEFAULT_WEEKLY_REVENUE_TARGET = 1000.0
DEFAULT_HOURLY_RATE = 65.0
DEFAULT_WEEKEND_DAYS = frozenset({"saturday", "sunday"})
DEFAULT_WEEK_ENDING_DAY = "sunday"
DEFAULT_WEEK_ENDING_TIME = "20:30"
DEFAULT_TIMEZONE = "America/New_York"
BUFFER_STRATEGIES = ("utilization", "priority")


def _clock_or(raw: Any, default: float, name: str) -> float:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
    else:
        try:
            value = parse_clock(str(raw))
        except ValueError:
            logger.warning("Invalid %s %r, using %s", name, raw, default)
            return default
    if not 0 <= value <= 24:
        logger.warning("Out of range %s %r, using %s", name, raw, default)
        return default
    return value


def _positive_or(raw: Any, default: float, name: str) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive %s %r, using %s", name, raw, default)
        return default
    return value


def _timezone_or(raw: Any, default: str) -> str:
    if not raw:
        return default
    try:
        ZoneInfo(str(raw))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using %s", raw, default)
        return default
    return str(raw)


def _weekend_or(raw: Optional[Iterable[str]]) -> frozenset:
    if raw is None:
        return DEFAULT_WEEKEND_DAYS
    days = {str(d).strip().lower() for d in raw}
    unknown = days - set(DAY_NAMES)
    if unknown:
        logger.warning("Ignoring unknown weekend days %s", sorted(unknown))
    return frozenset(days & set(DAY_NAMES))


def prefs_from_settings(settings: Optional[Mapping[str, Any]]) -> UserPrefs:
    """
    Build UserPrefs from a raw user-settings record.

    Missing or invalid values fall back to the documented defaults instead of
    failing the scheduling pass. An end time at or before the start time
    resets both bounds.
    """
    settings = settings or {}
    start = _clock_or(settings.get("work_hours_start"), DEFAULT_WORK_HOURS_START, "work_hours_start")
    end = _clock_or(settings.get("work_hours_end"), DEFAULT_WORK_HOURS_END, "work_hours_end")
    if end <= start:
        logger.warning("Work hours %s-%s are empty, using defaults", start, end)
        start, end = DEFAULT_WORK_HOURS_START, DEFAULT_WORK_HOURS_END

    week_ending_day = str(settings.get("week_ending_day") or DEFAULT_WEEK_ENDING_DAY).lower()
    if week_ending_day not in DAY_NAMES:
        logger.warning("Invalid week_ending_day %r, using %s", week_ending_day, DEFAULT_WEEK_ENDING_DAY)
        week_ending_day = DEFAULT_WEEK_ENDING_DAY

    week_ending_time = settings.get("week_ending_time") or DEFAULT_WEEK_ENDING_TIME
    try:
        week_ending_time = format_clock(parse_clock(str(week_ending_time)))
    except ValueError:
        logger.warning("Invalid week_ending_time %r, using %s", week_ending_time, DEFAULT_WEEK_ENDING_TIME)
        week_ending_time = DEFAULT_WEEK_ENDING_TIME

    strategy = settings.get("buffer_strategy") or "utilization"
    if strategy not in BUFFER_STRATEGIES:
        logger.warning("Unknown buffer_strategy %r, using utilization", strategy)
        strategy = "utilization"

    week_tz = _timezone_or(settings.get("week_ending_timezone"), DEFAULT_TIMEZONE)

    return UserPrefs(
        tz=_timezone_or(settings.get("timezone"), week_tz),
        work_hours_start=start,
        work_hours_end=end,
        weekend_days=_weekend_or(settings.get("weekend_days")),
        billable_hours_enabled=bool(settings.get("billable_hours_enabled", False)),
        weekly_revenue_target=_positive_or(
            settings.get("weekly_revenue_target"), DEFAULT_WEEKLY_REVENUE_TARGET, "weekly_revenue_target"
        ),
        default_hourly_rate=_positive_or(
            settings.get("default_hourly_rate"), DEFAULT_HOURLY_RATE, "default_hourly_rate"
        ),
        week_ending_day=week_ending_day,
        week_ending_time=week_ending_time,
        week_ending_timezone=week_tz,
        buffer_strategy=strategy,
        wind_down_habit_name=settings.get("wind_down_habit_name") or "Wind down time",
        morning_routine_habit_name=settings.get("morning_routine_habit_name") or "Morning Routine",
    )
