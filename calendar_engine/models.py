# calendar_engine/models.py
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, List, NamedTuple, Optional

QUARTERS_PER_DAY = 96
SLOT_HOURS = 0.25


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    PLACEHOLDER = "placeholder"


PRIORITY_RANK: Dict[str, int] = {
    Priority.HIGH.value: 0,
    Priority.MEDIUM.value: 1,
    Priority.LOW.value: 2,
    Priority.PLACEHOLDER.value: 3,
}


class EventKind(str, Enum):
    HABIT = "habit"
    SESSION = "session"
    MEETING = "meeting"
    TASK_LOG = "task_log"
    WIND_DOWN = "wind_down"


class SlotKey(NamedTuple):
    day: date
    quarter: int  # 0..95, 15-minute index from midnight


@dataclass
class UserPrefs:
    tz: str = "America/New_York"
    work_hours_start: float = 10.0
    work_hours_end: float = 22.0
    weekend_days: FrozenSet[str] = frozenset({"saturday", "sunday"})
    billable_hours_enabled: bool = False
    weekly_revenue_target: float = 1000.0
    default_hourly_rate: float = 65.0
    week_ending_day: str = "sunday"
    week_ending_time: str = "20:30"
    week_ending_timezone: str = "America/New_York"
    buffer_strategy: str = "utilization"  # or "priority"
    wind_down_habit_name: str = "Wind down time"
    morning_routine_habit_name: str = "Morning Routine"

    @property
    def work_hours(self) -> "WorkHours":
        return WorkHours(self.work_hours_start, self.work_hours_end)


class WorkHours(NamedTuple):
    start: float
    end: float


@dataclass(frozen=True)
class FixedEvent:
    kind: EventKind
    source_id: str
    day: date
    start: float     # fractional hours
    duration: float  # hours
    category_id: Optional[str] = None

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass
class HabitLog:
    log_date: date
    scheduled_start_time: Optional[str] = None  # "HH:MM"
    duration: Optional[int] = None              # minutes
    is_skipped: bool = False
    id: Optional[str] = None


@dataclass
class Habit:
    id: str
    name: str
    current_start_time: Optional[str] = None  # "HH:MM"
    duration: int = 0                         # minutes
    scheduling_rule: Optional[str] = None     # "pull_back_15min"
    logs: List[HabitLog] = field(default_factory=list)
    category_id: Optional[str] = None
    show_on_calendar: bool = True
    is_wind_down: bool = False
    is_morning_routine: bool = False

    def log_for(self, day: date) -> Optional[HabitLog]:
        for log in self.logs:
            if log.log_date == day:
                return log
        return None


@dataclass
class Project:
    id: str
    name: str = "Project"
    hourly_rate: float = 0.0
    category_id: Optional[str] = None


@dataclass
class Session:
    id: str
    scheduled_date: date
    actual_start_time: Optional[str] = None  # "HH:MM[:SS][+TZ]"
    duration_hours: float = 2.0
    project: Optional[Project] = None

    @property
    def category_id(self) -> Optional[str]:
        return self.project.category_id if self.project else None


@dataclass
class Meeting:
    id: str
    start_time: datetime
    end_time: datetime
    title: str = ""
    category_id: Optional[str] = None


@dataclass
class Task:
    id: str
    title: str
    estimated_hours: float
    priority: str = Priority.MEDIUM.value
    is_billable: bool = False
    project: Optional[Project] = None
    status: str = "todo"
    is_complete: bool = False
    parent_task_id: Optional[str] = None
    is_placeholder: bool = False

    @property
    def hourly_rate(self) -> float:
        return float(self.project.hourly_rate) if self.project else 0.0

    @property
    def category_id(self) -> Optional[str]:
        return self.project.category_id if self.project else None

    @property
    def rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK[Priority.MEDIUM.value])


@dataclass
class TaskLog:
    task_id: str
    log_date: date
    scheduled_start_time: Optional[str] = None
    actual_start_time: Optional[str] = None
    scheduled_duration: Optional[float] = None
    actual_duration: Optional[float] = None
    estimated_hours: Optional[float] = None
    id: Optional[str] = None

    @property
    def start_time(self) -> Optional[str]:
        return self.actual_start_time or self.scheduled_start_time

    @property
    def hours(self) -> float:
        """Logged hours, falling back through the recorded durations."""
        return float(self.actual_duration or self.scheduled_duration or self.estimated_hours or 0)


@dataclass
class ScheduledChunk:
    task_id: str
    day: date
    start: float
    duration: float
    index: int = 0
    title: str = ""
    is_placeholder: bool = False

    @property
    def end(self) -> float:
        return self.start + self.duration

    @property
    def chunk_id(self) -> str:
        return f"{self.task_id}-chunk-{self.index}"


@dataclass
class TimeSlot:
    day: date
    quarter: int
    available: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def start(self) -> float:
        return self.quarter * SLOT_HOURS

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.day, self.quarter)


@dataclass
class BufferConfig:
    id: str
    category_id: str
    weekly_hours: float
    priority: int = 0
    category_name: Optional[str] = None


@dataclass
class BufferBlock:
    category_id: str
    buffer_config_id: str
    day: date
    start: float
    duration: float
    remaining_hours: float
    priority: int = 0

    @property
    def end(self) -> float:
        return self.start + self.duration

    @property
    def block_id(self) -> str:
        return f"buffer-{self.buffer_config_id}-{self.day.isoformat()}-{self.start}"


@dataclass
class CategoryActivity:
    id: str
    category_id: str
    duration: float  # hours
    day: date
    kind: EventKind


@dataclass
class CalendarInputs:
    habits: List[Habit] = field(default_factory=list)
    sessions: List[Session] = field(default_factory=list)
    meetings: List[Meeting] = field(default_factory=list)
    task_logs: List[TaskLog] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    buffer_configs: List[BufferConfig] = field(default_factory=list)
    days: List[date] = field(default_factory=list)
    user_id: str = ""
