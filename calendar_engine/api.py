# calendar_engine/api.py
import logging
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from .buffers import BufferConfigError
from .clock import format_clock
from .config import prefs_from_settings
from .models import (
    BufferConfig,
    CalendarInputs,
    Habit,
    HabitLog,
    Meeting,
    Project,
    Session,
    Task,
    TaskLog,
)
from .persistence import InMemoryLogStore
from .scheduler import ScheduleCache, generate_schedule

logger = logging.getLogger(__name__)

MAX_CACHED_USERS = 256
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ProjectIn(BaseModel):
    id: str
    name: str = "Project"
    hourly_rate: float = 0.0
    category_id: Optional[str] = None

    def to_project(self) -> Project:
        return Project(id=self.id, name=self.name, hourly_rate=self.hourly_rate, category_id=self.category_id)


class HabitLogIn(BaseModel):
    log_date: date
    scheduled_start_time: Optional[str] = None
    duration: Optional[int] = Field(None, ge=0)
    is_skipped: bool = False
    id: Optional[str] = None


class HabitIn(BaseModel):
    id: str
    name: str
    current_start_time: Optional[str] = None
    duration: int = Field(0, ge=0)
    scheduling_rule: Optional[str] = None
    logs: List[HabitLogIn] = []
    category_id: Optional[str] = None
    show_on_calendar: bool = True
    is_wind_down: bool = False
    is_morning_routine: bool = False

    def to_habit(self) -> Habit:
        return Habit(
            id=self.id,
            name=self.name,
            current_start_time=self.current_start_time,
            duration=self.duration,
            scheduling_rule=self.scheduling_rule,
            logs=[HabitLog(**log.model_dump()) for log in self.logs],
            category_id=self.category_id,
            show_on_calendar=self.show_on_calendar,
            is_wind_down=self.is_wind_down,
            is_morning_routine=self.is_morning_routine,
        )


class SessionIn(BaseModel):
    id: str
    scheduled_date: date
    actual_start_time: Optional[str] = None
    duration_hours: float = Field(2.0, gt=0)
    project: Optional[ProjectIn] = None


class MeetingIn(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime
    title: str = ""
    category_id: Optional[str] = None


class TaskIn(BaseModel):
    id: str
    title: str
    estimated_hours: float = 0.0
    priority: str = "medium"
    is_billable: bool = False
    project: Optional[ProjectIn] = None
    status: str = "todo"
    is_complete: bool = False
    parent_task_id: Optional[str] = None


class TaskLogIn(BaseModel):
    task_id: str
    log_date: date
    scheduled_start_time: Optional[str] = None
    actual_start_time: Optional[str] = None
    scheduled_duration: Optional[float] = None
    actual_duration: Optional[float] = None
    estimated_hours: Optional[float] = None
    id: Optional[str] = None


class BufferConfigIn(BaseModel):
    id: str
    category_id: str = ""
    weekly_hours: float
    priority: int = 0
    category_name: Optional[str] = None


class ScheduleRequest(BaseModel):
    user_id: str
    days: List[date]
    now: Optional[datetime] = None
    settings: Dict[str, Any] = {}
    habits: List[HabitIn] = []
    sessions: List[SessionIn] = []
    meetings: List[MeetingIn] = []
    tasks: List[TaskIn] = []
    task_logs: List[TaskLogIn] = []
    buffer_configs: List[BufferConfigIn] = []

    def to_inputs(self) -> CalendarInputs:
        def project(p: Optional[ProjectIn]) -> Optional[Project]:
            return p.to_project() if p else None

        return CalendarInputs(
            habits=[h.to_habit() for h in self.habits],
            sessions=[
                Session(s.id, s.scheduled_date, s.actual_start_time, s.duration_hours, project(s.project))
                for s in self.sessions
            ],
            meetings=[Meeting(**m.model_dump()) for m in self.meetings],
            task_logs=[TaskLog(**log.model_dump()) for log in self.task_logs],
            tasks=[
                Task(**t.model_dump(exclude={"project"}), project=project(t.project))
                for t in self.tasks
            ],
            buffer_configs=[BufferConfig(**b.model_dump()) for b in self.buffer_configs],
            days=list(self.days),
            user_id=self.user_id,
        )


class ChunkOut(BaseModel):
    id: str
    task_id: str
    title: str
    day: date
    start: str
    end: str
    hours: float
    is_placeholder: bool


class BufferBlockOut(BaseModel):
    id: str
    category_id: str
    buffer_config_id: str
    day: date
    start: str
    end: str
    hours: float
    remaining_hours: float
    priority: int


class WorkHoursOut(BaseModel):
    planned_hours: float
    actual_hours: float
    billable_revenue: float


class ScheduleResponse(BaseModel):
    user_id: str
    input_hash: str
    cached: bool
    chunks: List[ChunkOut]
    buffer_blocks: List[BufferBlockOut]
    work_hours: Optional[WorkHoursOut] = None


def _response(user_id: str, result: ScheduleCache, cached: bool) -> ScheduleResponse:
    summary = result.work_hours
    return ScheduleResponse(
        user_id=user_id,
        input_hash=result.input_hash,
        cached=cached,
        chunks=[
            ChunkOut(
                id=c.chunk_id, task_id=c.task_id, title=c.title, day=c.day,
                start=format_clock(c.start), end=format_clock(c.end), hours=c.duration,
                is_placeholder=c.is_placeholder,
            )
            for c in result.chunks
        ],
        buffer_blocks=[
            BufferBlockOut(
                id=b.block_id, category_id=b.category_id, buffer_config_id=b.buffer_config_id, day=b.day,
                start=format_clock(b.start), end=format_clock(b.end), hours=b.duration,
                remaining_hours=b.remaining_hours, priority=b.priority,
            )
            for b in result.buffer_blocks
        ],
        work_hours=WorkHoursOut(
            planned_hours=summary.planned_hours,
            actual_hours=summary.actual_hours,
            billable_revenue=summary.billable_revenue,
        ) if summary else None,
    )


def create_app(max_cached_users: int = MAX_CACHED_USERS) -> FastAPI:
    """
    Build the RPC app. Serve it with the factory flag, e.g.
    `uvicorn --factory calendar_engine.api:create_app`.

    The last schedule per user is kept for hash gating; the least recently
    used users are evicted past `max_cached_users`.
    """
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    app = FastAPI(title="Calendar Engine")
    app.state.store = InMemoryLogStore()
    app.state.caches = OrderedDict()
    app.mount("/metrics", make_asgi_app())

    @app.post("/schedule", response_model=ScheduleResponse)
    def schedule(req: ScheduleRequest):
        previous = app.state.caches.get(req.user_id)
        try:
            prefs = prefs_from_settings(req.settings)
            result = generate_schedule(req.to_inputs(), prefs, app.state.store, cache=previous, now=req.now)
        except BufferConfigError as exc:
            logger.warning("Rejected buffer configs for %s: %s", req.user_id, exc)
            raise HTTPException(status_code=422, detail=exc.problems)
        except ValueError as exc:
            logger.warning("Rejected schedule request for %s: %s", req.user_id, exc)
            raise HTTPException(status_code=422, detail=str(exc))
        app.state.caches[req.user_id] = result
        app.state.caches.move_to_end(req.user_id)
        while len(app.state.caches) > max_cached_users:
            evicted, _ = app.state.caches.popitem(last=False)
            logger.debug("Evicted cached schedule for %s", evicted)
        return _response(req.user_id, result, cached=result is previous)

    @app.get("/logs/{user_id}")
    def logs(user_id: str):
        return [
            {
                "task_id": r.task_id,
                "log_date": r.log_date,
                "scheduled_start_time": r.scheduled_start_time,
                "scheduled_end_time": r.scheduled_end_time,
                "estimated_hours": r.estimated_hours,
                "notes": r.notes,
            }
            for r in app.state.store.records(user_id)
        ]

    return app
