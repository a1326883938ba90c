# calendar_engine/persistence.py
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Protocol, Sequence

from .clock import format_clock, parse_clock
from .models import CalendarInputs, ScheduledChunk, TaskLog


class LogStore(Protocol):
    """Where today's scheduled chunks are written as task daily logs."""

    def save_task_chunks(self, chunks: Sequence[ScheduledChunk], user_id: str) -> None: ...

    def clear_logs_for_date(self, user_id: str, day: date) -> None: ...

    def clear_logs_from_time_forward(self, user_id: str, day: date, time: str) -> None: ...


class DataProvider(Protocol):
    def fetch_calendar_data(self, user_id: str, days: Sequence[date]) -> CalendarInputs: ...


@dataclass
class LogRecord:
    user_id: str
    task_id: str
    log_date: date
    scheduled_start_time: str
    scheduled_end_time: str
    estimated_hours: float
    notes: str = ""

    def to_task_log(self) -> TaskLog:
        return TaskLog(
            task_id=self.task_id,
            log_date=self.log_date,
            scheduled_start_time=self.scheduled_start_time,
            scheduled_duration=self.estimated_hours,
            estimated_hours=self.estimated_hours,
        )


def chunk_to_record(chunk: ScheduledChunk, user_id: str) -> LogRecord:
    return LogRecord(
        user_id=user_id,
        task_id=chunk.task_id,
        log_date=chunk.day,
        scheduled_start_time=format_clock(chunk.start),
        scheduled_end_time=format_clock(chunk.end),
        estimated_hours=chunk.duration,
        notes=chunk.title if chunk.index else "",
    )


class InMemoryLogStore:
    """
    Log store that keeps records in a dict per user. Upserts on
    (task, date, start) like the hosted table's unique constraint.
    """

    def __init__(self):
        self._records: Dict[str, List[LogRecord]] = {}

    def records(self, user_id: str) -> List[LogRecord]:
        return list(self._records.get(user_id, []))

    def task_logs(self, user_id: str) -> List[TaskLog]:
        return [r.to_task_log() for r in self.records(user_id)]

    def save_task_chunks(self, chunks: Sequence[ScheduledChunk], user_id: str) -> None:
        existing = self._records.setdefault(user_id, [])
        for chunk in chunks:
            record = chunk_to_record(chunk, user_id)
            existing[:] = [
                r for r in existing
                if (r.task_id, r.log_date, r.scheduled_start_time)
                != (record.task_id, record.log_date, record.scheduled_start_time)
            ]
            existing.append(record)

    def clear_logs_for_date(self, user_id: str, day: date) -> None:
        self._records[user_id] = [r for r in self._records.get(user_id, []) if r.log_date != day]

    def clear_logs_from_time_forward(self, user_id: str, day: date, time: str) -> None:
        cutoff = parse_clock(time)
        self._records[user_id] = [
            r for r in self._records.get(user_id, [])
            if r.log_date != day or parse_clock(r.scheduled_start_time) < cutoff
        ]
