"""
Pytest fixtures for calendar engine tests.

Provides:
- A fixed demo week (Monday 2025-11-03, America/New_York)
- Frozen "now" timestamps
- Preference, log store and record factories
"""

from datetime import date, timedelta
from unittest.mock import MagicMock

import pandas as pd
import pytest

from calendar_engine.models import Meeting, Project, Task, TaskLog, TimeSlot, UserPrefs
from calendar_engine.persistence import InMemoryLogStore

TZ = "America/New_York"
MONDAY = date(2025, 11, 3)
TUESDAY = MONDAY + timedelta(days=1)
WEDNESDAY = MONDAY + timedelta(days=2)
SATURDAY = MONDAY + timedelta(days=5)
SUNDAY = MONDAY + timedelta(days=6)


def at(day: date, clock: str) -> pd.Timestamp:
    """tz-aware timestamp for `day` at "HH:MM" in the test timezone."""
    return pd.Timestamp(f"{day.isoformat()} {clock}").tz_localize(TZ)


# =============================================================================
# TIME FIXTURES
# =============================================================================

@pytest.fixture
def monday():
    return MONDAY


@pytest.fixture
def tuesday():
    return TUESDAY


@pytest.fixture
def early_now():
    """Monday 07:00, before any work hours start."""
    return at(MONDAY, "07:00")


# =============================================================================
# PREFERENCES & STORES
# =============================================================================

@pytest.fixture
def prefs():
    return UserPrefs(tz=TZ, week_ending_timezone=TZ)


@pytest.fixture
def billable_prefs():
    return UserPrefs(
        tz=TZ,
        week_ending_timezone=TZ,
        billable_hours_enabled=True,
        weekly_revenue_target=1000,
        default_hourly_rate=65,
    )


@pytest.fixture
def store():
    return InMemoryLogStore()


@pytest.fixture
def mock_store():
    """Log store that records calls."""
    return MagicMock()


# =============================================================================
# RECORD FACTORIES
# =============================================================================

@pytest.fixture
def meeting_factory():
    def make(id: str, day: date, start: str, end: str, category_id=None, end_day=None) -> Meeting:
        return Meeting(
            id=id,
            title=id,
            start_time=at(day, start),
            end_time=at(end_day or day, end),
            category_id=category_id,
        )
    return make


@pytest.fixture
def task_factory():
    def make(id: str, hours: float, priority: str = "medium", rate: float = 0.0, billable: bool = False,
             category_id=None, **kwargs) -> Task:
        project = Project(id=f"p-{id}", name=f"Project {id}", hourly_rate=rate, category_id=category_id)
        return Task(
            id=id,
            title=id.title(),
            estimated_hours=hours,
            priority=priority,
            is_billable=billable,
            project=project,
            **kwargs,
        )
    return make


@pytest.fixture
def log_factory():
    def make(task_id: str, day: date, start: str = None, hours: float = None, **kwargs) -> TaskLog:
        return TaskLog(task_id=task_id, log_date=day, scheduled_start_time=start, actual_duration=hours, **kwargs)
    return make


@pytest.fixture
def free_day():
    """Build an all-available slot list for `day` between two clock hours."""
    def make(day: date, start: float, end: float):
        return [TimeSlot(day=day, quarter=q, available=True) for q in range(int(start * 4), int(end * 4))]
    return make
