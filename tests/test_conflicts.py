"""
Tests for clock helpers, conflict maps and the daily wind-down block.
"""

from datetime import timedelta

import pandas as pd
import pytest

from calendar_engine.clock import format_clock, next_quarter_at_or_after, parse_clock, quarter_keys
from calendar_engine.conflicts import (
    build_conflict_maps,
    displaced_start,
    generate_wind_down_buffers,
    meeting_span,
)
from calendar_engine.models import Habit, HabitLog, Session, SlotKey, TaskLog

from conftest import MONDAY, SUNDAY, TUESDAY, TZ, at


class TestClock:
    """Tests for time-of-day parsing and quarter arithmetic."""

    @pytest.mark.parametrize("raw,expected", [
        ("09:00", 9.0),
        ("9:30", 9.5),
        ("13:45:00", 13.75),
        ("13:00:00+00", 13.0),
        ("24:00", 24.0),
    ])
    def test_parse_clock(self, raw, expected):
        assert parse_clock(raw) == expected

    @pytest.mark.parametrize("raw", ["", "noon", "25:00", "10:75"])
    def test_parse_clock_rejects_garbage(self, raw):
        with pytest.raises(ValueError):
            parse_clock(raw)

    def test_format_clock(self):
        assert format_clock(7.75) == "07:45"
        assert format_clock(0) == "00:00"

    def test_next_quarter_at_or_after(self):
        """Test that "now" rounds up to the next quarter boundary."""
        assert next_quarter_at_or_after(at(MONDAY, "10:00")) == 40
        assert next_quarter_at_or_after(at(MONDAY, "10:07")) == 41
        assert next_quarter_at_or_after(pd.Timestamp("2025-11-03 10:15:30")) == 42

    def test_quarter_keys_clip_at_midnight(self):
        keys = quarter_keys(MONDAY, 23.5, 2)
        assert keys == [SlotKey(MONDAY, 94), SlotKey(MONDAY, 95)]


class TestDisplacement:
    """Tests for the rounding of displaced habit starts."""

    @pytest.mark.parametrize("end,expected", [
        (10.0, 10.0),
        (10.25, 10.5),
        (10.5, 10.5),
        (10 + 40 / 60, 11.0),
        (10 + 31 / 60, 11.0),
    ])
    def test_displaced_start(self, end, expected):
        assert displaced_start(end) == expected


class TestBuildConflictMaps:
    """Tests for indexing fixed events by quarter-hour."""

    def test_meeting_marks_its_quarters(self, meeting_factory):
        meeting = meeting_factory("sync", TUESDAY, "10:00", "11:00")
        maps = build_conflict_maps([], [], [meeting], [], [TUESDAY], tz=TZ)
        assert set(maps.meetings) == {SlotKey(TUESDAY, q) for q in range(40, 44)}
        assert maps.reasons_at(SlotKey(TUESDAY, 40)) == ["meeting"]

    def test_habit_pushed_past_meeting(self, meeting_factory):
        """Test that a clashing habit restarts on the hour after a meeting ending at :40."""
        habit = Habit(id="h", name="Stretch", current_start_time="10:00", duration=60)
        meeting = meeting_factory("sync", TUESDAY, "09:30", "10:40")
        maps = build_conflict_maps([habit], [], [meeting], [], [TUESDAY], tz=TZ)
        assert min(k.quarter for k in maps.habits) == 44
        assert max(k.quarter for k in maps.habits) == 47

    def test_habit_pushed_past_meeting_then_session(self, meeting_factory):
        habit = Habit(id="h", name="Stretch", current_start_time="10:00", duration=60)
        meeting = meeting_factory("sync", TUESDAY, "09:30", "10:40")
        session = Session(id="s", scheduled_date=TUESDAY, actual_start_time="11:00:00", duration_hours=2)
        maps = build_conflict_maps([habit], [session], [meeting], [], [TUESDAY], tz=TZ)
        assert min(k.quarter for k in maps.habits) == 52  # 13:00
        assert SlotKey(TUESDAY, 44) in maps.sessions

    def test_session_defaults_to_work_hours_start(self):
        session = Session(id="s", scheduled_date=TUESDAY)
        maps = build_conflict_maps([], [session], [], [], [TUESDAY], work_hours_start=9.0)
        assert set(maps.sessions) == {SlotKey(TUESDAY, q) for q in range(36, 44)}

    def test_task_log_default_duration(self):
        """Test that a task log with no durations blocks one hour."""
        log = TaskLog(task_id="t", log_date=TUESDAY, scheduled_start_time="14:00")
        maps = build_conflict_maps([], [], [], [log], [TUESDAY])
        assert set(maps.task_logs) == {SlotKey(TUESDAY, q) for q in range(56, 60)}

    def test_task_log_prefers_actual_start(self):
        log = TaskLog(task_id="t", log_date=TUESDAY, scheduled_start_time="14:00",
                      actual_start_time="15:00", actual_duration=0.5)
        maps = build_conflict_maps([], [], [], [log], [TUESDAY])
        assert set(maps.task_logs) == {SlotKey(TUESDAY, 60), SlotKey(TUESDAY, 61)}

    def test_hidden_and_skipped_habits_are_ignored(self):
        hidden = Habit(id="a", name="Hidden", current_start_time="12:00", duration=30, show_on_calendar=False)
        skipped = Habit(id="b", name="Skipped", current_start_time="12:00", duration=30,
                        logs=[HabitLog(log_date=TUESDAY, is_skipped=True)])
        maps = build_conflict_maps([hidden, skipped], [], [], [], [TUESDAY])
        assert maps.habits == {}

    def test_events_outside_days_are_ignored(self, meeting_factory):
        meeting = meeting_factory("sync", MONDAY, "10:00", "11:00")
        maps = build_conflict_maps([], [], [meeting], [], [TUESDAY], tz=TZ)
        assert maps.meetings == {}

    def test_meeting_past_midnight_ends_at_24(self, meeting_factory):
        meeting = meeting_factory("late", TUESDAY, "23:00", "01:00", end_day=TUESDAY + timedelta(days=1))
        assert meeting_span(meeting, TZ) == (TUESDAY, 23.0, 24.0)


class TestWindDown:
    """Tests for the daily wind-down block."""

    def test_future_day_gets_an_hour_at_seven(self, early_now):
        events = generate_wind_down_buffers([TUESDAY], [], early_now, TZ)
        assert [(e.day, e.start, e.duration) for e in events] == [(TUESDAY, 19.0, 1.0)]

    def test_today_gets_half_an_hour(self, early_now):
        events = generate_wind_down_buffers([MONDAY], [], early_now, TZ)
        assert [(e.start, e.duration) for e in events] == [(19.0, 0.5)]

    def test_today_expires_after_one_pm(self):
        events = generate_wind_down_buffers([MONDAY], [], at(MONDAY, "13:30"), TZ)
        assert events == []

    def test_past_days_are_skipped(self, early_now):
        events = generate_wind_down_buffers([SUNDAY - timedelta(days=7), TUESDAY], [], early_now, TZ)
        assert [e.day for e in events] == [TUESDAY]

    def test_moves_after_clashing_meeting(self, early_now, meeting_factory):
        meeting = meeting_factory("dinner", TUESDAY, "18:30", "20:00")
        events = generate_wind_down_buffers([TUESDAY], [meeting], early_now, TZ)
        assert events[0].start == 20.0

    def test_dropped_when_pushed_to_eleven(self, early_now, meeting_factory):
        meeting = meeting_factory("late", TUESDAY, "18:30", "23:00")
        assert generate_wind_down_buffers([TUESDAY], [meeting], early_now, TZ) == []

    def test_feeds_the_buffer_map(self, early_now):
        events = generate_wind_down_buffers([TUESDAY], [], early_now, TZ)
        maps = build_conflict_maps([], [], [], [], [TUESDAY], wind_down=events)
        assert SlotKey(TUESDAY, 76) in maps.buffers
        assert maps.reasons_at(SlotKey(TUESDAY, 76)) == ["wind_down"]
