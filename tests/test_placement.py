"""
Tests for greedy task placement.

Tests cover:
- Priority ordering and chunking around fixed events
- Completed hours and eligibility
- Revenue placeholder injection
- Persistence of today's chunks
- Scheduling invariants
"""

from collections import defaultdict
from datetime import timedelta

from calendar_engine.clock import quarter_keys
from calendar_engine.conflicts import ConflictMaps, build_conflict_maps
from calendar_engine.models import TaskLog, UserPrefs, WorkHours
from calendar_engine.placement import (
    completed_hours_by_task,
    eligible_tasks,
    schedule_all_tasks,
    sort_tasks_by_priority,
)

from conftest import MONDAY, TUESDAY, TZ, WEDNESDAY, at


def flatten(by_date):
    return [c for day in sorted(by_date) for c in by_date[day]]


def spans(chunks):
    return [(c.day, c.start, c.duration) for c in chunks]


class TestPriority:
    """Tests for priority ordering."""

    def test_high_fills_the_only_two_hours(self, prefs, store, early_now, task_factory):
        """Test that a high task takes all 2h of capacity and the low task gets none."""
        tasks = [task_factory("low", 1, "low"), task_factory("high", 2, "high")]
        result = schedule_all_tasks(tasks, ConflictMaps(), [TUESDAY], WorkHours(9, 11), store, prefs, now=early_now)
        chunks = flatten(result)
        assert [c.task_id for c in chunks] == ["high"]
        assert sum(c.duration for c in chunks) == 2

    def test_sort_is_stable_and_unknown_is_medium(self, task_factory):
        tasks = [
            task_factory("a", 1, "low"),
            task_factory("b", 1, "urgent"),
            task_factory("c", 1, "high"),
            task_factory("d", 1, "medium"),
        ]
        assert [t.id for t in sort_tasks_by_priority(tasks)] == ["c", "b", "d", "a"]


class TestChunking:
    """Tests for splitting tasks around fixed events."""

    def test_nine_hour_task_around_meeting(self, prefs, store, early_now, task_factory, meeting_factory):
        """Test that 9-17 with a 10-11 meeting yields 09:00-10:00 and 11:00-17:00."""
        maps = build_conflict_maps([], [], [meeting_factory("m", TUESDAY, "10:00", "11:00")], [], [TUESDAY], tz=TZ)
        result = schedule_all_tasks([task_factory("big", 9)], maps, [TUESDAY], WorkHours(9, 17), store, prefs,
                                    now=early_now)
        chunks = result[TUESDAY]
        assert spans(chunks) == [(TUESDAY, 9.0, 1.0), (TUESDAY, 11.0, 6.0)]
        assert [c.title for c in chunks] == ["Big", "Big (2)"]
        assert [c.chunk_id for c in chunks] == ["big-chunk-0", "big-chunk-1"]

    def test_carries_over_to_next_day(self, prefs, store, early_now, task_factory):
        result = schedule_all_tasks([task_factory("long", 10)], ConflictMaps(), [TUESDAY, WEDNESDAY],
                                    WorkHours(9, 17), store, prefs, now=early_now)
        assert spans(flatten(result)) == [(TUESDAY, 9.0, 8.0), (WEDNESDAY, 9.0, 2.0)]

    def test_next_task_fills_the_rest_of_the_day(self, prefs, store, early_now, task_factory):
        tasks = [task_factory("a", 1.5, "high"), task_factory("b", 2)]
        result = schedule_all_tasks(tasks, ConflictMaps(), [TUESDAY], WorkHours(9, 17), store, prefs, now=early_now)
        assert [(c.task_id, c.start, c.duration) for c in result[TUESDAY]] == [("a", 9.0, 1.5), ("b", 10.5, 2.0)]

    def test_weekend_days_are_skipped(self, prefs, store, early_now, task_factory):
        saturday = MONDAY + timedelta(days=5)
        result = schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [saturday], WorkHours(9, 17), store,
                                    prefs, now=early_now)
        assert result == {}

    def test_no_capacity_is_not_an_error(self, prefs, store, early_now, task_factory):
        result = schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [], WorkHours(9, 17), store, prefs,
                                    now=early_now)
        assert result == {}


class TestEligibility:
    """Tests for which tasks are scheduled and for how long."""

    def test_filters_subtasks_completed_and_unestimated(self, task_factory):
        tasks = [
            task_factory("ok", 1),
            task_factory("sub", 1, parent_task_id="ok"),
            task_factory("done", 1, status="completed"),
            task_factory("zero", 0),
        ]
        assert [t.id for t in eligible_tasks(tasks)] == ["ok"]

    def test_completed_hours_are_subtracted(self, prefs, store, early_now, task_factory, log_factory):
        logs = [log_factory("a", MONDAY - timedelta(days=7), "09:00", 1.0)]
        result = schedule_all_tasks([task_factory("a", 3)], ConflictMaps(), [TUESDAY], WorkHours(9, 17), store,
                                    prefs, task_logs=logs, now=early_now)
        assert sum(c.duration for c in flatten(result)) == 2.0

    def test_fully_logged_task_is_not_placed(self, prefs, store, early_now, task_factory, log_factory):
        logs = [log_factory("a", MONDAY - timedelta(days=7), "09:00", 3.0)]
        result = schedule_all_tasks([task_factory("a", 3)], ConflictMaps(), [TUESDAY], WorkHours(9, 17), store,
                                    prefs, task_logs=logs, now=early_now)
        assert result == {}

    def test_only_worked_logs_count_as_completed(self, log_factory):
        now = at(TUESDAY, "12:07")
        logs = [
            log_factory("a", MONDAY, "09:00", 1.0),
            TaskLog("a", MONDAY, scheduled_start_time="13:00", scheduled_duration=2.0),
            TaskLog("a", TUESDAY, scheduled_start_time="10:00", scheduled_duration=1.5),
            # later today and tomorrow are still plans
            TaskLog("a", TUESDAY, scheduled_start_time="13:00", scheduled_duration=4.0),
            TaskLog("a", WEDNESDAY, scheduled_start_time="09:00", scheduled_duration=8.0),
        ]
        assert completed_hours_by_task(logs, WorkHours(9, 17), now) == {"a": 4.5}


class TestRevenuePlaceholder:
    """Tests for the billable placeholder joining the queue."""

    def test_placeholder_goes_after_real_work(self, billable_prefs, store, early_now, task_factory, log_factory):
        """Test that $500 already logged leaves an 8h placeholder after the real task."""
        done = task_factory("done", 5, rate=100, billable=True, status="completed", is_complete=True)
        logs = [log_factory("done", MONDAY, "08:00", 5.0)]
        tasks = [done, task_factory("real", 2)]
        result = schedule_all_tasks(tasks, ConflictMaps(), [TUESDAY], WorkHours(9, 22), store, billable_prefs,
                                    task_logs=logs, now=early_now)
        chunks = result[TUESDAY]
        assert [(c.task_id, c.start, c.duration) for c in chunks] == [
            ("real", 9.0, 2.0),
            ("placeholder-2025-11-09", 11.0, 8.0),
        ]
        assert chunks[1].is_placeholder
        assert chunks[1].title == "Billable Work"

    def test_no_placeholder_when_disabled(self, prefs, store, early_now, task_factory):
        result = schedule_all_tasks([task_factory("real", 1)], ConflictMaps(), [TUESDAY], WorkHours(9, 22), store,
                                    prefs, now=early_now)
        assert [c.task_id for c in flatten(result)] == ["real"]


class TestPersistence:
    """Tests for writing today's chunks to the log store."""

    def test_before_work_hours_clears_whole_day(self, prefs, mock_store, task_factory):
        now = at(TUESDAY, "07:00")
        result = schedule_all_tasks([task_factory("a", 10)], ConflictMaps(), [TUESDAY, WEDNESDAY],
                                    WorkHours(9, 17), mock_store, prefs, user_id="u1", now=now)
        mock_store.clear_logs_for_date.assert_called_once_with("u1", TUESDAY)
        mock_store.clear_logs_from_time_forward.assert_not_called()
        mock_store.save_task_chunks.assert_called_once_with(result[TUESDAY], "u1")

    def test_during_work_hours_clears_from_now(self, prefs, mock_store, task_factory):
        now = at(TUESDAY, "12:07")
        schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [TUESDAY], WorkHours(9, 17), mock_store, prefs,
                           user_id="u1", now=now)
        mock_store.clear_logs_from_time_forward.assert_called_once_with("u1", TUESDAY, "12:15")
        mock_store.clear_logs_for_date.assert_not_called()

    def test_future_days_are_not_persisted(self, prefs, mock_store, early_now, task_factory):
        schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [TUESDAY], WorkHours(9, 17), mock_store, prefs,
                           now=early_now)
        mock_store.save_task_chunks.assert_not_called()

    def test_store_failure_is_swallowed(self, prefs, mock_store, task_factory):
        """Test that a failing store still returns the schedule."""
        mock_store.save_task_chunks.side_effect = RuntimeError("db down")
        result = schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [TUESDAY], WorkHours(9, 17),
                                    mock_store, prefs, user_id="u1", now=at(TUESDAY, "07:00"))
        assert spans(result[TUESDAY]) == [(TUESDAY, 9.0, 2.0)]

    def test_in_memory_store_keeps_today(self, prefs, store, task_factory):
        schedule_all_tasks([task_factory("a", 2)], ConflictMaps(), [TUESDAY], WorkHours(9, 17), store, prefs,
                           user_id="u1", now=at(TUESDAY, "07:00"))
        records = store.records("u1")
        assert [(r.task_id, r.scheduled_start_time, r.scheduled_end_time) for r in records] == [("a", "09:00", "11:00")]


class TestInvariants:
    """Tests for properties that hold for any pass."""

    def test_no_overlaps_and_within_work_hours(self, early_now, store, task_factory, meeting_factory):
        prefs = UserPrefs(tz=TZ, weekend_days=frozenset())
        days = [MONDAY + timedelta(days=i) for i in range(4)]
        meetings = [
            meeting_factory("m1", TUESDAY, "11:15", "12:40"),
            meeting_factory("m2", WEDNESDAY, "09:00", "13:00"),
        ]
        maps = build_conflict_maps([], [], meetings, [], days, tz=TZ)
        tasks = [
            task_factory("a", 7.5, "high"),
            task_factory("b", 3.25, "low"),
            task_factory("c", 12, "medium"),
            task_factory("d", 0.75, "high"),
        ]
        work = WorkHours(9, 18)
        result = schedule_all_tasks(tasks, maps, days, work, store, prefs, now=early_now)

        seen = set()
        per_task = defaultdict(float)
        fixed = maps.occupied_keys()
        for chunk in flatten(result):
            assert work.start <= chunk.start and chunk.end <= work.end
            keys = set(quarter_keys(chunk.day, chunk.start, chunk.duration))
            assert not keys & seen
            assert not keys & fixed
            seen |= keys
            per_task[chunk.task_id] += chunk.duration
        for task in tasks:
            assert per_task[task.id] <= task.estimated_hours
