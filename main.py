# main.py
import logging
from datetime import date

import matplotlib.pyplot as plt
import pandas as pd

from calendar_engine.clock import day_range
from calendar_engine.config import prefs_from_settings
from calendar_engine.models import (
    BufferConfig,
    CalendarInputs,
    Habit,
    HabitLog,
    Meeting,
    Project,
    Session,
    Task,
)
from calendar_engine.persistence import InMemoryLogStore
from calendar_engine.scheduler import buffers_frame, chunks_frame, generate_schedule


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    TZ = "America/New_York"

    # Demo week starts on a Monday; "now" is early that morning
    monday = date(2025, 11, 3)
    now = pd.Timestamp("2025-11-03 07:30").tz_localize(TZ)
    days = day_range(monday, 7)

    prefs = prefs_from_settings({
        "timezone": TZ,
        "work_hours_start": "09:00",
        "work_hours_end": "18:00",
        "billable_hours_enabled": True,
        "weekly_revenue_target": 1500,
        "default_hourly_rate": 75,
    })

    client = Project(id="acme", name="Acme Redesign", hourly_rate=90, category_id="client")
    research = Project(id="thesis", name="Thesis", category_id="research")

    habits = [
        Habit(
            id="run",
            name="Morning run",
            current_start_time="09:00",
            duration=45,
            scheduling_rule="pull_back_15min",
            logs=[HabitLog(log_date=monday, scheduled_start_time="09:00")],
            category_id="health",
        ),
        Habit(id="wind-down", name="Wind down time", current_start_time="17:30", duration=30, is_wind_down=True),
    ]

    meetings = [
        Meeting(
            id="standup",
            title="Team Sync",
            start_time=pd.Timestamp("2025-11-04 09:30").tz_localize(TZ),
            end_time=pd.Timestamp("2025-11-04 10:40").tz_localize(TZ),
        ),
        Meeting(
            id="advisor",
            title="Advisor Mtg",
            start_time=pd.Timestamp("2025-11-06 13:00").tz_localize(TZ),
            end_time=pd.Timestamp("2025-11-06 14:30").tz_localize(TZ),
            category_id="research",
        ),
    ]

    sessions = [
        Session(id="pairing", scheduled_date=date(2025, 11, 5), actual_start_time="14:00", project=client),
    ]

    tasks = [
        Task(id="design", title="Landing page design", estimated_hours=6, priority="high",
             is_billable=True, project=client),
        Task(id="lit", title="Literature review", estimated_hours=5, priority="medium", project=research),
        Task(id="inbox", title="Inbox zero", estimated_hours=1, priority="low"),
    ]

    buffer_configs = [
        BufferConfig(id="buf-research", category_id="research", weekly_hours=4, priority=5, category_name="Research"),
        BufferConfig(id="buf-health", category_id="health", weekly_hours=3, priority=2, category_name="Health"),
    ]

    inputs = CalendarInputs(
        habits=habits,
        sessions=sessions,
        meetings=meetings,
        tasks=tasks,
        buffer_configs=buffer_configs,
        days=days,
        user_id="demo",
    )

    store = InMemoryLogStore()
    result = generate_schedule(inputs, prefs, store, now=now)

    print("=== Task chunks ===")
    print(chunks_frame(result))
    print("\n=== Buffer blocks ===")
    print(buffers_frame(result))
    print("\n=== Billable week ===")
    print(f"planned {result.work_hours.planned_hours:.2f}h, revenue logged ${result.work_hours.billable_revenue:.2f}")
    print(f"persisted {len(store.records('demo'))} logs for today")

    # Plot scheduled vs buffered hours per day
    chunks = chunks_frame(result).groupby("date")["hours"].sum()
    buffers = buffers_frame(result).groupby("date")["hours"].sum()
    per_day = pd.DataFrame({"tasks": chunks, "buffers": buffers}).reindex(days).fillna(0)
    per_day.index = [d.strftime("%a %d") for d in per_day.index]

    per_day.plot(kind="bar", stacked=True, figsize=(10, 3))
    plt.title("Planned Hours per Day")
    plt.xlabel("Day")
    plt.ylabel("Hours")
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
