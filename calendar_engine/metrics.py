# calendar_engine/metrics.py
from prometheus_client import Counter, Summary

SCHEDULE_TIME = Summary(
    "schedule_generation_seconds",
    "Time spent generating a calendar schedule pass",
)

SCHEDULE_CACHE = Counter(
    "schedule_cache_total",
    "Scheduling passes by cache outcome",
    ["outcome"],  # hit | miss
)

CHUNKS_PERSISTED = Counter(
    "schedule_chunks_persisted_total",
    "Task chunks for today written to the log store",
)

PERSIST_FAILURES = Counter(
    "schedule_persist_failures_total",
    "Failed attempts to persist today's task chunks",
)

BUFFER_HOURS = Counter(
    "buffer_hours_allocated_total",
    "Protected buffer hours placed on the calendar",
)
