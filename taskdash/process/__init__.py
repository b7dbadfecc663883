"""taskdash Process — day-boundary scheduling."""

from taskdash.process.scheduler import (  # noqa: F401
    MidnightScheduler,
    ms_until_next_midnight,
    schedule_at_next_midnight,
)

__all__ = [
    "MidnightScheduler",
    "ms_until_next_midnight",
    "schedule_at_next_midnight",
]
