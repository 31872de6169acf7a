"""Recurring backup schedules."""

from .manager import ScheduleDraft, ScheduleManager
from .recurrence import clamp_time, compute_next_run, parse_time
from .scheduler import CrontabBackend, LaunchdBackend, OSScheduler

__all__ = [
    "ScheduleDraft",
    "ScheduleManager",
    "clamp_time",
    "compute_next_run",
    "parse_time",
    "CrontabBackend",
    "LaunchdBackend",
    "OSScheduler",
]
