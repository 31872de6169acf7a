"""Wall-clock helpers for schedule times and next-run computation."""

import calendar
from datetime import datetime, timezone
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from ..exceptions import ValidationError
from ..models import FrequencyKind, Schedule


def clamp_time(hour: int, minute: int) -> Tuple[int, int]:
    """Clamp an edited time into ``0..23`` / ``0..59``."""
    return min(max(int(hour), 0), 23), min(max(int(minute), 0), 59)


def format_time(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def parse_time(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM``.

    Raises:
        ValidationError: If the text is not a valid wall-clock time
    """
    parts = (value or "").strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValidationError(f"Time must be HH:MM, got {value!r}", field="time")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError(f"Time out of range: {value!r}", field="time")
    return hour, minute


def _local_naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def compute_next_run(schedule: Schedule, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next time a schedule fires, strictly after ``now``.

    The schedule time is local wall-clock time. Weekly schedules use
    weekday 0=Sunday; monthly schedules skip months without the day.

    Args:
        schedule: Schedule to evaluate
        now: Reference time (defaults to the current time)

    Returns:
        Aware UTC datetime, or None for a disabled schedule
    """
    if not schedule.enabled:
        return None

    local_now = _local_naive(now or datetime.now(timezone.utc))
    at_time = local_now.replace(hour=schedule.hour, minute=schedule.minute, second=0, microsecond=0)
    frequency = schedule.frequency

    if frequency.kind == FrequencyKind.DAILY:
        candidate = at_time if at_time > local_now else at_time + relativedelta(days=1)

    elif frequency.kind == FrequencyKind.WEEKLY:
        current_weekday = local_now.isoweekday() % 7
        candidate = at_time + relativedelta(days=(frequency.day - current_weekday) % 7)
        if candidate <= local_now:
            candidate += relativedelta(weeks=1)

    else:
        candidate = None
        month_start = at_time.replace(day=1)
        for offset in range(0, 13):
            month = month_start + relativedelta(months=offset)
            if frequency.day > calendar.monthrange(month.year, month.month)[1]:
                continue
            option = month.replace(day=frequency.day)
            if option > local_now:
                candidate = option
                break
        if candidate is None:
            return None

    # Naive datetimes are interpreted as local time by astimezone().
    return candidate.astimezone(timezone.utc)
