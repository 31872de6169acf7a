"""Next-run computation for daily, weekly and monthly schedules."""

from datetime import datetime, timedelta, timezone

import pytest

from cloud_backup.exceptions import ValidationError
from cloud_backup.models import Schedule, ScheduleFrequency
from cloud_backup.schedule.recurrence import clamp_time, compute_next_run, parse_time

# 2025-06-10 is a Tuesday.
TUESDAY_MORNING = datetime(2025, 6, 10, 10, 0)


def local(moment: datetime) -> datetime:
    return moment.astimezone().replace(tzinfo=None)


def enabled(frequency: ScheduleFrequency, time: str = "14:30") -> Schedule:
    return Schedule(enabled=True, frequency=frequency, time=time)


def test_disabled_schedule_has_no_next_run():
    assert compute_next_run(Schedule(enabled=False), TUESDAY_MORNING) is None


def test_result_is_utc():
    next_run = compute_next_run(enabled(ScheduleFrequency.daily()), TUESDAY_MORNING)
    assert next_run.tzinfo == timezone.utc


def test_daily_later_today_or_tomorrow():
    schedule = enabled(ScheduleFrequency.daily())

    assert local(compute_next_run(schedule, TUESDAY_MORNING)) == datetime(2025, 6, 10, 14, 30)
    assert local(compute_next_run(schedule, datetime(2025, 6, 10, 14, 30))) == datetime(2025, 6, 11, 14, 30)
    assert local(compute_next_run(schedule, datetime(2025, 6, 10, 23, 0))) == datetime(2025, 6, 11, 14, 30)


def test_weekly_monday_afternoon():
    schedule = enabled(ScheduleFrequency.weekly(1))

    assert local(compute_next_run(schedule, TUESDAY_MORNING)) == datetime(2025, 6, 16, 14, 30)
    assert local(compute_next_run(schedule, datetime(2025, 6, 16, 9, 0))) == datetime(2025, 6, 16, 14, 30)
    assert local(compute_next_run(schedule, datetime(2025, 6, 16, 14, 30))) == datetime(2025, 6, 23, 14, 30)


def test_weekly_sunday_is_weekday_zero():
    schedule = enabled(ScheduleFrequency.weekly(0), "08:00")

    assert local(compute_next_run(schedule, TUESDAY_MORNING)) == datetime(2025, 6, 15, 8, 0)


def test_weekly_next_run_is_never_in_the_past():
    schedule = enabled(ScheduleFrequency.weekly(1))
    now = datetime(2025, 6, 9, 0, 0)
    for _ in range(7 * 24):
        next_run = local(compute_next_run(schedule, now))
        assert now < next_run <= now + timedelta(days=7)
        assert next_run.isoweekday() == 1
        now += timedelta(hours=1)


def test_monthly_skips_months_without_the_day():
    schedule = enabled(ScheduleFrequency.monthly(31))

    assert local(compute_next_run(schedule, datetime(2025, 6, 5, 9, 0))) == datetime(2025, 7, 31, 14, 30)
    assert local(compute_next_run(schedule, datetime(2025, 1, 31, 15, 0))) == datetime(2025, 3, 31, 14, 30)


def test_monthly_same_month_when_still_ahead():
    schedule = enabled(ScheduleFrequency.monthly(15), "02:00")

    assert local(compute_next_run(schedule, TUESDAY_MORNING)) == datetime(2025, 6, 15, 2, 0)
    assert local(compute_next_run(schedule, datetime(2025, 6, 15, 2, 0))) == datetime(2025, 7, 15, 2, 0)


def test_aware_reference_time_is_accepted():
    now = datetime(2025, 6, 10, 10, 0).astimezone(timezone.utc)
    next_run = compute_next_run(enabled(ScheduleFrequency.daily()), now)
    assert next_run > now


def test_clamp_time():
    assert clamp_time(25, 75) == (23, 59)
    assert clamp_time(-3, -1) == (0, 0)
    assert clamp_time(14, 30) == (14, 30)


def test_parse_time():
    assert parse_time("14:30") == (14, 30)
    assert parse_time(" 2:05 ") == (2, 5)
    for bad in ("", "1430", "24:00", "12:60", "ab:cd"):
        with pytest.raises(ValidationError):
            parse_time(bad)


def test_frequency_day_ranges():
    with pytest.raises(ValueError):
        ScheduleFrequency.weekly(7)
    with pytest.raises(ValueError):
        ScheduleFrequency.monthly(0)
    assert ScheduleFrequency.weekly(1).describe() == "Weekly on Monday"
