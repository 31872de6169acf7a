"""Schedule drafts, enable/disable transitions and operator notification."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from cloud_backup.exceptions import ScheduleSyncFailed
from cloud_backup.models import Schedule, ScheduleFrequency
from cloud_backup.schedule.manager import ScheduleManager
from cloud_backup.schedule.recurrence import compute_next_run


class FakeScheduler:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.stored = {}
        self.calls = []

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def schedule(self, profile_id, schedule):
        self.calls.append(("schedule", profile_id))
        await asyncio.sleep(0)
        self._maybe_fail()
        stored = schedule.model_copy(update={"enabled": True})
        stored.next_run = compute_next_run(stored)
        self.stored[profile_id] = stored
        return stored

    async def unschedule(self, profile_id):
        self.calls.append(("unschedule", profile_id))
        self._maybe_fail()
        current = self.stored.get(profile_id)
        if current is not None:
            self.stored[profile_id] = current.model_copy(update={"enabled": False, "next_run": None})
        return self.stored.get(profile_id)

    async def get_status(self, profile_id):
        self.calls.append(("get_status", profile_id))
        self._maybe_fail()
        return self.stored.get(profile_id)

    def record_run(self, profile_id, started_at):
        schedule = self.stored.get(profile_id)
        if schedule is None:
            return None
        schedule.last_run = started_at
        return schedule


class Notifications:
    def __init__(self):
        self.messages = []

    def __call__(self, title, message):
        self.messages.append((title, message))


@pytest.mark.asyncio
async def test_enable_then_disable_round_trip():
    manager = ScheduleManager(FakeScheduler())

    enabled = await manager.set_enabled("p1", True)
    assert enabled.schedule.enabled
    assert enabled.schedule.next_run is not None
    assert enabled.schedule.time == "02:00"
    assert not enabled.dirty

    disabled = await manager.set_enabled("p1", False)
    assert disabled.schedule.enabled is False
    assert disabled.schedule.next_run is None


@pytest.mark.asyncio
async def test_edits_are_local_until_saved():
    scheduler = FakeScheduler()
    manager = ScheduleManager(scheduler)

    draft = manager.edit_frequency("p1", ScheduleFrequency.weekly(1))
    draft = manager.edit_time("p1", 14, 30)

    assert draft.dirty
    assert draft.trusted_next_run is None
    assert scheduler.calls == []

    await manager.set_enabled("p1", True)
    stored = scheduler.stored["p1"]
    assert stored.frequency == ScheduleFrequency.weekly(1)
    assert stored.time == "14:30"
    assert manager.draft("p1").trusted_next_run == stored.next_run


def test_edit_time_clamps():
    manager = ScheduleManager(FakeScheduler())
    assert manager.edit_time("p1", 27, 99).schedule.time == "23:59"


@pytest.mark.asyncio
async def test_failed_enable_leaves_the_draft_disabled_and_notifies():
    notifications = Notifications()
    manager = ScheduleManager(FakeScheduler(fail_with=ScheduleSyncFailed("launchctl failed")), notifications)

    with pytest.raises(ScheduleSyncFailed):
        await manager.set_enabled("p1", True)

    draft = manager.draft("p1")
    assert draft.schedule.enabled is False
    assert draft.schedule.next_run is None
    assert notifications.messages[0][0] == "Schedule error"
    assert "launchctl failed" in notifications.messages[0][1]


@pytest.mark.asyncio
async def test_silent_failures_do_not_notify(caplog):
    notifications = Notifications()
    manager = ScheduleManager(FakeScheduler(fail_with=ScheduleSyncFailed("crontab missing")), notifications)

    with caplog.at_level(logging.WARNING, logger="cloud_backup"):
        assert await manager.reload("p1", silent=True) is None
    with pytest.raises(ScheduleSyncFailed):
        await manager.set_enabled("p1", False, silent=True)

    assert notifications.messages == []
    assert "Failed to load scheduled backups: crontab missing" in caplog.text


@pytest.mark.asyncio
async def test_loud_reload_failure_raises_and_notifies():
    notifications = Notifications()
    manager = ScheduleManager(FakeScheduler(fail_with=ScheduleSyncFailed("crontab missing")), notifications)

    with pytest.raises(ScheduleSyncFailed):
        await manager.reload("p1", silent=False)

    assert notifications.messages[0][0] == "Schedule error"


class FlakyStatusScheduler(FakeScheduler):
    """Cannot report the status the first time it is asked."""

    async def get_status(self, profile_id):
        if not any(call == ("get_status", profile_id) for call in self.calls):
            self.calls.append(("get_status", profile_id))
            raise ScheduleSyncFailed("status unavailable")
        return await super().get_status(profile_id)


@pytest.mark.asyncio
async def test_enable_proceeds_after_a_failed_silent_reload():
    manager = ScheduleManager(FlakyStatusScheduler(), Notifications())

    assert await manager.reload("p1", silent=True) is None
    manager.edit_time("p1", 3, 15)
    draft = await manager.set_enabled("p1", True, silent=False)

    assert draft.schedule.enabled is True
    assert draft.schedule.time == "03:15"


@pytest.mark.asyncio
async def test_reload_replaces_the_draft():
    scheduler = FakeScheduler()
    manager = ScheduleManager(scheduler)
    await manager.set_enabled("p1", True)
    manager.edit_time("p1", 5, 0)

    draft = await manager.reload("p1")

    assert not draft.dirty
    assert draft.schedule.time == "02:00"


@pytest.mark.asyncio
async def test_reload_without_schedule_is_disabled():
    manager = ScheduleManager(FakeScheduler())

    draft = await manager.reload("p1")

    assert draft.schedule.enabled is False
    assert draft.schedule.next_run is None


@pytest.mark.asyncio
async def test_save_pushes_the_current_enabled_flag():
    scheduler = FakeScheduler()
    manager = ScheduleManager(scheduler)
    await manager.set_enabled("p1", True)
    manager.edit_time("p1", 6, 15)

    draft = await manager.save("p1")

    assert draft.schedule.time == "06:15"
    assert scheduler.stored["p1"].time == "06:15"


@pytest.mark.asyncio
async def test_concurrent_mutations_are_serialized_per_profile():
    scheduler = FakeScheduler()
    manager = ScheduleManager(scheduler)

    await asyncio.gather(manager.set_enabled("p1", True), manager.set_enabled("p1", False))

    assert [c[0] for c in scheduler.calls] == ["schedule", "get_status", "unschedule"]
    assert manager.draft("p1").schedule.enabled is False


@pytest.mark.asyncio
async def test_record_run_updates_a_clean_draft():
    scheduler = FakeScheduler()
    manager = ScheduleManager(scheduler)
    await manager.set_enabled("p1", True)
    started = datetime.now(timezone.utc) - timedelta(minutes=5)

    await manager.record_run("p1", started)

    assert manager.draft("p1").schedule.last_run == started
