"""Schedule drafts, enable/disable transitions and reconciliation with the OS scheduler."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from ..exceptions import CloudBackupError, ScheduleSyncFailed
from ..models import Schedule, ScheduleFrequency
from .recurrence import clamp_time, format_time

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], None]


@dataclass
class ScheduleDraft:
    """Locally edited schedule; ``dirty`` until the OS scheduler has accepted it."""
    schedule: Schedule = field(default_factory=Schedule)
    dirty: bool = False

    @property
    def trusted_next_run(self) -> Optional[datetime]:
        """``next_run`` if it reflects what the OS scheduler was told, else None."""
        if self.dirty:
            return None
        return self.schedule.next_run


class ScheduleManager:
    """Keeps one draft per profile and pushes it to the external scheduler on save.

    Edits are local. ``set_enabled``/``save`` call the scheduler and then
    reload, holding the profile's lock so that a later mutation never
    interleaves with an earlier reload.
    """

    def __init__(self, scheduler, notifier: Optional[Notifier] = None):
        """Initialize the manager.

        Args:
            scheduler: External scheduler collaborator (``schedule``,
                ``unschedule``, ``get_status``)
            notifier: Called with ``(title, message)`` for failures the
                operator should see
        """
        self.scheduler = scheduler
        self.notifier = notifier
        self._drafts: Dict[str, ScheduleDraft] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, profile_id: str) -> asyncio.Lock:
        lock = self._locks.get(profile_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[profile_id] = lock
        return lock

    def draft(self, profile_id: str) -> ScheduleDraft:
        draft = self._drafts.get(profile_id)
        if draft is None:
            draft = ScheduleDraft()
            self._drafts[profile_id] = draft
        return draft

    def _fail(self, profile_id: str, action: str, error: Exception, silent: bool) -> ScheduleSyncFailed:
        message = f"Failed to {action} backups: {error}"
        if silent:
            logger.warning(f"[{profile_id}] {message}")
        else:
            logger.error(f"[{profile_id}] {message}")
            if self.notifier is not None:
                self.notifier("Schedule error", message)
        return ScheduleSyncFailed(message)

    async def _reload(self, profile_id: str) -> ScheduleDraft:
        status = await self.scheduler.get_status(profile_id)
        draft = self.draft(profile_id)
        if status is None:
            draft.schedule = draft.schedule.model_copy(update={"enabled": False, "next_run": None})
        else:
            draft.schedule = status
        draft.dirty = False
        return draft

    async def reload(self, profile_id: str, silent: bool = True) -> Optional[ScheduleDraft]:
        """Replace the draft with the scheduler's authoritative schedule.

        A silent reload logs the failure and returns None, leaving the draft
        untouched.

        Raises:
            ScheduleSyncFailed: The scheduler could not report the status and
                silent is False
        """
        async with self._lock_for(profile_id):
            try:
                return await self._reload(profile_id)
            except CloudBackupError as e:
                error = self._fail(profile_id, "load scheduled", e, silent)
                if silent:
                    return None
                raise error from e

    def edit_frequency(self, profile_id: str, frequency: ScheduleFrequency) -> ScheduleDraft:
        """Change the draft's frequency; takes effect on the next save."""
        draft = self.draft(profile_id)
        draft.schedule = draft.schedule.model_copy(update={"frequency": frequency})
        draft.dirty = True
        return draft

    def edit_time(self, profile_id: str, hour: int, minute: int) -> ScheduleDraft:
        """Change the draft's time, clamping out-of-range components."""
        draft = self.draft(profile_id)
        hour, minute = clamp_time(hour, minute)
        draft.schedule = draft.schedule.model_copy(update={"time": format_time(hour, minute)})
        draft.dirty = True
        return draft

    async def set_enabled(self, profile_id: str, enabled: bool, silent: bool = False) -> ScheduleDraft:
        """Enable or disable scheduled backups for a profile.

        Enabling sends the draft's rule (``Daily`` at ``02:00`` unless
        edited) to the scheduler and reloads; disabling removes the job and
        clears ``next_run``.

        Args:
            profile_id: Profile to change
            enabled: Target state
            silent: Suppress the operator notification on failure

        Raises:
            ScheduleSyncFailed: The scheduler rejected the change; the draft is
                left disabled
        """
        async with self._lock_for(profile_id):
            draft = self.draft(profile_id)
            if enabled:
                schedule = Schedule(
                    enabled=True,
                    frequency=draft.schedule.frequency,
                    time=draft.schedule.time,
                    last_run=draft.schedule.last_run,
                )
                try:
                    await self.scheduler.schedule(profile_id, schedule)
                    return await self._reload(profile_id)
                except CloudBackupError as e:
                    draft.schedule = draft.schedule.model_copy(update={"enabled": False, "next_run": None})
                    raise self._fail(profile_id, "schedule", e, silent) from e

            try:
                await self.scheduler.unschedule(profile_id)
            except CloudBackupError as e:
                raise self._fail(profile_id, "unschedule", e, silent) from e
            draft.schedule = draft.schedule.model_copy(update={"enabled": False, "next_run": None})
            draft.dirty = False
            return draft

    async def save(self, profile_id: str, silent: bool = False) -> ScheduleDraft:
        """Push the draft to the scheduler with its current enabled flag."""
        return await self.set_enabled(profile_id, self.draft(profile_id).schedule.enabled, silent=silent)

    async def record_run(self, profile_id: str, started_at: datetime) -> Optional[Schedule]:
        """Note a finished backup: set ``last_run`` and move ``next_run`` on."""
        async with self._lock_for(profile_id):
            schedule = await asyncio.to_thread(self.scheduler.record_run, profile_id, started_at)
            if schedule is not None:
                draft = self.draft(profile_id)
                if not draft.dirty:
                    draft.schedule = schedule
            return schedule
