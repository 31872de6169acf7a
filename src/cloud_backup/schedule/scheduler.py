"""Install schedules with the operating system's job scheduler."""

import asyncio
import logging
import plistlib
import shlex
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..config.settings import AppSettings
from ..exceptions import CloudBackupError, ScheduleSyncFailed
from ..models import BackupMode, FrequencyKind, Profile, Schedule, utcnow
from ..storage.profile_store import ProfileStore
from ..utils.file_utils import FileHelper
from ..utils.process import CommandRunner, run_command
from .recurrence import compute_next_run

logger = logging.getLogger(__name__)

JOB_PREFIX = "com.cloudbackup.backup-"


def job_label(profile_id: str) -> str:
    return f"{JOB_PREFIX}{profile_id}"


class SchedulerBackend:
    """Platform job scheduler."""

    name = "none"

    def install(self, profile_id: str, script_path: Path, schedule: Schedule) -> None:
        raise NotImplementedError

    def remove(self, profile_id: str) -> None:
        raise NotImplementedError


class LaunchdBackend(SchedulerBackend):
    """macOS LaunchAgents."""

    name = "launchd"

    def __init__(self, agents_dir: Optional[Path] = None, working_dir: Optional[Path] = None,
                 runner: Optional[CommandRunner] = None):
        self.agents_dir = Path(agents_dir or Path.home() / "Library" / "LaunchAgents")
        self.working_dir = Path(working_dir or Path.home())
        self.runner = runner or run_command

    def plist_path(self, profile_id: str) -> Path:
        return self.agents_dir / f"{job_label(profile_id)}.plist"

    @staticmethod
    def calendar_interval(schedule: Schedule) -> Dict[str, int]:
        interval = {"Hour": schedule.hour, "Minute": schedule.minute}
        if schedule.frequency.kind == FrequencyKind.WEEKLY:
            # launchd counts weekdays from Sunday=0 as well
            interval["Weekday"] = schedule.frequency.day
        elif schedule.frequency.kind == FrequencyKind.MONTHLY:
            interval["Day"] = schedule.frequency.day
        return interval

    def build_plist(self, profile_id: str, script_path: Path, schedule: Schedule) -> Dict:
        return {
            "Label": job_label(profile_id),
            "ProgramArguments": [str(script_path)],
            "StartCalendarInterval": self.calendar_interval(schedule),
            "WorkingDirectory": str(self.working_dir),
            "StandardOutPath": f"/tmp/backup-{profile_id}.out",
            "StandardErrorPath": f"/tmp/backup-{profile_id}.err",
        }

    def install(self, profile_id: str, script_path: Path, schedule: Schedule) -> None:
        path = self.plist_path(profile_id)
        content = plistlib.dumps(self.build_plist(profile_id, script_path, schedule)).decode("utf-8")
        FileHelper.write_atomic(path, content)

        # Reloading picks up a changed calendar interval.
        self.runner(["launchctl", "unload", "-w", str(path)])
        result = self.runner(["launchctl", "load", "-w", str(path)])
        if result.returncode != 0:
            raise ScheduleSyncFailed(f"Failed to load launch agent: {result.stderr.strip()}")
        logger.info(f"Loaded launch agent {path.name}")

    def remove(self, profile_id: str) -> None:
        path = self.plist_path(profile_id)
        if not path.exists():
            return
        self.runner(["launchctl", "unload", "-w", str(path)])
        path.unlink()
        logger.info(f"Removed launch agent {path.name}")


class CrontabBackend(SchedulerBackend):
    """User crontab entries tagged with a per-profile marker comment."""

    name = "cron"

    def __init__(self, staging_dir: Path, runner: Optional[CommandRunner] = None):
        """Initialize the backend.

        Args:
            staging_dir: Directory for the temporary file handed to ``crontab``
            runner: Command runner
        """
        self.staging_dir = Path(staging_dir)
        self.runner = runner or run_command

    @staticmethod
    def marker(profile_id: str) -> str:
        return f"# {job_label(profile_id)}"

    @staticmethod
    def cron_expression(schedule: Schedule) -> str:
        minute, hour = schedule.minute, schedule.hour
        if schedule.frequency.kind == FrequencyKind.WEEKLY:
            return f"{minute} {hour} * * {schedule.frequency.day}"
        if schedule.frequency.kind == FrequencyKind.MONTHLY:
            return f"{minute} {hour} {schedule.frequency.day} * *"
        return f"{minute} {hour} * * *"

    def _read(self) -> List[str]:
        result = self.runner(["crontab", "-l"])
        if result.returncode != 0:
            if "no crontab" in (result.stderr or "").lower():
                return []
            raise ScheduleSyncFailed(f"Failed to read crontab: {result.stderr.strip()}")
        return result.stdout.splitlines()

    def _write(self, lines: List[str]) -> None:
        staging = self.staging_dir / "crontab.tmp"
        FileHelper.write_atomic(staging, "\n".join(lines) + "\n" if lines else "")
        try:
            result = self.runner(["crontab", str(staging)])
        finally:
            staging.unlink(missing_ok=True)
        if result.returncode != 0:
            raise ScheduleSyncFailed(f"Failed to install crontab: {result.stderr.strip()}")

    def install(self, profile_id: str, script_path: Path, schedule: Schedule) -> None:
        marker = self.marker(profile_id)
        lines = [line for line in self._read() if not line.endswith(marker)]
        lines.append(f"{self.cron_expression(schedule)} {shlex.quote(str(script_path))} {marker}")
        self._write(lines)
        logger.info(f"Installed cron entry for profile {profile_id}")

    def remove(self, profile_id: str) -> None:
        marker = self.marker(profile_id)
        lines = self._read()
        kept = [line for line in lines if not line.endswith(marker)]
        if len(kept) != len(lines):
            self._write(kept)
            logger.info(f"Removed cron entry for profile {profile_id}")


def default_backend(settings: AppSettings, runner: Optional[CommandRunner] = None,
                    platform: Optional[str] = None) -> Optional[SchedulerBackend]:
    """Pick the job scheduler of the current platform, None when unsupported."""
    platform = platform or sys.platform
    if platform == "darwin":
        return LaunchdBackend(working_dir=settings.config_dir, runner=runner)
    if platform.startswith("linux"):
        return CrontabBackend(settings.scripts_dir, runner=runner)
    return None


class OSScheduler:
    """External scheduler collaborator: runner scripts plus a platform backend.

    The stored Schedule (in the profile store) is what ``get_status``
    reports; it is written only after the backend accepted the change.
    """

    def __init__(self, settings: AppSettings, profile_store: ProfileStore,
                 backend: Optional[SchedulerBackend] = None, runner: Optional[CommandRunner] = None):
        self.settings = settings
        self.profile_store = profile_store
        self.backend = backend if backend is not None else default_backend(settings, runner)

    def runner_script_path(self, profile_id: str) -> Path:
        return self.settings.scripts_dir / f"backup-{profile_id}.sh"

    def log_path(self, profile_id: str) -> Path:
        return self.settings.logs_dir / f"backup-{profile_id}.log"

    def build_runner_script(self, profile: Profile) -> str:
        """Shell script that backs up every source with the unattended credential."""
        operation = "sync" if profile.mode == BackupMode.SYNC else "copy"
        flags = " ".join(shlex.quote(flag) for flag in profile.rclone_flags)
        lines = [
            "#!/bin/bash",
            "set -euo pipefail",
            "",
            "# Cloud Backup - scheduled backup",
            f"# Profile: {profile.name}",
            f"# Generated: {utcnow():%Y-%m-%d %H:%M:%S} UTC",
            "",
            "export LC_ALL=C",
            f"RCLONE_BIN={shlex.quote(profile.rclone_bin)}",
            f"RCLONE_CONFIG={shlex.quote(str(self.settings.scheduled_rclone_conf))}",
            f"DESTINATION={shlex.quote(profile.destination())}",
            f"PROFILE_NAME={shlex.quote(profile.name)}",
            f"LOG_FILE={shlex.quote(str(self.log_path(profile.id)))}",
            'mkdir -p "$(dirname "$LOG_FILE")"',
            "",
            'echo "$(date): Starting scheduled backup for profile $PROFILE_NAME" >> "$LOG_FILE"',
            "",
        ]
        for source in profile.sources:
            quoted = shlex.quote(source)
            lines.append(f'echo "$(date): Backing up "{quoted} >> "$LOG_FILE"')
            lines.append(
                f'"$RCLONE_BIN" {operation} {quoted} "$DESTINATION" --config "$RCLONE_CONFIG" '
                f'{flags} --log-file "$LOG_FILE" --log-level INFO'
            )
            lines.append("")
        lines.append('echo "$(date): Backup completed for profile $PROFILE_NAME" >> "$LOG_FILE"')
        return "\n".join(lines) + "\n"

    def _require_backend(self) -> SchedulerBackend:
        if self.backend is None:
            raise ScheduleSyncFailed(f"Scheduled backups are not supported on {sys.platform}")
        return self.backend

    def _schedule(self, profile_id: str, schedule: Schedule) -> Schedule:
        backend = self._require_backend()
        profile = self.profile_store.get_profile(profile_id)
        if not profile.sources:
            raise ScheduleSyncFailed(f"Profile {profile.name} has no source folders to back up")
        if not self.settings.scheduled_rclone_conf.exists():
            raise ScheduleSyncFailed(
                "Scheduled backups need a service credential; sign in with credential issuance configured"
            )

        script_path = self.runner_script_path(profile_id)
        FileHelper.write_atomic(script_path, self.build_runner_script(profile), mode=0o755)
        backend.install(profile_id, script_path, schedule)

        previous = profile.schedule
        stored = schedule.model_copy(update={
            "enabled": True,
            "last_run": schedule.last_run or (previous.last_run if previous else None),
        })
        stored.next_run = compute_next_run(stored)
        self.profile_store.set_schedule(profile_id, stored)
        logger.info(
            f"Scheduled {profile.name}: {stored.frequency.describe()} at {stored.time} via {backend.name}"
        )
        return stored

    def _unschedule(self, profile_id: str) -> Optional[Schedule]:
        profile = self.profile_store.get_profile(profile_id)
        if self.backend is not None:
            self.backend.remove(profile_id)
        self.runner_script_path(profile_id).unlink(missing_ok=True)

        stored = None
        if profile.schedule is not None:
            stored = profile.schedule.model_copy(update={"enabled": False, "next_run": None})
        self.profile_store.set_schedule(profile_id, stored)
        logger.info(f"Unscheduled backups for {profile.name}")
        return stored

    def _get_status(self, profile_id: str, now: Optional[datetime] = None) -> Optional[Schedule]:
        schedule = self.profile_store.get_schedule(profile_id)
        if schedule is None or not schedule.enabled:
            return schedule
        now = now or utcnow()
        if schedule.next_run is None or schedule.next_run <= now:
            schedule.next_run = compute_next_run(schedule, now)
            self.profile_store.set_schedule(profile_id, schedule)
        return schedule

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ScheduleSyncFailed:
            raise
        except (OSError, CloudBackupError) as e:
            raise ScheduleSyncFailed(str(e)) from e

    async def schedule(self, profile_id: str, schedule: Schedule) -> Schedule:
        """Install or replace the profile's job and store the schedule."""
        return await self._run(self._schedule, profile_id, schedule)

    async def unschedule(self, profile_id: str) -> Optional[Schedule]:
        """Remove the profile's job; the stored schedule keeps its rule, disabled."""
        return await self._run(self._unschedule, profile_id)

    async def get_status(self, profile_id: str) -> Optional[Schedule]:
        return await self._run(self._get_status, profile_id)

    def record_run(self, profile_id: str, started_at: datetime) -> Optional[Schedule]:
        """Set ``last_run`` and move ``next_run`` past it."""
        schedule = self.profile_store.get_schedule(profile_id)
        if schedule is None:
            return None
        schedule.last_run = started_at
        if schedule.enabled:
            schedule.next_run = compute_next_run(schedule, max(started_at, utcnow()))
        self.profile_store.set_schedule(profile_id, schedule)
        return schedule
