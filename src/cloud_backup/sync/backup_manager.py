"""Main backup manager orchestrating login, backups, restores and history."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from dateutil import parser as date_parser

from ..auth.cloud_auth import BucketAccess, FederatedCredentialService
from ..auth.credential_exchange import CredentialExchangeCoordinator, ServiceCredentialIssuer
from ..config.settings import AppSettings
from ..exceptions import CredentialExchangeFailed, StorageAccessDenied, ToolExecutionFailed
from ..models import (
    ChangeSet,
    CloudFile,
    FederatedCredential,
    Operation,
    OperationStatus,
    OperationType,
    Profile,
    ServiceCredential,
    Session,
)
from ..profiles.provisioner import ProfileProvisioner
from ..schedule.manager import Notifier, ScheduleManager
from ..schedule.scheduler import OSScheduler
from ..storage.credential_store import CredentialStore
from ..storage.profile_store import ProfileStore
from ..utils.file_utils import FileHelper
from .confirmation import ConfirmationRequired, SyncGate
from .rclone import RcloneConfigWriter, RcloneTool, parse_stats

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(seconds=60)

T = TypeVar("T")

_LOG_START_RE = re.compile(r"^(?P<ts>.+?): Starting (?:scheduled )?backup for profile (?P<name>.+)$")
_LOG_DONE_RE = re.compile(r"^(?P<ts>.+?): Backup completed for profile (?P<name>.+)$")
_LOG_SOURCE_RE = re.compile(r"^.+?: Backing up (?P<source>.+)$")


@dataclass
class LoginResult:
    """Everything the login pipeline produced for one session."""
    profile: Profile
    federated: Optional[FederatedCredential] = None
    service_credential: Optional[ServiceCredential] = None
    unattended_available: bool = False
    exchange_error: Optional[str] = None


@dataclass
class ToolStatus:
    """Whether rclone can be run, and whether it can read a profile's config."""
    rclone_bin: str
    version: Optional[str] = None
    alternatives: List[str] = field(default_factory=list)
    config_path: Optional[str] = None
    config_valid: Optional[bool] = None

    @property
    def available(self) -> bool:
        return self.version is not None


def parse_log_timestamp(text: str) -> Optional[datetime]:
    """Parse a ``date`` timestamp from a runner log as local time, returned in UTC."""
    try:
        local = date_parser.parse(text, ignoretz=True)
    except (ValueError, OverflowError):
        return None
    return local.astimezone(timezone.utc)


class BackupManager:
    """Main backup manager that wires the login pipeline and the backup operations."""

    def __init__(
        self,
        settings: AppSettings,
        profile_store: ProfileStore,
        coordinator: CredentialExchangeCoordinator,
        provisioner: ProfileProvisioner,
        gate: SyncGate,
        schedule_manager: ScheduleManager,
        tool: Optional[RcloneTool] = None,
    ):
        """Initialize backup manager.

        Args:
            settings: Application settings
            profile_store: Store for profiles and operation history
            coordinator: Credential exchange coordinator
            provisioner: Profile provisioner
            gate: Sync preview and confirmation gate
            schedule_manager: Schedule manager
            tool: Sync tool used for restores and listings (defaults to the gate's tool)
        """
        self.settings = settings
        self.profile_store = profile_store
        self.coordinator = coordinator
        self.provisioner = provisioner
        self.gate = gate
        self.schedule_manager = schedule_manager
        self.tool = tool or gate.tool

    @classmethod
    def from_settings(cls, settings: AppSettings, notifier: Optional[Notifier] = None) -> "BackupManager":
        """Build the manager and its collaborators from settings."""
        profile_store = ProfileStore(settings.config_file)
        issuer = ServiceCredentialIssuer(settings.issuance_url) if settings.unattended_configured else None
        coordinator = CredentialExchangeCoordinator(
            FederatedCredentialService(settings.cognito),
            CredentialStore(settings.config_dir),
            issuer=issuer,
            unattended_registrar=RcloneConfigWriter(settings.scheduled_rclone_conf, settings.remote_name),
        )
        provisioner = ProfileProvisioner(
            profile_store, settings,
            interactive_config=RcloneConfigWriter(settings.rclone_conf, settings.remote_name),
        )
        tool = RcloneTool()
        schedule_manager = ScheduleManager(OSScheduler(settings, profile_store), notifier=notifier)
        return cls(settings, profile_store, coordinator, provisioner, SyncGate(tool), schedule_manager, tool)

    async def complete_login(self, session: Session) -> LoginResult:
        """Exchange credentials, then provision the profile, strictly in that order.

        Raises:
            CredentialOrphaned: The backend holds a service credential this
                computer does not have
        """
        exchange = await self.coordinator.exchange(session)
        is_admin = self.provisioner.is_admin(session)
        profile = self.provisioner.get_or_create_profile(
            session, is_admin, self.settings.bucket_name, exchange.federated
        )

        errors = [e for e in (exchange.federated_error, exchange.service_error) if e]
        result = LoginResult(
            profile=profile,
            federated=exchange.federated,
            service_credential=exchange.service,
            unattended_available=exchange.unattended_available,
            exchange_error="; ".join(errors) or None,
        )
        logger.info(
            f"Login complete for {session.email}: profile {profile.name} ({profile.role.value}), "
            f"scheduled backups {'available' if result.unattended_available else 'unavailable'}"
        )
        return result

    def _record(self, operation: Operation) -> None:
        self.profile_store.add_operation(operation)

    async def _with_storage_access(
        self, profile: Profile, session: Optional[Session], call: Callable[[], Awaitable[T]]
    ) -> T:
        """Run a storage call, re-deriving the federated credential once if it is refused.

        Raises:
            CredentialExchangeFailed: Storage refused the credential and there is
                no session to derive a new one from, or it refused the new one too
        """
        try:
            return await call()
        except StorageAccessDenied as e:
            if session is None:
                raise CredentialExchangeFailed(
                    "Storage refused the saved credentials, which have probably expired. "
                    "Run 'cloud-backup login' again."
                ) from e
            logger.warning(f"Storage refused the credentials of {profile.name}; deriving new ones")

        self.coordinator.invalidate_federated()
        credential = await self.coordinator.ensure_federated(session)
        self.provisioner.refresh_interactive_config(credential)
        try:
            return await call()
        except StorageAccessDenied as e:
            raise CredentialExchangeFailed(f"Storage refused freshly derived credentials: {e}") from e

    async def preview(self, profile: Profile, session: Optional[Session] = None) -> ChangeSet:
        return await self._with_storage_access(profile, session, lambda: self.gate.preview(profile))

    async def run_backup(
        self,
        profile: Profile,
        change_set: Optional[ChangeSet] = None,
        confirmed: bool = False,
        session: Optional[Session] = None,
    ) -> Union[Operation, ConfirmationRequired]:
        """Run a backup through the confirmation gate and record it.

        With a session, a refused federated credential is re-derived and the
        run retried once.

        Returns:
            The finished Operation, or ConfirmationRequired (nothing was run
            and nothing is recorded)
        """
        logger.info(f"Starting backup for profile: {profile.name}")
        result = await self._with_storage_access(
            profile, session, lambda: self.gate.confirm_and_run(profile, change_set, confirmed)
        )
        if isinstance(result, ConfirmationRequired):
            return result

        self._record(result)
        if result.status == OperationStatus.COMPLETED:
            await self.schedule_manager.record_run(profile.id, result.started_at)
            logger.info(
                f"Backup of {profile.name} completed: {result.files_transferred} files, "
                f"{FileHelper.format_file_size(result.bytes_transferred)}"
            )
        else:
            logger.error(f"Backup of {profile.name} failed: {result.error_message}")
        return result

    async def restore(self, profile: Profile, remote_paths: List[str], local_target: str,
                      session: Optional[Session] = None) -> Operation:
        operation = await self._with_storage_access(
            profile, session, lambda: self.tool.restore(profile, remote_paths, local_target)
        )
        self._record(operation)
        return operation

    async def list_remote(self, profile: Profile, path: Optional[str] = None,
                          max_depth: Optional[int] = None, session: Optional[Session] = None) -> List[CloudFile]:
        return await self._with_storage_access(
            profile, session, lambda: self.tool.list_remote(profile, path, max_depth)
        )

    async def check_tool(self, profile: Optional[Profile] = None) -> ToolStatus:
        """Check the rclone binary and, for a profile, its interactive config.

        When the configured binary cannot be run, the usual install locations
        are searched so the operator can be pointed at one.
        """
        rclone_bin = profile.rclone_bin if profile is not None else self.settings.rclone_bin
        status = ToolStatus(rclone_bin=rclone_bin)
        try:
            status.version = await self.tool.version(rclone_bin)
        except ToolExecutionFailed as e:
            logger.warning(f"rclone is not usable at {rclone_bin}: {e}")
            status.alternatives = [c for c in await self.tool.detect() if c != rclone_bin]
            return status

        if profile is not None:
            status.config_path = profile.rclone_conf
            status.config_valid = await self.tool.validate_config(rclone_bin, profile.rclone_conf)
        return status

    def history(self, profile_id: Optional[str] = None, limit: Optional[int] = None) -> List[Operation]:
        return self.profile_store.operations(profile_id, limit)

    def clear_history(self) -> int:
        return self.profile_store.clear_operations()

    def check_bucket_access(self, profile: Profile, credential: FederatedCredential) -> bool:
        """Check that the federated credential can reach the profile's destination."""
        access = BucketAccess(credential, self.settings.cognito.region)
        return access.can_list(profile.bucket, profile.prefix)

    async def import_scheduled_logs(self, profile_id: str) -> int:
        """Record the runs the OS scheduler performed since the last import.

        Reads the runner log of the profile. Runs at or before the newest run
        imported earlier are skipped, as is a run whose start lies within a
        minute of an already recorded operation. A run that was
        followed by another start without completing is recorded as failed.

        Returns:
            Number of operations recorded
        """
        log_path = self.settings.logs_dir / f"backup-{profile_id}.log"
        if not log_path.exists():
            logger.debug(f"No scheduled backup log at {log_path}")
            return 0

        with open(log_path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.read().splitlines()

        known = [op.started_at for op in self.profile_store.operations(profile_id)]
        imported_until = self.profile_store.imported_until(profile_id)
        newest_seen: Optional[datetime] = None
        recorded = 0
        latest_start: Optional[datetime] = None
        current: Optional[Operation] = None
        segment: List[str] = []

        def flush_segment() -> None:
            if current is not None and segment:
                stats = parse_stats("\n".join(segment))
                if stats:
                    current.files_transferred += stats[0]
                    current.bytes_transferred += stats[1]
            segment.clear()

        def store(operation: Operation) -> None:
            nonlocal recorded, newest_seen
            if newest_seen is None or operation.started_at > newest_seen:
                newest_seen = operation.started_at
            if imported_until is not None and operation.started_at <= imported_until:
                return
            if any(abs(operation.started_at - seen) < DUPLICATE_WINDOW for seen in known):
                logger.debug(f"Skipping already recorded scheduled run at {operation.started_at}")
                return
            self._record(operation)
            known.append(operation.started_at)
            recorded += 1

        for line in lines:
            start = _LOG_START_RE.match(line)
            if start:
                started_at = parse_log_timestamp(start.group("ts"))
                if started_at is None:
                    continue
                if current is not None:
                    flush_segment()
                    store(current.finish(OperationStatus.FAILED, "Scheduled backup did not complete"))
                current = Operation(
                    profile_id=profile_id,
                    operation_type=OperationType.BACKUP,
                    started_at=started_at,
                    log_output=f"Scheduled backup started for profile: {start.group('name')}",
                )
                continue

            if current is None:
                continue

            done = _LOG_DONE_RE.match(line)
            if done:
                flush_segment()
                current.finish(OperationStatus.COMPLETED)
                current.completed_at = parse_log_timestamp(done.group("ts")) or current.completed_at
                store(current)
                if latest_start is None or current.started_at > latest_start:
                    latest_start = current.started_at
                current = None
                continue

            if _LOG_SOURCE_RE.match(line):
                flush_segment()
            segment.append(line)
            current.log_output += f"\n{line}"

        if newest_seen is not None:
            self.profile_store.mark_imported(profile_id, newest_seen)
        if latest_start is not None:
            await self.schedule_manager.record_run(profile_id, latest_start)

        if recorded:
            logger.info(f"Imported {recorded} scheduled backup operations for profile {profile_id}")
        return recorded

    @staticmethod
    def get_history_summary(operations: List[Operation]) -> Dict[str, Any]:
        """Aggregate a list of operations.

        Args:
            operations: Operations to summarize

        Returns:
            Counts per status and transfer totals
        """
        summary = {
            'total_operations': len(operations),
            'completed': 0,
            'failed': 0,
            'total_files_transferred': 0,
            'total_bytes_transferred': 0,
        }
        for operation in operations:
            if operation.status == OperationStatus.COMPLETED:
                summary['completed'] += 1
            elif operation.status == OperationStatus.FAILED:
                summary['failed'] += 1
            summary['total_files_transferred'] += operation.files_transferred
            summary['total_bytes_transferred'] += operation.bytes_transferred
        return summary
