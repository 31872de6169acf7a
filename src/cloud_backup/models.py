"""Data models shared by the authentication, profile, schedule and sync layers."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_RCLONE_FLAGS = [
    "--checksum",
    "--fast-list",
    "--transfers=8",
    "--checkers=32",
]

DEFAULT_SCHEDULE_TIME = "02:00"

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Session(BaseModel):
    """One successful sign-in. Lives in memory only."""
    subject_id: str
    email: str
    groups: List[str] = Field(default_factory=list)
    id_token: str = Field(repr=False)
    access_token: str = Field(repr=False)
    refresh_token: str = Field(default="", repr=False)

    def is_member(self, group: str) -> bool:
        return group in self.groups


class FederatedCredential(BaseModel):
    """Short-lived storage credential derived from the identity token."""
    access_key_id: str
    secret_key: str = Field(repr=False)
    session_token: str = Field(repr=False)
    expiry: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None,
                   skew: timedelta = timedelta(minutes=5)) -> bool:
        """Check whether the credential is expired or about to expire.

        Args:
            now: Reference time (defaults to current UTC time)
            skew: Safety margin subtracted from the expiry

        Returns:
            True if the credential should be re-derived
        """
        if self.expiry is None:
            return False
        now = now or utcnow()
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return now >= expiry - skew


class ServiceCredential(BaseModel):
    """Long-lived storage credential issued once per identity."""
    access_key_id: str
    secret_key: str = Field(repr=False)
    region: str
    service_username: str
    bucket: str
    prefix: str = ""


class ProfileRole(str, Enum):
    """Role a profile was provisioned for."""
    ADMIN = "Admin"
    USER = "User"


class BackupMode(str, Enum):
    """Copy only adds and updates remote files; Sync also deletes them."""
    COPY = "Copy"
    SYNC = "Sync"


class FrequencyKind(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


class ScheduleFrequency(BaseModel):
    """Recurrence of a schedule.

    ``day`` is unused for daily schedules, the weekday (0=Sunday) for weekly
    schedules and the 1-based day of month for monthly schedules.
    """
    kind: FrequencyKind = FrequencyKind.DAILY
    day: Optional[int] = None

    @model_validator(mode="after")
    def check_day(self) -> "ScheduleFrequency":
        if self.kind == FrequencyKind.DAILY:
            self.day = None
        elif self.kind == FrequencyKind.WEEKLY:
            if self.day is None or not 0 <= self.day <= 6:
                raise ValueError("weekly schedules need a weekday between 0 (Sunday) and 6")
        elif self.day is None or not 1 <= self.day <= 31:
            raise ValueError("monthly schedules need a day of month between 1 and 31")
        return self

    @classmethod
    def daily(cls) -> "ScheduleFrequency":
        return cls(kind=FrequencyKind.DAILY)

    @classmethod
    def weekly(cls, weekday: int) -> "ScheduleFrequency":
        return cls(kind=FrequencyKind.WEEKLY, day=weekday)

    @classmethod
    def monthly(cls, day_of_month: int) -> "ScheduleFrequency":
        return cls(kind=FrequencyKind.MONTHLY, day=day_of_month)

    def describe(self) -> str:
        if self.kind == FrequencyKind.WEEKLY:
            return f"Weekly on {WEEKDAY_NAMES[self.day]}"
        if self.kind == FrequencyKind.MONTHLY:
            return f"Monthly on day {self.day}"
        return "Daily"


class Schedule(BaseModel):
    """Recurring backup configuration for one profile."""
    enabled: bool = False
    frequency: ScheduleFrequency = Field(default_factory=ScheduleFrequency.daily)
    time: str = DEFAULT_SCHEDULE_TIME
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"time must be HH:MM, got {v!r}")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"time out of range: {v!r}")
        return f"{hour:02d}:{minute:02d}"

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class ChangeAction(str, Enum):
    COPY = "Copy"
    UPDATE = "Update"
    DELETE = "Delete"


class FileChange(BaseModel):
    path: str
    size: int = 0
    action: ChangeAction


class ChangeSet(BaseModel):
    """Dry-run result split into files to copy, update and delete."""
    files_to_copy: List[FileChange] = Field(default_factory=list)
    files_to_update: List[FileChange] = Field(default_factory=list)
    files_to_delete: List[FileChange] = Field(default_factory=list)
    total_files: int = 0
    total_size: int = 0

    @classmethod
    def from_changes(cls, changes: List[FileChange]) -> "ChangeSet":
        """Partition a flat list of changes, keeping the first entry per (action, path)."""
        seen = set()
        buckets = {action: [] for action in ChangeAction}
        for change in changes:
            key = (change.action, change.path)
            if key in seen:
                continue
            seen.add(key)
            buckets[change.action].append(change)
        kept = [c for action in ChangeAction for c in buckets[action]]
        return cls(
            files_to_copy=buckets[ChangeAction.COPY],
            files_to_update=buckets[ChangeAction.UPDATE],
            files_to_delete=buckets[ChangeAction.DELETE],
            total_files=len(kept),
            total_size=sum(c.size for c in kept),
        )

    @property
    def has_deletions(self) -> bool:
        return bool(self.files_to_delete)

    @property
    def is_empty(self) -> bool:
        return self.total_files == 0


class OperationType(str, Enum):
    BACKUP = "Backup"
    RESTORE = "Restore"
    PREVIEW = "Preview"


class OperationStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class Operation(BaseModel):
    """Record of one backup or restore run."""
    id: str = Field(default_factory=new_id)
    profile_id: str
    operation_type: OperationType
    status: OperationStatus = OperationStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    files_transferred: int = 0
    bytes_transferred: int = 0
    error_message: Optional[str] = None
    log_output: str = ""

    def finish(self, status: OperationStatus, error_message: Optional[str] = None) -> "Operation":
        self.status = status
        self.error_message = error_message
        self.completed_at = utcnow()
        return self


class Profile(BaseModel):
    """Local backup configuration bound to one identity."""
    id: str = Field(default_factory=new_id)
    name: str
    role: ProfileRole
    user_id: Optional[str] = None
    rclone_bin: str = "rclone"
    rclone_conf: str = ""
    remote: str = "aws"
    bucket: str = ""
    prefix: str = ""
    sources: List[str] = Field(default_factory=list)
    mode: BackupMode = BackupMode.COPY
    schedule: Optional[Schedule] = None
    rclone_flags: List[str] = Field(default_factory=lambda: list(DEFAULT_RCLONE_FLAGS))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("prefix")
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        return v.strip("/")

    @model_validator(mode="after")
    def check_scope(self) -> "Profile":
        # Only administrators may address the whole bucket.
        if self.role == ProfileRole.USER and not self.prefix:
            raise ValueError("User profiles require a non-empty prefix")
        return self

    def destination(self) -> str:
        """Remote path in the ``remote:bucket[/prefix]`` form the sync tool expects."""
        if not self.prefix:
            return f"{self.remote}:{self.bucket}"
        return f"{self.remote}:{self.bucket}/{self.prefix}"

    def touch(self) -> None:
        self.updated_at = utcnow()


class CloudFile(BaseModel):
    """Entry of a remote listing."""
    path: str
    name: str
    size: int = 0
    mod_time: Optional[datetime] = None
    is_dir: bool = False
    mime_type: Optional[str] = None
