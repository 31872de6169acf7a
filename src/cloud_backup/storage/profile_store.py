"""Persistent store for profiles, their schedules and the operation history."""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from .. import __version__
from ..exceptions import ProfileNotFound, StorageError
from ..models import Operation, Profile, Schedule, utcnow
from ..utils.file_utils import FileHelper

logger = logging.getLogger(__name__)

MAX_OPERATIONS = 100


class AppState(BaseModel):
    """Everything persisted in ``config.json``."""
    profiles: List[Profile] = Field(default_factory=list)
    active_profile_id: Optional[str] = None
    backup_operations: List[Operation] = Field(default_factory=list)
    # Newest scheduled run imported from each profile's runner log
    log_imported_until: Dict[str, datetime] = Field(default_factory=dict)
    app_version: str = __version__
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def find(self, profile_id: str) -> Optional[Profile]:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None


class ProfileStore:
    """JSON-file backed store. Every mutation is a load, change, atomic save."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Path of the ``config.json`` file
        """
        self.path = Path(path)

    def load(self) -> AppState:
        """Load the persisted state, or an empty one if nothing was saved yet.

        Raises:
            StorageError: If the file exists but cannot be parsed. The file is
                copied aside to ``<name>.corrupted`` first.
        """
        if not self.path.exists():
            return AppState()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return AppState(**data)
        except (json.JSONDecodeError, ModelValidationError, TypeError) as e:
            backup_path = self.path.with_name(self.path.name + ".corrupted")
            try:
                shutil.copyfile(self.path, backup_path)
            except OSError as copy_error:
                logger.error(f"Could not back up corrupted config {self.path}: {copy_error}")
            logger.error(f"Config file {self.path} is corrupted: {e}")
            raise StorageError(
                f"Config file is corrupted and cannot be loaded. Original saved to: {backup_path}. Error: {e}"
            ) from e
        except OSError as e:
            raise StorageError(f"Failed to read config file {self.path}: {e}") from e

    def save(self, state: AppState) -> None:
        state.updated_at = utcnow()
        try:
            FileHelper.write_json_text(self.path, state.model_dump_json(indent=2), mode=0o600)
        except OSError as e:
            raise StorageError(f"Failed to write config file {self.path}: {e}") from e

    # Profiles

    def list_profiles(self) -> List[Profile]:
        return self.load().profiles

    def get_profile(self, profile_id: str) -> Profile:
        profile = self.load().find(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    def find_by_user(self, user_id: str) -> Optional[Profile]:
        for profile in self.load().profiles:
            if profile.user_id == user_id:
                return profile
        return None

    def add_profile(self, profile: Profile, make_active: bool = False) -> Profile:
        state = self.load()
        state.profiles.append(profile)
        if make_active:
            state.active_profile_id = profile.id
        self.save(state)
        logger.info(f"Created profile {profile.name} ({profile.id})")
        return profile

    def update_profile(self, profile: Profile) -> Profile:
        state = self.load()
        for index, existing in enumerate(state.profiles):
            if existing.id == profile.id:
                profile.touch()
                state.profiles[index] = profile
                self.save(state)
                return profile
        raise ProfileNotFound(profile.id)

    def delete_profile(self, profile_id: str) -> None:
        state = self.load()
        remaining = [p for p in state.profiles if p.id != profile_id]
        if len(remaining) == len(state.profiles):
            raise ProfileNotFound(profile_id)
        state.profiles = remaining
        if state.active_profile_id == profile_id:
            state.active_profile_id = None
        self.save(state)
        logger.info(f"Deleted profile {profile_id}")

    def get_active(self) -> Optional[Profile]:
        state = self.load()
        if state.active_profile_id is None:
            return None
        return state.find(state.active_profile_id)

    def set_active(self, profile_id: str) -> Profile:
        state = self.load()
        profile = state.find(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        state.active_profile_id = profile_id
        self.save(state)
        return profile

    # Schedules

    def get_schedule(self, profile_id: str) -> Optional[Schedule]:
        return self.get_profile(profile_id).schedule

    def set_schedule(self, profile_id: str, schedule: Optional[Schedule]) -> Profile:
        state = self.load()
        profile = state.find(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        profile.schedule = schedule
        profile.touch()
        self.save(state)
        return profile

    # Operation history

    def add_operation(self, operation: Operation) -> None:
        """Record an operation, most recent first, keeping the last MAX_OPERATIONS."""
        state = self.load()
        state.backup_operations.insert(0, operation)
        del state.backup_operations[MAX_OPERATIONS:]
        self.save(state)

    def operations(self, profile_id: Optional[str] = None, limit: Optional[int] = None) -> List[Operation]:
        ops = [op for op in self.load().backup_operations
               if profile_id is None or op.profile_id == profile_id]
        return ops[:limit] if limit is not None else ops

    def imported_until(self, profile_id: str) -> Optional[datetime]:
        return self.load().log_imported_until.get(profile_id)

    def mark_imported(self, profile_id: str, started_at: datetime) -> None:
        state = self.load()
        current = state.log_imported_until.get(profile_id)
        if current is None or started_at > current:
            state.log_imported_until[profile_id] = started_at
            self.save(state)

    def clear_operations(self) -> int:
        state = self.load()
        count = len(state.backup_operations)
        state.backup_operations.clear()
        self.save(state)
        logger.info(f"Cleared {count} backup operations")
        return count
