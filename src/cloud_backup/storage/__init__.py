"""Local persistence for credentials, profiles, schedules and history."""

from .credential_store import CredentialStore
from .profile_store import AppState, ProfileStore

__all__ = ["CredentialStore", "ProfileStore", "AppState"]
