"""Sync engine for backup operations."""

from .backup_manager import BackupManager, LoginResult
from .confirmation import ConfirmationRequired, SyncGate
from .rclone import RcloneConfigWriter, RcloneTool

__all__ = [
    "BackupManager",
    "LoginResult",
    "ConfirmationRequired",
    "SyncGate",
    "RcloneConfigWriter",
    "RcloneTool",
]
