"""
Cloud Backup Core

Signs an operator in against a Cognito user pool, exchanges the session for
federated and service storage credentials, provisions a role-scoped backup
profile, and drives rclone backups with recurring schedules and a
confirmation gate in front of deleting syncs.
"""

__version__ = "1.0.0"
__author__ = "Cloud Backup"
__description__ = "Identity, credential and scheduling core of a desktop cloud backup manager"

from .config.settings import AppSettings
from .sync.backup_manager import BackupManager

__all__ = ["AppSettings", "BackupManager"]
