"""Exceptions raised by the cloud backup core."""

from typing import Optional


class CloudBackupError(Exception):
    """Base exception for the cloud backup core."""
    pass


class ConfigError(CloudBackupError):
    """Settings are missing or invalid."""
    pass


class ValidationError(CloudBackupError):
    """Input rejected locally before any network call."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidCredentials(CloudBackupError):
    """The identity provider rejected the email/password pair."""
    pass


class InvalidChallengeResponse(CloudBackupError):
    """The identity provider rejected a second-factor code or new password."""
    pass


class ProviderError(CloudBackupError):
    """The identity provider or the network failed; the message is the provider's."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class OperationInProgress(CloudBackupError):
    """A call for the same stage is already in flight."""
    pass


class CredentialExchangeFailed(CloudBackupError):
    """Obtaining a storage credential failed. Safe to retry."""
    pass


class CredentialOrphaned(CloudBackupError):
    """The backend already issued a service credential that is not cached locally.

    Retrying cannot help; an administrator has to issue new access keys.
    """

    def __init__(self, message: str, service_username: Optional[str] = None):
        self.service_username = service_username
        super().__init__(message)


class ScheduleSyncFailed(CloudBackupError):
    """The external scheduler did not accept a schedule change."""
    pass


class ToolExecutionFailed(CloudBackupError):
    """The synchronization tool could not be run or reported a failure."""

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None):
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message)



class StorageAccessDenied(ToolExecutionFailed):
    """Storage refused the credential rclone used, typically because it expired."""
    pass

class StorageError(CloudBackupError):
    """A local store could not be read or written."""
    pass


class ProfileNotFound(CloudBackupError):
    """No profile with the requested id exists."""

    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(f"Profile not found: {profile_id}")
