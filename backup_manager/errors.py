"""
Exception taxonomy for backup, validation and restore operations.
"""
import errno


class BackupManagerError(Exception):
    """Base exception for all backup manager errors."""

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigError(BackupManagerError):
    """Configuration or credentials file is missing or invalid."""


class AuthenticationError(BackupManagerError):
    """Portainer rejected the configured credentials."""


class ApiUnavailable(BackupManagerError):
    """Portainer API could not be reached (connection error or timeout)."""


class ApiResponseError(BackupManagerError):
    """Portainer answered with an empty, malformed or unexpected response."""


class NotFoundError(BackupManagerError):
    """Requested stack does not exist on the endpoint."""


class StackConflict(BackupManagerError):
    """A stack with the same name already exists on the endpoint."""


class StackCreateFailed(BackupManagerError):
    """Portainer rejected a stack creation request."""


class ArchiveCorrupt(BackupManagerError):
    """Archive failed integrity or structural validation."""


class InsufficientSpace(BackupManagerError):
    """Filesystem ran out of space while writing."""


class PermissionDenied(BackupManagerError):
    """Filesystem refused access to a path."""


class LockError(BackupManagerError):
    """Another backup or restore operation holds the operation lock."""


class RemoteSyncError(BackupManagerError):
    """Remote-sync client generation failed."""


class PartialCaptureWarning(UserWarning):
    """One stack was captured without its compose file content."""


def from_os_error(exc, context=''):
    """Map an OSError to InsufficientSpace / PermissionDenied, else wrap it.

    Returns an exception instance; the caller decides whether to raise it.
    """
    details = {'path': getattr(exc, 'filename', None), 'errno': exc.errno}
    message = f"{context}: {exc}" if context else str(exc)
    if exc.errno in (errno.ENOSPC, errno.EDQUOT):
        return InsufficientSpace(message, details=details)
    if exc.errno in (errno.EACCES, errno.EPERM):
        return PermissionDenied(message, details=details)
    return BackupManagerError(message, details=details)
