"""
Error taxonomy for the backup engine.

Every engine failure derives from BackupError. The orchestrator maps the
class name (``error_kind``) onto the failing step of a run, and
``transient`` decides whether a component retries the call before
letting the error surface.
"""


class BackupError(Exception):
    """Base exception for all backup engine errors."""

    transient = False

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def error_kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class SourceError(BackupError):
    """Raised when the snapshot cannot be produced, is truncated or times out."""
    pass


class TransformError(BackupError):
    """Raised when compression or encryption of the snapshot stream fails."""
    pass


class WriteError(BackupError):
    """Raised when an artifact cannot be written to local storage."""

    def __init__(self, message: str, details: dict = None, transient: bool = False):
        super().__init__(message, details)
        self.transient = transient


class DiskFullError(WriteError):
    """Raised when local storage has no space left. Never retried."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message, details, transient=False)


class NotFoundError(BackupError):
    """Raised when an artifact key does not exist in a store."""
    pass


class NetworkError(BackupError):
    """Raised when a remote tier cannot be reached or answers with a server error."""

    def __init__(self, message: str, details: dict = None, transient: bool = True):
        super().__init__(message, details)
        self.transient = transient


class AuthError(BackupError):
    """Raised when a remote tier rejects the credentials. Never retried."""
    pass


class PartialSyncError(BackupError):
    """Raised when a remote sync uploaded some artifacts but not all of them."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class DuplicateKeyError(BackupError):
    """Raised when an artifact key was already issued for the same time window."""
    pass


class PolicyError(BackupError):
    """Raised when retention or naming configuration is invalid."""
    pass


class LockContentionError(BackupError):
    """Raised when another run already holds the lock for a database."""
    pass


class RunCancelledError(BackupError):
    """Raised when a run is cancelled or exceeds its deadline."""
    pass
