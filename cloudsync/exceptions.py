"""Exceptions raised by cloudsync."""

from typing import Optional


class CloudSyncError(Exception):
    """Base exception for all cloudsync errors."""


class ConfigError(CloudSyncError):
    """Configuration is missing or invalid (unknown account, bad service...)."""


class LocalIOError(CloudSyncError):
    """The local filesystem could not be read or written.

    Recoverable per path; fatal for a run only when the sync root itself
    is inaccessible.
    """


class LocalChangedError(LocalIOError):
    """A local file changed between the scan and the action touching it."""


class AuthError(CloudSyncError):
    """Credentials are invalid or expired.

    Never retried. The session is no longer usable and the user has to
    log in again.
    """


class TransientError(CloudSyncError):
    """Temporary provider failure, eligible for retry with backoff."""


class NetworkError(TransientError):
    """Connection-level failure (DNS, reset, timeout)."""


class RateLimitError(TransientError):
    """The provider asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RemoteNotFoundError(CloudSyncError):
    """The remote object does not exist."""


class RemotePermissionError(CloudSyncError):
    """The provider refused access to the object."""


class InvalidResponseError(CloudSyncError):
    """The provider returned a response we could not understand."""


class ConflictUnresolvedError(CloudSyncError):
    """A conflict policy declined to pick a winner."""


class ManifestCorruptError(CloudSyncError):
    """The persisted manifest could not be parsed."""
