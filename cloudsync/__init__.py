"""cloudsync - keep a local folder in two-way sync with a cloud drive."""

from .backends import StorageBackend, create_backend
from .exceptions import (
    AuthError,
    CloudSyncError,
    ConfigError,
    ConflictUnresolvedError,
    InvalidResponseError,
    LocalChangedError,
    LocalIOError,
    ManifestCorruptError,
    NetworkError,
    RateLimitError,
    RemoteNotFoundError,
    RemotePermissionError,
    TransientError,
)
from .sync import SyncEngine, SyncMode, SyncReport

__version__ = "0.1.0"

__all__ = [
    "SyncEngine",
    "SyncMode",
    "SyncReport",
    "StorageBackend",
    "create_backend",
    "CloudSyncError",
    "AuthError",
    "ConfigError",
    "ConflictUnresolvedError",
    "InvalidResponseError",
    "LocalChangedError",
    "LocalIOError",
    "ManifestCorruptError",
    "NetworkError",
    "RateLimitError",
    "RemoteNotFoundError",
    "RemotePermissionError",
    "TransientError",
]
