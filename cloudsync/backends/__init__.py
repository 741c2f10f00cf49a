"""Storage backends for the supported cloud providers."""

from typing import Any

from ..exceptions import ConfigError
from .base import RemoteObjectRecord, StorageBackend
from .gdrive import GoogleDriveBackend
from .http import HttpBackend
from .onedrive import OneDriveBackend

BACKENDS: dict[str, type[HttpBackend]] = {
    "onedrive": OneDriveBackend,
    "gdrive": GoogleDriveBackend,
}


def create_backend(service: str, access_token: str, **options: Any) -> StorageBackend:
    """Create an authenticated backend for a provider.

    Args:
        service: Provider name ("onedrive" or "gdrive")
        access_token: OAuth access token for the account
        **options: Backend specific options (remote_root, use_trash, ...)

    Returns:
        StorageBackend instance

    Raises:
        ConfigError: If the service is unknown or an option is not supported
    """
    backend_class = BACKENDS.get(service.lower())
    if backend_class is None:
        supported = ", ".join(sorted(BACKENDS))
        raise ConfigError(f"Unknown service '{service}' (supported: {supported})")
    try:
        return backend_class(access_token, **options)
    except TypeError as e:
        raise ConfigError(f"Invalid options for {service}: {e}") from e


__all__ = [
    "BACKENDS",
    "GoogleDriveBackend",
    "HttpBackend",
    "OneDriveBackend",
    "RemoteObjectRecord",
    "StorageBackend",
    "create_backend",
]
