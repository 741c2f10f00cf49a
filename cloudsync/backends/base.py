"""Storage backend interface shared by all cloud providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RemoteObjectRecord:
    """Represents a remote file with metadata."""

    relative_path: str
    """Path relative to the remote root, using forward slashes"""

    remote_id: str
    """Provider-assigned opaque identifier"""

    mtime: Optional[float]
    """Last modification time (Unix timestamp), if the provider exposes one"""

    size: int
    """File size in bytes"""

    revision: Optional[str] = None
    """Revision/version token that changes with the content"""

    content_hash: Optional[str] = None
    """Content hash in the backend's hash_algorithm"""


class StorageBackend(ABC):
    """Capability set every provider adapter implements.

    Implementations address objects by relative path. ``upload`` must
    replace an existing object at the same path rather than create a
    second one.
    """

    name: str = "backend"

    hash_algorithm: Optional[str] = None
    """hashlib name of the algorithm behind RemoteObjectRecord.content_hash"""

    @abstractmethod
    def list(self) -> dict[str, RemoteObjectRecord]:
        """List every remote file below the root.

        Returns:
            Dictionary mapping relative path to RemoteObjectRecord

        Raises:
            AuthError: If the credentials are no longer valid
            TransientError: On network or rate-limit failures
        """

    @abstractmethod
    def upload(
        self, relative_path: str, data: bytes, local_mtime: float
    ) -> RemoteObjectRecord:
        """Upload content to a path, overwriting any existing object.

        The remote modification time is set to ``local_mtime``.
        """

    @abstractmethod
    def download(self, relative_path: str) -> bytes:
        """Download the content stored at a path."""

    @abstractmethod
    def delete(self, relative_path: str) -> None:
        """Delete the object stored at a path.

        Raises:
            RemoteNotFoundError: If nothing exists at the path
        """

    def close(self) -> None:
        """Release connections held by the backend."""

    def __enter__(self) -> "StorageBackend":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
