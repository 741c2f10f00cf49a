"""Transfer primitives used by the executor.

Every remote call goes through the retry policy; local filesystem errors
are raised as LocalIOError and never retried.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..backends.base import RemoteObjectRecord, StorageBackend
from ..exceptions import (
    LocalChangedError,
    LocalIOError,
    RemoteNotFoundError,
    TransientError,
)
from ..utils import TEMP_FILE_PREFIX, conflict_copy_name, hash_bytes
from .retry import RetryPolicy
from .scanner import FileRecord

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """Observed state of both sides after a transfer."""

    local_mtime: float
    size: int
    content_hash: Optional[str]
    remote: RemoteObjectRecord


class SyncOperations:
    """Unified upload/download/delete operations for one sync root."""

    def __init__(
        self,
        backend: StorageBackend,
        root: Path,
        retry: Optional[RetryPolicy] = None,
    ):
        """Initialize sync operations.

        Args:
            backend: Storage backend of the account
            root: Local sync root
            retry: Retry policy for remote calls
        """
        self.backend = backend
        self.root = root
        self.retry = retry or RetryPolicy()

    def local_path(self, relative_path: str) -> Path:
        return self.root.joinpath(*relative_path.split("/"))

    def _hash(self, data: bytes) -> Optional[str]:
        algorithm = self.backend.hash_algorithm
        return hash_bytes(data, algorithm) if algorithm else None

    def ensure_unchanged(self, local_file: Optional[FileRecord], relative_path: str) -> None:
        """Check that a local path still looks like it did at scan time.

        Args:
            local_file: Scanned record, or None if the path did not exist

        Raises:
            LocalChangedError: If the file was created, modified or removed
        """
        path = self.local_path(relative_path)
        try:
            st = path.stat()
        except FileNotFoundError:
            if local_file is None:
                return
            raise LocalChangedError(f"{relative_path} was removed during sync") from None
        except OSError as e:
            raise LocalIOError(f"Cannot stat {relative_path}: {e}") from e

        if local_file is None:
            raise LocalChangedError(f"{relative_path} was created during sync")
        if st.st_mtime != local_file.mtime or st.st_size != local_file.size:
            raise LocalChangedError(f"{relative_path} was modified during sync")

    def upload_file(self, relative_path: str) -> TransferResult:
        """Upload a local file to remote storage.

        The stat taken before reading is what gets recorded, so a file
        modified during the upload is seen as changed by the next run.
        """
        path = self.local_path(relative_path)
        try:
            st = path.stat()
            data = path.read_bytes()
        except OSError as e:
            raise LocalIOError(f"Cannot read {relative_path}: {e}") from e

        logger.debug(f"Uploading {relative_path} ({len(data)} bytes)...")
        remote = self.retry.call(
            lambda: self.backend.upload(relative_path, data, st.st_mtime),
            description=f"Upload of {relative_path}",
        )
        return TransferResult(
            local_mtime=st.st_mtime,
            size=len(data),
            content_hash=remote.content_hash or self._hash(data),
            remote=remote,
        )

    def fetch(self, remote_file: RemoteObjectRecord) -> bytes:
        """Download remote content and check it against the listing.

        Raises:
            TransientError: If fewer or more bytes arrived than listed
        """
        relative_path = remote_file.relative_path

        def _download() -> bytes:
            data = self.backend.download(relative_path)
            if len(data) != remote_file.size:
                raise TransientError(
                    f"Incomplete download of {relative_path}: "
                    f"got {len(data)} of {remote_file.size} bytes"
                )
            return data

        logger.debug(f"Downloading {relative_path}...")
        return self.retry.call(_download, description=f"Download of {relative_path}")

    def write_local(
        self, relative_path: str, data: bytes, mtime: Optional[float]
    ) -> os.stat_result:
        """Write content to a local path atomically.

        Content goes to a temporary file next to the target which then
        replaces it, so a failed write never leaves a truncated file.

        Returns:
            Stat of the written file
        """
        path = self.local_path(relative_path)
        tmp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=path.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            if mtime is not None:
                os.utime(tmp_name, (mtime, mtime))
            os.replace(tmp_name, path)
            tmp_name = None
            # Re-stat to capture what the filesystem actually stored
            return path.stat()
        except OSError as e:
            raise LocalIOError(f"Cannot write {relative_path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def download_file(self, remote_file: RemoteObjectRecord) -> TransferResult:
        """Download a remote file into the local tree."""
        data = self.fetch(remote_file)
        st = self.write_local(remote_file.relative_path, data, remote_file.mtime)
        return TransferResult(
            local_mtime=st.st_mtime,
            size=len(data),
            content_hash=remote_file.content_hash or self._hash(data),
            remote=remote_file,
        )

    def delete_remote(self, relative_path: str) -> None:
        """Delete a remote file; an already missing file counts as deleted."""
        try:
            self.retry.call(
                lambda: self.backend.delete(relative_path),
                description=f"Delete of {relative_path}",
            )
        except RemoteNotFoundError:
            logger.debug(f"{relative_path} already gone remotely")

    def delete_local(self, relative_path: str) -> None:
        """Delete a local file and any parent folders it leaves empty."""
        path = self.local_path(relative_path)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"{relative_path} already gone locally")
        except OSError as e:
            raise LocalIOError(f"Cannot delete {relative_path}: {e}") from e

        parent = path.parent
        while parent != self.root and self.root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                # Not empty (or not removable): stop climbing
                break
            parent = parent.parent

    def _free_conflict_path(self, relative_path: str) -> str:
        now = datetime.now()
        index = 1
        candidate = conflict_copy_name(relative_path, now)
        while self.local_path(candidate).exists():
            index += 1
            candidate = conflict_copy_name(relative_path, now, index)
        return candidate

    def preserve_local_copy(self, relative_path: str) -> str:
        """Move the local version aside before it is overwritten.

        Returns:
            Relative path of the preserved copy
        """
        copy_path = self._free_conflict_path(relative_path)
        try:
            os.replace(self.local_path(relative_path), self.local_path(copy_path))
        except OSError as e:
            raise LocalIOError(f"Cannot keep conflict copy of {relative_path}: {e}") from e
        logger.debug(f"Kept local version of {relative_path} as {copy_path}")
        return copy_path

    def preserve_remote_copy(self, remote_file: RemoteObjectRecord) -> str:
        """Download the remote version next to the local file before it is replaced.

        Returns:
            Relative path of the preserved copy
        """
        copy_path = self._free_conflict_path(remote_file.relative_path)
        data = self.fetch(remote_file)
        self.write_local(copy_path, data, remote_file.mtime)
        logger.debug(f"Kept remote version of {remote_file.relative_path} as {copy_path}")
        return copy_path
