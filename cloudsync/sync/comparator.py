"""File comparison logic for sync operations.

The comparator is the reconciler of a sync pass. Given the local snapshot,
the remote snapshot and the manifest of the previous pass, it decides per
path whether to transfer, delete or leave the file alone. It does no I/O
besides lazily hashing local files, and returns the same decisions in the
same order for the same inputs.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from operator import attrgetter
from typing import Callable, Iterable, Optional

from ..backends.base import RemoteObjectRecord
from ..exceptions import ConflictUnresolvedError
from ..utils import DEFAULT_MTIME_TOLERANCE
from .scanner import FileRecord
from .state import ManifestEntry, SyncManifest

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Delete local file"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote file"""

    CONFLICT_UPLOAD = "conflict_upload"
    """Both sides changed, the local version wins"""

    CONFLICT_DOWNLOAD = "conflict_download"
    """Both sides changed, the remote version wins"""

    NOOP = "noop"
    """No transfer needed"""

    @property
    def is_transfer(self) -> bool:
        return self in _TRANSFERS

    @property
    def is_delete(self) -> bool:
        return self in (SyncAction.DELETE_LOCAL, SyncAction.DELETE_REMOTE)

    @property
    def is_conflict(self) -> bool:
        return self in (SyncAction.CONFLICT_UPLOAD, SyncAction.CONFLICT_DOWNLOAD)

    @property
    def is_upload(self) -> bool:
        return self in (SyncAction.UPLOAD, SyncAction.CONFLICT_UPLOAD)

    @property
    def is_download(self) -> bool:
        return self in (SyncAction.DOWNLOAD, SyncAction.CONFLICT_DOWNLOAD)


_TRANSFERS = frozenset(
    {
        SyncAction.UPLOAD,
        SyncAction.DOWNLOAD,
        SyncAction.CONFLICT_UPLOAD,
        SyncAction.CONFLICT_DOWNLOAD,
    }
)


@dataclass
class SyncDecision:
    """Represents a decision about how to sync a file."""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    relative_path: str
    """Relative path of the file"""

    local_file: Optional[FileRecord] = None
    """Local file (if exists)"""

    remote_file: Optional[RemoteObjectRecord] = None
    """Remote file (if exists)"""

    entry: Optional[ManifestEntry] = None
    """Manifest entry from the previous sync (if any)"""

    update_entry: bool = False
    """NOOP only: record the current state of both sides in the manifest"""

    drop_entry: bool = False
    """NOOP only: the path is gone on both sides, forget it"""

    conflict_error: Optional[str] = None
    """Set when the conflict policy refused to resolve this path"""

    @property
    def is_actionable(self) -> bool:
        return self.action is not SyncAction.NOOP


ConflictPolicy = Callable[[FileRecord, RemoteObjectRecord], SyncAction]
"""Picks CONFLICT_UPLOAD or CONFLICT_DOWNLOAD for a path changed on both sides"""


def most_recent_wins(tolerance: float = DEFAULT_MTIME_TOLERANCE) -> ConflictPolicy:
    """Conflict policy keeping the side with the later modification time.

    Timestamps within ``tolerance`` seconds count as a tie, and ties go to
    the remote copy: several local clients may race, but there is only one
    remote. A remote without a modification time loses.
    """

    def policy(local: FileRecord, remote: RemoteObjectRecord) -> SyncAction:
        if remote.mtime is None:
            return SyncAction.CONFLICT_UPLOAD
        if local.mtime - remote.mtime > tolerance:
            return SyncAction.CONFLICT_UPLOAD
        return SyncAction.CONFLICT_DOWNLOAD

    return policy


def manual_resolution(local: FileRecord, remote: RemoteObjectRecord) -> SyncAction:
    """Conflict policy that never picks a winner."""
    raise ConflictUnresolvedError(
        f"{local.relative_path} changed on both sides, resolve it manually"
    )


class FileComparator:
    """Compares local and remote snapshots against the manifest."""

    def __init__(
        self,
        hash_algorithm: Optional[str] = None,
        mtime_tolerance: float = DEFAULT_MTIME_TOLERANCE,
        conflict_policy: Optional[ConflictPolicy] = None,
    ):
        """Initialize file comparator.

        Args:
            hash_algorithm: Algorithm of the backend's content hashes
                (None if the backend exposes none)
            mtime_tolerance: Timestamps closer than this are equal (seconds)
            conflict_policy: Resolves paths changed on both sides
                (defaults to most_recent_wins)
        """
        self.hash_algorithm = hash_algorithm
        self.mtime_tolerance = mtime_tolerance
        self.conflict_policy = conflict_policy or most_recent_wins(mtime_tolerance)

    def compare_files(
        self,
        local_files: dict[str, FileRecord],
        remote_files: dict[str, RemoteObjectRecord],
        manifest: Optional[SyncManifest] = None,
        fresh: bool = False,
        excluded: Optional[Iterable[str]] = None,
    ) -> list[SyncDecision]:
        """Compare snapshots and determine sync actions.

        Args:
            local_files: Dictionary mapping relative_path to FileRecord
            remote_files: Dictionary mapping relative_path to RemoteObjectRecord
            manifest: Manifest of the previous sync (None for none)
            fresh: Ignore the manifest and compare contents only
            excluded: Paths the local scan could not read. Files at or
                below them are left alone on both sides.

        Returns:
            Decisions ordered transfers first, then deletions, then NOOPs
        """
        entries = {} if manifest is None or fresh else manifest.entries

        # Get all unique paths
        all_paths = set(local_files) | set(remote_files) | set(entries)
        if excluded:
            skipped = {p for p in all_paths if self._is_excluded(p, excluded)}
            if skipped:
                logger.debug(f"Leaving {len(skipped)} unreadable path(s) untouched")
            all_paths -= skipped

        decisions = [
            self._compare_single_file(
                path, local_files.get(path), remote_files.get(path), entries.get(path)
            )
            for path in sorted(all_paths)
        ]
        return self.order_decisions(decisions)

    @staticmethod
    def _is_excluded(path: str, excluded: Iterable[str]) -> bool:
        return any(
            path == prefix or path.startswith(prefix + "/") for prefix in excluded
        )

    @staticmethod
    def order_decisions(decisions: list[SyncDecision]) -> list[SyncDecision]:
        """Order decisions so deletions run after every transfer."""
        transfers = [d for d in decisions if d.action.is_transfer]
        deletes = [d for d in decisions if d.action.is_delete]
        noops = [d for d in decisions if d.action is SyncAction.NOOP]
        by_path = attrgetter("relative_path")
        return (
            sorted(transfers, key=by_path)
            + sorted(deletes, key=by_path)
            + sorted(noops, key=by_path)
        )

    def _compare_single_file(
        self,
        path: str,
        local_file: Optional[FileRecord],
        remote_file: Optional[RemoteObjectRecord],
        entry: Optional[ManifestEntry],
    ) -> SyncDecision:
        """Compare a single path and determine action."""
        if entry is not None and entry.tombstone:
            return self._compare_tombstoned(path, local_file, remote_file, entry)

        # Case 1: Gone on both sides
        if local_file is None and remote_file is None:
            return SyncDecision(
                action=SyncAction.NOOP,
                reason="Deleted on both sides",
                relative_path=path,
                entry=entry,
                drop_entry=True,
            )

        # Case 2: File only exists locally
        if remote_file is None:
            return self._handle_local_only(path, local_file, entry)

        # Case 3: File only exists remotely
        if local_file is None:
            return self._handle_remote_only(path, remote_file, entry)

        # Case 4: File exists in both locations
        if entry is None:
            return self._compare_without_history(path, local_file, remote_file, None)
        return self._compare_existing_files(path, local_file, remote_file, entry)

    def _handle_local_only(
        self, path: str, local_file: FileRecord, entry: Optional[ManifestEntry]
    ) -> SyncDecision:
        """Handle file that only exists locally."""
        if entry is None:
            return SyncDecision(
                action=SyncAction.UPLOAD,
                reason="New local file",
                relative_path=path,
                local_file=local_file,
            )

        if self._local_changed(local_file, entry):
            # An edit beats a deletion
            return SyncDecision(
                action=SyncAction.UPLOAD,
                reason="Modified locally, deleted remotely",
                relative_path=path,
                local_file=local_file,
                entry=entry,
            )

        return SyncDecision(
            action=SyncAction.DELETE_LOCAL,
            reason="Deleted remotely",
            relative_path=path,
            local_file=local_file,
            entry=entry,
        )

    def _handle_remote_only(
        self, path: str, remote_file: RemoteObjectRecord, entry: Optional[ManifestEntry]
    ) -> SyncDecision:
        """Handle file that only exists remotely."""
        if entry is None:
            return SyncDecision(
                action=SyncAction.DOWNLOAD,
                reason="New remote file",
                relative_path=path,
                remote_file=remote_file,
            )

        if self._remote_changed(remote_file, entry):
            return SyncDecision(
                action=SyncAction.DOWNLOAD,
                reason="Modified remotely, deleted locally",
                relative_path=path,
                remote_file=remote_file,
                entry=entry,
            )

        return SyncDecision(
            action=SyncAction.DELETE_REMOTE,
            reason="Deleted locally",
            relative_path=path,
            remote_file=remote_file,
            entry=entry,
        )

    def _compare_existing_files(
        self,
        path: str,
        local_file: FileRecord,
        remote_file: RemoteObjectRecord,
        entry: ManifestEntry,
    ) -> SyncDecision:
        """Compare files that exist in both locations and were synced before."""
        local_changed = self._local_changed(local_file, entry)
        remote_changed = self._remote_changed(remote_file, entry)

        if not local_changed and not remote_changed:
            # Refresh the entry when only metadata moved (touch, rename by id)
            touched = not self._matches_entry(local_file, remote_file, entry)
            return SyncDecision(
                action=SyncAction.NOOP,
                reason="Unchanged",
                relative_path=path,
                local_file=local_file,
                remote_file=remote_file,
                entry=entry,
                update_entry=touched,
            )

        if local_changed and not remote_changed:
            return SyncDecision(
                action=SyncAction.UPLOAD,
                reason="Modified locally",
                relative_path=path,
                local_file=local_file,
                remote_file=remote_file,
                entry=entry,
            )

        if remote_changed and not local_changed:
            return SyncDecision(
                action=SyncAction.DOWNLOAD,
                reason="Modified remotely",
                relative_path=path,
                local_file=local_file,
                remote_file=remote_file,
                entry=entry,
            )

        return self._compare_without_history(path, local_file, remote_file, entry)

    def _compare_without_history(
        self,
        path: str,
        local_file: FileRecord,
        remote_file: RemoteObjectRecord,
        entry: Optional[ManifestEntry],
    ) -> SyncDecision:
        """Compare two copies whose common ancestor is unknown.

        Used for paths never synced, fresh passes and paths changed on
        both sides. Identical content needs no transfer; anything else is
        a conflict.
        """
        if self._same_content(local_file, remote_file):
            return SyncDecision(
                action=SyncAction.NOOP,
                reason="Identical on both sides",
                relative_path=path,
                local_file=local_file,
                remote_file=remote_file,
                entry=entry,
                update_entry=True,
            )

        reason = (
            f"Changed on both sides (local mtime {local_file.mtime:.0f}, "
            f"remote mtime {self._format_mtime(remote_file.mtime)})"
        )
        try:
            action = self.conflict_policy(local_file, remote_file)
        except ConflictUnresolvedError as e:
            logger.debug(f"Conflict on {path} left unresolved: {e}")
            return SyncDecision(
                action=SyncAction.NOOP,
                reason=reason,
                relative_path=path,
                local_file=local_file,
                remote_file=remote_file,
                entry=entry,
                conflict_error=str(e),
            )

        if not action.is_conflict:
            raise ValueError(f"Conflict policy returned {action!r} for {path}")

        return SyncDecision(
            action=action,
            reason=reason,
            relative_path=path,
            local_file=local_file,
            remote_file=remote_file,
            entry=entry,
        )

    def _compare_tombstoned(
        self,
        path: str,
        local_file: Optional[FileRecord],
        remote_file: Optional[RemoteObjectRecord],
        entry: ManifestEntry,
    ) -> SyncDecision:
        """Handle a path that was deliberately deleted on both sides.

        A copy that is not newer than the deleted one and still holds its
        content is stale and is deleted again instead of being resurrected.
        Anything else is treated as a new file.
        """
        if local_file is None and remote_file is None:
            return SyncDecision(
                action=SyncAction.NOOP,
                reason="Deleted (tombstone)",
                relative_path=path,
                entry=entry,
            )

        if local_file is not None and remote_file is not None:
            return self._compare_without_history(path, local_file, remote_file, entry)

        if local_file is not None:
            if self._newer_than(
                local_file.mtime, entry.local_mtime
            ) or not self._local_matches_tombstone(local_file, entry):
                return SyncDecision(
                    action=SyncAction.UPLOAD,
                    reason="Recreated locally after deletion",
                    relative_path=path,
                    local_file=local_file,
                    entry=entry,
                )
            return SyncDecision(
                action=SyncAction.DELETE_LOCAL,
                reason="Stale copy of a deleted file",
                relative_path=path,
                local_file=local_file,
                entry=entry,
            )

        assert remote_file is not None
        recreated = (
            entry.remote_id is not None and remote_file.remote_id != entry.remote_id
        ) or self._newer_than(remote_file.mtime, entry.remote_mtime)
        if recreated or not self._remote_matches_tombstone(remote_file, entry):
            return SyncDecision(
                action=SyncAction.DOWNLOAD,
                reason="Recreated remotely after deletion",
                relative_path=path,
                remote_file=remote_file,
                entry=entry,
            )
        return SyncDecision(
            action=SyncAction.DELETE_REMOTE,
            reason="Stale copy of a deleted file",
            relative_path=path,
            remote_file=remote_file,
            entry=entry,
        )

    # =========================
    # Change detection
    # =========================

    def _equal_mtime(self, a: Optional[float], b: Optional[float]) -> bool:
        return a is not None and b is not None and abs(a - b) <= self.mtime_tolerance

    def _newer_than(self, mtime: Optional[float], reference: Optional[float]) -> bool:
        if mtime is None:
            return False
        if reference is None:
            return True
        return mtime - reference > self.mtime_tolerance

    @staticmethod
    def _format_mtime(mtime: Optional[float]) -> str:
        return "unknown" if mtime is None else f"{mtime:.0f}"

    def _local_changed(self, local_file: FileRecord, entry: ManifestEntry) -> bool:
        """Check whether the local file differs from its last synced state."""
        if entry.local_mtime is None:
            return True
        if entry.size is not None and local_file.size != entry.size:
            return True
        if self._equal_mtime(local_file.mtime, entry.local_mtime):
            return False

        # Timestamp moved, the content may not have (touch, copy back)
        if entry.content_hash is not None:
            local_hash = local_file.content_hash(self.hash_algorithm)
            if local_hash is not None:
                return local_hash != entry.content_hash
        return True

    def _remote_changed(
        self, remote_file: RemoteObjectRecord, entry: ManifestEntry
    ) -> bool:
        """Check whether the remote object differs from its last synced state."""
        if entry.size is not None and remote_file.size != entry.size:
            return True

        same_id = entry.remote_id is None or remote_file.remote_id == entry.remote_id
        if same_id and remote_file.revision is not None and entry.revision is not None:
            unchanged = remote_file.revision == entry.revision
        else:
            unchanged = same_id and self._equal_mtime(
                remote_file.mtime, entry.remote_mtime
            )
        if unchanged:
            return False

        if remote_file.content_hash is not None and entry.content_hash is not None:
            return remote_file.content_hash != entry.content_hash
        return True

    def _local_matches_tombstone(
        self, local_file: FileRecord, entry: ManifestEntry
    ) -> bool:
        if entry.size is None or local_file.size != entry.size:
            return False
        if entry.content_hash is None:
            return True
        local_hash = local_file.content_hash(self.hash_algorithm)
        return local_hash is None or local_hash == entry.content_hash

    @staticmethod
    def _remote_matches_tombstone(
        remote_file: RemoteObjectRecord, entry: ManifestEntry
    ) -> bool:
        if entry.size is None or remote_file.size != entry.size:
            return False
        if remote_file.content_hash is None or entry.content_hash is None:
            return True
        return remote_file.content_hash == entry.content_hash

    def _same_content(
        self, local_file: FileRecord, remote_file: RemoteObjectRecord
    ) -> bool:
        """Decide whether both copies hold the same bytes.

        Uses size and hash. Without a remote hash, equal size and equal
        timestamps (within tolerance) count as the same content.
        """
        if local_file.size != remote_file.size:
            return False

        if remote_file.content_hash is not None:
            local_hash = local_file.content_hash(self.hash_algorithm)
            if local_hash is not None:
                return local_hash == remote_file.content_hash

        return self._equal_mtime(local_file.mtime, remote_file.mtime)

    def _matches_entry(
        self,
        local_file: FileRecord,
        remote_file: RemoteObjectRecord,
        entry: ManifestEntry,
    ) -> bool:
        return (
            self._equal_mtime(local_file.mtime, entry.local_mtime)
            and remote_file.remote_id == entry.remote_id
            and remote_file.revision == entry.revision
            and (
                remote_file.mtime == entry.remote_mtime
                or self._equal_mtime(remote_file.mtime, entry.remote_mtime)
            )
        )
