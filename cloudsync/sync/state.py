"""State management for tracking sync history.

The manifest remembers, per relative path, what both sides looked like
after the last successful sync. Comparing the current snapshots against it
tells local changes from remote changes and deletions from new files.
"""

import hashlib
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from ..exceptions import LocalIOError, ManifestCorruptError

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


def _optional(data: dict, key: str, types: Union[type, tuple[type, ...]]) -> Any:
    """Return data[key] if it is None or of the given types."""
    value = data.get(key)
    # bool is an int subclass but never a valid number here
    if value is not None and (isinstance(value, bool) or not isinstance(value, types)):
        raise ManifestCorruptError(
            f"Invalid {key} for {data.get('relative_path')}: {value!r}"
        )
    return value


@dataclass
class ManifestEntry:
    """Last known synced state of a single path."""

    relative_path: str
    """Relative path of the file"""

    local_mtime: Optional[float] = None
    """Local modification time after the last sync"""

    remote_mtime: Optional[float] = None
    """Remote modification time after the last sync"""

    remote_id: Optional[str] = None
    """Provider identifier of the remote object"""

    content_hash: Optional[str] = None
    """Content hash at last sync, in the backend's hash algorithm"""

    size: Optional[int] = None
    """File size at last sync"""

    revision: Optional[str] = None
    """Remote revision token at last sync"""

    tombstone: bool = False
    """The path was deliberately deleted on both sides"""

    deleted_at: Optional[float] = None
    """When the tombstone was written"""

    synced_at: Optional[float] = None
    """When this entry was last updated"""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ManifestEntry":
        """Create ManifestEntry from dictionary.

        Raises:
            ManifestCorruptError: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict) or not isinstance(data.get("relative_path"), str):
            raise ManifestCorruptError(f"Invalid manifest entry: {data!r}")
        path = data["relative_path"]
        tombstone = data.get("tombstone", False)
        if not isinstance(tombstone, bool):
            raise ManifestCorruptError(
                f"Invalid tombstone flag for {path}: {tombstone!r}"
            )
        return cls(
            relative_path=path,
            local_mtime=_optional(data, "local_mtime", (int, float)),
            remote_mtime=_optional(data, "remote_mtime", (int, float)),
            remote_id=_optional(data, "remote_id", str),
            content_hash=_optional(data, "content_hash", str),
            size=_optional(data, "size", int),
            revision=_optional(data, "revision", str),
            tombstone=tombstone,
            deleted_at=_optional(data, "deleted_at", (int, float)),
            synced_at=_optional(data, "synced_at", (int, float)),
        )

    def as_tombstone(self, now: Optional[float] = None) -> "ManifestEntry":
        """Return a tombstone keeping this entry's last known metadata."""
        now = time.time() if now is None else now
        return ManifestEntry(
            relative_path=self.relative_path,
            local_mtime=self.local_mtime,
            remote_mtime=self.remote_mtime,
            remote_id=self.remote_id,
            content_hash=self.content_hash,
            size=self.size,
            revision=self.revision,
            tombstone=True,
            deleted_at=now,
            synced_at=now,
        )


@dataclass
class SyncManifest:
    """Mapping from relative path to ManifestEntry for one sync root."""

    entries: dict[str, ManifestEntry] = field(default_factory=dict)

    last_full_sync: Optional[float] = None
    """Unix timestamp of the last completed full pass"""

    def get(self, relative_path: str) -> Optional[ManifestEntry]:
        return self.entries.get(relative_path)

    def set(self, entry: ManifestEntry) -> None:
        self.entries[entry.relative_path] = entry

    def remove(self, relative_path: str) -> None:
        self.entries.pop(relative_path, None)

    @property
    def live_entries(self) -> dict[str, ManifestEntry]:
        return {p: e for p, e in self.entries.items() if not e.tombstone}

    @property
    def tombstones(self) -> dict[str, ManifestEntry]:
        return {p: e for p, e in self.entries.items() if e.tombstone}

    def expire_tombstones(self, ttl: float, now: Optional[float] = None) -> int:
        """Drop tombstones older than ttl seconds.

        Returns:
            Number of tombstones removed
        """
        now = time.time() if now is None else now
        expired = [
            path
            for path, entry in self.entries.items()
            if entry.tombstone and (entry.deleted_at or 0) + ttl < now
        ]
        for path in expired:
            del self.entries[path]
        return len(expired)

    def to_dict(self) -> dict:
        """Convert manifest to dictionary for JSON serialization."""
        return {
            "version": MANIFEST_VERSION,
            "last_full_sync": self.last_full_sync,
            "entries": [self.entries[p].to_dict() for p in sorted(self.entries)],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncManifest":
        """Create SyncManifest from dictionary.

        Raises:
            ManifestCorruptError: If the data does not describe a manifest
        """
        if not isinstance(data, dict):
            raise ManifestCorruptError("Manifest is not a JSON object")
        version = data.get("version")
        if version != MANIFEST_VERSION:
            raise ManifestCorruptError(f"Unsupported manifest version: {version!r}")
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, list):
            raise ManifestCorruptError("Manifest entries must be a list")

        entries = [ManifestEntry.from_dict(item) for item in raw_entries]
        return cls(
            entries={entry.relative_path: entry for entry in entries},
            last_full_sync=_optional(data, "last_full_sync", (int, float)),
        )


class ManifestStore:
    """Persists manifests as JSON files, one per (account, local root).

    Files live in the state directory and are named after a hash of the
    account name and absolute local root. Writes go to a temporary file in
    the same directory which then replaces the manifest atomically.
    """

    def __init__(self, state_dir: Path):
        """Initialize manifest store.

        Args:
            state_dir: Directory to store manifest files
        """
        self.state_dir = state_dir

    def _get_state_key(self, account_name: str, local_root: Path) -> str:
        """Generate a unique key for an (account, local root) pair."""
        # Use absolute path for consistency
        local_abs = str(local_root.resolve())
        combined = f"{account_name}:{local_abs}"
        return hashlib.sha256(combined.encode()).hexdigest()[:16]

    def get_manifest_file(self, account_name: str, local_root: Path) -> Path:
        key = self._get_state_key(account_name, local_root)
        return self.state_dir / f"{key}.json"

    def load(self, account_name: str, local_root: Path) -> Optional[SyncManifest]:
        """Load the manifest for an account and local root.

        Returns:
            SyncManifest if found, None otherwise

        Raises:
            ManifestCorruptError: If the file exists but cannot be parsed
        """
        manifest_file = self.get_manifest_file(account_name, local_root)

        if not manifest_file.exists():
            logger.debug(f"No manifest found at {manifest_file}")
            return None

        try:
            with open(manifest_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestCorruptError(f"Cannot read manifest {manifest_file}: {e}") from e

        manifest = SyncManifest.from_dict(data)
        logger.debug(
            f"Loaded manifest with {len(manifest.entries)} entries "
            f"(last full sync: {manifest.last_full_sync})"
        )
        return manifest

    def save(self, account_name: str, local_root: Path, manifest: SyncManifest) -> Path:
        """Save the manifest atomically.

        Returns:
            Path of the written manifest file

        Raises:
            LocalIOError: If the manifest cannot be written
        """
        manifest_file = self.get_manifest_file(account_name, local_root)
        tmp_name: Optional[str] = None

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{manifest_file.stem}-", suffix=".tmp", dir=self.state_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(manifest.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, manifest_file)
            tmp_name = None
        except OSError as e:
            raise LocalIOError(f"Cannot save manifest {manifest_file}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.debug(
            f"Saved manifest with {len(manifest.entries)} entries to {manifest_file}"
        )
        return manifest_file

    def clear(self, account_name: str, local_root: Path) -> bool:
        """Delete the manifest for an account and local root.

        Returns:
            True if a manifest was deleted, False if none existed
        """
        manifest_file = self.get_manifest_file(account_name, local_root)

        if manifest_file.exists():
            manifest_file.unlink()
            logger.debug(f"Cleared manifest at {manifest_file}")
            return True
        return False
