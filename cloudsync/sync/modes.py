"""Sync modes."""

from enum import Enum


class SyncMode(str, Enum):
    """How a sync pass uses the manifest."""

    INCREMENTAL = "incremental"
    """Compare against the manifest to detect changes and deletions"""

    FRESH = "fresh"
    """Ignore the manifest and rebuild it from size/hash equality"""

    @property
    def uses_manifest(self) -> bool:
        return self is SyncMode.INCREMENTAL

