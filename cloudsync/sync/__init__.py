"""Sync engine for cloudsync - two-way reconciliation with a cloud drive."""

from .comparator import (
    ConflictPolicy,
    FileComparator,
    SyncAction,
    SyncDecision,
    manual_resolution,
    most_recent_wins,
)
from .engine import SyncEngine
from .executor import ActionResult, SyncExecutor
from .modes import SyncMode
from .operations import SyncOperations, TransferResult
from .report import ConflictRecord, PathOutcome, SyncReport
from .retry import RetryPolicy
from .scanner import DirectoryScanner, FileRecord
from .state import ManifestEntry, ManifestStore, SyncManifest

__all__ = [
    "SyncEngine",
    "SyncMode",
    "SyncExecutor",
    "ActionResult",
    "SyncOperations",
    "TransferResult",
    "DirectoryScanner",
    "FileRecord",
    "FileComparator",
    "SyncAction",
    "SyncDecision",
    "ConflictPolicy",
    "most_recent_wins",
    "manual_resolution",
    "RetryPolicy",
    "SyncReport",
    "PathOutcome",
    "ConflictRecord",
    "ManifestEntry",
    "ManifestStore",
    "SyncManifest",
]
