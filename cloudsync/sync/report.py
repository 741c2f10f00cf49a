"""Run report returned by a sync pass."""

from dataclasses import dataclass, field
from typing import Optional

from .comparator import SyncAction
from .modes import SyncMode


@dataclass
class ConflictRecord:
    """A path changed on both sides and how it was resolved."""

    relative_path: str
    local_mtime: Optional[float]
    remote_mtime: Optional[float]
    resolution: SyncAction
    """CONFLICT_UPLOAD or CONFLICT_DOWNLOAD"""

    preserved_copy: Optional[str] = None
    """Relative path where the losing version was kept, if any"""

    @property
    def kept(self) -> str:
        """Which side's content won: "local" or "remote"."""
        return "local" if self.resolution is SyncAction.CONFLICT_UPLOAD else "remote"

    def to_dict(self) -> dict:
        return {
            "path": self.relative_path,
            "local_mtime": self.local_mtime,
            "remote_mtime": self.remote_mtime,
            "resolution": self.resolution.value,
            "kept": self.kept,
            "preserved_copy": self.preserved_copy,
        }


@dataclass
class PathOutcome:
    """Result of the action taken for one path."""

    relative_path: str
    action: SyncAction
    success: bool
    reason: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "path": self.relative_path,
            "action": self.action.value,
            "success": self.success,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class SyncReport:
    """Statistics and per-path results of one sync pass."""

    mode: SyncMode = SyncMode.INCREMENTAL
    dry_run: bool = False
    uploaded: int = 0
    downloaded: int = 0
    deleted_local: int = 0
    deleted_remote: int = 0
    unchanged: int = 0
    outcomes: dict[str, PathOutcome] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    scan_errors: list[tuple[str, str]] = field(default_factory=list)
    aborted: Optional[str] = None
    """Why the run stopped early (auth failure, cancellation), if it did"""

    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def deleted(self) -> int:
        return self.deleted_local + self.deleted_remote

    @property
    def failures(self) -> list[PathOutcome]:
        return [o for o in self.outcomes.values() if not o.success]

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total_actions(self) -> int:
        return self.uploaded + self.downloaded + self.deleted

    def record_success(self, relative_path: str, action: SyncAction, reason: str = "") -> None:
        """Count a completed action."""
        if action.is_upload:
            self.uploaded += 1
        elif action.is_download:
            self.downloaded += 1
        elif action is SyncAction.DELETE_LOCAL:
            self.deleted_local += 1
        elif action is SyncAction.DELETE_REMOTE:
            self.deleted_remote += 1
        else:
            self.unchanged += 1
            return
        self.outcomes[relative_path] = PathOutcome(relative_path, action, True, reason)

    def record_failure(
        self, relative_path: str, action: SyncAction, error: str, reason: str = ""
    ) -> None:
        self.outcomes[relative_path] = PathOutcome(
            relative_path, action, False, reason, error
        )

    def record_planned(self, relative_path: str, action: SyncAction, reason: str) -> None:
        """Count an action a dry run would take."""
        self.record_success(relative_path, action, reason)

    def to_dict(self) -> dict:
        """Convert report to dictionary for JSON output."""
        return {
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "deleted_local": self.deleted_local,
            "deleted_remote": self.deleted_remote,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "failed": self.failed,
            "outcomes": [self.outcomes[p].to_dict() for p in sorted(self.outcomes)],
            "scan_errors": [
                {"path": path, "error": error} for path, error in self.scan_errors
            ],
            "aborted": self.aborted,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
