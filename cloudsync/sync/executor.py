"""Executes sync decisions against the backend and the local filesystem."""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Optional

from ..exceptions import AuthError, CloudSyncError
from .comparator import SyncAction, SyncDecision
from .operations import SyncOperations, TransferResult
from .report import ConflictRecord, SyncReport
from .state import ManifestEntry, SyncManifest

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of one decision, applied to manifest and report by the caller."""

    decision: SyncDecision
    entry: Optional[ManifestEntry] = None
    conflict: Optional[ConflictRecord] = None
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None


class SyncExecutor:
    """Applies decisions, isolating failures per path.

    Transfers run before deletions. Within a phase, actions for distinct
    paths run on a thread pool; their results are applied to the manifest
    and report only from the calling thread, one at a time.
    """

    def __init__(
        self,
        operations: SyncOperations,
        max_workers: int = 1,
        keep_conflict_copies: bool = False,
        cancel_event: Optional[threading.Event] = None,
        on_complete: Optional[Callable[[ActionResult], None]] = None,
    ):
        """Initialize executor.

        Args:
            operations: Transfer primitives bound to backend and root
            max_workers: Number of parallel workers (1 for sequential)
            keep_conflict_copies: Keep the losing side of conflicts locally
            cancel_event: When set, actions not yet started are skipped
            on_complete: Called in the calling thread after each action
        """
        self.operations = operations
        self.max_workers = max(1, max_workers)
        self.keep_conflict_copies = keep_conflict_copies
        self.cancel_event = cancel_event or threading.Event()
        self.on_complete = on_complete

    def execute(
        self,
        decisions: list[SyncDecision],
        manifest: SyncManifest,
        report: SyncReport,
    ) -> None:
        """Execute decisions, updating manifest and report as they complete.

        Raises:
            AuthError: The session became unusable; remaining actions were
                cancelled, completed ones are recorded
            KeyboardInterrupt: Same, on user interruption
        """
        for decision in decisions:
            if decision.action is SyncAction.NOOP:
                self._apply_noop(decision, manifest, report)

        transfers = [d for d in decisions if d.action.is_transfer]
        deletes = [d for d in decisions if d.action.is_delete]

        for phase in (transfers, deletes):
            if phase:
                self._run_phase(phase, manifest, report)

    # =========================
    # Scheduling
    # =========================

    def _run_phase(
        self,
        decisions: list[SyncDecision],
        manifest: SyncManifest,
        report: SyncReport,
    ) -> None:
        logger.debug(f"Executing {len(decisions)} actions with {self.max_workers} workers")

        if self.max_workers == 1 or len(decisions) == 1:
            for decision in decisions:
                result = self._execute_single_decision(decision)
                self._apply_result(result, manifest, report)
            return

        pool = ThreadPoolExecutor(max_workers=self.max_workers)
        pending: set[Future] = {
            pool.submit(self._execute_single_decision, decision) for decision in decisions
        }
        try:
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                error: Optional[BaseException] = None
                for future in done:
                    try:
                        result = future.result()
                    except Exception as e:
                        error = error or e
                        continue
                    self._apply_result(result, manifest, report)
                if error is not None:
                    raise error
        except BaseException:
            # AuthError or KeyboardInterrupt: stop scheduling, keep what finished
            self.cancel_event.set()
            for future in pending:
                future.cancel()
            pool.shutdown(wait=True)
            for future in pending:
                if future.done() and not future.cancelled() and future.exception() is None:
                    self._apply_result(future.result(), manifest, report)
            raise
        finally:
            pool.shutdown(wait=True)

    def _execute_single_decision(self, decision: SyncDecision) -> ActionResult:
        """Execute a single sync decision.

        Returns:
            ActionResult carrying the new manifest entry or the error

        Raises:
            AuthError: Propagated so the whole run aborts
        """
        if self.cancel_event.is_set():
            return ActionResult(decision, error="Cancelled")

        start = time.time()
        try:
            result = self._perform(decision)
        except AuthError:
            raise
        except (CloudSyncError, OSError) as e:
            logger.debug(f"Failed {decision.relative_path}: {e}")
            result = ActionResult(decision, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error on {decision.relative_path}")
            result = ActionResult(decision, error=f"Unexpected error: {e!r}")

        result.elapsed = time.time() - start
        logger.debug(
            f"{decision.action.value} of {decision.relative_path} "
            f"took {result.elapsed:.2f}s"
        )
        return result

    # =========================
    # Actions
    # =========================

    def _perform(self, decision: SyncDecision) -> ActionResult:
        ops = self.operations
        path = decision.relative_path
        action = decision.action

        if action is SyncAction.UPLOAD:
            return ActionResult(decision, entry=self._entry(path, ops.upload_file(path)))

        if action is SyncAction.DOWNLOAD:
            assert decision.remote_file is not None
            ops.ensure_unchanged(decision.local_file, path)
            transfer = ops.download_file(decision.remote_file)
            return ActionResult(decision, entry=self._entry(path, transfer))

        if action is SyncAction.CONFLICT_UPLOAD:
            assert decision.remote_file is not None
            preserved = None
            if self.keep_conflict_copies:
                preserved = ops.preserve_remote_copy(decision.remote_file)
            transfer = ops.upload_file(path)
            return ActionResult(
                decision,
                entry=self._entry(path, transfer),
                conflict=self._conflict(decision, preserved),
            )

        if action is SyncAction.CONFLICT_DOWNLOAD:
            assert decision.remote_file is not None
            ops.ensure_unchanged(decision.local_file, path)
            preserved = None
            if self.keep_conflict_copies:
                preserved = ops.preserve_local_copy(path)
            transfer = ops.download_file(decision.remote_file)
            return ActionResult(
                decision,
                entry=self._entry(path, transfer),
                conflict=self._conflict(decision, preserved),
            )

        if action is SyncAction.DELETE_LOCAL:
            ops.ensure_unchanged(decision.local_file, path)
            ops.delete_local(path)
            return ActionResult(decision, entry=self._tombstone(decision))

        if action is SyncAction.DELETE_REMOTE:
            ops.delete_remote(path)
            return ActionResult(decision, entry=self._tombstone(decision))

        raise ValueError(f"Cannot execute {action!r} for {path}")

    @staticmethod
    def _entry(relative_path: str, transfer: TransferResult) -> ManifestEntry:
        return ManifestEntry(
            relative_path=relative_path,
            local_mtime=transfer.local_mtime,
            remote_mtime=transfer.remote.mtime,
            remote_id=transfer.remote.remote_id,
            content_hash=transfer.content_hash,
            size=transfer.size,
            revision=transfer.remote.revision,
            synced_at=time.time(),
        )

    @staticmethod
    def _tombstone(decision: SyncDecision) -> ManifestEntry:
        entry = decision.entry
        if entry is None:
            local, remote = decision.local_file, decision.remote_file
            entry = ManifestEntry(
                relative_path=decision.relative_path,
                local_mtime=local.mtime if local else None,
                remote_mtime=remote.mtime if remote else None,
                remote_id=remote.remote_id if remote else None,
            )
        return entry.as_tombstone()

    @staticmethod
    def _conflict(decision: SyncDecision, preserved: Optional[str]) -> ConflictRecord:
        local, remote = decision.local_file, decision.remote_file
        return ConflictRecord(
            relative_path=decision.relative_path,
            local_mtime=local.mtime if local else None,
            remote_mtime=remote.mtime if remote else None,
            resolution=decision.action,
            preserved_copy=preserved,
        )

    # =========================
    # Bookkeeping (calling thread only)
    # =========================

    def _apply_result(
        self, result: ActionResult, manifest: SyncManifest, report: SyncReport
    ) -> None:
        decision = result.decision
        path = decision.relative_path

        if result.success:
            assert result.entry is not None
            manifest.set(result.entry)
            report.record_success(path, decision.action, decision.reason)
            if result.conflict is not None:
                report.conflicts.append(result.conflict)
        else:
            # Leave the manifest entry alone so the next run retries
            report.record_failure(
                path, decision.action, result.error or "unknown error", decision.reason
            )

        if self.on_complete is not None:
            self.on_complete(result)

    def _apply_noop(
        self, decision: SyncDecision, manifest: SyncManifest, report: SyncReport
    ) -> None:
        path = decision.relative_path

        if decision.conflict_error is not None:
            report.record_failure(
                path, decision.action, decision.conflict_error, decision.reason
            )
            return

        if decision.drop_entry:
            manifest.remove(path)
        elif decision.update_entry and decision.local_file and decision.remote_file:
            local, remote = decision.local_file, decision.remote_file
            algorithm = self.operations.backend.hash_algorithm
            manifest.set(
                ManifestEntry(
                    relative_path=path,
                    local_mtime=local.mtime,
                    remote_mtime=remote.mtime,
                    remote_id=remote.remote_id,
                    content_hash=remote.content_hash or local.content_hash(algorithm),
                    size=local.size,
                    revision=remote.revision,
                    synced_at=time.time(),
                )
            )

        report.record_success(path, decision.action, decision.reason)
