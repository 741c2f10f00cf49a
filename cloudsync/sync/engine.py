"""Core sync engine for executing sync passes."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from rich.progress import Progress, SpinnerColumn, TextColumn

from ..backends.base import RemoteObjectRecord, StorageBackend
from ..config import SyncSettings
from ..exceptions import AuthError, LocalIOError, ManifestCorruptError
from ..output import OutputFormatter
from .comparator import ConflictPolicy, FileComparator, SyncAction, SyncDecision
from .executor import ActionResult, SyncExecutor
from .modes import SyncMode
from .operations import SyncOperations
from .report import SyncReport
from .retry import RetryPolicy
from .scanner import DirectoryScanner, FileRecord
from .state import ManifestStore, SyncManifest

logger = logging.getLogger(__name__)


class SyncEngine:
    """Core sync engine that orchestrates one sync pass.

    A pass loads the manifest, snapshots both sides, reconciles them,
    executes the decisions and persists the updated manifest.
    """

    def __init__(
        self,
        store: ManifestStore,
        output: Optional[OutputFormatter] = None,
        settings: Optional[SyncSettings] = None,
        conflict_policy: Optional[ConflictPolicy] = None,
    ):
        """Initialize sync engine.

        Args:
            store: Where manifests are persisted
            output: Output formatter for displaying progress/status
            settings: Engine tunables (defaults if omitted)
            conflict_policy: Resolves paths changed on both sides
                (most recent wins if omitted)
        """
        self.store = store
        self.output = output or OutputFormatter()
        self.settings = settings or SyncSettings()
        self.conflict_policy = conflict_policy
        self.retry = RetryPolicy(
            max_retries=self.settings.max_retries,
            retry_delay=self.settings.retry_delay,
        )

    def run(
        self,
        root: Path,
        backend: StorageBackend,
        mode: SyncMode = SyncMode.INCREMENTAL,
        account_name: str = "default",
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncReport:
        """Run one sync pass between a local root and a backend.

        Args:
            root: Local sync root
            backend: Authenticated storage backend
            mode: INCREMENTAL uses the manifest, FRESH rebuilds it
            account_name: Account the manifest is stored under
            dry_run: Only plan, change nothing
            cancel_event: When set, actions not yet started are skipped

        Returns:
            SyncReport with per-path outcomes and statistics

        Raises:
            LocalIOError: If the local root cannot be scanned
            AuthError: If the credentials were rejected (the manifest is
                still saved with every action completed before that)

        Examples:
            >>> engine = SyncEngine(ManifestStore(config.state_dir))
            >>> report = engine.run(Path("~/Sync"), backend, account_name="work")
            >>> print(f"Uploaded {report.uploaded} files")
        """
        root = Path(root).expanduser().resolve()
        report = SyncReport(mode=mode, dry_run=dry_run, started_at=time.time())

        manifest = self._load_manifest(account_name, root, mode)
        fresh = manifest is None
        if fresh and mode is SyncMode.INCREMENTAL:
            report.mode = SyncMode.FRESH

        if not self.output.quiet:
            self.output.info(f"Syncing: {root} <-> {backend.name}")
            self.output.info(f"Mode: {report.mode.value}")
            if dry_run:
                self.output.info("Dry run: No changes will be made")
            self.output.print("")

        # Step 1: Snapshot both sides
        local_files, remote_files = self._scan(root, backend, report)

        # Step 2: Reconcile
        comparator = FileComparator(
            hash_algorithm=backend.hash_algorithm,
            mtime_tolerance=self.settings.mtime_tolerance,
            conflict_policy=self.conflict_policy,
        )
        decisions = comparator.compare_files(
            local_files,
            remote_files,
            manifest,
            fresh=fresh,
            excluded=[path for path, _ in report.scan_errors],
        )
        self._display_sync_plan(decisions, dry_run)

        if dry_run:
            for decision in decisions:
                report.record_planned(
                    decision.relative_path, decision.action, decision.reason
                )
            report.finished_at = time.time()
            if not self.output.quiet:
                self._display_summary(report)
            return report

        # Step 3: Execute against a fresh manifest or the loaded one
        working = SyncManifest() if manifest is None else manifest
        self._execute(
            account_name, root, backend, decisions, working, report, cancel_event
        )

        if not self.output.quiet:
            self._display_summary(report)
        return report

    # =========================
    # Manifest
    # =========================

    def _load_manifest(
        self, account_name: str, root: Path, mode: SyncMode
    ) -> Optional[SyncManifest]:
        """Load the manifest the reconciler should trust.

        Returns:
            The manifest, or None when the pass has to compare without history
        """
        if not mode.uses_manifest:
            logger.debug("Fresh sync requested, ignoring manifest")
            return None

        try:
            manifest = self.store.load(account_name, root)
        except ManifestCorruptError as e:
            logger.warning(f"Ignoring corrupt manifest: {e}")
            self.output.warning("Sync state is corrupt, running a fresh sync")
            return None

        if manifest is None:
            return None

        max_age = self.settings.max_manifest_age
        if max_age is not None:
            last = manifest.last_full_sync
            if last is None or time.time() - last > max_age:
                logger.debug(f"Manifest older than {max_age}s, running a fresh sync")
                return None
        return manifest

    def _save_manifest(
        self, account_name: str, root: Path, manifest: SyncManifest, complete: bool
    ) -> None:
        if complete:
            manifest.last_full_sync = time.time()
        expired = manifest.expire_tombstones(self.settings.tombstone_ttl)
        if expired:
            logger.debug(f"Expired {expired} tombstone(s)")
        self.store.save(account_name, root, manifest)

    # =========================
    # Scanning
    # =========================

    def _scan(
        self, root: Path, backend: StorageBackend, report: SyncReport
    ) -> tuple[dict[str, FileRecord], dict[str, RemoteObjectRecord]]:
        """Scan the local root and list the remote concurrently."""
        scanner = DirectoryScanner(
            ignore_patterns=self.settings.ignore_patterns,
            exclude_dot_files=self.settings.exclude_dot_files,
        )
        start_time = time.time()

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=self.output.console,
            disable=self.output.quiet,
        ) as progress:
            task = progress.add_task("Scanning local and remote files...", total=None)
            with ThreadPoolExecutor(max_workers=2) as pool:
                local_future = pool.submit(scanner.scan_local, root)
                remote_future = pool.submit(
                    self.retry.call, backend.list, f"Listing of {backend.name}"
                )
                # Both are awaited before either error propagates
                local_error = local_future.exception()
                remote_error = remote_future.exception()
            for error in (local_error, remote_error):
                if error is not None:
                    raise error
            local_files = local_future.result()
            remote_files = self._filter_remote(scanner, remote_future.result())
            progress.update(
                task,
                description=(
                    f"Found {len(local_files)} local and "
                    f"{len(remote_files)} remote file(s)"
                ),
            )

        report.scan_errors.extend(scanner.errors)
        for path, error in scanner.errors:
            self.output.warning(f"Skipped {path}: {error}")
        logger.debug(
            f"Scanned {len(local_files)} local and {len(remote_files)} remote "
            f"file(s) in {time.time() - start_time:.2f}s"
        )
        return local_files, remote_files

    @staticmethod
    def _filter_remote(
        scanner: DirectoryScanner, remote_files: dict[str, RemoteObjectRecord]
    ) -> dict[str, RemoteObjectRecord]:
        """Apply the local ignore rules to remote paths and their folders."""

        def ignored(path: str) -> bool:
            parts = path.split("/")
            return any(
                scanner.should_ignore("/".join(parts[: i + 1]), part)
                for i, part in enumerate(parts)
            )

        return {p: r for p, r in remote_files.items() if not ignored(p)}

    # =========================
    # Execution
    # =========================

    def _execute(
        self,
        account_name: str,
        root: Path,
        backend: StorageBackend,
        decisions: list[SyncDecision],
        manifest: SyncManifest,
        report: SyncReport,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Execute decisions and persist the manifest, even on abort."""
        operations = SyncOperations(backend, root, retry=self.retry)
        cancel_event = cancel_event or threading.Event()
        actionable = [d for d in decisions if d.is_actionable]

        with Progress(
            console=self.output.console, disable=self.output.quiet
        ) as progress:
            task = progress.add_task("Syncing files...", total=len(actionable))

            def on_complete(result: ActionResult) -> None:
                progress.update(task, advance=1)

            executor = SyncExecutor(
                operations,
                max_workers=self.settings.max_workers,
                keep_conflict_copies=self.settings.keep_conflict_copies,
                cancel_event=cancel_event,
                on_complete=on_complete,
            )

            aborted = True
            try:
                executor.execute(decisions, manifest, report)
                aborted = False
            except AuthError as e:
                report.aborted = f"Authentication failed: {e}"
                raise
            except KeyboardInterrupt:
                report.aborted = "Interrupted"
                raise
            finally:
                if not aborted and cancel_event.is_set():
                    report.aborted = "Cancelled"
                report.finished_at = time.time()
                self._persist(
                    account_name,
                    root,
                    manifest,
                    complete=report.aborted is None,
                    aborted=aborted,
                )

        logger.debug(
            f"Sync finished in {report.finished_at - (report.started_at or 0):.2f}s: "
            f"{report.total_actions} action(s), {report.failed} failure(s)"
        )

    def _persist(
        self,
        account_name: str,
        root: Path,
        manifest: SyncManifest,
        complete: bool,
        aborted: bool,
    ) -> None:
        try:
            self._save_manifest(account_name, root, manifest, complete)
        except LocalIOError as e:
            if not aborted:
                raise
            # Do not mask the error that aborted the run
            logger.error(f"Could not save manifest after abort: {e}")

    # =========================
    # Display
    # =========================

    def _display_sync_plan(self, decisions: list[SyncDecision], dry_run: bool) -> None:
        """Display sync plan to user."""
        if self.output.quiet:
            return

        counts = {action: 0 for action in SyncAction}
        for decision in decisions:
            counts[decision.action] += 1
        uploads = counts[SyncAction.UPLOAD] + counts[SyncAction.CONFLICT_UPLOAD]
        downloads = counts[SyncAction.DOWNLOAD] + counts[SyncAction.CONFLICT_DOWNLOAD]
        conflicts = [d for d in decisions if d.action.is_conflict or d.conflict_error]

        self.output.info("Sync plan:")
        if uploads > 0:
            self.output.info(f"  ↑ Upload: {uploads} file(s)")
        if downloads > 0:
            self.output.info(f"  ↓ Download: {downloads} file(s)")
        if counts[SyncAction.DELETE_LOCAL] > 0:
            self.output.info(f"  ✗ Delete local: {counts[SyncAction.DELETE_LOCAL]} file(s)")
        if counts[SyncAction.DELETE_REMOTE] > 0:
            self.output.info(
                f"  ✗ Delete remote: {counts[SyncAction.DELETE_REMOTE]} file(s)"
            )
        if counts[SyncAction.NOOP] > 0:
            self.output.info(f"  = Unchanged: {counts[SyncAction.NOOP]} file(s)")

        if conflicts:
            self.output.print("")
            self.output.warning("Conflict details:")
            for decision in conflicts:
                self.output.warning(f"  {decision.relative_path}: {decision.reason}")

        self.output.print("")

    def _display_summary(self, report: SyncReport) -> None:
        """Display sync summary."""
        self.output.print("")
        if report.dry_run:
            self.output.success("Dry run complete!")
        elif report.failed:
            self.output.warning(f"Sync finished with {report.failed} failure(s)")
        else:
            self.output.success("Sync complete!")

        if report.total_actions > 0:
            self.output.info(f"Total actions: {report.total_actions}")
            if report.uploaded > 0:
                self.output.info(f"  Uploaded: {report.uploaded}")
            if report.downloaded > 0:
                self.output.info(f"  Downloaded: {report.downloaded}")
            if report.deleted_local > 0:
                self.output.info(f"  Deleted locally: {report.deleted_local}")
            if report.deleted_remote > 0:
                self.output.info(f"  Deleted remotely: {report.deleted_remote}")
        elif not report.failed:
            self.output.info("No changes needed - everything is in sync!")

        for conflict in report.conflicts:
            message = f"  Conflict on {conflict.relative_path}: kept {conflict.kept} version"
            if conflict.preserved_copy:
                message += f", other saved as {conflict.preserved_copy}"
            self.output.warning(message)

        for failure in report.failures:
            self.output.error(f"{failure.relative_path}: {failure.error}")
