"""Directory scanning utilities for sync operations."""

import fnmatch
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import LocalIOError
from ..utils import TEMP_FILE_PREFIX, hash_file, normalize_relative_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRecord:
    """Represents a local file with metadata, as captured by a scan."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (forward slashes, Unicode NFC)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    _hashes: dict[str, Optional[str]] = field(
        default_factory=dict, compare=False, repr=False
    )

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "FileRecord":
        """Create FileRecord from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Base path for calculating relative paths

        Returns:
            FileRecord instance
        """
        st = file_path.stat()
        relative_path = normalize_relative_path(
            file_path.relative_to(base_path).as_posix()
        )
        return cls(
            path=file_path,
            relative_path=relative_path,
            size=st.st_size,
            mtime=st.st_mtime,
        )

    def content_hash(self, algorithm: Optional[str]) -> Optional[str]:
        """Hash the file content, computing it at most once per algorithm.

        Args:
            algorithm: hashlib algorithm name, or None

        Returns:
            Hex digest, or None if no algorithm was given or the file
            could not be read
        """
        if algorithm is None:
            return None
        if algorithm not in self._hashes:
            try:
                self._hashes[algorithm] = hash_file(self.path, algorithm)
            except OSError as e:
                logger.warning(f"Cannot hash {self.relative_path}: {e}")
                self._hashes[algorithm] = None
        return self._hashes[algorithm]


class DirectoryScanner:
    """Scans a local directory and builds a snapshot of its files.

    Directories are traversed, symlinks are skipped. Files that cannot be
    read are skipped and collected in ``errors``.

    Examples:
        >>> scanner = DirectoryScanner(ignore_patterns=["*.tmp"])
        >>> files = scanner.scan_local(Path("/sync/folder"))
        >>> sorted(files)
        ['docs/a.txt', 'notes.md']
    """

    def __init__(
        self,
        ignore_patterns: Optional[list[str]] = None,
        exclude_dot_files: bool = False,
    ):
        """Initialize directory scanner.

        Args:
            ignore_patterns: Glob patterns to ignore (e.g., ["*.log", "temp/*"])
            exclude_dot_files: Whether to exclude files/folders starting with dot
        """
        self.ignore_patterns = ignore_patterns or []
        self.exclude_dot_files = exclude_dot_files
        self.errors: list[tuple[str, str]] = []

    def should_ignore(self, relative_path: str, name: str) -> bool:
        """Check if a path should be ignored.

        Args:
            relative_path: Path relative to the scan root
            name: Base name of the path

        Returns:
            True if path should be ignored
        """
        # In-flight downloads of a previous or concurrent run
        if name.startswith(TEMP_FILE_PREFIX):
            return True

        if self.exclude_dot_files and name.startswith("."):
            return True

        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(relative_path, pattern) or fnmatch.fnmatch(
                name, pattern
            ):
                logger.debug(f"Ignoring {relative_path} (matches {pattern})")
                return True

        return False

    def scan_local(self, root: Path) -> dict[str, FileRecord]:
        """Recursively scan a local directory.

        Args:
            root: Directory to scan

        Returns:
            Dictionary mapping relative path to FileRecord

        Raises:
            LocalIOError: If the root is missing, not a directory or unreadable
        """
        self.errors = []
        if not root.exists():
            raise LocalIOError(f"Local directory does not exist: {root}")
        if not root.is_dir():
            raise LocalIOError(f"Local path is not a directory: {root}")

        try:
            entries = list(os.scandir(root))
        except OSError as e:
            raise LocalIOError(f"Cannot read local directory {root}: {e}") from e

        files: dict[str, FileRecord] = {}
        self._scan_entries(entries, root, files)
        logger.debug(f"Scanned {len(files)} local file(s) under {root}")
        return files

    def _scan_entries(
        self,
        entries: list[os.DirEntry],
        base_path: Path,
        files: dict[str, FileRecord],
    ) -> None:
        for entry in sorted(entries, key=lambda e: e.name):
            item = Path(entry.path)
            relative_path = normalize_relative_path(
                item.relative_to(base_path).as_posix()
            )
            if self.should_ignore(relative_path, entry.name):
                continue

            try:
                if entry.is_symlink():
                    logger.debug(f"Skipping symlink {relative_path}")
                    continue

                if entry.is_dir(follow_symlinks=False):
                    try:
                        children = list(os.scandir(item))
                    except OSError as e:
                        self._record_error(relative_path, e)
                        continue
                    self._scan_entries(children, base_path, files)
                elif stat.S_ISREG(entry.stat(follow_symlinks=False).st_mode):
                    record = FileRecord.from_path(item, base_path)
                    if not os.access(item, os.R_OK):
                        raise PermissionError(f"Permission denied: {item}")
                    files[record.relative_path] = record
            except OSError as e:
                self._record_error(relative_path, e)

    def _record_error(self, relative_path: str, error: OSError) -> None:
        logger.warning(f"Skipping unreadable path {relative_path}: {error}")
        self.errors.append((relative_path, str(error)))
