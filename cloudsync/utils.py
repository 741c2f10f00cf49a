"""Utility functions for cloudsync."""

import hashlib
import unicodedata
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

# =============================================================================
# Constants for file operations
# =============================================================================

# Read buffer for hashing local files (1 MB)
HASH_CHUNK_SIZE: int = 1024 * 1024

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Parallel transfers
DEFAULT_MAX_WORKERS: int = 4

# Timestamps closer than this are considered equal (filesystem granularity)
DEFAULT_MTIME_TOLERANCE: float = 2.0  # seconds

# Tombstones are forgotten after this long
DEFAULT_TOMBSTONE_TTL: float = 30 * 24 * 3600.0  # seconds

# Prefix of in-flight download files, never synced
TEMP_FILE_PREFIX: str = ".cloudsync-tmp-"


# =============================================================================
# Timestamp utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[float]:
    """Parse an ISO 8601 timestamp returned by a provider.

    Args:
        timestamp_str: Timestamp such as "2023-08-06T13:23:00.093Z"

    Returns:
        Unix timestamp (UTC) or None if parsing fails

    Examples:
        >>> parse_iso_timestamp("2023-08-06T13:23:00Z")
        1691328180.0
    """
    if not timestamp_str:
        return None

    try:
        # The 'Z' suffix indicates UTC time
        if timestamp_str.endswith("Z"):
            timestamp_str = timestamp_str[:-1] + "+00:00"

        try:
            dt = datetime.fromisoformat(timestamp_str)
        except ValueError:
            # Older interpreters choke on 7-digit fractions (Graph API)
            if "." not in timestamp_str:
                raise
            head, tail = timestamp_str.split(".", 1)
            offset = ""
            for sign in ("+", "-"):
                if sign in tail:
                    offset = sign + tail.split(sign, 1)[1]
                    break
            dt = datetime.fromisoformat(head + offset)

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except (ValueError, AttributeError):
        return None


def format_timestamp(timestamp: float) -> str:
    """Format a Unix timestamp as an ISO 8601 UTC string with 'Z' suffix.

    Examples:
        >>> format_timestamp(1691328180.0)
        '2023-08-06T13:23:00Z'
    """
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    if dt.microsecond:
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def hash_bytes(data: bytes, algorithm: str) -> str:
    """Hash a byte string.

    Args:
        data: Content to hash
        algorithm: hashlib algorithm name ("md5", "sha1", ...)

    Returns:
        Lower-case hex digest

    Examples:
        >>> hash_bytes(b"hello", "md5")
        '5d41402abc4b2a76b9719d911017c592'
    """
    return hashlib.new(algorithm, data).hexdigest()


def hash_file(path: Path, algorithm: str) -> str:
    """Hash a local file without loading it into memory at once.

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


# =============================================================================
# Path utilities
# =============================================================================


def normalize_relative_path(path: str) -> str:
    """Normalize a relative path so local and remote names compare equal.

    Uses forward slashes, Unicode NFC and no leading/trailing slash.

    Examples:
        >>> normalize_relative_path("/docs\\\\a.txt")
        'docs/a.txt'
    """
    path = path.replace("\\", "/").strip("/")
    parts = [p for p in path.split("/") if p and p != "."]
    return unicodedata.normalize("NFC", "/".join(parts))


def conflict_copy_name(relative_path: str, when: datetime, index: int = 1) -> str:
    """Build the name under which the losing side of a conflict is kept.

    Examples:
        >>> conflict_copy_name("docs/a.txt", datetime(2024, 1, 2, 3, 4, 5))
        'docs/a (conflict 20240102-030405).txt'
        >>> conflict_copy_name("a.txt", datetime(2024, 1, 2, 3, 4, 5), index=2)
        'a (conflict 20240102-030405 2).txt'
    """
    posix = PurePosixPath(relative_path)
    stamp = when.strftime("%Y%m%d-%H%M%S")
    if index > 1:
        stamp = f"{stamp} {index}"
    name = f"{posix.stem} (conflict {stamp}){posix.suffix}"
    if posix.parent == PurePosixPath("."):
        return name
    return f"{posix.parent.as_posix()}/{name}"
