"""Shared fixtures: an in-memory storage backend and local tree helpers."""

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

import pytest

from cloudsync.backends.base import RemoteObjectRecord, StorageBackend
from cloudsync.config import SyncSettings
from cloudsync.exceptions import RemoteNotFoundError
from cloudsync.output import OutputFormatter
from cloudsync.sync import ManifestStore, RetryPolicy, SyncEngine
from cloudsync.utils import hash_bytes


class FakeBackend(StorageBackend):
    """Remote drive kept in a dictionary.

    Failures are injected per (operation, path) with ``fail``; each queued
    exception is raised once, in order.
    """

    name = "fake"
    hash_algorithm = "md5"

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list[Exception]] = {}
        self._lock = threading.Lock()
        self._next_id = 0

    # Test helpers

    def put(self, relative_path: str, data: bytes, mtime: Optional[float] = 1000.0):
        """Create or replace a remote object without going through upload."""
        with self._lock:
            existing = self.objects.get(relative_path)
            if existing is None:
                self._next_id += 1
                remote_id = f"id-{self._next_id}"
                revision = 1
            else:
                remote_id = existing["id"]
                revision = existing["revision"] + 1
            self.objects[relative_path] = {
                "id": remote_id,
                "data": data,
                "mtime": mtime,
                "revision": revision,
            }

    def content(self, relative_path: str) -> bytes:
        return self.objects[relative_path]["data"]

    def fail(self, operation: str, relative_path: str, *errors: Exception) -> None:
        self._failures.setdefault((operation, relative_path), []).extend(errors)

    def _maybe_fail(self, operation: str, relative_path: str) -> None:
        with self._lock:
            self.calls.append((operation, relative_path))
            queued = self._failures.get((operation, relative_path))
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    def _record(self, relative_path: str) -> RemoteObjectRecord:
        obj = self.objects[relative_path]
        return RemoteObjectRecord(
            relative_path=relative_path,
            remote_id=obj["id"],
            mtime=obj["mtime"],
            size=len(obj["data"]),
            revision=str(obj["revision"]),
            content_hash=hash_bytes(obj["data"], "md5"),
        )

    # StorageBackend

    def list(self) -> dict[str, RemoteObjectRecord]:
        self._maybe_fail("list", "")
        with self._lock:
            return {path: self._record(path) for path in self.objects}

    def upload(
        self, relative_path: str, data: bytes, local_mtime: float
    ) -> RemoteObjectRecord:
        self._maybe_fail("upload", relative_path)
        self.put(relative_path, data, local_mtime)
        with self._lock:
            return self._record(relative_path)

    def download(self, relative_path: str) -> bytes:
        self._maybe_fail("download", relative_path)
        with self._lock:
            if relative_path not in self.objects:
                raise RemoteNotFoundError(f"Not found: {relative_path}")
            return self.objects[relative_path]["data"]

    def delete(self, relative_path: str) -> None:
        self._maybe_fail("delete", relative_path)
        with self._lock:
            if relative_path not in self.objects:
                raise RemoteNotFoundError(f"Not found: {relative_path}")
            del self.objects[relative_path]


def write_file(root: Path, relative_path: str, content: bytes, mtime: float) -> Path:
    """Write a local file and set its modification time."""
    path = root.joinpath(*relative_path.split("/"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


def read_tree(root: Path) -> dict[str, bytes]:
    """Map every file under root to its content."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def sync_root(temp_dir):
    root = temp_dir / "local"
    root.mkdir()
    return root


@pytest.fixture
def state_dir(temp_dir):
    return temp_dir / "state"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def quiet_output():
    return OutputFormatter(quiet=True)


@pytest.fixture
def settings():
    """Sequential, no-backoff settings for deterministic tests."""
    return SyncSettings(max_workers=1, retry_delay=0.0)


@pytest.fixture
def engine(state_dir, quiet_output, settings):
    engine = SyncEngine(ManifestStore(state_dir), quiet_output, settings)
    engine.retry = RetryPolicy(max_retries=settings.max_retries, sleep=lambda _: None)
    return engine
