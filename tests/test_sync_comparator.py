"""Tests for the file comparator."""

from pathlib import Path

import pytest

from cloudsync.backends.base import RemoteObjectRecord
from cloudsync.sync.comparator import (
    FileComparator,
    SyncAction,
    manual_resolution,
    most_recent_wins,
)
from cloudsync.sync.scanner import FileRecord
from cloudsync.sync.state import ManifestEntry, SyncManifest
from cloudsync.utils import hash_bytes


def local(path="a.txt", size=10, mtime=1000.0, root=Path("/nonexistent")):
    return FileRecord(
        path=root.joinpath(*path.split("/")), relative_path=path, size=size, mtime=mtime
    )


def remote(
    path="a.txt",
    size=10,
    mtime=1000.0,
    remote_id="id-1",
    revision="1",
    content_hash=None,
):
    return RemoteObjectRecord(
        relative_path=path,
        remote_id=remote_id,
        mtime=mtime,
        size=size,
        revision=revision,
        content_hash=content_hash,
    )


def entry(
    path="a.txt",
    size=10,
    local_mtime=1000.0,
    remote_mtime=1000.0,
    remote_id="id-1",
    revision="1",
    content_hash=None,
):
    return ManifestEntry(
        relative_path=path,
        local_mtime=local_mtime,
        remote_mtime=remote_mtime,
        remote_id=remote_id,
        content_hash=content_hash,
        size=size,
        revision=revision,
    )


def manifest_of(*entries):
    return SyncManifest(entries={e.relative_path: e for e in entries})


def decide(comparator, local_files=(), remote_files=(), entries=(), fresh=False):
    decisions = comparator.compare_files(
        {f.relative_path: f for f in local_files},
        {f.relative_path: f for f in remote_files},
        manifest_of(*entries),
        fresh=fresh,
    )
    return {d.relative_path: d for d in decisions}


@pytest.fixture
def comparator():
    return FileComparator()


class TestWithoutHistory:
    """Paths never synced before."""

    def test_local_only_uploads(self, comparator):
        decision = decide(comparator, [local()])["a.txt"]
        assert decision.action == SyncAction.UPLOAD
        assert decision.reason == "New local file"

    def test_remote_only_downloads(self, comparator):
        decision = decide(comparator, remote_files=[remote()])["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD
        assert decision.reason == "New remote file"

    def test_same_size_and_mtime_without_hash_is_noop(self, comparator):
        decision = decide(comparator, [local()], [remote(mtime=1001.5)])["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is True

    def test_different_content_is_conflict(self, comparator):
        decision = decide(
            comparator, [local(size=5, mtime=2000.0)], [remote(size=7, mtime=1000.0)]
        )["a.txt"]
        assert decision.action == SyncAction.CONFLICT_UPLOAD

    def test_identical_hash_is_noop_despite_mtimes(self, temp_dir):
        content = b"same bytes"
        path = temp_dir / "a.txt"
        path.write_bytes(content)
        comparator = FileComparator(hash_algorithm="md5")

        decision = decide(
            comparator,
            [local(size=len(content), mtime=5000.0, root=temp_dir)],
            [
                remote(
                    size=len(content),
                    mtime=1000.0,
                    content_hash=hash_bytes(content, "md5"),
                )
            ],
        )["a.txt"]

        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is True

    def test_different_hash_same_size_is_conflict(self, temp_dir):
        (temp_dir / "a.txt").write_bytes(b"local")
        comparator = FileComparator(hash_algorithm="md5")

        decision = decide(
            comparator,
            [local(size=5, mtime=1000.0, root=temp_dir)],
            [remote(size=5, mtime=1000.0, content_hash=hash_bytes(b"other", "md5"))],
        )["a.txt"]

        assert decision.action == SyncAction.CONFLICT_DOWNLOAD


class TestWithHistory:
    """Paths recorded in the manifest."""

    def test_unchanged_is_noop(self, comparator):
        decision = decide(comparator, [local()], [remote()], [entry()])["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is False

    def test_mtime_jitter_within_tolerance_is_unchanged(self, comparator):
        decision = decide(comparator, [local(mtime=1001.0)], [remote()], [entry()])[
            "a.txt"
        ]
        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is False

    def test_modified_locally_uploads(self, comparator):
        decision = decide(
            comparator, [local(size=12, mtime=1100.0)], [remote()], [entry()]
        )["a.txt"]
        assert decision.action == SyncAction.UPLOAD
        assert decision.reason == "Modified locally"

    def test_modified_remotely_downloads(self, comparator):
        decision = decide(
            comparator,
            [local()],
            [remote(size=12, mtime=1100.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD
        assert decision.reason == "Modified remotely"

    def test_new_revision_with_same_hash_is_unchanged(self, comparator):
        decision = decide(
            comparator,
            [local()],
            [remote(revision="2", mtime=1500.0, content_hash="abc")],
            [entry(content_hash="abc")],
        )["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is True

    def test_touched_local_file_with_same_hash_is_unchanged(self, temp_dir):
        content = b"0123456789"
        (temp_dir / "a.txt").write_bytes(content)
        comparator = FileComparator(hash_algorithm="md5")

        decision = decide(
            comparator,
            [local(mtime=9000.0, root=temp_dir)],
            [remote()],
            [entry(content_hash=hash_bytes(content, "md5"))],
        )["a.txt"]

        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is True

    def test_deleted_remotely_deletes_local(self, comparator):
        decision = decide(comparator, [local()], entries=[entry()])["a.txt"]
        assert decision.action == SyncAction.DELETE_LOCAL

    def test_deleted_locally_deletes_remote(self, comparator):
        decision = decide(comparator, remote_files=[remote()], entries=[entry()])[
            "a.txt"
        ]
        assert decision.action == SyncAction.DELETE_REMOTE

    def test_local_edit_beats_remote_deletion(self, comparator):
        decision = decide(comparator, [local(size=20, mtime=1200.0)], entries=[entry()])[
            "a.txt"
        ]
        assert decision.action == SyncAction.UPLOAD

    def test_remote_edit_beats_local_deletion(self, comparator):
        decision = decide(
            comparator,
            remote_files=[remote(size=20, mtime=1200.0, revision="2")],
            entries=[entry()],
        )["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD

    def test_gone_on_both_sides_drops_entry(self, comparator):
        decision = decide(comparator, entries=[entry()])["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.drop_entry is True

    def test_fresh_ignores_manifest(self, comparator):
        decisions = decide(
            comparator, [local()], [], [entry()], fresh=True
        )
        assert decisions["a.txt"].action == SyncAction.UPLOAD


class TestConflicts:
    """Paths changed on both sides."""

    def test_local_newer_wins(self, comparator):
        decision = decide(
            comparator,
            [local(size=11, mtime=1100.0)],
            [remote(size=12, mtime=1050.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.CONFLICT_UPLOAD

    def test_remote_newer_wins(self, comparator):
        decision = decide(
            comparator,
            [local(size=11, mtime=1050.0)],
            [remote(size=12, mtime=1100.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.CONFLICT_DOWNLOAD

    def test_tie_within_tolerance_goes_to_remote(self, comparator):
        decision = decide(
            comparator,
            [local(size=11, mtime=1101.0)],
            [remote(size=12, mtime=1100.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.CONFLICT_DOWNLOAD

    def test_gap_beyond_tolerance_goes_to_newer(self):
        comparator = FileComparator(mtime_tolerance=0.0)
        decision = decide(
            comparator,
            [local(size=11, mtime=1100.5)],
            [remote(size=12, mtime=1100.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.CONFLICT_UPLOAD

    def test_same_content_changed_on_both_sides_is_noop(self, comparator):
        decision = decide(
            comparator,
            [local(size=11, mtime=1100.0)],
            [remote(size=11, mtime=1100.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.update_entry is True

    def test_most_recent_wins_without_remote_mtime(self):
        policy = most_recent_wins(2.0)
        assert policy(local(), remote(mtime=None)) == SyncAction.CONFLICT_UPLOAD

    def test_manual_resolution_leaves_conflict_unresolved(self):
        comparator = FileComparator(conflict_policy=manual_resolution)
        decision = decide(
            comparator,
            [local(size=11, mtime=1100.0)],
            [remote(size=12, mtime=1050.0, revision="2")],
            [entry()],
        )["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert "resolve it manually" in decision.conflict_error
        assert decision.update_entry is False

    def test_policy_must_return_conflict_action(self):
        comparator = FileComparator(conflict_policy=lambda lf, rf: SyncAction.UPLOAD)
        with pytest.raises(ValueError, match="Conflict policy"):
            decide(comparator, [local(size=1)], [remote(size=2)])


class TestTombstones:
    """Paths deleted on both sides in an earlier pass."""

    @pytest.fixture
    def tombstone(self):
        return entry().as_tombstone(now=2000.0)

    def test_stale_local_copy_is_deleted_again(self, comparator, tombstone):
        decision = decide(comparator, [local(mtime=1000.0)], entries=[tombstone])[
            "a.txt"
        ]
        assert decision.action == SyncAction.DELETE_LOCAL

    def test_newer_local_copy_is_uploaded(self, comparator, tombstone):
        decision = decide(comparator, [local(mtime=3000.0)], entries=[tombstone])[
            "a.txt"
        ]
        assert decision.action == SyncAction.UPLOAD
        assert decision.reason == "Recreated locally after deletion"

    def test_stale_remote_copy_is_deleted_again(self, comparator, tombstone):
        decision = decide(comparator, remote_files=[remote()], entries=[tombstone])[
            "a.txt"
        ]
        assert decision.action == SyncAction.DELETE_REMOTE

    def test_recreated_remote_object_is_downloaded(self, comparator, tombstone):
        decision = decide(
            comparator,
            remote_files=[remote(remote_id="id-2", mtime=1000.0)],
            entries=[tombstone],
        )["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD

    def test_old_local_copy_with_other_size_is_uploaded(self, comparator, tombstone):
        decision = decide(
            comparator, [local(size=42, mtime=900.0)], entries=[tombstone]
        )["a.txt"]
        assert decision.action == SyncAction.UPLOAD

    def test_old_local_copy_with_other_content_is_uploaded(self, tmp_path):
        comparator = FileComparator(hash_algorithm="md5")
        (tmp_path / "a.txt").write_bytes(b"restored!!")
        tombstone = entry(content_hash=hash_bytes(b"deleted!!!", "md5")).as_tombstone(
            now=2000.0
        )

        decision = decide(
            comparator, [local(size=10, mtime=900.0, root=tmp_path)], entries=[tombstone]
        )["a.txt"]

        assert decision.action == SyncAction.UPLOAD

    def test_old_local_copy_with_same_content_is_deleted(self, tmp_path):
        comparator = FileComparator(hash_algorithm="md5")
        (tmp_path / "a.txt").write_bytes(b"deleted!!!")
        tombstone = entry(content_hash=hash_bytes(b"deleted!!!", "md5")).as_tombstone(
            now=2000.0
        )

        decision = decide(
            comparator, [local(size=10, mtime=900.0, root=tmp_path)], entries=[tombstone]
        )["a.txt"]

        assert decision.action == SyncAction.DELETE_LOCAL

    def test_remote_copy_with_other_content_is_downloaded(self, comparator):
        tombstone = entry(content_hash="aaa").as_tombstone(now=2000.0)
        decision = decide(
            comparator,
            remote_files=[remote(content_hash="bbb")],
            entries=[tombstone],
        )["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD

    def test_remote_copy_with_other_size_is_downloaded(self, comparator, tombstone):
        decision = decide(
            comparator, remote_files=[remote(size=99)], entries=[tombstone]
        )["a.txt"]
        assert decision.action == SyncAction.DOWNLOAD

    def test_absent_path_keeps_tombstone(self, comparator, tombstone):
        decision = decide(comparator, entries=[tombstone])["a.txt"]
        assert decision.action == SyncAction.NOOP
        assert decision.drop_entry is False


class TestOrdering:
    """Decision ordering and determinism."""

    def test_transfers_then_deletes_then_noops(self, comparator):
        decisions = comparator.compare_files(
            {"b.txt": local("b.txt"), "z.txt": local("z.txt"), "d.txt": local("d.txt")},
            {"a.txt": remote("a.txt"), "d.txt": remote("d.txt", remote_id="id-1")},
            manifest_of(entry("z.txt"), entry("d.txt")),
        )
        assert [(d.action, d.relative_path) for d in decisions] == [
            (SyncAction.DOWNLOAD, "a.txt"),
            (SyncAction.UPLOAD, "b.txt"),
            (SyncAction.DELETE_LOCAL, "z.txt"),
            (SyncAction.NOOP, "d.txt"),
        ]

    def test_same_inputs_same_decisions(self, comparator):
        local_files = {p: local(p, size=3, mtime=1100.0) for p in ("x", "y/z", "w")}
        remote_files = {p: remote(p, size=4, mtime=1000.0) for p in ("y/z", "v")}
        first = comparator.compare_files(local_files, remote_files)
        second = comparator.compare_files(
            dict(reversed(list(local_files.items()))), dict(remote_files)
        )
        assert [(d.action, d.relative_path) for d in first] == [
            (d.action, d.relative_path) for d in second
        ]


class TestExcludedPaths:
    """Paths the local scan could not read are left alone."""

    def test_unreadable_synced_file_is_not_deleted_remotely(self, comparator):
        decisions = comparator.compare_files(
            {},
            {"a.txt": remote("a.txt"), "b.txt": remote("b.txt")},
            manifest_of(entry("a.txt"), entry("b.txt")),
            excluded=["a.txt"],
        )
        assert [(d.action, d.relative_path) for d in decisions] == [
            (SyncAction.DELETE_REMOTE, "b.txt")
        ]

    def test_unreadable_folder_covers_everything_below(self, comparator):
        decisions = comparator.compare_files(
            {},
            {
                "docs/a.txt": remote("docs/a.txt"),
                "docs/deep/b.txt": remote("docs/deep/b.txt"),
                "docs2/c.txt": remote("docs2/c.txt"),
            },
            manifest_of(entry("docs/a.txt"), entry("docs/deep/b.txt")),
            excluded=["docs"],
        )
        assert [(d.action, d.relative_path) for d in decisions] == [
            (SyncAction.DOWNLOAD, "docs2/c.txt")
        ]
