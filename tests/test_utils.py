"""Unit tests for utility functions."""

from datetime import datetime

import pytest

from cloudsync.utils import (
    conflict_copy_name,
    format_size,
    format_timestamp,
    hash_bytes,
    hash_file,
    normalize_relative_path,
    parse_iso_timestamp,
)


class TestParseIsoTimestamp:
    """Tests for parse_iso_timestamp function."""

    def test_utc_suffix(self):
        assert parse_iso_timestamp("2023-08-06T13:23:00Z") == 1691328180.0

    def test_milliseconds(self):
        assert parse_iso_timestamp("2023-08-06T13:23:00.500Z") == 1691328180.5

    def test_seven_digit_fraction(self):
        """Graph API returns 100ns precision."""
        result = parse_iso_timestamp("2023-08-06T13:23:00.0930000Z")
        assert result is not None
        assert int(result) == 1691328180

    def test_explicit_offset(self):
        assert parse_iso_timestamp("2023-08-06T15:23:00+02:00") == 1691328180.0

    def test_naive_is_utc(self):
        assert parse_iso_timestamp("2023-08-06T13:23:00") == 1691328180.0

    @pytest.mark.parametrize("value", [None, "", "yesterday", "2023-13-45T00:00:00Z"])
    def test_invalid_returns_none(self, value):
        assert parse_iso_timestamp(value) is None


class TestFormatTimestamp:
    """Tests for format_timestamp function."""

    def test_whole_seconds(self):
        assert format_timestamp(1691328180.0) == "2023-08-06T13:23:00Z"

    def test_milliseconds(self):
        assert format_timestamp(1691328180.5) == "2023-08-06T13:23:00.500Z"

    def test_parses_back(self):
        assert parse_iso_timestamp(format_timestamp(1691328180.25)) == 1691328180.25


class TestFormatSize:
    """Tests for format_size function."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0 B"),
            (1023, "1023 B"),
            (1536, "1.5 KB"),
            (5 * 1024 * 1024, "5.0 MB"),
            (3 * 1024 * 1024 * 1024, "3.0 GB"),
        ],
    )
    def test_format(self, size, expected):
        assert format_size(size) == expected


class TestHashing:
    """Tests for hash_bytes and hash_file."""

    def test_hash_bytes(self):
        assert hash_bytes(b"hello", "md5") == "5d41402abc4b2a76b9719d911017c592"
        assert (
            hash_bytes(b"hello", "sha1") == "aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d"
        )

    def test_hash_file_matches_hash_bytes(self, tmp_path):
        path = tmp_path / "data.bin"
        data = bytes(range(256)) * 100
        path.write_bytes(data)

        assert hash_file(path, "sha1") == hash_bytes(data, "sha1")

    def test_hash_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            hash_file(tmp_path / "missing", "md5")

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            hash_bytes(b"x", "nope")


class TestNormalizeRelativePath:
    """Tests for normalize_relative_path function."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("a.txt", "a.txt"),
            ("/docs/a.txt", "docs/a.txt"),
            ("docs\\sub\\a.txt", "docs/sub/a.txt"),
            ("docs//./a.txt/", "docs/a.txt"),
        ],
    )
    def test_separators(self, path, expected):
        assert normalize_relative_path(path) == expected

    def test_unicode_nfc(self):
        decomposed = "cafe\u0301.txt"
        assert normalize_relative_path(decomposed) == "caf\u00e9.txt"


class TestConflictCopyName:
    """Tests for conflict_copy_name function."""

    WHEN = datetime(2024, 1, 2, 3, 4, 5)

    def test_top_level(self):
        assert conflict_copy_name("a.txt", self.WHEN) == "a (conflict 20240102-030405).txt"

    def test_nested(self):
        assert (
            conflict_copy_name("docs/report.pdf", self.WHEN)
            == "docs/report (conflict 20240102-030405).pdf"
        )

    def test_without_suffix(self):
        assert conflict_copy_name("Makefile", self.WHEN) == (
            "Makefile (conflict 20240102-030405)"
        )

    def test_index(self):
        assert conflict_copy_name("a.txt", self.WHEN, index=3) == (
            "a (conflict 20240102-030405 3).txt"
        )
