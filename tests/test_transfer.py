"""Tests for copying single files, listing and staleness."""

import os
import threading

import pytest

from folder_mirror import (
    LARGE_BUFFER_SIZE,
    SMALL_BUFFER_SIZE,
    FileEntry,
    IgnoreMatcher,
    SyncCancelled,
    buffer_size_for,
    copy_file,
    copy_timestamps,
    is_stale,
    scan_directory,
    stat_entry,
)


class TestCopyFile:
    def test_copies_bytes(self, tmp_path, make_file):
        src = make_file(tmp_path / "src.bin", os.urandom(300_000))
        dst = tmp_path / "dst.bin"

        written = copy_file(src, dst)

        assert written == 300_000
        assert dst.read_bytes() == src.read_bytes()

    def test_large_file_spans_many_buffers(self, tmp_path, make_file):
        data = os.urandom(3 * 1024 * 1024 + 17)
        src = make_file(tmp_path / "big.bin", data)
        dst = tmp_path / "big.copy"

        assert copy_file(src, dst) == len(data)
        assert dst.read_bytes() == data

    def test_overwrites_longer_destination_in_place(self, tmp_path, make_file):
        src = make_file(tmp_path / "src.txt", b"short")
        dst = make_file(tmp_path / "dst.txt", b"a much longer previous version")

        copy_file(src, dst)

        assert dst.read_bytes() == b"short"

    def test_stale_size_hint_does_not_pad_destination(self, tmp_path, make_file):
        src = make_file(tmp_path / "src.txt", b"12345")
        dst = tmp_path / "dst.txt"

        written = copy_file(src, dst, size=10_000)

        assert written == 5
        assert dst.read_bytes() == b"12345"

    def test_empty_file(self, tmp_path, make_file):
        src = make_file(tmp_path / "empty", b"")
        dst = tmp_path / "empty.copy"

        assert copy_file(src, dst) == 0
        assert dst.exists()
        assert dst.stat().st_size == 0

    def test_missing_source(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            copy_file(tmp_path / "nope", tmp_path / "dst")

    def test_cancelled(self, tmp_path, make_file):
        src = make_file(tmp_path / "src.txt", b"data")
        stop = threading.Event()
        stop.set()

        with pytest.raises(SyncCancelled):
            copy_file(src, tmp_path / "dst.txt", stop)

        assert not (tmp_path / "dst.txt").exists()

    def test_buffer_size_depends_on_file_size(self):
        assert buffer_size_for(0) == SMALL_BUFFER_SIZE
        assert buffer_size_for(1024 * 1024 - 1) == SMALL_BUFFER_SIZE
        assert buffer_size_for(1024 * 1024) == LARGE_BUFFER_SIZE


class TestTimestamps:
    def test_copy_timestamps(self, tmp_path, make_file):
        src = make_file(tmp_path / "src.txt", b"x", mtime=1_600_000_000)
        dst = make_file(tmp_path / "dst.txt", b"x", mtime=1_700_000_000)

        copy_timestamps(stat_entry(src), dst)

        assert dst.stat().st_mtime_ns == src.stat().st_mtime_ns

    def test_modified_utc_is_timezone_aware(self, tmp_path, make_file):
        entry = stat_entry(make_file(tmp_path / "f", b"", mtime=0))

        assert entry.modified_utc.tzinfo is not None
        assert entry.modified_utc.year == 1970
        assert entry.modified_utc.utcoffset().total_seconds() == 0


class TestIsStale:
    def _entry(self, size=10, mtime_ns=1_000):
        return FileEntry(name="f", path=None, size=size, mtime_ns=mtime_ns, atime_ns=0, ctime_ns=0)

    def test_missing_replica(self):
        assert is_stale(self._entry(), None)

    def test_size_mismatch_wins_over_newer_replica(self):
        assert is_stale(self._entry(size=10), self._entry(size=11, mtime_ns=9_999))

    def test_older_replica(self):
        assert is_stale(self._entry(mtime_ns=2_000), self._entry(mtime_ns=1_999))

    def test_equal(self):
        assert not is_stale(self._entry(), self._entry())

    def test_newer_replica_is_left_alone(self):
        assert not is_stale(self._entry(mtime_ns=1_000), self._entry(mtime_ns=5_000))


class TestScanDirectory:
    def test_splits_files_and_dirs(self, tmp_path, make_file):
        make_file(tmp_path / "b.txt", b"bb")
        make_file(tmp_path / "a.txt", b"a")
        (tmp_path / "sub").mkdir()

        listing = scan_directory(tmp_path)

        assert [f.name for f in listing.files] == ["a.txt", "b.txt"]
        assert [f.size for f in listing.files] == [1, 2]
        assert listing.dirs == ["sub"]
        assert listing.other == []

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="needs symlinks")
    def test_directory_links_and_broken_links_are_other(self, tmp_path, make_file):
        target = tmp_path / "real"
        target.mkdir()
        make_file(target / "f.txt", b"x")
        scanned = tmp_path / "scanned"
        scanned.mkdir()
        try:
            (scanned / "dir_link").symlink_to(target, target_is_directory=True)
            (scanned / "file_link").symlink_to(target / "f.txt")
            (scanned / "broken").symlink_to(tmp_path / "missing")
        except OSError:
            pytest.skip("symlinks not permitted")

        listing = scan_directory(scanned)

        assert [f.name for f in listing.files] == ["file_link"]
        assert listing.dirs == []
        assert listing.other == ["broken", "dir_link"]

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="needs symlinks")
    def test_link_loop_does_not_fail_listing(self, tmp_path, make_file):
        make_file(tmp_path / "a.txt", b"a")
        (tmp_path / "sub").mkdir()
        try:
            (tmp_path / "loop").symlink_to("loop")
        except OSError:
            pytest.skip("symlinks not permitted")

        listing = scan_directory(tmp_path)

        assert [f.name for f in listing.files] == ["a.txt"]
        assert listing.dirs == ["sub"]
        assert [name for name, _ in listing.unreadable] == ["loop"]
        assert isinstance(listing.unreadable[0][1], OSError)

    def test_ignore_rules(self, tmp_path, make_file):
        make_file(tmp_path / "keep.txt", b"k")
        make_file(tmp_path / "drop.tmp", b"d")
        (tmp_path / "build").mkdir()
        (tmp_path / "src").mkdir()

        listing = scan_directory(tmp_path, IgnoreMatcher(tmp_path, ["*.tmp", "build/"]))

        assert [f.name for f in listing.files] == ["keep.txt"]
        assert listing.dirs == ["src"]

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            scan_directory(tmp_path / "missing")


class TestIgnoreMatcher:
    def test_nested_patterns(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path, ["node_modules/", "*.log", "/top.txt"])

        assert matcher.is_ignored(tmp_path / "a" / "node_modules", is_dir=True)
        assert matcher.is_ignored(tmp_path / "a" / "b" / "debug.log", is_dir=False)
        assert matcher.is_ignored(tmp_path / "top.txt", is_dir=False)
        assert not matcher.is_ignored(tmp_path / "a" / "top.txt", is_dir=False)
        assert not matcher.is_ignored(tmp_path / "a" / "node_modules", is_dir=False)

    def test_root_is_never_ignored(self, tmp_path):
        assert not IgnoreMatcher(tmp_path, ["*"]).is_ignored(tmp_path, is_dir=True)

    def test_outside_root_is_ignored(self, tmp_path):
        matcher = IgnoreMatcher(tmp_path / "root", [])
        assert matcher.is_ignored(tmp_path / "elsewhere" / "f.txt", is_dir=False)
