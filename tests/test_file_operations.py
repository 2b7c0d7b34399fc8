"""Tests for file operations modules."""

from __future__ import annotations

import gzip
import io
import stat
import tarfile
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest
from filelock import Timeout

from geoipdns._file_lock import FileLock
from geoipdns._file_writer import LOCK_FILE_NAME, CacheWriter, cache_name_for
from geoipdns._utils import cleanup_temp_file
from geoipdns.errors import LoadError, LockError
from tests.conftest import create_test_gz, create_test_tar_gz


class TestFileLock:
    """Tests for FileLock."""

    def test_acquire_and_release(self, tmp_path: Path) -> None:
        lock_path = tmp_path / LOCK_FILE_NAME
        lock = FileLock(lock_path)

        lock.acquire()
        assert lock_path.exists()
        lock.release()

    def test_context_manager(self, tmp_path: Path) -> None:
        lock_path = tmp_path / LOCK_FILE_NAME

        with FileLock(lock_path):
            assert lock_path.exists()

    def test_timeout_raises_lock_error(self, tmp_path: Path) -> None:
        lock = FileLock(tmp_path / LOCK_FILE_NAME, timeout=0)

        with (
            patch.object(lock._lock, "acquire", side_effect=Timeout(str(tmp_path))),
            pytest.raises(LockError, match="Could not acquire lock"),
        ):
            lock.acquire()


class TestCacheNameFor:
    """Tests for cache_name_for."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("http://example.com/GeoLite2-City.mmdb.gz", "GeoLite2-City.mmdb"),
            ("http://example.com/GeoLite2-City.tar.gz", "GeoLite2-City"),
            ("http://example.com/path/GeoLite2-City.tgz", "GeoLite2-City"),
            ("http://example.com/GeoLite2-City.mmdb", "GeoLite2-City.mmdb"),
            ("http://example.com/", "database.mmdb"),
            ("http://example.com/db.mmdb.gz?key=secret", "db.mmdb"),
        ],
    )
    def test_names(self, url: str, expected: str) -> None:
        assert cache_name_for(url) == expected


class TestCacheWriter:
    """Tests for CacheWriter."""

    def test_creates_directory(self, tmp_path: Path) -> None:
        cache_dir = tmp_path / "nested" / "cache"
        writer = CacheWriter(cache_dir)

        assert cache_dir.exists()
        assert writer.directory == cache_dir

    def test_install_plain(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(b"plain database")
        writer = CacheWriter(tmp_path / "cache")

        path = writer.install("GeoLite2-City.mmdb", download)

        assert path == tmp_path / "cache" / "GeoLite2-City.mmdb"
        assert path.read_bytes() == b"plain database"
        assert download.exists()

    def test_install_gzip(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(create_test_gz(b"compressed database"))
        writer = CacheWriter(tmp_path / "cache")

        path = writer.install("GeoLite2-City.mmdb", download)

        assert path.read_bytes() == b"compressed database"

    def test_install_tar_gz(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(create_test_tar_gz(b"archived database"))
        writer = CacheWriter(tmp_path / "cache")

        path = writer.install("GeoLite2-City", download)

        assert path.read_bytes() == b"archived database"

    def test_install_plain_tar(self, tmp_path: Path) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name="dir/GeoLite2-City.mmdb")
            info.size = 3
            tar.addfile(info, io.BytesIO(b"abc"))
        download = tmp_path / "download"
        download.write_bytes(buffer.getvalue())
        writer = CacheWriter(tmp_path / "cache")

        path = writer.install("GeoLite2-City", download)

        assert path.read_bytes() == b"abc"

    def test_tar_without_mmdb(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(
            create_test_tar_gz(b"readme", filename="GeoLite2-City/README.txt")
        )
        writer = CacheWriter(tmp_path / "cache")

        with pytest.raises(LoadError, match="does not contain an mmdb file"):
            writer.install("GeoLite2-City", download)

        assert not (tmp_path / "cache" / "GeoLite2-City").exists()

    def test_corrupt_gzip(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(gzip.compress(b"x" * 1000)[:20])
        writer = CacheWriter(tmp_path / "cache")

        with pytest.raises(LoadError, match="Failed to extract"):
            writer.install("GeoLite2-City.mmdb", download)

        leftovers = [p.name for p in (tmp_path / "cache").iterdir()]
        assert leftovers == [LOCK_FILE_NAME] or leftovers == []

    def test_replaces_existing(self, tmp_path: Path) -> None:
        writer = CacheWriter(tmp_path / "cache")
        (tmp_path / "cache" / "GeoLite2-City.mmdb").write_bytes(b"old")
        download = tmp_path / "download"
        download.write_bytes(b"new")

        path = writer.install("GeoLite2-City.mmdb", download)

        assert path.read_bytes() == b"new"

    def test_sets_modification_time(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(b"data")
        writer = CacheWriter(tmp_path / "cache")
        last_modified = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

        path = writer.install("GeoLite2-City.mmdb", download, last_modified)

        assert path.stat().st_mtime == last_modified.timestamp()

    def test_file_permissions(self, tmp_path: Path) -> None:
        download = tmp_path / "download"
        download.write_bytes(b"data")
        writer = CacheWriter(tmp_path / "cache")

        path = writer.install("GeoLite2-City.mmdb", download)

        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    @pytest.mark.parametrize("name", ["", "../evil", "a/b", "a\\b"])
    def test_rejects_path_traversal(self, tmp_path: Path, name: str) -> None:
        download = tmp_path / "download"
        download.write_bytes(b"data")
        writer = CacheWriter(tmp_path / "cache")

        with pytest.raises(ValueError, match="Invalid database file name"):
            writer.install(name, download)


class TestCleanupTempFile:
    """Tests for cleanup_temp_file."""

    def test_removes_file(self, tmp_path: Path) -> None:
        path = tmp_path / "temp"
        path.write_bytes(b"x")

        cleanup_temp_file(str(path))

        assert not path.exists()

    def test_missing_file_is_ignored(self, tmp_path: Path) -> None:
        cleanup_temp_file(str(tmp_path / "missing"))
