"""Installs downloaded databases into the local cache directory."""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from datetime import datetime
from pathlib import Path
from typing import IO
from urllib.parse import urlsplit

from geoipdns._file_lock import FileLock
from geoipdns._utils import cleanup_temp_file
from geoipdns.errors import LoadError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
LOCK_FILE_NAME = ".geoipdns.lock"
_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".gz", ".tar")


def cache_name_for(url: str) -> str:
    """Return the cache file name for a database URL.

    Compression suffixes are dropped since the cached copy is unpacked.

    Args:
        url: The database URL.

    Returns:
        A bare file name, e.g. ``GeoLite2-City.mmdb``.

    """
    name = Path(urlsplit(url).path).name or "database.mmdb"
    for suffix in _ARCHIVE_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
            break
    return name


class CacheWriter:
    """Writes database files atomically into a cache directory.

    A download is unpacked to a temporary file next to its final location,
    then renamed over it, so a reader never sees a partial database.
    """

    def __init__(self, cache_dir: Path, *, lock_timeout: float = 10.0) -> None:
        """Initialize the cache writer.

        Args:
            cache_dir: Directory to store database files.
            lock_timeout: Seconds to wait for another process's install.

        """
        self._dir = cache_dir
        self._lock_timeout = lock_timeout

        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        """The cache directory."""
        return self._dir

    def install(
        self,
        name: str,
        download_path: Path,
        last_modified: datetime | None = None,
    ) -> Path:
        """Unpack a downloaded file and move it into the cache.

        Args:
            name: File name of the cached database.
            download_path: The downloaded file. It is left in place.
            last_modified: Optional timestamp to set as the file's mtime.

        Returns:
            Path to the installed database.

        Raises:
            LoadError: If the download is a corrupt archive.
            LockError: If another process holds the cache lock too long.
            OSError: If file operations fail.

        """
        final_path = self._get_file_path(name)

        with FileLock(self._dir / LOCK_FILE_NAME, timeout=self._lock_timeout):
            fd, temp_path = tempfile.mkstemp(
                suffix=".temporary",
                prefix=f"{name}_",
                dir=self._dir,
            )
            try:
                if hasattr(os, "fchmod"):
                    os.fchmod(fd, 0o644)
                with os.fdopen(fd, "wb") as out:
                    _unpack(download_path, out)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(temp_path, final_path)
            except BaseException:
                cleanup_temp_file(temp_path)
                raise

        # After the atomic rename, the database is correctly placed.
        # Failures in sync/utime are non-fatal.
        self._sync_dir(self._dir)

        if last_modified:
            try:
                timestamp = last_modified.timestamp()
                os.utime(final_path, (timestamp, timestamp))
            except OSError:
                logger.warning(
                    "Failed to set modification time for %s",
                    final_path,
                    exc_info=True,
                )

        logger.debug("Installed database %s", final_path)
        return final_path

    def _get_file_path(self, name: str) -> Path:
        """Get the cache path for a database file name.

        Raises:
            ValueError: If name contains path traversal characters.

        """
        if not name or "/" in name or "\\" in name or ".." in name:
            msg = f"Invalid database file name: {name}"
            raise ValueError(msg)
        return self._dir / name

    def _sync_dir(self, path: Path) -> None:
        """Sync directory to ensure rename is persisted.

        Args:
            path: Directory path to sync.

        """
        if not hasattr(os, "O_DIRECTORY"):
            return
        try:
            fd = os.open(str(path), os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            # Some filesystems don't support directory fsync
            logger.warning("Failed to sync directory %s", path, exc_info=True)


def _unpack(source: Path, out: IO[bytes]) -> None:
    """Copy a database out of a tar archive, a gzip file or a plain file.

    Raises:
        LoadError: If the archive is corrupt or holds no database.

    """
    try:
        if tarfile.is_tarfile(source):
            _extract_from_tar(source, out)
            return

        with source.open("rb") as f:
            compressed = f.read(len(GZIP_MAGIC)) == GZIP_MAGIC

        if compressed:
            with gzip.open(source, "rb") as gz:
                shutil.copyfileobj(gz, out)
        else:
            with source.open("rb") as f:
                shutil.copyfileobj(f, out)
    except (gzip.BadGzipFile, tarfile.TarError, zlib.error, EOFError) as e:
        msg = f"Failed to extract database from archive: {e}"
        raise LoadError(msg) from e


def _extract_from_tar(source: Path, out: IO[bytes]) -> None:
    with tarfile.open(source, mode="r:*") as tar:
        for member in tar:
            if member.isfile() and member.name.endswith(".mmdb"):
                extracted = tar.extractfile(member)
                if extracted:
                    shutil.copyfileobj(extracted, out)
                    return

    msg = "tar archive does not contain an mmdb file"
    raise LoadError(msg)
