"""File locking for the geoipdns database cache."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Self

from filelock import FileLock as BaseFileLock
from filelock import Timeout

from geoipdns.errors import LockError

logger = logging.getLogger(__name__)


class FileLock:
    """Cross-platform file lock for process coordination.

    Several geoipdns processes may share one cache directory. The lock keeps
    them from installing a database file at the same time.

    Example:
        with FileLock(Path("/tmp/geoipdns/.geoipdns.lock"), timeout=10):
            # Install the database while holding the lock
            pass

    """

    def __init__(self, path: Path, *, timeout: float = 0) -> None:
        """Initialize the file lock.

        Args:
            path: Path to the lock file.
            timeout: Seconds to wait for the lock. 0 means fail immediately
                if another process holds it.

        """
        self._path = path
        self._timeout = timeout
        self._lock = BaseFileLock(str(path))

    def acquire(self) -> None:
        """Acquire the lock.

        Raises:
            LockError: If the lock cannot be acquired.

        """
        try:
            self._lock.acquire(timeout=self._timeout)
            logger.debug("Acquired lock: %s", self._path)
        except Timeout as e:
            msg = (
                f"Could not acquire lock on {self._path}: "
                "another process may be installing a database"
            )
            raise LockError(msg) from e

    def release(self) -> None:
        """Release the lock."""
        self._lock.release()
        logger.debug("Released lock: %s", self._path)

    def __enter__(self) -> Self:
        """Enter context manager and acquire lock."""
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit context manager and release lock."""
        self.release()
