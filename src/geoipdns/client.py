"""HTTP client for downloading remote GeoIP databases."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Self

import aiohttp

from geoipdns import __version__
from geoipdns._utils import cleanup_temp_file
from geoipdns.errors import FetchError, HTTPError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class NotModified:
    """Returned when the server reports the database is unchanged."""


@dataclass(frozen=True)
class Downloaded:
    """Returned when a database was downloaded.

    Attributes:
        path: Path to the downloaded temp file, possibly compressed.
        last_modified: The last modified timestamp from the server.

    """

    path: Path
    last_modified: datetime | None


FetchResponse = NotModified | Downloaded


class DatabaseClient:
    """Async HTTP client that downloads database files.

    Example:
        async with DatabaseClient(timeout=timedelta(minutes=5)) as client:
            response = await client.fetch(url, Path("/tmp"))

    """

    def __init__(self, *, timeout: timedelta | None = None) -> None:
        """Initialize the client.

        Args:
            timeout: Limit for a whole download, including connection setup.

        """
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> Self:
        """Enter async context manager."""
        headers = {"User-Agent": f"geoipdns/{__version__}"}
        timeout = aiohttp.ClientTimeout(
            total=self._timeout.total_seconds() if self._timeout else None
        )
        self._session = aiohttp.ClientSession(headers=headers, timeout=timeout)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager."""
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch(
        self,
        url: str,
        temp_dir: Path,
        *,
        if_modified_since: datetime | None = None,
    ) -> FetchResponse:
        """Download a database, streaming it to a temp file.

        Args:
            url: Location of the database.
            temp_dir: Directory in which to create the download temp file.
            if_modified_since: Timestamp of the copy already held. When the
                server has nothing newer, no body is downloaded.

        Returns:
            NotModified, or the temp file and its last modified timestamp.
            The caller owns the temp file.

        Raises:
            HTTPError: If the server returns an error status.
            FetchError: If the request fails or times out.

        """
        if not self._session:
            msg = "DatabaseClient must be used as async context manager"
            raise RuntimeError(msg)

        headers = {}
        if if_modified_since is not None:
            headers["If-Modified-Since"] = format_datetime(
                if_modified_since, usegmt=True
            )

        try:
            async with self._session.get(url, headers=headers) as response:
                if response.status == 304:
                    return NotModified()

                if response.status != 200:
                    body = await response.text(errors="replace")
                    raise HTTPError(
                        f"Unexpected HTTP status code: {response.status}",
                        status_code=response.status,
                        body=body[:256],
                    )

                last_modified = _parse_last_modified(
                    response.headers.get("Last-Modified")
                )

                fd, temp_path = tempfile.mkstemp(
                    suffix=".download",
                    prefix="geoipdns_",
                    dir=temp_dir,
                )
                try:
                    async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                        os.write(fd, chunk)
                    os.fsync(fd)
                except BaseException:
                    os.close(fd)
                    cleanup_temp_file(temp_path)
                    raise
                os.close(fd)

                return Downloaded(path=Path(temp_path), last_modified=last_modified)

        except aiohttp.ClientError as e:
            msg = f"Failed to download database: {e}"
            raise FetchError(msg) from e
        except TimeoutError as e:
            msg = f"Timed out downloading database from {url}"
            raise FetchError(msg) from e


def _parse_last_modified(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (ValueError, TypeError):
        logger.warning("Failed to parse Last-Modified header: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
