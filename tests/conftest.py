"""Shared test helpers for geoipdns tests."""

from __future__ import annotations

import gzip
import io
import json
import tarfile
from pathlib import Path
from typing import Any

import pytest

SAN_FRANCISCO: dict[str, Any] = {
    "city": {"names": {"en": "San Francisco", "de": "San Francisco"}},
    "country": {"iso_code": "US", "names": {"en": "United States", "de": "USA"}},
    "location": {
        "latitude": 37.7749,
        "longitude": -122.4194,
        "metro_code": 807,
        "time_zone": "America/Los_Angeles",
    },
    "postal": {"code": "94107"},
    "subdivisions": [{"iso_code": "CA", "names": {"en": "California"}}],
}

SINGAPORE: dict[str, Any] = {
    "country": {"iso_code": "SG", "names": {"en": "Singapore"}},
    "location": {
        "latitude": 1.2868,
        "longitude": 103.8503,
        "time_zone": "Asia/Singapore",
    },
}


class JSONReader:
    """Database reader backed by a JSON object of address -> record."""

    def __init__(self, path: Path) -> None:
        self.records: dict[str, Any] = json.loads(Path(path).read_text())
        self.closed = False

    def get(self, ip_address: Any) -> Any:
        if self.closed:
            msg = "Attempt to read from a closed database"
            raise ValueError(msg)
        return self.records.get(str(ip_address))

    def close(self) -> None:
        self.closed = True


def json_loader(path: Path) -> JSONReader:
    """Loader hook that parses JSON databases."""
    return JSONReader(path)


def database_bytes(records: dict[str, Any]) -> bytes:
    """Serialize records in the format read by :class:`JSONReader`."""
    return json.dumps(records).encode()


def create_test_gz(content: bytes) -> bytes:
    """Gzip-compress content."""
    return gzip.compress(content)


def create_test_tar_gz(
    content: bytes = b"test mmdb content",
    filename: str = "GeoLite2-City_20240101/GeoLite2-City.mmdb",
) -> bytes:
    """Create a test tar.gz archive containing an mmdb file."""
    tar_buffer = io.BytesIO()
    with tarfile.open(fileobj=tar_buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=filename)
        info.size = len(content)
        tar.addfile(info, io.BytesIO(content))

    return gzip.compress(tar_buffer.getvalue())


@pytest.fixture
def database_file(tmp_path: Path) -> Path:
    """A local database with one US and one SG address."""
    path = tmp_path / "GeoLite2-City.json"
    path.write_bytes(database_bytes({"8.8.8.8": SAN_FRANCISCO, "1.1.1.1": SINGAPORE}))
    return path
