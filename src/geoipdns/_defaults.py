"""Default values and platform-specific paths for geoipdns."""

from __future__ import annotations

import os
import platform
import tempfile
from datetime import timedelta
from pathlib import Path

DEFAULT_ADDRESS = ":5300"
DEFAULT_DATABASE = (
    "http://geolite.maxmind.com/download/geoip/database/GeoLite2-City.mmdb.gz"
)
DEFAULT_LANGUAGE = "en"
DEFAULT_UPDATE_INTERVAL = timedelta(hours=24)
DEFAULT_MAX_RETRY_INTERVAL = timedelta(hours=1)
DEFAULT_FETCH_TIMEOUT = timedelta(minutes=5)
DEFAULT_RESOLVE_TIMEOUT = timedelta(seconds=5)


def get_default_config_file() -> Path:
    """Get the platform-specific default configuration file path.

    Returns:
        Path to the default configuration file.

    """
    if platform.system() == "Windows":
        system_drive = os.environ.get("SYSTEMDRIVE", "C:")
        return Path(system_drive) / "ProgramData/geoipdns/geoipdns.conf"
    return Path("/usr/local/etc/geoipdns.conf")


def get_default_cache_directory() -> Path:
    """Get the directory downloaded databases are cached in.

    Returns:
        Path to the default cache directory.

    """
    return Path(tempfile.gettempdir()) / "geoipdns"
