"""Configuration management for geoipdns."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Self

from geoipdns._defaults import (
    DEFAULT_ADDRESS,
    DEFAULT_DATABASE,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_RETRY_INTERVAL,
    DEFAULT_RESOLVE_TIMEOUT,
    DEFAULT_UPDATE_INTERVAL,
    get_default_cache_directory,
    get_default_config_file,
)
from geoipdns.errors import ConfigError
from geoipdns.formatter import OutputMode

_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(h|ms|m|s|us|\u00b5s|\u03bcs|ns)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)
_DURATION_UNITS = {
    "h": 3_600_000_000,
    "m": 60_000_000,
    "s": 1_000_000,
    "ms": 1_000,
    "us": 1,
    "\u00b5s": 1,
    "\u03bcs": 1,
    "ns": 0.001,
}
_ADDRESS_RE = re.compile(r"^(?:\[(?P<v6>[^\]]+)\]|(?P<host>[^:\[\]]*)):(?P<port>\d+)$")

# Config file key -> field name
_FILE_KEYS = {
    "Address": "address",
    "Domain": "domain",
    "Database": "database",
    "UpdateInterval": "update_interval",
    "MaxRetryInterval": "max_retry_interval",
    "Silent": "silent",
    "Language": "language",
    "OutputMode": "output_mode",
    "FetchTimeout": "fetch_timeout",
    "ResolveTimeout": "resolve_timeout",
    "CacheDirectory": "cache_directory",
}

_ENV_VARS = {
    "GEOIPDNS_ADDRESS": "address",
    "GEOIPDNS_DOMAIN": "domain",
    "GEOIPDNS_DATABASE": "database",
    "GEOIPDNS_UPDATE_INTERVAL": "update_interval",
    "GEOIPDNS_MAX_RETRY_INTERVAL": "max_retry_interval",
    "GEOIPDNS_SILENT": "silent",
    "GEOIPDNS_LANGUAGE": "language",
    "GEOIPDNS_OUTPUT_MODE": "output_mode",
    "GEOIPDNS_FETCH_TIMEOUT": "fetch_timeout",
    "GEOIPDNS_RESOLVE_TIMEOUT": "resolve_timeout",
    "GEOIPDNS_CACHE_DIR": "cache_directory",
}

_DURATION_FIELDS = frozenset(
    {"update_interval", "max_retry_interval", "fetch_timeout", "resolve_timeout"}
)


@dataclass(frozen=True)
class Config:
    """Configuration for geoipdns.

    Attributes:
        address: Listen address, ``host:port``, ``:port`` or ``[v6]:port``.
        domain: Domain suffix stripped from query names.
        database: Path or URL of the GeoIP database.
        update_interval: Time between refreshes of a remote database.
        max_retry_interval: Ceiling of the delay between failed refreshes.
        silent: Disable request and event logging.
        language: Language code for localized names.
        output_mode: Layout of TXT answers.
        fetch_timeout: Limit for each database download.
        resolve_timeout: Limit for each hostname resolution.
        cache_directory: Directory downloaded databases are unpacked into.

    """

    address: str = DEFAULT_ADDRESS
    domain: str = ""
    database: str = DEFAULT_DATABASE
    update_interval: timedelta = DEFAULT_UPDATE_INTERVAL
    max_retry_interval: timedelta = DEFAULT_MAX_RETRY_INTERVAL
    silent: bool = False
    language: str = DEFAULT_LANGUAGE
    output_mode: OutputMode = OutputMode.JOINED
    fetch_timeout: timedelta = DEFAULT_FETCH_TIMEOUT
    resolve_timeout: timedelta = DEFAULT_RESOLVE_TIMEOUT
    cache_directory: Path = field(default_factory=get_default_cache_directory)

    def __post_init__(self) -> None:
        """Validate values after initialization."""
        _parse_address(self.address)
        if not self.database:
            raise ConfigError("the `Database' option is required")
        if not self.language:
            raise ConfigError("the `Language' option must not be empty")
        for name in sorted(_DURATION_FIELDS):
            value = getattr(self, name)
            if value <= timedelta(0):
                msg = f"{name} should be greater than 0, got '{value}'"
                raise ConfigError(msg)
        if not isinstance(self.output_mode, OutputMode):
            object.__setattr__(
                self, "output_mode", _parse_output_mode(str(self.output_mode))
            )

    @property
    def host(self) -> str:
        """The host part of the listen address. Empty for all interfaces."""
        return _parse_address(self.address)[0]

    @property
    def port(self) -> int:
        """The port part of the listen address."""
        return _parse_address(self.address)[1]

    @classmethod
    def from_file(
        cls,
        config_file: Path | None = None,
        **overrides: object,
    ) -> Self:
        """Load configuration with precedence: defaults < file < env < args.

        Args:
            config_file: Path to configuration file. If None, the default file
                is used when it exists.
            **overrides: Field values from the command line. None values are
                ignored.

        Returns:
            Loaded configuration.

        Raises:
            ConfigError: If configuration is invalid.

        """
        config_data: dict[str, object] = {}

        if config_file is None:
            default_file = get_default_config_file()
            if default_file.exists():
                config_file = default_file

        if config_file is not None:
            config_data.update(_parse_config_file(config_file))

        config_data.update(_parse_environment())

        for name, value in overrides.items():
            if name not in cls.__dataclass_fields__:
                msg = f"unknown option '{name}'"
                raise ConfigError(msg)
            if value is not None:
                config_data[name] = value

        return cls(**config_data)  # type: ignore[arg-type]


def _parse_address(value: str) -> tuple[str, int]:
    """Split a listen address into host and port.

    Raises:
        ConfigError: If the address is malformed.

    """
    match = _ADDRESS_RE.match(value)
    if not match:
        msg = f"'{value}' is not a valid listen address"
        raise ConfigError(msg)
    port = int(match.group("port"))
    if port > 65535:
        msg = f"'{value}' has an invalid port"
        raise ConfigError(msg)
    host = match.group("v6") or match.group("host") or ""
    return host, port


def _parse_config_file(path: Path) -> dict[str, object]:
    """Parse a geoipdns.conf configuration file.

    Args:
        path: Path to the configuration file.

    Returns:
        Dictionary of configuration values.

    Raises:
        ConfigError: If the file cannot be parsed.

    """
    config: dict[str, object] = {}
    keys_seen: set[str] = set()

    try:
        with path.open() as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                parts = line.split(None, 1)
                if len(parts) < 2:
                    msg = f"invalid format on line {line_num}"
                    raise ConfigError(msg)

                key, value = parts[0], parts[1]

                if key in keys_seen:
                    msg = f"`{key}' is in the config multiple times"
                    raise ConfigError(msg)
                keys_seen.add(key)

                _set_config_value(config, key, value, line_num)
    except OSError as e:
        msg = f"error opening file: {e}"
        raise ConfigError(msg) from e

    return config


def _set_config_value(
    config: dict[str, object],
    key: str,
    value: str,
    line_num: int,
) -> None:
    """Set a configuration value from a parsed key-value pair.

    Args:
        config: Configuration dictionary to update.
        key: Configuration key.
        value: Configuration value.
        line_num: Line number for error messages.

    Raises:
        ConfigError: If the key is unknown or the value is invalid.

    """
    name = _FILE_KEYS.get(key)
    if name is None:
        msg = f"unknown option on line {line_num}"
        raise ConfigError(msg)
    config[name] = _convert(name, value, f"`{key}'")


def _convert(name: str, value: str, label: str) -> object:
    """Convert a raw string to the type of a Config field."""
    if name in _DURATION_FIELDS:
        return _parse_duration(value)
    if name == "silent":
        return _parse_bool(value, label)
    if name == "output_mode":
        return _parse_output_mode(value)
    if name == "cache_directory":
        return Path(value)
    return value


def _parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string.

    Supports formats like "5m", "1h30m", "1.5s", "300ms". Units are
    h, m, s, ms, us (or µs) and ns, in any order.

    Args:
        value: Duration string.

    Returns:
        Parsed timedelta.

    Raises:
        ConfigError: If the duration cannot be parsed.

    """
    if value == "0":
        return timedelta(0)
    if not _DURATION_RE.fullmatch(value):
        msg = f"'{value}' is not a valid duration"
        raise ConfigError(msg)

    total = timedelta(0)
    for number, unit in _DURATION_PART_RE.findall(value):
        total += timedelta(microseconds=float(number) * _DURATION_UNITS[unit])
    return total


def _parse_bool(value: str, label: str) -> bool:
    if value not in ("0", "1"):
        msg = f"{label} must be 0 or 1"
        raise ConfigError(msg)
    return value == "1"


def _parse_output_mode(value: str) -> OutputMode:
    try:
        return OutputMode(value.lower())
    except ValueError as e:
        choices = ", ".join(mode.value for mode in OutputMode)
        msg = f"'{value}' is not a valid output mode (expected one of {choices})"
        raise ConfigError(msg) from e


def _parse_environment() -> dict[str, object]:
    """Parse configuration from environment variables.

    Returns:
        Dictionary of configuration values from environment.

    Raises:
        ConfigError: If environment values are invalid.

    """
    config: dict[str, object] = {}
    for env_var, name in _ENV_VARS.items():
        if value := os.environ.get(env_var):
            config[name] = _convert(name, value, f"`{env_var}'")
    return config
