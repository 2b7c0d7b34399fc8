"""Data models for geoipdns."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Self

from geoipdns.errors import ConfigError


@dataclass(frozen=True)
class UpdatePolicy:
    """How often a remote database is refreshed.

    Attributes:
        update_interval: Time between successful refreshes.
        max_retry_interval: Ceiling for the delay between failed attempts.

    """

    update_interval: timedelta
    max_retry_interval: timedelta

    def __post_init__(self) -> None:
        """Validate the intervals."""
        if self.update_interval <= timedelta(0):
            msg = f"update interval must be positive, got '{self.update_interval}'"
            raise ConfigError(msg)
        if self.max_retry_interval <= timedelta(0):
            msg = (
                "max retry interval must be positive, "
                f"got '{self.max_retry_interval}'"
            )
            raise ConfigError(msg)


@dataclass(frozen=True)
class BackoffState:
    """Progress of the refresh task through consecutive failures.

    Attributes:
        attempt: Number of consecutive failed refresh attempts.
        delay: Seconds the refresh task waits before its next attempt.

    """

    attempt: int = 0
    delay: float = 0.0


@dataclass(frozen=True)
class Subdivision:
    """First-level administrative region of a country."""

    iso_code: str = ""
    names: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GeoRecord:
    """Geolocation data for a single address.

    Attributes:
        country_iso_code: Two-letter country code.
        country_names: Country name keyed by language code.
        subdivision: The first subdivision, if the database has one.
        city_names: City name keyed by language code.
        postal_code: Postal code.
        time_zone: IANA time zone name.
        latitude: Approximate latitude.
        longitude: Approximate longitude.
        metro_code: Metro code, 0 when unknown.

    """

    country_iso_code: str = ""
    country_names: dict[str, str] = field(default_factory=dict)
    subdivision: Subdivision | None = None
    city_names: dict[str, str] = field(default_factory=dict)
    postal_code: str = ""
    time_zone: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    metro_code: int = 0

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.metro_code < 0:
            msg = f"metro_code must be non-negative, got {self.metro_code}"
            raise ValueError(msg)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Build a record from a raw City database entry.

        Args:
            data: Decoded MMDB record.

        Returns:
            The record. Keys missing from the entry take empty values.

        """
        country = data.get("country") or {}
        city = data.get("city") or {}
        location = data.get("location") or {}
        postal = data.get("postal") or {}

        subdivision = None
        if subdivisions := data.get("subdivisions"):
            first = subdivisions[0]
            subdivision = Subdivision(
                iso_code=first.get("iso_code", ""),
                names=dict(first.get("names") or {}),
            )

        return cls(
            country_iso_code=country.get("iso_code", ""),
            country_names=dict(country.get("names") or {}),
            subdivision=subdivision,
            city_names=dict(city.get("names") or {}),
            postal_code=postal.get("code", ""),
            time_zone=location.get("time_zone", ""),
            latitude=float(location.get("latitude", 0.0)),
            longitude=float(location.get("longitude", 0.0)),
            metro_code=int(location.get("metro_code", 0)),
        )


@dataclass(frozen=True)
class OpenedEvent:
    """A new database snapshot is being served.

    Attributes:
        source: Path or URL the snapshot was loaded from.

    """

    source: str


@dataclass(frozen=True)
class ErrorEvent:
    """A refresh attempt failed.

    Attributes:
        cause: The exception that made the attempt fail.

    """

    cause: BaseException


@dataclass(frozen=True)
class ClosedEvent:
    """The database has been closed. No further events follow."""


Event = OpenedEvent | ErrorEvent | ClosedEvent
