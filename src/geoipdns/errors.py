"""Exception classes for geoipdns."""

from __future__ import annotations


class GeoIPDNSError(Exception):
    """Base exception for geoipdns errors."""


class ConfigError(GeoIPDNSError):
    """Configuration is invalid or incomplete."""


class LoadError(GeoIPDNSError):
    """A database file could not be unpacked or opened."""


class FetchError(GeoIPDNSError):
    """Error downloading a database from a remote source."""


class HTTPError(FetchError):
    """HTTP request failed with an error status code."""

    def __init__(self, message: str, status_code: int, body: str = "") -> None:
        """Initialize HTTPError.

        Args:
            message: Error message.
            status_code: HTTP status code.
            body: Response body, if available.

        """
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class LockError(GeoIPDNSError):
    """Could not acquire the cache directory lock."""


class ResolutionError(GeoIPDNSError):
    """A hostname did not resolve to any usable address."""


class ProtocolMismatchError(GeoIPDNSError):
    """A DNS question this server does not answer."""


class AddressNotFoundError(GeoIPDNSError):
    """The address is not present in the database."""

    def __init__(self, message: str, ip_address: str = "") -> None:
        """Initialize AddressNotFoundError.

        Args:
            message: Error message.
            ip_address: The address that was looked up.

        """
        super().__init__(message)
        self.ip_address = ip_address


class LookupFailedError(GeoIPDNSError):
    """The database could not be queried."""
