"""DNS server answering TXT queries with GeoIP data."""

from __future__ import annotations

__version__ = "1.0.0"

from geoipdns.config import Config
from geoipdns.database import Database, DataSnapshot, Subscription, open_reader
from geoipdns.errors import (
    AddressNotFoundError,
    ConfigError,
    FetchError,
    GeoIPDNSError,
    HTTPError,
    LoadError,
    LockError,
    LookupFailedError,
    ProtocolMismatchError,
    ResolutionError,
)
from geoipdns.formatter import OutputMode, format_fields
from geoipdns.models import (
    BackoffState,
    ClosedEvent,
    ErrorEvent,
    GeoRecord,
    OpenedEvent,
    UpdatePolicy,
)
from geoipdns.router import QueryRouter
from geoipdns.server import DNSServer, run
from geoipdns.source import LocalSource, RemoteSource, resolve_source

__all__ = [
    "AddressNotFoundError",
    "BackoffState",
    "ClosedEvent",
    "Config",
    "ConfigError",
    "DNSServer",
    "DataSnapshot",
    "Database",
    "ErrorEvent",
    "FetchError",
    "GeoIPDNSError",
    "GeoRecord",
    "HTTPError",
    "LoadError",
    "LocalSource",
    "LockError",
    "LookupFailedError",
    "OpenedEvent",
    "OutputMode",
    "ProtocolMismatchError",
    "QueryRouter",
    "RemoteSource",
    "ResolutionError",
    "Subscription",
    "UpdatePolicy",
    "__version__",
    "format_fields",
    "open_reader",
    "resolve_source",
    "run",
]
