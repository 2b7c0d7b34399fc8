"""Classification of database source strings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit


@dataclass(frozen=True)
class LocalSource:
    """A database file on the local filesystem."""

    path: Path


@dataclass(frozen=True)
class RemoteSource:
    """A database downloaded from a URL."""

    url: str


Source = LocalSource | RemoteSource

_WINDOWS = os.name == "nt"


def resolve_source(source: str) -> Source:
    """Classify a configured database source.

    A string is remote when it parses as an absolute URI with a non-empty
    scheme (``https://host/path``). On Windows a one-letter scheme is a
    drive letter, so ``C:\\GeoIP\\db.mmdb`` stays a path. Anything else,
    including strings that fail to parse, is treated as a local path so that
    the error surfaces when the file is opened.

    Args:
        source: Path or URL from the configuration.

    Returns:
        The classified source.

    """
    try:
        parts = urlsplit(source)
    except ValueError:
        return LocalSource(Path(source))
    if not parts.scheme or _is_drive(parts.scheme):
        return LocalSource(Path(source))
    return RemoteSource(source)


def _is_drive(scheme: str) -> bool:
    # On Windows C:\db.mmdb parses with scheme "c".
    return _WINDOWS and len(scheme) == 1
