"""Formatting of geolocation records into TXT answers."""

from __future__ import annotations

import math
from enum import Enum
from ipaddress import IPv4Address, IPv6Address
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from geoipdns.models import GeoRecord

FIELD_SEPARATOR = "    "

# A DNS character-string holds at most 255 bytes.
MAX_STRING_LENGTH = 255


class OutputMode(str, Enum):
    """How response fields are laid out in the TXT record."""

    JOINED = "joined"
    SEGMENTED = "segmented"


def round_half_up(value: float, places: int, round_on: float = 0.5) -> float:
    """Round ``value`` to ``places`` decimals, ties toward positive infinity.

    The value is scaled by ``10**places``. If its distance above the next
    lower integer is at least ``round_on`` it is rounded up, otherwise down,
    so ``-2.4`` rounds to ``-2.0`` and ``-2.5`` to ``-2.0``.

    Args:
        value: The number to round.
        places: Number of decimal places to keep.
        round_on: Fraction at or above which the value rounds up.

    Returns:
        The rounded value.

    """
    scale = 10.0**places
    scaled = value * scale
    lower = math.floor(scaled)
    if scaled - lower >= round_on:
        return (lower + 1) / scale
    return lower / scale


def format_coordinate(value: float) -> str:
    """Format a latitude or longitude with two decimals."""
    return f"{round_half_up(value, 3):.2f}"


def format_fields(
    record: GeoRecord,
    ip_address: IPv4Address | IPv6Address | str,
    language: str,
) -> list[str]:
    """Lay out a record as the ordered list of response fields.

    The list has 11 fields when the record has a subdivision and 9 when it
    does not. The subdivision fields are left out, not emptied.

    Args:
        record: The geolocation record.
        ip_address: The address that was looked up.
        language: Language code for the localized names. A name missing in
            that language is empty.

    Returns:
        IP, country code, country name, [subdivision code, subdivision name,]
        city, postal code, time zone, latitude, longitude and metro code.

    """
    fields = [
        str(ip_address),
        record.country_iso_code,
        record.country_names.get(language, ""),
    ]
    if record.subdivision is not None:
        fields.extend(
            [
                record.subdivision.iso_code,
                record.subdivision.names.get(language, ""),
            ]
        )
    fields.extend(
        [
            record.city_names.get(language, ""),
            record.postal_code,
            record.time_zone,
            format_coordinate(record.latitude),
            format_coordinate(record.longitude),
            str(int(record.metro_code)),
        ]
    )
    return fields


def txt_strings(fields: list[str], mode: OutputMode) -> list[bytes]:
    """Encode response fields as TXT character-strings.

    In joined mode the fields form one payload separated by four spaces. A
    payload longer than a single character-string is split across several,
    which clients concatenate. In segmented mode each field is its own
    character-string.

    Args:
        fields: Output of :func:`format_fields`.
        mode: The output layout.

    Returns:
        The character-strings, each at most 255 bytes.

    """
    if mode is OutputMode.SEGMENTED:
        return [field.encode("utf-8")[:MAX_STRING_LENGTH] for field in fields]

    payload = FIELD_SEPARATOR.join(fields).encode("utf-8")
    return [
        payload[i : i + MAX_STRING_LENGTH]
        for i in range(0, max(len(payload), 1), MAX_STRING_LENGTH)
    ]
