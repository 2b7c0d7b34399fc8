"""Tests for TXT answer formatting."""

from __future__ import annotations

from ipaddress import ip_address

import pytest

from geoipdns.formatter import (
    FIELD_SEPARATOR,
    MAX_STRING_LENGTH,
    OutputMode,
    format_coordinate,
    format_fields,
    round_half_up,
    txt_strings,
)
from geoipdns.models import GeoRecord
from tests.conftest import SAN_FRANCISCO, SINGAPORE


class TestRoundHalfUp:
    """Tests for round_half_up."""

    def test_rounds_up_at_half(self) -> None:
        assert round_half_up(2.5, 0) == 3.0
        assert round_half_up(0.125, 2) == 0.13

    def test_rounds_down_below_half(self) -> None:
        assert round_half_up(2.4, 0) == 2.0

    def test_negative_values_round_half_up(self) -> None:
        assert round_half_up(-2.5, 0) == -2.0
        assert round_half_up(-2.4, 0) == -2.0
        assert round_half_up(-2.6, 0) == -3.0
        assert round_half_up(-1234.1, 0) == -1234.0

    def test_custom_threshold(self) -> None:
        assert round_half_up(2.6, 0, round_on=0.7) == 2.0
        assert round_half_up(2.7, 0, round_on=0.7) == 3.0


class TestFormatCoordinate:
    """Tests for format_coordinate."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (37.774929, "37.77"),
            (-122.419416, "-122.42"),
            (0.0, "0.00"),
            (51.5, "51.50"),
            (-1.2341, "-1.23"),
            (1.2341, "1.23"),
            (-33.8641, "-33.86"),
            (-0.0041, "-0.00"),
        ],
    )
    def test_two_decimals(self, value: float, expected: str) -> None:
        assert format_coordinate(value) == expected


class TestFormatFields:
    """Tests for format_fields."""

    def test_with_subdivision(self) -> None:
        record = GeoRecord.from_dict(SAN_FRANCISCO)

        fields = format_fields(record, ip_address("8.8.8.8"), "en")

        assert fields == [
            "8.8.8.8",
            "US",
            "United States",
            "CA",
            "California",
            "San Francisco",
            "94107",
            "America/Los_Angeles",
            "37.77",
            "-122.42",
            "807",
        ]

    def test_without_subdivision(self) -> None:
        record = GeoRecord.from_dict(SINGAPORE)

        fields = format_fields(record, ip_address("1.1.1.1"), "en")

        assert fields == [
            "1.1.1.1",
            "SG",
            "Singapore",
            "",
            "",
            "Asia/Singapore",
            "1.29",
            "103.85",
            "0",
        ]

    def test_missing_language_is_empty(self) -> None:
        record = GeoRecord.from_dict(SAN_FRANCISCO)

        fields = format_fields(record, "8.8.8.8", "ja")

        assert fields[2] == ""
        assert fields[4] == ""
        assert fields[5] == ""
        assert fields[1] == "US"

    def test_other_language(self) -> None:
        record = GeoRecord.from_dict(SAN_FRANCISCO)

        fields = format_fields(record, "8.8.8.8", "de")

        assert fields[2] == "USA"

    def test_ipv6_address(self) -> None:
        record = GeoRecord.from_dict(SINGAPORE)

        fields = format_fields(record, ip_address("2001:DB8::1"), "en")

        assert fields[0] == "2001:db8::1"


class TestTxtStrings:
    """Tests for txt_strings."""

    def test_joined(self) -> None:
        strings = txt_strings(["a", "b", "c"], OutputMode.JOINED)

        assert strings == [b"a    b    c"]

    def test_joined_long_payload_is_split(self) -> None:
        fields = ["x" * 200, "y" * 200]

        strings = txt_strings(fields, OutputMode.JOINED)

        assert all(len(s) <= MAX_STRING_LENGTH for s in strings)
        assert b"".join(strings) == FIELD_SEPARATOR.join(fields).encode()

    def test_joined_empty(self) -> None:
        assert txt_strings([], OutputMode.JOINED) == [b""]

    def test_segmented(self) -> None:
        strings = txt_strings(["8.8.8.8", "US", ""], OutputMode.SEGMENTED)

        assert strings == [b"8.8.8.8", b"US", b""]

    def test_segmented_truncates_long_fields(self) -> None:
        strings = txt_strings(["z" * 300], OutputMode.SEGMENTED)

        assert strings == [b"z" * MAX_STRING_LENGTH]

    def test_utf8(self) -> None:
        strings = txt_strings(["Zürich"], OutputMode.SEGMENTED)

        assert strings == ["Zürich".encode()]
