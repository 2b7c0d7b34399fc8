"""Tests for data models."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tests.conftest import SAN_FRANCISCO, SINGAPORE
from geoipdns.errors import ConfigError
from geoipdns.models import BackoffState, GeoRecord, Subdivision, UpdatePolicy


class TestUpdatePolicy:
    """Tests for UpdatePolicy."""

    def test_valid(self) -> None:
        policy = UpdatePolicy(timedelta(hours=24), timedelta(hours=1))

        assert policy.update_interval == timedelta(hours=24)
        assert policy.max_retry_interval == timedelta(hours=1)

    def test_zero_update_interval(self) -> None:
        with pytest.raises(ConfigError, match="update interval must be positive"):
            UpdatePolicy(timedelta(0), timedelta(hours=1))

    def test_negative_retry_interval(self) -> None:
        with pytest.raises(ConfigError, match="max retry interval must be positive"):
            UpdatePolicy(timedelta(hours=1), timedelta(seconds=-1))


class TestBackoffState:
    """Tests for BackoffState."""

    def test_defaults(self) -> None:
        state = BackoffState()

        assert state.attempt == 0
        assert state.delay == 0.0


class TestGeoRecord:
    """Tests for GeoRecord."""

    def test_from_dict_with_subdivision(self) -> None:
        record = GeoRecord.from_dict(SAN_FRANCISCO)

        assert record.country_iso_code == "US"
        assert record.country_names["en"] == "United States"
        assert record.subdivision == Subdivision("CA", {"en": "California"})
        assert record.city_names["en"] == "San Francisco"
        assert record.postal_code == "94107"
        assert record.time_zone == "America/Los_Angeles"
        assert record.latitude == 37.7749
        assert record.longitude == -122.4194
        assert record.metro_code == 807

    def test_from_dict_without_optional_fields(self) -> None:
        record = GeoRecord.from_dict(SINGAPORE)

        assert record.subdivision is None
        assert record.city_names == {}
        assert record.postal_code == ""
        assert record.metro_code == 0

    def test_from_empty_dict(self) -> None:
        record = GeoRecord.from_dict({})

        assert record.country_iso_code == ""
        assert record.latitude == 0.0
        assert record.longitude == 0.0

    def test_negative_metro_code(self) -> None:
        with pytest.raises(ValueError, match="metro_code must be non-negative"):
            GeoRecord.from_dict({"location": {"metro_code": -1}})
