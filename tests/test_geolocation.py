"""Tests for geolocation providers."""

import asyncio

import pytest
from conftest import FakeSource

from idguard_telemetry.errors import (
    LocationErrorKind,
    LocationPermissionError,
    LocationUnsupported,
    Unreachable,
)
from idguard_telemetry.geolocation import (
    ChannelGeolocationProvider,
    StaticGeolocationProvider,
    UnavailableGeolocation,
    provider_for,
)
from idguard_telemetry.models import Coordinate


def _position(provider):
    return asyncio.run(provider.get_current_position(10.0, True))


def test_static_provider() -> None:
    assert _position(StaticGeolocationProvider(18.52, 73.85)) == Coordinate(18.52, 73.85)


def test_unavailable_provider() -> None:
    with pytest.raises(LocationUnsupported) as excinfo:
        _position(UnavailableGeolocation())
    assert excinfo.value.kind is LocationErrorKind.UNSUPPORTED


def test_provider_for() -> None:
    assert isinstance(provider_for(1.0, 2.0), StaticGeolocationProvider)
    assert isinstance(provider_for(1.0, None), UnavailableGeolocation)


def test_channel_provider_reads_gps_channel() -> None:
    source = FakeSource(channels={"V1": "18.5204,73.8567"})
    coordinate = _position(ChannelGeolocationProvider(source, "V1"))
    assert coordinate == Coordinate(18.5204, 73.8567)


@pytest.mark.parametrize("reading", [None, "", "18.52", "north,east"])
def test_channel_provider_without_fix(reading) -> None:
    source = FakeSource(channels={"V1": reading})
    with pytest.raises(LocationPermissionError):
        _position(ChannelGeolocationProvider(source, "V1"))


def test_channel_provider_transport_failure() -> None:
    source = FakeSource()
    source.errors["V1"] = Unreachable("down")
    with pytest.raises(LocationPermissionError, match="down"):
        _position(ChannelGeolocationProvider(source, "V1"))
