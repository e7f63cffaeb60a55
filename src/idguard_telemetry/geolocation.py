"""Geolocation providers: one-shot coordinate fetches.

A provider either returns a :class:`Coordinate` or raises a
:class:`~idguard_telemetry.errors.LocationError`.  Bounding the wait is the
caller's job (see :class:`~idguard_telemetry.tracking.TrackingSession`),
but providers receive the timeout so they can pass it on to their backend.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from idguard_telemetry.errors import (
    LocationPermissionError,
    LocationUnsupported,
    TelemetryError,
)
from idguard_telemetry.models import Coordinate, UNKNOWN
from idguard_telemetry.normalizer import scalar_text, split_coordinates

logger = logging.getLogger(__name__)


class GeolocationProvider(Protocol):
    """Host capability that yields the current device position."""

    async def get_current_position(self, timeout: float, high_accuracy: bool) -> Coordinate:
        """Return the current position or raise ``LocationError``."""


class StaticGeolocationProvider:
    """Always report the same coordinate (CLI ``--lat/--lon``, fixed kiosks)."""

    def __init__(self, latitude: float, longitude: float) -> None:
        self._coordinate = Coordinate(latitude=latitude, longitude=longitude)

    async def get_current_position(self, timeout: float, high_accuracy: bool) -> Coordinate:
        return self._coordinate


class UnavailableGeolocation:
    """Stand-in for hosts without any positioning capability."""

    async def get_current_position(self, timeout: float, high_accuracy: bool) -> Coordinate:
        raise LocationUnsupported("Geolocation is not supported on this host.")


class ChannelGeolocationProvider:
    """Read the hardware GPS module through the telemetry ``location`` channel.

    Parameters
    ----------
    source:
        Any :class:`~idguard_telemetry.source.TelemetrySource`.
    channel_id:
        Backend id of the channel playing the ``location`` role.
    """

    def __init__(self, source, channel_id: str) -> None:
        self._source = source
        self._channel_id = channel_id

    async def get_current_position(self, timeout: float, high_accuracy: bool) -> Coordinate:
        try:
            raw = await self._source.read_channel(self._channel_id)
        except TelemetryError as exc:
            raise LocationPermissionError(f"Unable to read device location: {exc}") from exc

        lat, lon = split_coordinates(scalar_text(raw) or "")
        if UNKNOWN in (lat, lon):
            raise LocationPermissionError("Device has not reported a position fix yet.")
        try:
            return Coordinate(latitude=float(lat), longitude=float(lon))
        except ValueError as exc:
            logger.warning("Device location %r,%r is not numeric", lat, lon)
            raise LocationPermissionError("Device reported an unreadable position.") from exc


def provider_for(latitude: Optional[float], longitude: Optional[float]) -> GeolocationProvider:
    """Build a static provider when both coordinates are given, else an unavailable one."""
    if latitude is None or longitude is None:
        return UnavailableGeolocation()
    return StaticGeolocationProvider(latitude, longitude)
