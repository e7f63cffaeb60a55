"""On-demand location capture and map-link construction.

:meth:`TrackingSession.capture_location` is the only suspension point: it
waits on the geolocation provider for at most ``timeout_seconds`` and never
retries.  A timeout is a terminal failure for that invocation; the caller
retries by invoking capture again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional
from urllib.parse import quote

from idguard_telemetry.config import TrackingConfig
from idguard_telemetry.errors import (
    LocationError,
    LocationErrorKind,
    LocationPermissionError,
    LocationTimeoutError,
    LocationUnsupported,
)
from idguard_telemetry.models import UNKNOWN, CanonicalAlert, Coordinate

if TYPE_CHECKING:
    from idguard_telemetry.geolocation import GeolocationProvider
    from idguard_telemetry.sos import SOSAlertManager

logger = logging.getLogger(__name__)

DEFAULT_MAP_BASE_URL = "https://www.google.com/maps"


@dataclass(frozen=True)
class CaptureResult:
    """Either a coordinate or a location error, never both."""

    coordinate: Optional[Coordinate] = None
    error: Optional[LocationError] = None

    @property
    def ok(self) -> bool:
        return self.coordinate is not None

    @property
    def error_kind(self) -> Optional[LocationErrorKind]:
        return self.error.kind if self.error is not None else None


class TrackingSession:
    """Capture the viewer's position and hand it to the map-link builder.

    Parameters
    ----------
    provider:
        Geolocation capability, or ``None`` when the host has none.
    config:
        Timeout, accuracy hint and map base URL.
    """

    def __init__(
        self,
        provider: Optional["GeolocationProvider"],
        config: Optional[TrackingConfig] = None,
    ) -> None:
        self._provider = provider
        self._config = config or TrackingConfig()
        self.location_error: Optional[str] = None

    async def capture_location(self) -> CaptureResult:
        """Fetch one coordinate within the configured timeout."""
        if self._provider is None:
            return CaptureResult(error=LocationUnsupported("Geolocation not supported on this host."))

        timeout = self._config.timeout_seconds
        try:
            coordinate = await asyncio.wait_for(
                self._provider.get_current_position(timeout, self._config.high_accuracy),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Location capture timed out after %.1fs", timeout)
            return CaptureResult(error=LocationTimeoutError(
                f"Timed out after {timeout:g}s waiting for a location fix."
            ))
        except LocationError as exc:
            logger.warning("Location capture failed (%s): %s", exc.kind.value, exc)
            return CaptureResult(error=exc)
        except Exception as exc:
            logger.warning("Location provider error: %s", exc)
            return CaptureResult(error=LocationPermissionError(
                "Permission denied or unable to fetch location."
            ))

        if not isinstance(coordinate, Coordinate):
            return CaptureResult(error=LocationPermissionError(
                "Location provider returned no coordinate."
            ))
        return CaptureResult(coordinate=coordinate)

    async def track_live(self) -> Optional[str]:
        """Capture the position and return a map URL, or ``None`` on failure.

        The failure message is left in :attr:`location_error` for the view.
        """
        self.location_error = None
        result = await self.capture_location()
        if not result.ok:
            self.location_error = result.error.message
            return None
        return build_map_url(
            result.coordinate.latitude,
            result.coordinate.longitude,
            self._config.map_base_url,
        )

    async def simulate_sos(self, alerts: "SOSAlertManager") -> CanonicalAlert:
        """Raise a local test alert, with a live position when one is available."""
        result = await self.capture_location()
        if not result.ok:
            logger.info("Simulated SOS without live position: %s", result.error)
        return alerts.record_simulated(result.coordinate)


def build_map_url(latitude: float | str, longitude: float | str,
                  base_url: str = DEFAULT_MAP_BASE_URL) -> str:
    """Return a map-viewer URL centred on ``(latitude, longitude)``."""
    return f"{base_url}?q={latitude},{longitude}"


def alert_map_url(alert: CanonicalAlert, base_url: str = DEFAULT_MAP_BASE_URL) -> str:
    """Map URL for an alert card; the bare map when coordinates are unknown."""
    if alert.coordinates == UNKNOWN:
        return base_url
    return f"{base_url}?q={quote(alert.coordinates.replace(' ', ''), safe=',.-')}"
