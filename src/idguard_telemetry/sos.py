"""SOS channel polling, alert log and notification banner.

The alert log is append-only and newest-first for the whole session.  A
background poll that fails is logged and treated as "no new alert this
cycle": the next poll self-heals, so nothing is surfaced to the view.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from idguard_telemetry.config import SosConfig
from idguard_telemetry.errors import TelemetryError
from idguard_telemetry.models import CanonicalAlert, ChannelRole, Coordinate
from idguard_telemetry.normalizer import Normalizer, scalar_text
from idguard_telemetry.source import ChannelMap, TelemetrySource

logger = logging.getLogger(__name__)

LIVE_LOCATION_LABEL = "Live GPS Captured"


class Banner:
    """Single transient notification flag with a restartable hide timer.

    Showing the banner while it is already visible restarts the delay
    instead of stacking a second banner.  Listeners get ``True`` once per
    :meth:`show` and ``False`` once when the banner finally hides.
    """

    def __init__(self, duration_seconds: float = 4.0) -> None:
        self._duration = duration_seconds
        self._visible = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def visible(self) -> bool:
        return self._visible

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def show(self) -> None:
        """Make the banner visible and (re)start the hide timer.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._visible = True
        self._handle = loop.call_later(self._duration, self._hide)
        self._emit(True)

    def cancel(self) -> None:
        """Drop the pending timer and hide immediately (session teardown)."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._visible:
            self._visible = False
            self._emit(False)

    def _hide(self) -> None:
        self._handle = None
        self._visible = False
        self._emit(False)

    def _emit(self, visible: bool) -> None:
        for listener in self._listeners:
            try:
                listener(visible)
            except Exception:
                logger.exception("Banner listener failed")


class SOSAlertManager:
    """Poll the SOS channel and own the session's alert log.

    Parameters
    ----------
    source:
        Telemetry backend.
    channels:
        Role mapping; only ``sos-marker`` is read.
    normalizer:
        Parses readings into alerts and hands out alert ids.
    config:
        Separator, idle markers, subject name, fallback location and
        banner duration.
    """

    def __init__(
        self,
        source: TelemetrySource,
        channels: ChannelMap,
        normalizer: Optional[Normalizer] = None,
        config: Optional[SosConfig] = None,
    ) -> None:
        self._source = source
        self._channel_id = channels.resolve(ChannelRole.SOS_MARKER)
        self._normalizer = normalizer or Normalizer()
        self._config = config or SosConfig()
        self._alerts: list[CanonicalAlert] = []
        self._last_marker: Optional[str] = None
        self._listeners: list[Callable[[CanonicalAlert], None]] = []
        self.banner = Banner(self._config.banner_seconds)

    @property
    def alerts(self) -> tuple[CanonicalAlert, ...]:
        """All alerts of this session, newest first."""
        return tuple(self._alerts)

    def subscribe(self, listener: Callable[[CanonicalAlert], None]) -> None:
        """Register a callback for every newly recorded alert."""
        self._listeners.append(listener)

    async def poll(self) -> Optional[CanonicalAlert]:
        """Read the SOS channel once; return the new alert, if any."""
        try:
            raw = await self._source.read_channel(self._channel_id)
        except TelemetryError as exc:
            logger.warning("SOS poll failed, treating as no new alert: %s", exc)
            return None
        except Exception:
            logger.exception("Unexpected SOS poll failure, treating as no new alert")
            return None
        try:
            return self.ingest(raw)
        except Exception:
            logger.exception("Unreadable SOS reading, treating as no new alert")
            return None

    def ingest(self, raw) -> Optional[CanonicalAlert]:
        """Interpret one SOS-channel reading."""
        marker = scalar_text(raw)
        idle = {value.lower() for value in self._config.idle_values}
        if marker is None or marker.lower() in idle:
            self._last_marker = None
            return None
        if marker == self._last_marker:
            logger.debug("SOS marker unchanged since last poll, no new alert")
            return None

        alert = self._normalizer.parse_alert(
            marker,
            separator=self._config.separator,
            subject_name=self._config.subject_name,
            idle_values=tuple(self._config.idle_values),
        )
        if alert is None:
            return None
        self._last_marker = marker

        logger.warning("SOS alert from %s at %s (%s)",
                       alert.subject_name, alert.location_label, alert.coordinates)
        return self._record(alert)

    def record_simulated(self, coordinate: Optional[Coordinate]) -> CanonicalAlert:
        """Record a locally triggered test alert through the normal path."""
        if coordinate is not None:
            label = LIVE_LOCATION_LABEL
            coordinates = f"{coordinate.latitude:.6f}, {coordinate.longitude:.6f}"
        else:
            label = self._config.fallback_label
            coordinates = self._config.fallback_coordinates

        alert = self._normalizer.simulated_alert(
            subject_name=self._config.subject_name,
            location_label=label,
            coordinates=coordinates,
        )
        logger.info("Simulated SOS alert recorded (%s)", alert.coordinates)
        return self._record(alert)

    def close(self) -> None:
        self.banner.cancel()

    def _record(self, alert: CanonicalAlert) -> CanonicalAlert:
        self._alerts.insert(0, alert)
        self.banner.show()
        for listener in self._listeners:
            try:
                listener(alert)
            except Exception:
                logger.exception("Alert listener failed for alert %s", alert.id)
        return alert
