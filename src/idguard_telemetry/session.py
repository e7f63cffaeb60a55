"""Per-viewer session context.

A :class:`DashboardSession` is created at session start and owns every
piece of mutable state: the attendance batch, the alert log, the banner,
the emergency contacts.  Nothing lives at module level; components get
what they need passed in and never reach into each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from idguard_telemetry.attendance import AttendancePoller, PollState
from idguard_telemetry.config import AppConfig
from idguard_telemetry.connection import WebSocketTelemetrySource
from idguard_telemetry.geolocation import GeolocationProvider
from idguard_telemetry.models import CanonicalAlert, EmergencyContact, MonotonicIds
from idguard_telemetry.normalizer import Normalizer
from idguard_telemetry.sos import SOSAlertManager
from idguard_telemetry.source import ChannelMap, HttpTelemetrySource, TelemetrySource
from idguard_telemetry.tracking import TrackingSession

logger = logging.getLogger(__name__)


class ContactBook:
    """In-memory emergency contacts, newest first."""

    def __init__(self, ids: Optional[MonotonicIds] = None) -> None:
        self._ids = ids or MonotonicIds()
        self._contacts: list[EmergencyContact] = []

    @property
    def contacts(self) -> list[EmergencyContact]:
        return list(self._contacts)

    def add(self, name: str, phone: str, relation: str = "") -> Optional[EmergencyContact]:
        """Add a contact; name and phone are required, otherwise nothing is added."""
        if not name.strip() or not phone.strip():
            return None
        contact = EmergencyContact(
            id=self._ids.next(),
            name=name.strip(),
            phone=phone.strip(),
            relation=relation.strip(),
        )
        self._contacts.insert(0, contact)
        return contact

    def remove(self, contact_id: int) -> bool:
        before = len(self._contacts)
        self._contacts = [c for c in self._contacts if c.id != contact_id]
        return len(self._contacts) != before


def build_source(config: AppConfig) -> TelemetrySource:
    """Instantiate the telemetry backend named by ``telemetry.backend``."""
    if config.telemetry.backend == "websocket":
        channels = config.channels.as_mapping().values()
        return WebSocketTelemetrySource(config.telemetry, channels)
    return HttpTelemetrySource(config.telemetry)


class DashboardSession:
    """Wire the pollers, the tracker and the contacts for one viewer.

    Use as an async context manager so the source is closed and the banner
    timer cancelled at session end.
    """

    def __init__(
        self,
        config: AppConfig,
        source: Optional[TelemetrySource] = None,
        geolocation: Optional[GeolocationProvider] = None,
    ) -> None:
        self.config = config
        self.source = source if source is not None else build_source(config)
        channels = ChannelMap.from_config(config.channels)
        ids = MonotonicIds()
        normalizer = Normalizer(ids)

        self.attendance = AttendancePoller(self.source, channels, normalizer, config.attendance)
        self.sos = SOSAlertManager(self.source, channels, normalizer, config.sos)
        self.tracking = TrackingSession(geolocation, config.tracking)
        self.contacts = ContactBook(ids)

    async def __aenter__(self) -> "DashboardSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def refresh(self) -> tuple[PollState, Optional[CanonicalAlert]]:
        """Poll attendance and the SOS channel side by side."""
        state, alert = await asyncio.gather(self.attendance.poll(), self.sos.poll())
        return state, alert

    async def simulate_sos(self) -> CanonicalAlert:
        return await self.tracking.simulate_sos(self.sos)

    async def close(self) -> None:
        self.sos.close()
        await self.source.close()
        logger.info("Session %s closed (%d alert(s) recorded)",
                    self.config.viewer_id, len(self.sos.alerts))
