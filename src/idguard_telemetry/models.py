"""Dataclass models for the ID Guard telemetry core.

Canonical records are what the view layer consumes: every field is always
populated, with :data:`UNKNOWN` standing in for anything the source did not
provide.  Event envelopes at the bottom of the module are serializable via
``dataclasses.asdict()`` followed by ``orjson.dumps()``.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

UNKNOWN = "unknown"


class AttendanceStatus(str, enum.Enum):
    """Presence status of an attendance record."""

    PRESENT = "Present"
    UNKNOWN = UNKNOWN


class ChannelRole(str, enum.Enum):
    """Logical telemetry channels the core knows how to interpret."""

    TAG_IDENTITY = "tag-identity"
    LOCATION = "location"
    SOS_MARKER = "sos-marker"


@dataclass(frozen=True)
class Coordinate:
    """A decimal-degree position reported by a geolocation provider."""

    latitude: float
    longitude: float
    accuracy_m: Optional[float] = None


@dataclass
class CanonicalRecord:
    """One normalized attendance event."""

    id: str
    uid: str = UNKNOWN
    subject_name: str = UNKNOWN
    date: str = UNKNOWN
    time: str = UNKNOWN
    latitude: str = UNKNOWN
    longitude: str = UNKNOWN
    status: AttendanceStatus = AttendanceStatus.UNKNOWN
    location_label: str = UNKNOWN


@dataclass(frozen=True)
class CanonicalAlert:
    """One SOS event.  Alerts are never mutated once created."""

    id: int
    subject_name: str = UNKNOWN
    triggered_at: str = UNKNOWN
    location_label: str = UNKNOWN
    coordinates: str = UNKNOWN
    simulated: bool = False


@dataclass
class EmergencyContact:
    """A person notified (conceptually) when an SOS fires."""

    id: int
    name: str
    phone: str
    relation: str = ""


class MonotonicIds:
    """Strictly increasing integer ids seeded from the millisecond clock.

    Two ids handed out within the same millisecond still differ, so ids can
    be used as a recency sort key.
    """

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            now_ms = int(time.time() * 1000)
            self._last = max(self._last + 1, now_ms)
            return self._last


# ── NDJSON event envelopes ─────────────────────────────────────────


@dataclass
class AttendanceSnapshot:
    """The poller's observable state after a poll completes."""

    event_type: str = "attendance"
    received_at: str = ""
    state: str = ""
    display_state: str = ""
    error: Optional[str] = None
    records: list = field(default_factory=list)


@dataclass
class AlertEvent:
    """A newly ingested or simulated SOS alert."""

    event_type: str = "sos_alert"
    received_at: str = ""
    alert: Optional[dict] = field(default_factory=dict)


@dataclass
class BannerEvent:
    """Notification banner visibility transition."""

    event_type: str = "banner"
    received_at: str = ""
    visible: bool = False


@dataclass
class LocationEvent:
    """Outcome of an on-demand location capture."""

    event_type: str = "location"
    received_at: str = ""
    ok: bool = False
    map_url: Optional[str] = None
    error: Optional[str] = None
