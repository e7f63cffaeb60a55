"""Map raw telemetry payloads onto canonical records and alerts.

Each canonical field resolves through an ordered fallback chain of source
keys; the first key holding a non-blank value wins.  Anything that cannot
be resolved becomes :data:`~idguard_telemetry.models.UNKNOWN`, so the
output is always fully populated.  Nothing in this module raises on
malformed input.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional

from idguard_telemetry.classifier import MAX_UNWRAP_DEPTH, PayloadShape, classify
from idguard_telemetry.models import (
    UNKNOWN,
    AttendanceStatus,
    CanonicalAlert,
    CanonicalRecord,
    MonotonicIds,
)

logger = logging.getLogger(__name__)

ID_KEYS = ("id", "recordId", "entryId")
UID_KEYS = ("uid", "userId", "cardId", "tag", "rfid")
NAME_KEYS = ("name", "fullname", "subjectName", "studentName")
DATE_KEYS = ("date",)
TIME_KEYS = ("time",)
TIMESTAMP_KEYS = ("timestamp", "ts", "createdAt")
LATITUDE_KEYS = ("latitude", "lat")
LONGITUDE_KEYS = ("longitude", "lng", "lon")
COORDINATE_KEYS = ("coordinates", "coords", "gps", "position")
LABEL_KEYS = ("location", "locationLabel", "venue", "source")
STATUS_KEYS = ("status",)

_DATE_RE = re.compile(r"^\s*(\d{4}-\d{2}-\d{2})")

# Epoch values above this are taken to be milliseconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


class Normalizer:
    """Turn classified payloads into :class:`CanonicalRecord` batches.

    Parameters
    ----------
    ids:
        Id source for records whose payload carries no identifier.  Shared
        with nothing else; each session builds its own.
    """

    def __init__(self, ids: Optional[MonotonicIds] = None) -> None:
        self._ids = ids or MonotonicIds()

    def normalize_records(self, raw: Any) -> list[CanonicalRecord]:
        """Normalize an attendance payload of any known shape."""
        payload = classify(raw)

        if payload.shape is PayloadShape.RECORD_ARRAY:
            return [self.normalize_record(item) for item in payload.value]
        if payload.shape is PayloadShape.SINGLE_RECORD:
            return [self.normalize_record(payload.value)]
        if payload.shape is PayloadShape.DELIMITED:
            # A bare reading on the attendance feed is a position fix
            return [self.normalize_record({"coordinates": payload.value})]
        if payload.shape is PayloadShape.MALFORMED:
            logger.warning("Dropping malformed attendance payload: %s", payload.reason)
        return []

    def normalize_channels(self, tag: Any, location: Any) -> list[CanonicalRecord]:
        """Compose one record from per-channel scalar readings.

        Returns an empty batch when both channels are idle.
        """
        tag_text = scalar_text(tag)
        location_text = scalar_text(location)
        if tag_text is None and location_text is None:
            return []
        return [self.normalize_record({"uid": tag_text, "coordinates": location_text})]

    def normalize_record(self, item: dict) -> CanonicalRecord:
        """Normalize one loosely-typed source record."""
        record_id = _first(item, ID_KEYS)
        uid = _first(item, UID_KEYS)

        latitude = _first(item, LATITUDE_KEYS)
        longitude = _first(item, LONGITUDE_KEYS)
        lat_text, lon_text = coordinate_text(latitude), coordinate_text(longitude)
        if lat_text == UNKNOWN and lon_text == UNKNOWN:
            lat_text, lon_text = split_coordinates(_first(item, COORDINATE_KEYS))

        date, time_ = _resolve_date_time(
            _first(item, DATE_KEYS),
            _first(item, TIME_KEYS),
            _first(item, TIMESTAMP_KEYS),
        )

        record_id = _text(record_id)
        if record_id == UNKNOWN:
            record_id = str(self._ids.next())

        uid_text = _text(uid)
        return CanonicalRecord(
            id=record_id,
            uid=uid_text,
            subject_name=_text(_first(item, NAME_KEYS)),
            date=date,
            time=time_,
            latitude=lat_text,
            longitude=lon_text,
            status=_resolve_status(_first(item, STATUS_KEYS), uid_text),
            location_label=_text(_first(item, LABEL_KEYS)),
        )

    def parse_alert(
        self,
        raw: Any,
        separator: str = "|",
        subject_name: str = UNKNOWN,
        idle_values: tuple[str, ...] = (),
    ) -> Optional[CanonicalAlert]:
        """Parse one SOS-channel reading.

        ``None`` means "no new alert": the reading was absent, blank, the
        literal ``null`` or one of *idle_values*.  A reading containing
        *separator* splits into a location label and a coordinate payload;
        otherwise the whole reading is an opaque marker with unknown
        coordinates.
        """
        text = scalar_text(raw)
        if text is None or text.lower() in {v.lower() for v in idle_values}:
            return None

        if separator and separator in text:
            label, _, coords = text.partition(separator)
            lat, lon = split_coordinates(coords)
            coordinates = format_coordinates(lat, lon)
            label = label.strip() or UNKNOWN
        else:
            label, coordinates = text, UNKNOWN

        return CanonicalAlert(
            id=self._ids.next(),
            subject_name=subject_name or UNKNOWN,
            triggered_at=capture_timestamp(),
            location_label=label,
            coordinates=coordinates,
        )

    def simulated_alert(
        self,
        subject_name: str,
        location_label: str,
        coordinates: str,
    ) -> CanonicalAlert:
        """Build a locally triggered test alert."""
        return CanonicalAlert(
            id=self._ids.next(),
            subject_name=subject_name or UNKNOWN,
            triggered_at=capture_timestamp(),
            location_label=location_label or UNKNOWN,
            coordinates=coordinates or UNKNOWN,
            simulated=True,
        )


# ── field coercion ──────────────────────────────────────────────────


def scalar_text(value: Any) -> Optional[str]:
    """Reduce a channel reading to stripped text, or ``None`` when idle."""
    for _ in range(MAX_UNWRAP_DEPTH):
        payload = classify(value)
        if payload.shape is PayloadShape.DELIMITED:
            return payload.value
        if payload.shape is not PayloadShape.SINGLE_RECORD:
            return None
        value = payload.value.get("value")
        if value is None:
            return None
    logger.warning("Dropping channel reading nested deeper than %d levels", MAX_UNWRAP_DEPTH)
    return None


def coordinate_text(value: Any) -> str:
    """Render a single coordinate as a decimal-degree string or UNKNOWN."""
    if value is None or isinstance(value, bool):
        return UNKNOWN
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or UNKNOWN
    return UNKNOWN


def split_coordinates(value: Any) -> tuple[str, str]:
    """Split a combined ``"lat,lon"`` reading on its first comma.

    Two-element sequences are accepted as well.  Anything yielding fewer
    than two usable parts resolves both coordinates to UNKNOWN.
    """
    if isinstance(value, (list, tuple)):
        parts = list(value)
    elif isinstance(value, str):
        parts = value.split(",", 1)
    else:
        return UNKNOWN, UNKNOWN

    if len(parts) < 2:
        return UNKNOWN, UNKNOWN
    lat, lon = coordinate_text(parts[0]), coordinate_text(parts[1])
    if UNKNOWN in (lat, lon):
        return UNKNOWN, UNKNOWN
    return lat, lon


def format_coordinates(latitude: str, longitude: str) -> str:
    """Join two coordinate strings as ``"lat, lon"`` or return UNKNOWN."""
    if UNKNOWN in (latitude, longitude):
        return UNKNOWN
    return f"{latitude}, {longitude}"


def capture_timestamp(now: Optional[datetime] = None) -> str:
    """Human-readable local capture time (device clocks are not trusted)."""
    return (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


# ── helpers ─────────────────────────────────────────────────────────


def _first(item: dict, keys: tuple[str, ...]) -> Any:
    """Return the first present, non-blank value among *keys*."""
    for key in keys:
        value = item.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, tuple)):
        return UNKNOWN
    return str(value).strip() or UNKNOWN


def _resolve_status(status: Any, uid: str) -> AttendanceStatus:
    if isinstance(status, str) and status.strip().lower() == "present":
        return AttendanceStatus.PRESENT
    if uid and uid != UNKNOWN:
        return AttendanceStatus.PRESENT
    return AttendanceStatus.UNKNOWN


def _resolve_date_time(date: Any, time_: Any, timestamp: Any) -> tuple[str, str]:
    date_text = _text(date)
    time_text = _text(time_)
    if timestamp is None or (date_text != UNKNOWN and time_text != UNKNOWN):
        return date_text, time_text

    parsed = _parse_timestamp(timestamp)
    if date_text == UNKNOWN:
        # Calendar date is taken as written in the source, not shifted to local time
        match = _DATE_RE.match(timestamp) if isinstance(timestamp, str) else None
        if match:
            date_text = match.group(1)
        elif parsed is not None:
            date_text = parsed.date().isoformat()
    if time_text == UNKNOWN and parsed is not None:
        time_text = parsed.strftime("%H:%M")
    return date_text, time_text


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch number into local time."""
    try:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
            return datetime.fromtimestamp(seconds)
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            return parsed.astimezone() if parsed.tzinfo is not None else parsed
    except (ValueError, OverflowError, OSError) as exc:
        logger.debug("Unparseable timestamp %r: %s", value, exc)
    return None
