"""NDJSON output for the command-line view.

Every event is one ``orjson``-serialized line on stdout, so the stream can
be piped into ``jq`` or any line-oriented consumer.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

import orjson

from idguard_telemetry.attendance import AttendancePoller
from idguard_telemetry.models import (
    AlertEvent,
    AttendanceSnapshot,
    BannerEvent,
    CanonicalAlert,
    LocationEvent,
)

logger = logging.getLogger(__name__)


def to_ndjson(event: Any) -> bytes:
    """Serialize a dataclass event as a newline-terminated JSON line."""
    return orjson.dumps(asdict(event), option=orjson.OPT_APPEND_NEWLINE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def attendance_snapshot(poller: AttendancePoller) -> AttendanceSnapshot:
    return AttendanceSnapshot(
        received_at=_now(),
        state=poller.state.value,
        display_state=poller.display_state.value,
        error=poller.error,
        records=[asdict(r) for r in poller.records],
    )


def alert_event(alert: CanonicalAlert) -> AlertEvent:
    return AlertEvent(received_at=_now(), alert=asdict(alert))


def banner_event(visible: bool) -> BannerEvent:
    return BannerEvent(received_at=_now(), visible=visible)


def location_event(map_url: Optional[str], error: Optional[str]) -> LocationEvent:
    return LocationEvent(received_at=_now(), ok=map_url is not None, map_url=map_url, error=error)


class StdoutSink:
    """Write NDJSON bytes directly to stdout."""

    def write(self, data: bytes) -> None:
        """Write *data* to ``sys.stdout.buffer``.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        try:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise

    def emit(self, event: Any) -> None:
        self.write(to_ndjson(event))
