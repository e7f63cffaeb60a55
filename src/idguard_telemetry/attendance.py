"""Attendance polling lifecycle.

State machine::

    IDLE → LOADING → SUCCESS
                   → ERROR
    (any) → poll() → LOADING

Each successful poll fully replaces the record batch: the backend is a
single-current-state feed, not an event log.  Failures never propagate;
they become ``ERROR`` with a human-readable reason and the previous batch
stays visible.  There is no automatic retry.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from idguard_telemetry.classifier import PayloadShape, classify
from idguard_telemetry.config import AttendanceConfig
from idguard_telemetry.errors import ParseError, TelemetryError
from idguard_telemetry.models import CanonicalRecord, ChannelRole
from idguard_telemetry.normalizer import Normalizer
from idguard_telemetry.source import ChannelMap, TelemetrySource

logger = logging.getLogger(__name__)


class PollState(enum.Enum):
    """Lifecycle states of the attendance poller."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class DisplayState(enum.Enum):
    """Mutually exclusive states the view renders."""

    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"
    EMPTY = "empty"
    READY = "ready"


class AttendancePoller:
    """Own the attendance fetch lifecycle and the current record batch.

    Parameters
    ----------
    source:
        Telemetry backend.
    channels:
        Role mapping, used in ``channels`` mode.
    normalizer:
        Record normalizer (owns the id source for synthesized ids).
    config:
        Mode and stale-response policy.
    """

    def __init__(
        self,
        source: TelemetrySource,
        channels: ChannelMap,
        normalizer: Optional[Normalizer] = None,
        config: Optional[AttendanceConfig] = None,
    ) -> None:
        self._source = source
        self._channels = channels
        self._normalizer = normalizer or Normalizer()
        self._config = config or AttendanceConfig()
        self._state = PollState.IDLE
        self._error: Optional[str] = None
        self._records: list[CanonicalRecord] = []
        self._issued = 0
        self._applied = 0

    # ── observable state ────────────────────────────────────────────

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def records(self) -> list[CanonicalRecord]:
        return list(self._records)

    @property
    def display_state(self) -> DisplayState:
        if self._state is PollState.LOADING:
            return DisplayState.LOADING
        if self._state is PollState.ERROR:
            return DisplayState.ERROR
        if self._state is PollState.IDLE:
            return DisplayState.IDLE
        return DisplayState.READY if self._records else DisplayState.EMPTY

    # ── operations ──────────────────────────────────────────────────

    async def poll(self) -> PollState:
        """Fetch, normalize and publish the current attendance batch."""
        self._issued += 1
        seq = self._issued
        self._state = PollState.LOADING
        self._error = None

        try:
            records = await self._fetch()
        except TelemetryError as exc:
            return self._settle(seq, error=str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.exception("Unexpected attendance fetch failure")
            return self._settle(seq, error=str(exc) or "Failed to fetch attendance")

        return self._settle(seq, records=records)

    # ── internal ────────────────────────────────────────────────────

    async def _fetch(self) -> list[CanonicalRecord]:
        if self._config.mode == "channels":
            tag = await self._source.read_channel(self._channels.resolve(ChannelRole.TAG_IDENTITY))
            location = await self._source.read_channel(self._channels.resolve(ChannelRole.LOCATION))
            return self._normalizer.normalize_channels(tag, location)

        raw = await self._source.read_batch()
        payload = classify(raw)
        if payload.shape is PayloadShape.MALFORMED:
            raise ParseError(f"Unexpected attendance payload: {payload.reason}")
        return self._normalizer.normalize_records(raw)

    def _settle(
        self,
        seq: int,
        records: Optional[list[CanonicalRecord]] = None,
        error: Optional[str] = None,
    ) -> PollState:
        if seq < self._applied and self._config.discard_stale_responses:
            logger.info("Discarding stale attendance response #%d (latest applied #%d)",
                        seq, self._applied)
            return self._state
        self._applied = max(self._applied, seq)

        if error is not None:
            logger.error("Fetch attendance error: %s", error)
            self._state = PollState.ERROR
            self._error = error
        else:
            self._records = records or []
            self._state = PollState.SUCCESS
            self._error = None
            logger.info("Attendance poll #%d: %d record(s)", seq, len(self._records))
        return self._state
