"""Shared fakes for telemetry sources and geolocation providers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import pytest

from idguard_telemetry.config import ChannelConfig
from idguard_telemetry.models import Coordinate
from idguard_telemetry.source import ChannelMap


class FakeSource:
    """In-memory TelemetrySource; tests poke ``channels``/``batch``/``errors``."""

    def __init__(self, channels: Optional[dict] = None, batch: Any = None) -> None:
        self.channels: dict[str, Any] = dict(channels or {})
        self.batch = batch
        self.errors: dict[str, Exception] = {}
        self.reads: list[str] = []
        self.closed = False

    async def read_channel(self, channel_id: str) -> Any:
        self.reads.append(channel_id)
        if channel_id in self.errors:
            raise self.errors[channel_id]
        return self.channels.get(channel_id)

    async def read_batch(self) -> Any:
        self.reads.append("batch")
        if "batch" in self.errors:
            raise self.errors["batch"]
        return self.batch

    async def close(self) -> None:
        self.closed = True


class FakeGeolocation:
    """Provider that returns *coordinate*, raises *error* or sleeps *delay* first."""

    def __init__(
        self,
        coordinate: Optional[Coordinate] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.coordinate = coordinate
        self.error = error
        self.delay = delay
        self.calls: list[tuple[float, bool]] = []

    async def get_current_position(self, timeout: float, high_accuracy: bool) -> Coordinate:
        self.calls.append((timeout, high_accuracy))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.coordinate


@pytest.fixture
def channels() -> ChannelMap:
    return ChannelMap.from_config(ChannelConfig(tag_identity="V0", location="V1", sos_marker="V2"))


@pytest.fixture
def restore_root_logging():
    """Undo handler changes made by ``setup_logging`` during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
