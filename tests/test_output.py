"""Tests for the NDJSON output module."""

import asyncio
from unittest.mock import MagicMock, patch

import orjson
import pytest
from conftest import FakeSource

from idguard_telemetry.attendance import AttendancePoller
from idguard_telemetry.models import CanonicalAlert
from idguard_telemetry.output import (
    StdoutSink,
    alert_event,
    attendance_snapshot,
    banner_event,
    location_event,
    to_ndjson,
)


class TestStdoutSink:
    """Tests for :class:`StdoutSink`."""

    def test_stdout_sink_writes_bytes(self) -> None:
        """StdoutSink writes raw bytes to stdout buffer."""
        sink = StdoutSink()
        data = b'{"event_type":"banner"}\n'

        mock_stdout = MagicMock()
        with patch("idguard_telemetry.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            sink.write(data)
            mock_stdout.buffer.write.assert_called_once_with(data)
            mock_stdout.buffer.flush.assert_called_once()

    def test_broken_pipe_propagates(self) -> None:
        mock_stdout = MagicMock()
        mock_stdout.buffer.write.side_effect = BrokenPipeError
        with patch("idguard_telemetry.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            with pytest.raises(BrokenPipeError):
                StdoutSink().emit(banner_event(True))


def test_ndjson_line_is_newline_terminated() -> None:
    data = to_ndjson(banner_event(False))
    assert isinstance(data, bytes)
    assert data.endswith(b"\n")
    assert orjson.loads(data)["visible"] is False


def test_attendance_snapshot_serializes_records(channels) -> None:
    poller = AttendancePoller(FakeSource(batch=[{"uid": "A1"}]), channels)
    asyncio.run(poller.poll())
    obj = orjson.loads(to_ndjson(attendance_snapshot(poller)))

    assert obj["event_type"] == "attendance"
    assert obj["state"] == "success"
    assert obj["display_state"] == "ready"
    assert obj["error"] is None
    assert obj["records"][0]["uid"] == "A1"
    assert obj["records"][0]["status"] == "Present"
    assert obj["records"][0]["latitude"] == "unknown"


def test_alert_event() -> None:
    alert = CanonicalAlert(id=5, subject_name="Asha", coordinates="18.52, 73.85")
    obj = orjson.loads(to_ndjson(alert_event(alert)))
    assert obj["event_type"] == "sos_alert"
    assert obj["alert"]["id"] == 5
    assert obj["alert"]["coordinates"] == "18.52, 73.85"


def test_location_event() -> None:
    ok = location_event("https://www.google.com/maps?q=1,2", None)
    failed = location_event(None, "Permission denied")
    assert ok.ok is True
    assert failed.ok is False
    assert failed.error == "Permission denied"
