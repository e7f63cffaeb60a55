"""Tests for telemetry sources and channel mapping."""

import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from idguard_telemetry.config import ChannelConfig, ReconnectConfig, TelemetryConfig
from idguard_telemetry.connection import ConnectionState, WebSocketTelemetrySource
from idguard_telemetry.errors import ParseError, ServerRejected, Unreachable
from idguard_telemetry.models import ChannelRole
from idguard_telemetry.source import ChannelMap, HttpTelemetrySource


def _response(status: int = 200, body: bytes = b"", reason: str = "") -> MagicMock:
    resp = MagicMock()
    resp.ok = 200 <= status < 300
    resp.status_code = status
    resp.reason = reason
    resp.content = body
    return resp


def _http_source(session: MagicMock) -> HttpTelemetrySource:
    config = TelemetryConfig(
        base_url="https://kv.example/api/",
        token="tok-123",
        channel_path="/get?token={token}&{channel}",
        batch_path="/attendance",
        timeout_seconds=2.5,
    )
    return HttpTelemetrySource(config, session=session)


class TestChannelMap:
    """Role → channel id resolution."""

    def test_resolve(self) -> None:
        cmap = ChannelMap.from_config(ChannelConfig(sos_marker="V9"))
        assert cmap.resolve(ChannelRole.SOS_MARKER) == "V9"
        assert cmap.resolve(ChannelRole.TAG_IDENTITY) == "V0"

    def test_missing_role_rejected(self) -> None:
        with pytest.raises(ValueError, match="sos-marker"):
            ChannelMap({ChannelRole.TAG_IDENTITY: "V0", ChannelRole.LOCATION: "V1"})


class TestHttpTelemetrySource:
    """HTTP key-value backend."""

    def test_channel_url(self) -> None:
        source = _http_source(MagicMock())
        assert source.channel_url("V2") == "https://kv.example/api/get?token=tok-123&V2"
        assert source.batch_url() == "https://kv.example/api/attendance"

    def test_plain_text_channel(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=b"18.52,73.85")
        value = asyncio.run(_http_source(session).read_channel("V1"))

        assert value == "18.52,73.85"
        session.get.assert_called_once_with(
            "https://kv.example/api/get?token=tok-123&V1", timeout=2.5
        )

    def test_single_element_array_unwrapped(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=b'["Library|18.52,73.85"]')
        assert asyncio.run(_http_source(session).read_channel("V2")) == "Library|18.52,73.85"

    def test_non_success_status(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(status=400, reason="Bad Request")
        with pytest.raises(ServerRejected) as excinfo:
            asyncio.run(_http_source(session).read_channel("V2"))
        assert excinfo.value.status == 400
        assert str(excinfo.value) == "Server returned 400: Bad Request"

    def test_connection_error(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(Unreachable):
            asyncio.run(_http_source(session).read_batch())

    def test_timeout(self) -> None:
        session = MagicMock()
        session.get.side_effect = requests.Timeout()
        with pytest.raises(Unreachable, match="Timed out after 2.5s"):
            asyncio.run(_http_source(session).read_channel("V0"))

    @pytest.mark.parametrize("body", [b"93E5", b"123456789012345678901234", b"0042", b" 1e3\n"])
    def test_numeric_looking_tag_stays_text(self, body: bytes) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=body)
        assert asyncio.run(_http_source(session).read_channel("V0")) == body.decode().strip()

    def test_quoted_string_body_is_decoded(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=b'"93E5"')
        assert asyncio.run(_http_source(session).read_channel("V0")) == "93E5"

    def test_batch_decodes_json(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=b'[{"uid": "A1"}]')
        assert asyncio.run(_http_source(session).read_batch()) == [{"uid": "A1"}]

    def test_batch_parse_error(self) -> None:
        session = MagicMock()
        session.get.return_value = _response(body=b"<html>oops</html>")
        with pytest.raises(ParseError):
            asyncio.run(_http_source(session).read_batch())

    def test_close(self) -> None:
        session = MagicMock()
        asyncio.run(_http_source(session).close())
        session.close.assert_called_once()


class TestWebSocketTelemetrySource:
    """Push-channel backend cache and backoff."""

    @staticmethod
    def _source(**reconnect) -> WebSocketTelemetrySource:
        config = TelemetryConfig(
            backend="websocket",
            base_url="ws://127.0.0.1:9",
            reconnect=ReconnectConfig(**reconnect),
        )
        return WebSocketTelemetrySource(config, ["V0", "V1", "V2"])

    def test_cached_update_is_returned(self) -> None:
        source = self._source()

        async def scenario():
            source.apply_message('{"type": "update", "channel": "V2", "value": "SOS"}')
            try:
                return await source.read_channel("V2")
            finally:
                await source.close()

        assert asyncio.run(scenario()) == "SOS"
        assert source.state is ConnectionState.SHUTTING_DOWN

    def test_batch_message(self) -> None:
        source = self._source()

        async def scenario():
            source.apply_message(b'{"type": "batch", "records": [{"uid": "A1"}]}')
            try:
                return await source.read_batch()
            finally:
                await source.close()

        assert asyncio.run(scenario()) == [{"uid": "A1"}]

    def test_read_before_connect_is_unreachable(self) -> None:
        source = self._source()

        async def scenario():
            try:
                await source.read_channel("V0")
            finally:
                await source.close()

        with pytest.raises(Unreachable):
            asyncio.run(scenario())

    def test_apply_message_reports_type(self) -> None:
        source = self._source()
        assert source.apply_message('{"type": "ping"}') == "ping"
        assert source.apply_message("not json") is None
        assert source.apply_message("[1, 2]") is None

    def test_backoff_grows_and_caps(self) -> None:
        source = self._source(initial_delay_ms=1000, max_delay_ms=8000,
                              backoff_multiplier=2, jitter_pct=0)
        delays = []
        for attempt in range(1, 7):
            source._attempt = attempt
            delays.append(source.next_delay())
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]

    def test_backoff_jitter_bounds(self) -> None:
        source = self._source(initial_delay_ms=1000, jitter_pct=20)
        source._attempt = 1
        for _ in range(50):
            assert 0.8 <= source.next_delay() <= 1.2
