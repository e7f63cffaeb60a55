"""WebSocket push-channel telemetry backend.

The device backend pushes channel updates over WSS; this source keeps the
latest value per channel so reads never block on the network.  Wire
messages (JSON)::

    → {"type": "subscribe", "token": "...", "channels": ["V0", "V1", "V2"]}
    ← {"type": "ack"}
    ← {"type": "update", "channel": "V2", "value": "Library|18.52,73.85"}
    ← {"type": "batch", "records": [{...}, ...]}
    ← {"type": "ping"}   → {"type": "pong"}
    ← {"type": "error", "code": "UNAUTHORIZED", "message": "..."}

Reconnect state machine::

    INIT → CONNECTING → (success) → CONNECTED → (disconnect) → WAIT_BACKOFF → CONNECTING
                      → (failure) →              WAIT_BACKOFF → CONNECTING
    any → (close) → SHUTTING_DOWN
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from typing import Any, Iterable, Optional

import orjson
import websockets
import websockets.exceptions

from idguard_telemetry.config import TelemetryConfig
from idguard_telemetry.errors import Unreachable

logger = logging.getLogger(__name__)

_MISSING = object()


class ConnectionState(enum.Enum):
    """States in the reconnect state machine."""

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    WAIT_BACKOFF = "WAIT_BACKOFF"
    SHUTTING_DOWN = "SHUTTING_DOWN"


class WebSocketTelemetrySource:
    """Cache pushed channel values behind the :class:`TelemetrySource` API.

    Parameters
    ----------
    config:
        Endpoint URL, token and reconnect parameters.
    channels:
        Backend channel ids to subscribe to.
    """

    def __init__(self, config: TelemetryConfig, channels: Iterable[str]) -> None:
        self._url = config.base_url
        self._token = config.token
        self._reconnect = config.reconnect
        self._channels = list(channels)
        self._state = ConnectionState.INIT
        self._shutdown = asyncio.Event()
        self._attempt = 0
        self._values: dict[str, Any] = {}
        self._batch: Any = _MISSING
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def start(self) -> None:
        """Spawn the background receive loop on the running event loop."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def read_channel(self, channel_id: str) -> Any:
        self.start()
        if channel_id in self._values:
            return self._values[channel_id]
        if self._state is not ConnectionState.CONNECTED:
            raise Unreachable(f"Push channel not connected ({self._state.value})")
        return None

    async def read_batch(self) -> Any:
        self.start()
        if self._batch is not _MISSING:
            return self._batch
        if self._state is not ConnectionState.CONNECTED:
            raise Unreachable(f"Push channel not connected ({self._state.value})")
        return []

    async def close(self) -> None:
        """Stop receiving and do not reconnect."""
        self._set_state(ConnectionState.SHUTTING_DOWN)
        self._shutdown.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def apply_message(self, raw: str | bytes) -> Optional[str]:
        """Fold one pushed message into the cache and return its type."""
        try:
            msg = orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.warning("Ignoring undecodable push message (%d bytes)", len(raw))
            return None
        if not isinstance(msg, dict):
            logger.warning("Ignoring push message of type %s", type(msg).__name__)
            return None

        msg_type = msg.get("type")
        if msg_type == "update" and msg.get("channel"):
            self._values[msg["channel"]] = msg.get("value")
        elif msg_type == "batch":
            self._batch = msg.get("records")
        elif msg_type == "error":
            logger.error("Push channel error: %s", msg.get("message"))
            if msg.get("code") in ("FORBIDDEN", "UNAUTHORIZED"):
                raise _FatalAuthError(msg.get("message", ""))
        return msg_type

    # ── internal: connect + receive ─────────────────────────────────

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self._connect_and_receive()
            except _FatalAuthError:
                logger.error("Fatal auth error, will not reconnect")
                self._set_state(ConnectionState.SHUTTING_DOWN)
                break
            except Exception as exc:
                if self._shutdown.is_set():
                    break
                logger.warning("Connection error: %s", exc)

            if self._shutdown.is_set():
                break

            await self._backoff()

    async def _connect_and_receive(self) -> None:
        self._set_state(ConnectionState.CONNECTING)

        try:
            async with websockets.connect(
                self._url,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=10,
            ) as ws:
                await ws.send(orjson.dumps({
                    "type": "subscribe",
                    "token": self._token,
                    "channels": self._channels,
                }).decode())

                ack = orjson.loads(await asyncio.wait_for(ws.recv(), timeout=10.0))
                if ack.get("type") != "ack":
                    if ack.get("type") == "error":
                        raise _FatalAuthError(ack.get("message", "subscription rejected"))
                    raise ConnectionError(f"Expected ack, got: {ack.get('type')}")

                self._set_state(ConnectionState.CONNECTED)
                self._attempt = 0

                async for raw in ws:
                    if self._shutdown.is_set():
                        break
                    if self.apply_message(raw) == "ping":
                        await ws.send(orjson.dumps({"type": "pong"}).decode())

        except _FatalAuthError:
            raise
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for subscription ack")
        except websockets.exceptions.ConnectionClosed as exc:
            logger.warning("WebSocket closed: %s", exc)
        except OSError as exc:
            logger.warning("Network error: %s", exc)

    # ── backoff ─────────────────────────────────────────────────────

    def next_delay(self) -> float:
        """Exponential backoff with jitter for the current attempt, in seconds."""
        base = self._reconnect.initial_delay_ms / 1000.0
        multiplier = self._reconnect.backoff_multiplier
        max_delay = self._reconnect.max_delay_ms / 1000.0
        jitter_pct = self._reconnect.jitter_pct / 100.0

        delay = min(base * (multiplier ** max(self._attempt - 1, 0)), max_delay)
        jitter = delay * jitter_pct * (2 * random.random() - 1)
        return max(0.1, delay + jitter)

    async def _backoff(self) -> None:
        self._set_state(ConnectionState.WAIT_BACKOFF)
        self._attempt += 1
        delay = self.next_delay()
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._attempt)

        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # backoff elapsed normally

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        self._state = new
        if old is not new:
            logger.info("Connection state: %s → %s", old.value, new.value)


class _FatalAuthError(Exception):
    """Raised when the backend rejects the token; no reconnect."""
