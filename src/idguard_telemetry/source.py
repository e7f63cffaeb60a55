"""Telemetry source capability and its HTTP key-value backend.

A source answers two questions: "what is the latest value of channel X"
(:meth:`TelemetrySource.read_channel`) and "what records do you hold"
(:meth:`TelemetrySource.read_batch`).  Which backend channel plays which
logical role is decided by a :class:`ChannelMap`, never by the source.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol

import orjson
import requests

from idguard_telemetry.classifier import looks_like_json
from idguard_telemetry.config import ChannelConfig, TelemetryConfig
from idguard_telemetry.errors import ParseError, ServerRejected, Unreachable
from idguard_telemetry.models import ChannelRole

logger = logging.getLogger(__name__)


class TelemetrySource(Protocol):
    """Raw per-channel and batch reads from the hardware backend."""

    async def read_channel(self, channel_id: str) -> Any:
        """Return the latest raw text or decoded JSON held by *channel_id*.

        Raises
        ------
        Unreachable
            On network failure or timeout.
        ServerRejected
            On a non-success status.
        """

    async def read_batch(self) -> Any:
        """Return the decoded record array (or whatever the backend sent)."""

    async def close(self) -> None:
        """Release any held connection."""


class ChannelMap:
    """Resolve logical :class:`ChannelRole` values to backend channel ids."""

    def __init__(self, mapping: Mapping[ChannelRole, str]) -> None:
        missing = [role.value for role in ChannelRole if not mapping.get(role)]
        if missing:
            raise ValueError(f"No channel configured for role(s): {', '.join(missing)}")
        self._mapping = dict(mapping)

    @classmethod
    def from_config(cls, config: ChannelConfig) -> "ChannelMap":
        return cls(config.as_mapping())

    def resolve(self, role: ChannelRole) -> str:
        return self._mapping[role]

    def __repr__(self) -> str:
        pairs = ", ".join(f"{role.value}={cid}" for role, cid in self._mapping.items())
        return f"ChannelMap({pairs})"


class HttpTelemetrySource:
    """Pull values from a cloud key-value endpoint with HTTP GET.

    ``requests`` is blocking, so each read runs in a worker thread and the
    caller only suspends at the ``await``.

    Parameters
    ----------
    config:
        Endpoint base URL, token, path templates and timeout.
    session:
        Optional preconfigured :class:`requests.Session` (tests inject one).
    """

    def __init__(
        self,
        config: TelemetryConfig,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = config.base_url.rstrip("/")
        self._token = config.token
        self._channel_path = config.channel_path
        self._batch_path = config.batch_path
        self._timeout = config.timeout_seconds
        self._session = session or requests.Session()

    def channel_url(self, channel_id: str) -> str:
        path = self._channel_path.format(token=self._token, channel=channel_id)
        return f"{self._base_url}{path}"

    def batch_url(self) -> str:
        path = self._batch_path.format(token=self._token, channel="")
        return f"{self._base_url}{path}"

    async def read_channel(self, channel_id: str) -> Any:
        """GET one channel.

        Only array, object and string bodies are decoded as JSON.  Bare
        readings stay text so tag ids such as ``93E5`` or long numeric UIDs
        are never turned into floats.
        """
        body = await asyncio.to_thread(self._get, self.channel_url(channel_id))
        text = body.decode("utf-8", errors="replace").strip()
        if not looks_like_json(text):
            return text
        try:
            value = orjson.loads(text)
        except orjson.JSONDecodeError:
            return text
        # Key-value backends often wrap a single pin value in an array
        if isinstance(value, list) and len(value) == 1:
            return value[0]
        return value

    async def read_batch(self) -> Any:
        """GET the record array.

        Raises
        ------
        ParseError
            If the body is not valid JSON.
        """
        body = await asyncio.to_thread(self._get, self.batch_url())
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            raise ParseError(f"Attendance payload is not valid JSON: {exc}") from exc

    async def close(self) -> None:
        self._session.close()

    # ── internal ────────────────────────────────────────────────────

    def _get(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.Timeout as exc:
            raise Unreachable(f"Timed out after {self._timeout:g}s") from exc
        except requests.RequestException as exc:
            raise Unreachable(f"Endpoint unreachable: {exc}") from exc

        if not resp.ok:
            logger.warning("Telemetry endpoint returned %d for %s", resp.status_code, url)
            raise ServerRejected(resp.status_code, resp.reason or "")
        return resp.content
