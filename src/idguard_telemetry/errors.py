"""Exception taxonomy for the telemetry core.

None of these is fatal: the attendance poller turns transport and parse
errors into a visible error state, the SOS manager swallows them, and the
tracking session converts location errors into a failed
:class:`~idguard_telemetry.tracking.CaptureResult`.
"""

from __future__ import annotations

import enum


class TelemetryError(Exception):
    """Base class for every error raised by the core."""


class TransportError(TelemetryError):
    """The telemetry endpoint could not deliver a value."""


class Unreachable(TransportError):
    """Network failure or timeout talking to the endpoint."""


class ServerRejected(TransportError):
    """The endpoint answered with a non-success status."""

    def __init__(self, status: int, detail: str = "") -> None:
        self.status = status
        message = f"Server returned {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ParseError(TelemetryError):
    """The payload had an unexpected or undecodable shape."""


class LocationErrorKind(str, enum.Enum):
    """Why a location capture failed."""

    UNSUPPORTED = "unsupported"
    DENIED = "denied"


class LocationError(TelemetryError):
    """A geolocation capture failed."""

    kind = LocationErrorKind.DENIED

    def __init__(self, message: str, kind: LocationErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class LocationUnsupported(LocationError):
    """No geolocation capability on this host."""

    kind = LocationErrorKind.UNSUPPORTED


class LocationPermissionError(LocationError):
    """The user or the provider refused to report a position."""

    kind = LocationErrorKind.DENIED


class LocationTimeoutError(LocationError):
    """The provider did not answer within the bounded wait."""

    kind = LocationErrorKind.DENIED
