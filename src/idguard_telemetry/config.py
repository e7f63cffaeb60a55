"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → raw config value default.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

from idguard_telemetry.models import ChannelRole

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters for push-channel backends."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: int = 2
    jitter_pct: int = 20


@dataclass
class TelemetryConfig:
    """Where and how the telemetry endpoint is reached.

    ``channel_path`` and ``batch_path`` are appended to ``base_url`` and may
    reference ``{token}`` and ``{channel}``.
    """

    backend: str = "http"
    base_url: str = "https://blynk.cloud/external/api"
    token: str = ""
    channel_path: str = "/get?token={token}&{channel}"
    batch_path: str = "/attendance"
    timeout_seconds: float = 10.0
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class ChannelConfig:
    """Backend channel id for each logical role."""

    tag_identity: str = "V0"
    location: str = "V1"
    sos_marker: str = "V2"

    def as_mapping(self) -> dict[ChannelRole, str]:
        return {
            ChannelRole.TAG_IDENTITY: self.tag_identity,
            ChannelRole.LOCATION: self.location,
            ChannelRole.SOS_MARKER: self.sos_marker,
        }


@dataclass
class AttendanceConfig:
    """Attendance polling behaviour.

    ``mode`` is ``"batch"`` for backends returning a record array and
    ``"channels"`` for per-channel scalar backends.
    """

    mode: str = "batch"
    discard_stale_responses: bool = False


@dataclass
class SosConfig:
    """SOS channel interpretation and banner lifecycle."""

    banner_seconds: float = 4.0
    separator: str = "|"
    idle_values: list[str] = field(default_factory=lambda: ["null", "none", "0"])
    subject_name: str = "Device Owner"
    fallback_label: str = "unknown"
    fallback_coordinates: str = "unknown"


@dataclass
class TrackingConfig:
    """On-demand location capture settings."""

    timeout_seconds: float = 10.0
    high_accuracy: bool = True
    map_base_url: str = "https://www.google.com/maps"


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/idguard-telemetry/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    viewer_id: str = "viewer-01"
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    channels: ChannelConfig = field(default_factory=ChannelConfig)
    attendance: AttendanceConfig = field(default_factory=AttendanceConfig)
    sos: SosConfig = field(default_factory=SosConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(value: str, overrides: dict[str, str] | None = None) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment or CLI overrides"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(obj: Any, overrides: dict[str, str] | None = None) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides) for item in obj]
    return obj


def _pick(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys of *raw* that are fields of dataclass *cls*."""
    return {k: raw[k] for k in raw if k in cls.__dataclass_fields__}


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    telemetry_raw = dict(raw.get("telemetry", {}))
    reconnect_raw = telemetry_raw.pop("reconnect", {})
    channels_raw = raw.get("channels", {})
    logging_raw = dict(raw.get("logging", {}))
    log_file_raw = logging_raw.pop("file", {})

    return AppConfig(
        viewer_id=raw.get("viewer_id", "viewer-01"),
        telemetry=TelemetryConfig(
            reconnect=ReconnectConfig(**_pick(ReconnectConfig, reconnect_raw)),
            **_pick(TelemetryConfig, telemetry_raw),
        ),
        channels=ChannelConfig(
            tag_identity=channels_raw.get(ChannelRole.TAG_IDENTITY.value, "V0"),
            location=channels_raw.get(ChannelRole.LOCATION.value, "V1"),
            sos_marker=channels_raw.get(ChannelRole.SOS_MARKER.value, "V2"),
        ),
        attendance=AttendanceConfig(**_pick(AttendanceConfig, raw.get("attendance", {}))),
        sos=SosConfig(**_pick(SosConfig, raw.get("sos", {}))),
        tracking=TrackingConfig(**_pick(TrackingConfig, raw.get("tracking", {}))),
        logging=LoggingConfig(
            file=LogFileConfig(**_pick(LogFileConfig, log_file_raw)),
            **_pick(LoggingConfig, logging_raw),
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    schema_path: Optional[str | Path] = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw_bytes = Path(path).read_bytes()
    raw: dict[str, Any] = orjson.loads(raw_bytes)

    interpolated = _walk_and_interpolate(raw, overrides=overrides)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
