"""Logging setup: single-line JSON records on stderr with secret redaction.

Device tokens travel inside request URLs (``...?token=abc&V0``), so besides
scrubbing known secret values taken from the config, every ``token=``
query parameter is masked before a record is emitted.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Optional

import orjson

from idguard_telemetry.config import LogFileConfig

REDACTED = "[REDACTED]"

_TOKEN_PARAM_RE = re.compile(r"(?i)\b((?:auth_?)?token=)[^&\s\"']+")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


class TokenRedactingFilter(logging.Filter):
    """Scrub known secret values and ``token=`` URL parameters."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # Single characters would redact half of every message
        self._secrets = sorted(
            {s for s in (secret_values or []) if s and len(s) > 1},
            key=len,
            reverse=True,
        )

    def filter(self, record: logging.LogRecord) -> bool:
        # Render once so secrets inside %-args are caught too
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return _TOKEN_PARAM_RE.sub(lambda m: m.group(1) + REDACTED, text)


def collect_secret_values(config_dict: dict[str, Any], patterns: list[str] | None = None) -> list[str]:
    """Collect string values whose config *keys* match a shell-glob in *patterns*."""
    results: list[str] = []
    if patterns:
        _walk(config_dict, [p.lower() for p in patterns], results)
    return results


def _walk(obj: Any, patterns: list[str], out: list[str]) -> None:
    if isinstance(obj, dict):
        for key, val in obj.items():
            if isinstance(val, str) and any(fnmatch.fnmatch(str(key).lower(), p) for p in patterns):
                out.append(val)
            _walk(val, patterns, out)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk(item, patterns, out)


def setup_logging(
    level: str,
    fmt: str = "json",
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger: stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    if level.lower() == "warn":
        level = "warning"
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = JsonFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT)
    redactor = TokenRedactingFilter(secret_values)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        # Handler-level so records from child loggers are scrubbed as well
        handler.addFilter(redactor)
        root.addHandler(handler)
