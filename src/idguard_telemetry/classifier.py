"""Classify raw telemetry payloads into one of the known source shapes.

Classification pipeline::

    raw value
      │
      ├─ None / blank / "null" / []        → EMPTY
      ├─ JSON text that fails to decode    → DELIMITED   (plain reading, e.g. "lat,lon")
      ├─ list of objects                   → RECORD_ARRAY
      ├─ object                            → SINGLE_RECORD
      ├─ string or number                  → DELIMITED
      └─ anything else (bool, mixed list)  → MALFORMED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional

import orjson

# Maximum bytes of raw payload preserved in malformed results.
MAX_RAW_PAYLOAD_BYTES = 4096

# Maximum JSON-in-text and single-element-array layers unwrapped per payload.
MAX_UNWRAP_DEPTH = 32

_NULL_TEXT = {"", "null", "none", "undefined"}


class PayloadShape(enum.Enum):
    """Known raw payload shapes."""

    RECORD_ARRAY = "record_array"
    SINGLE_RECORD = "single_record"
    DELIMITED = "delimited"
    EMPTY = "empty"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class ClassifiedPayload:
    """A raw payload tagged with its shape.

    ``value`` is a ``list[dict]`` for RECORD_ARRAY, a ``dict`` for
    SINGLE_RECORD, a stripped ``str`` for DELIMITED and ``None`` otherwise.
    """

    shape: PayloadShape
    value: Any = None
    reason: Optional[str] = None
    raw: str = ""
    raw_truncated: bool = False


def classify(raw: Any) -> ClassifiedPayload:
    """Classify a single raw payload.  Never raises.

    Parameters
    ----------
    raw:
        Text or bytes straight from the wire, or an already-decoded JSON
        value (list, dict, number).
    """
    # JSON text and single-element wrappers are peeled off iteratively
    for _ in range(MAX_UNWRAP_DEPTH):
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")

        if raw is None:
            return ClassifiedPayload(PayloadShape.EMPTY)

        if isinstance(raw, str):
            text = raw.strip()
            if text.lower() in _NULL_TEXT:
                return ClassifiedPayload(PayloadShape.EMPTY)
            if not looks_like_json(text):
                return ClassifiedPayload(PayloadShape.DELIMITED, value=text)
            try:
                raw = orjson.loads(text)
            except orjson.JSONDecodeError:
                return ClassifiedPayload(PayloadShape.DELIMITED, value=text)
            continue

        if isinstance(raw, bool):
            return _malformed("boolean payload has no canonical meaning", raw)

        if isinstance(raw, (int, float)):
            return ClassifiedPayload(PayloadShape.DELIMITED, value=str(raw))

        if isinstance(raw, dict):
            return ClassifiedPayload(PayloadShape.SINGLE_RECORD, value=raw)

        if isinstance(raw, (list, tuple)):
            if not raw:
                return ClassifiedPayload(PayloadShape.EMPTY)
            if all(isinstance(item, dict) for item in raw):
                return ClassifiedPayload(PayloadShape.RECORD_ARRAY, value=list(raw))
            # Single-element scalar arrays are how some key-value backends wrap a pin value
            if len(raw) == 1:
                raw = raw[0]
                continue
            return _malformed("array mixes records and scalar values", raw)

        return _malformed(f"unsupported payload type {type(raw).__name__}", raw)

    return _malformed(
        f"payload nested deeper than {MAX_UNWRAP_DEPTH} levels",
        f"<{type(raw).__name__} nested beyond {MAX_UNWRAP_DEPTH} levels>",
    )


def looks_like_json(text: str) -> bool:
    """True when *text* opens like a JSON array, object or string."""
    return bool(text) and text[0] in "[{\""


# ── helpers ─────────────────────────────────────────────────────────


def _malformed(reason: str, raw: Any) -> ClassifiedPayload:
    """Build a MALFORMED result with truncation handling."""
    try:
        raw_str = orjson.dumps(raw, default=str).decode()
    except (TypeError, RecursionError):
        raw_str = f"<unserializable {type(raw).__name__}>"
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str.encode("utf-8")[:MAX_RAW_PAYLOAD_BYTES].decode("utf-8", errors="ignore")

    return ClassifiedPayload(
        PayloadShape.MALFORMED,
        reason=reason,
        raw=raw_str,
        raw_truncated=truncated,
    )
