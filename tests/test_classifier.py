"""Tests for the classifier module."""

import orjson
import pytest

from idguard_telemetry.classifier import (
    MAX_RAW_PAYLOAD_BYTES,
    MAX_UNWRAP_DEPTH,
    PayloadShape,
    classify,
)


@pytest.mark.parametrize("raw", [None, "", "   ", "null", "NULL", "undefined", "[]", [], b""])
def test_empty_readings(raw) -> None:
    """Absent, blank and null-like values are EMPTY, not errors."""
    assert classify(raw).shape is PayloadShape.EMPTY


def test_record_array_from_json_text() -> None:
    raw = orjson.dumps([{"uid": "A1"}, {"uid": "B2"}]).decode()
    result = classify(raw)
    assert result.shape is PayloadShape.RECORD_ARRAY
    assert [r["uid"] for r in result.value] == ["A1", "B2"]


def test_single_object_is_single_record() -> None:
    result = classify(b'{"uid": "A1"}')
    assert result.shape is PayloadShape.SINGLE_RECORD
    assert result.value == {"uid": "A1"}


def test_plain_text_is_delimited() -> None:
    result = classify(" 18.52,73.85 ")
    assert result.shape is PayloadShape.DELIMITED
    assert result.value == "18.52,73.85"


def test_broken_json_falls_back_to_delimited() -> None:
    """Text that only looks like JSON is kept as a plain reading."""
    result = classify("{not json")
    assert result.shape is PayloadShape.DELIMITED
    assert result.value == "{not json"


def test_number_is_delimited_text() -> None:
    assert classify(42).value == "42"


def test_single_element_scalar_array_is_unwrapped() -> None:
    """Key-value backends wrap pin values as ``["value"]``."""
    result = classify('["Library|18.52,73.85"]')
    assert result.shape is PayloadShape.DELIMITED
    assert result.value == "Library|18.52,73.85"


def test_mixed_array_is_malformed() -> None:
    result = classify([{"uid": "A1"}, 7])
    assert result.shape is PayloadShape.MALFORMED
    assert "mixes" in result.reason


def test_boolean_is_malformed() -> None:
    assert classify(True).shape is PayloadShape.MALFORMED


def test_malformed_raw_is_truncated() -> None:
    """Oversized malformed payloads keep at most MAX_RAW_PAYLOAD_BYTES."""
    raw = [{"blob": "x" * (MAX_RAW_PAYLOAD_BYTES + 1000)}, 1]
    result = classify(raw)
    assert result.shape is PayloadShape.MALFORMED
    assert result.raw_truncated is True
    assert len(result.raw.encode("utf-8")) <= MAX_RAW_PAYLOAD_BYTES


def test_deeply_nested_json_text_is_malformed() -> None:
    """Hostile nesting yields a MALFORMED result instead of blowing the stack."""
    raw = "[" * 500 + '"x"' + "]" * 500
    result = classify(raw)
    assert result.shape is PayloadShape.MALFORMED
    assert str(MAX_UNWRAP_DEPTH) in result.reason


def test_deeply_nested_list_is_malformed() -> None:
    raw: object = "SOS"
    for _ in range(5000):
        raw = [raw]
    result = classify(raw)
    assert result.shape is PayloadShape.MALFORMED
    assert "nested" in result.raw


def test_nesting_within_limit_still_unwraps() -> None:
    raw = "[" * (MAX_UNWRAP_DEPTH - 2) + '"SOS"' + "]" * (MAX_UNWRAP_DEPTH - 2)
    result = classify(raw)
    assert result.shape is PayloadShape.DELIMITED
    assert result.value == "SOS"
