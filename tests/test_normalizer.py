from __future__ import annotations

import json
from datetime import datetime

import pytest

from apps.topic_recorder.normalizer import format_timestamp, normalize_payload


def local(seconds: int) -> str:
    return datetime.fromtimestamp(seconds).strftime("%Y-%m-%d %H:%M:%S")


def test_seconds_timestamp_is_formatted() -> None:
    line = normalize_payload(b'{"timestamp": 1700000000, "value": 5}')

    record = json.loads(line)
    assert record["ext"] == {"timestamp": local(1700000000)}
    assert record["raw"] == {"timestamp": 1700000000, "value": 5}
    assert line == json.dumps(
        {"ext": {"timestamp": local(1700000000)}, "raw": {"timestamp": 1700000000, "value": 5}},
        separators=(",", ":"),
    )


def test_millisecond_timestamp_is_scaled() -> None:
    record = json.loads(normalize_payload(b'{"timestamp": 1700000000123}'))
    assert record["ext"] == {"timestamp": local(1700000000)}


def test_fractional_seconds_are_truncated() -> None:
    record = json.loads(normalize_payload(b'{"timestamp": 1700000000.9}'))
    assert record["ext"] == {"timestamp": local(1700000000)}


@pytest.mark.parametrize(
    "payload",
    [
        b'{"value": 1}',
        b'{"timestamp": "2024-01-01"}',
        b'{"timestamp": true}',
        b'{"timestamp": null}',
        b"[1, 2, 3]",
        b"42",
    ],
)
def test_no_numeric_timestamp_gives_empty_ext(payload: bytes) -> None:
    record = json.loads(normalize_payload(payload))
    assert record["ext"] == {}
    assert record["raw"] == json.loads(payload)


def test_invalid_json_records_diagnostic() -> None:
    assert normalize_payload(b"not-json") == '{"ext":{},"raw":{"message":"json parse failed"}}'


def test_non_standard_constants_are_rejected() -> None:
    record = json.loads(normalize_payload(b'{"timestamp": NaN}'))
    assert record == {"ext": {}, "raw": {"message": "json parse failed"}}


def test_invalid_utf8_is_replaced() -> None:
    record = json.loads(normalize_payload(b'{"name": "caf\xff"}'))
    assert record["raw"] == {"name": "caf\ufffd"}


def test_output_is_single_line() -> None:
    line = normalize_payload(b'{\n  "a": "line\\nbreak",\n  "b": [1,\n 2]\n}')
    assert "\n" not in line
    assert json.loads(line)["raw"] == {"a": "line\nbreak", "b": [1, 2]}


def test_non_ascii_is_kept_verbatim() -> None:
    line = normalize_payload('{"city": "Zürich"}'.encode())
    assert '"Zürich"' in line


def test_out_of_range_timestamp_is_ignored() -> None:
    assert format_timestamp(1e30) is None


def test_millis_threshold_is_inclusive() -> None:
    assert format_timestamp(100_000_000_000) == local(100_000_000)
    assert format_timestamp(99_999_999_999) == local(99_999_999_999)


def test_negative_timestamps_use_magnitude() -> None:
    assert format_timestamp(-86_400) == local(-86_400)
    assert format_timestamp(-1_700_000_000_123) == local(-1_700_000_000)


def test_huge_integer_timestamp_gives_empty_ext() -> None:
    huge = 10**400
    payload = b'{"timestamp": 1' + b"0" * 400 + b"}"

    record = json.loads(normalize_payload(payload))
    assert record == {"ext": {}, "raw": {"timestamp": huge}}
    assert format_timestamp(-huge) is None
