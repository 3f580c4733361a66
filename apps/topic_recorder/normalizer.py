from __future__ import annotations

import json
from datetime import datetime
from typing import Any

PARSE_FAILED: dict[str, str] = {"message": "json parse failed"}

# Values at or above this magnitude are epoch milliseconds, not seconds.
_MILLIS_THRESHOLD = 1e11
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def parse_failed_line() -> str:
    return _dumps({"ext": {}, "raw": PARSE_FAILED})


def format_timestamp(value: Any) -> str | None:
    """Render a numeric epoch timestamp (seconds or millis) as local time."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        seconds = value / 1000 if abs(value) >= _MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(int(seconds)).strftime(_TIME_FORMAT)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_payload(payload: bytes) -> str:
    """Turn a raw broker payload into the ``{"ext", "raw"}`` journal line."""
    text = payload.decode("utf-8", errors="replace")
    try:
        value = json.loads(text, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return parse_failed_line()

    ext: dict[str, str] = {}
    if isinstance(value, dict):
        formatted = format_timestamp(value.get("timestamp"))
        if formatted is not None:
            ext["timestamp"] = formatted
    return _dumps({"ext": ext, "raw": value})
