"""
Value and time formatting helpers shared by identity, filtering and display.

String forms follow the conventions of the table viewer front end:
booleans render as ``true``/``false``, integral floats drop the ``.0`` and
containers render as compact JSON.
"""
import json
import math
import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional


class _Missing:
    """Marker for a column absent from a row (distinct from a null value)"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_FRACTION_RE = re.compile(r"(\.\d+)")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_display_string(value: Any) -> str:
    """String form of a scalar value"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def format_cell_value(value: Any) -> str:
    """Format a cell value for display"""
    if value is MISSING:
        return ""
    if value is None:
        return "NULL"
    return to_display_string(value)


def format_diff_value(value: Any, max_length: int = 30) -> str:
    """Format a diff value for display, truncated"""
    if value is None:
        return "NULL"
    if value is MISSING:
        return "-"
    text = to_display_string(value)
    return text[:max_length] + "..." if len(text) > max_length else text


def parse_timestamp(timestamp: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware datetime.

    A trailing ``Z`` is accepted, fractional seconds beyond microseconds are
    truncated and naive values are taken as UTC.
    """
    if not isinstance(timestamp, str) or not timestamp:
        raise ValueError(f"Invalid timestamp: {timestamp!r}")
    text = timestamp.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: m.group(1)[:7].ljust(7, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_ms(timestamp: str) -> int:
    """Whole milliseconds since the epoch for an ISO-8601 timestamp (sub-millisecond digits are dropped)"""
    return (parse_timestamp(timestamp) - _EPOCH) // timedelta(milliseconds=1)


def format_time(timestamp: str, now: Optional[float] = None) -> str:
    """Format a timestamp as a relative time ("just now", "5s ago", ...)"""
    try:
        event_ms = timestamp_ms(timestamp)
    except ValueError:
        return timestamp

    now_ms = (now if now is not None else time.time()) * 1000.0
    diff = now_ms - event_ms

    if diff < 1000:
        return "just now"
    if diff < 60000:
        return f"{int(diff // 1000)}s ago"
    if diff < 3600000:
        return f"{int(diff // 60000)}m ago"
    return parse_timestamp(timestamp).astimezone().strftime("%H:%M:%S")
