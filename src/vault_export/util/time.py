from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

# Epoch values above these thresholds are taken as milliseconds / microseconds.
# The vault API mixes seconds (createdTime) and microseconds (lastModificationTime).
_MILLIS_THRESHOLD = 100_000_000_000
_MICROS_THRESHOLD = 100_000_000_000_000


def utc_now_iso(seconds: bool = True) -> str:
    """
    Return current UTC time in ISO-8601 format.
    - If seconds is True, use seconds precision (stable strings).
    - Else, use milliseconds precision.
    """
    if seconds:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def utc_timestamp_dirname() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def epoch_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert an epoch value (seconds, milliseconds or microseconds; int, float or
    numeric string) to an aware UTC datetime. Returns None for empty, zero or
    non-numeric input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            value = float(raw)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    number = float(value)
    if number <= 0:
        return None
    if number >= _MICROS_THRESHOLD:
        number = number / 1_000_000
    elif number >= _MILLIS_THRESHOLD:
        number = number / 1000
    try:
        return datetime.fromtimestamp(number, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def epoch_to_date(value: Any) -> Optional[str]:
    dt = epoch_to_datetime(value)
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%d")
