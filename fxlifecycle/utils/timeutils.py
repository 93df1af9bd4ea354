"""
Timestamp, trading day and session utilities.

This module centralises all time handling.  The engine represents
instants as integer epoch milliseconds (UTC) so that replay fixtures,
persisted contexts and live quotes compare without timezone surprises;
pandas is used for parsing and calendar arithmetic.
"""

from __future__ import annotations

from datetime import time
from typing import Any, Iterable, Optional
import math
import pandas as pd

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

# Asia open, London open, New York open, London close, New York close.
SESSION_BOUNDARIES_UTC = (time(0, 0), time(7, 0), time(12, 0), time(16, 0), time(21, 0))


def parse_time_str(ts: str) -> time:
    """Parse a `HH:MM` string into a `datetime.time` object."""
    hour, minute = map(int, ts.split(":"))
    return time(hour=hour, minute=minute)


def to_epoch_ms(value: Any) -> int:
    """Normalise an epoch‑millisecond number or ISO‑8601 string.

    Raises
    ------
    ValueError
        If the value cannot be parsed or is not a positive instant.
    """
    if value is None:
        raise ValueError("Invalid timestamp: None")
    if isinstance(value, pd.Timestamp):
        ts = value
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = math.nan
        if math.isfinite(number):
            if number <= 0:
                raise ValueError(f"Invalid timestamp: {value!r}")
            return int(number)
        try:
            ts = pd.Timestamp(str(value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    if ts is pd.NaT:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    ms = int(ts.value // 1_000_000)
    if ms <= 0:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return ms


def to_timestamp(ms: int) -> pd.Timestamp:
    """Convert epoch milliseconds into a UTC `pandas.Timestamp`."""
    return pd.Timestamp(int(ms), unit="ms", tz="UTC")


def to_iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return to_timestamp(ms).isoformat()


def trading_day_key(ms: int, rollover_hour_utc: int = 0) -> str:
    """Return the trading day of `ms` for a day that rolls at the given UTC hour."""
    hour = _safe_hour(rollover_hour_utc)
    return to_timestamp(ms - hour * MS_PER_HOUR).strftime("%Y-%m-%d")


def _safe_hour(value: Any) -> int:
    try:
        hour = int(math.floor(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(23, hour))


def minutes_until_next_rollover(ms: int, rollover_hour_utc: int = 0) -> float:
    """Minutes from `ms` until the next rollover at the given UTC hour.

    An instant exactly on the rollover already belongs to the new day,
    so the next rollover is a full day away.
    """
    now = to_timestamp(ms)
    target = now.normalize() + pd.Timedelta(hours=_safe_hour(rollover_hour_utc))
    if now >= target:
        target += pd.Timedelta(days=1)
    return max(0.0, (target - now).total_seconds() / 60.0)


def is_within_pre_rollover_window(ms: int, window_minutes: float, rollover_hour_utc: int = 0) -> bool:
    window = max(0.0, float(window_minutes or 0))
    if window <= 0:
        return False
    return minutes_until_next_rollover(ms, rollover_hour_utc) <= window


def is_within_session_transition_buffer(
    ms: int,
    buffer_minutes: float,
    boundaries: Iterable[time] = SESSION_BOUNDARIES_UTC,
) -> bool:
    """Check whether `ms` lies within `buffer_minutes` of a session boundary.

    Boundaries are UTC wall‑clock times; the distance wraps around
    midnight so that 23:50 is ten minutes from the 00:00 boundary.
    """
    buffer = max(0.0, float(buffer_minutes or 0))
    if buffer <= 0:
        return False
    ts = to_timestamp(ms)
    minute_of_day = ts.hour * 60 + ts.minute + ts.second / 60.0
    for boundary in boundaries:
        b = boundary.hour * 60 + boundary.minute
        distance = abs(minute_of_day - b)
        distance = min(distance, 1440 - distance)
        if distance <= buffer:
            return True
    return False


def is_in_session(ms: int, session_start: time, session_end: time) -> bool:
    """Check whether `ms` is within the UTC trading session (end exclusive)."""
    current_time = to_timestamp(ms).time()
    return session_start <= current_time < session_end
