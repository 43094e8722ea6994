"""
Clock and duration utilities.

All timestamps handled by the engine are timezone-aware
`pandas.Timestamp` values in UTC.  Centralising conversion here keeps
the persisted ISO strings, CSV inputs and the injected test clocks
consistent with each other.
"""

from __future__ import annotations

from typing import Any
import pandas as pd


def utc_now() -> pd.Timestamp:
    """Return the current time as a UTC `pandas.Timestamp`."""
    return pd.Timestamp.now(tz="UTC")


def to_utc(ts: Any) -> pd.Timestamp:
    """Convert a timestamp-like value to a UTC `pandas.Timestamp`.

    Naive values are assumed to already be in UTC.  Integers and floats
    are interpreted as UNIX epochs in milliseconds, which is how alert
    payloads usually carry their timestamps.
    """
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        ts = pd.Timestamp(ts, unit="ms")
    elif not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def format_duration(duration: pd.Timedelta) -> str:
    """Render a duration as ``1d 2h 3m 4s``, dropping leading zero units."""
    total = int(max(duration.total_seconds(), 0))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
