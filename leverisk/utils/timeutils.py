"""
Timestamp helpers.

All timestamps handled by the engine are timezone-aware UTC
`pandas.Timestamp` objects.  The exchange speaks epoch milliseconds,
persisted state speaks ISO-8601; this module converts between them.
"""

from __future__ import annotations

from typing import Union
import pandas as pd


def now_utc() -> pd.Timestamp:
    """Return the current time as a UTC `pandas.Timestamp`."""
    return pd.Timestamp.now(tz="UTC")


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""
    return int(now_utc().value // 1_000_000)


def from_ms(value: Union[int, float, str]) -> pd.Timestamp:
    """Convert epoch milliseconds (as sent by the exchange) to UTC."""
    return pd.Timestamp(int(value), unit="ms", tz="UTC")


def to_utc(ts: Union[pd.Timestamp, str]) -> pd.Timestamp:
    """Parse or convert a timestamp to UTC.

    Naive timestamps are assumed to already be in UTC.
    """
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")
