"""
Volatility and price-structure metrics.

This module computes the Average True Range and simple structural
levels (swing highs/lows and a trailing support/resistance pair) from
a candle series.  Candles may be supplied as a DataFrame with
``high``, ``low`` and ``close`` columns or as a plain sequence of close
prices; with closes only, the true range degrades to the absolute
close-to-close change.

The calculations fail soft: a series too short for the requested ATR
period yields a conservative default ATR (a fraction of the last
price) instead of an error, so position creation is never blocked by
missing history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import List, Optional, Sequence, Tuple, Union
import pandas as pd

from ..execution.errors import InsufficientDataError

logger = logging.getLogger(__name__)

Candles = Union[pd.DataFrame, pd.Series, Sequence[float]]


@dataclass
class VolatilityMetrics:
    """Summary of volatility and structure for one candle series.

    Attributes
    ----------
    atr : float
        Average True Range in price units.
    atr_degraded : bool
        ``True`` when `atr` is the default estimate rather than a real ATR.
    last_price : float
        Close of the most recent candle.
    support, resistance : float
        Minimum and maximum over the trailing lookback window.
    swing_lows, swing_highs : list of float
        Pivot levels, most recent last.
    """
    atr: float
    atr_degraded: bool
    last_price: float
    support: float
    resistance: float
    swing_lows: List[float] = field(default_factory=list)
    swing_highs: List[float] = field(default_factory=list)

    @property
    def volatility_pct(self) -> float:
        """ATR as a percentage of the last price."""
        return self.atr / self.last_price * 100 if self.last_price else 0.0


def to_frame(candles: Candles) -> pd.DataFrame:
    """Normalise candles to a DataFrame with ``high``, ``low``, ``close``.

    Close-only input produces a frame whose high and low equal the close,
    which makes the true range collapse to ``|close[i] - close[i-1]|``.
    """
    if isinstance(candles, pd.DataFrame):
        if 'close' not in candles.columns:
            raise ValueError("Candle frame requires a 'close' column")
        frame = candles.copy()
        for col in ('high', 'low'):
            if col not in frame.columns:
                frame[col] = frame['close']
        return frame[['high', 'low', 'close']].astype(float).reset_index(drop=True)
    closes = pd.Series(list(candles), dtype=float)
    return pd.DataFrame({'high': closes, 'low': closes, 'close': closes})


def true_range(candles: Candles) -> pd.Series:
    """True range of every candle after the first."""
    frame = to_frame(candles)
    prev_close = frame['close'].shift(1)
    upper = pd.concat([frame['high'], prev_close], axis=1).max(axis=1)
    lower = pd.concat([frame['low'], prev_close], axis=1).min(axis=1)
    return (upper - lower).iloc[1:]


def strict_atr(candles: Candles, period: int = 14) -> float:
    """Simple-average ATR over the last `period` true ranges.

    Raises
    ------
    InsufficientDataError
        If fewer than ``period + 1`` candles are available.
    """
    frame = to_frame(candles)
    if len(frame) < period + 1:
        raise InsufficientDataError(f"ATR({period}) needs {period + 1} candles, got {len(frame)}")
    return float(true_range(frame).iloc[-period:].mean())


def average_true_range(
    candles: Candles,
    period: int = 14,
    default_pct: float = 0.005,
) -> Tuple[float, bool]:
    """ATR with a soft fallback.

    Returns
    -------
    atr : float
        The ATR, or ``default_pct`` of the last price when the series is
        too short.
    degraded : bool
        Whether the fallback was used.
    """
    try:
        return strict_atr(candles, period), False
    except InsufficientDataError as exc:
        frame = to_frame(candles)
        last = float(frame['close'].iloc[-1]) if len(frame) else 0.0
        logger.debug("Using default ATR: %s", exc)
        return last * default_pct, True


def support_resistance(candles: Candles, lookback: int = 50) -> Tuple[float, float]:
    """Return ``(support, resistance)`` as min low / max high of the window."""
    frame = to_frame(candles).iloc[-lookback:]
    if frame.empty:
        return 0.0, 0.0
    return float(frame['low'].min()), float(frame['high'].max())


def swing_levels(candles: Candles, window: int = 3) -> Tuple[List[float], List[float]]:
    """Detect pivot lows and highs.

    A candle is a swing high when its high is the strict maximum of the
    ``2 * window + 1`` candles centred on it (and symmetrically for lows).

    Returns
    -------
    lows, highs : list of float
        Pivot prices in chronological order.
    """
    frame = to_frame(candles)
    lows: List[float] = []
    highs: List[float] = []
    for i in range(window, len(frame) - window):
        span = frame.iloc[i - window:i + window + 1]
        high = frame['high'].iloc[i]
        low = frame['low'].iloc[i]
        if high == span['high'].max() and (span['high'] == high).sum() == 1:
            highs.append(float(high))
        if low == span['low'].min() and (span['low'] == low).sum() == 1:
            lows.append(float(low))
    return lows, highs


def price_change_pct(candles: Candles, lookback: int = 24, price: Optional[float] = None) -> float:
    """Percent change against the close `lookback` samples ago.

    The change is measured to `price` when given (a live ticker),
    otherwise to the last close.
    """
    closes = to_frame(candles)['close']
    if closes.empty or (price is None and len(closes) < 2):
        return 0.0
    base = float(closes.iloc[max(0, len(closes) - lookback)])
    if base <= 0:
        return 0.0
    last = float(closes.iloc[-1]) if price is None else price
    return (last - base) / base * 100


def compute_metrics(
    candles: Candles,
    period: int = 14,
    lookback: int = 50,
    default_pct: float = 0.005,
) -> VolatilityMetrics:
    """Compute all metrics for a candle series."""
    frame = to_frame(candles)
    if frame.empty:
        raise InsufficientDataError("Cannot compute metrics from an empty series")
    atr, degraded = average_true_range(frame, period, default_pct)
    support, resistance = support_resistance(frame, lookback)
    lows, highs = swing_levels(frame.iloc[-lookback:])
    return VolatilityMetrics(
        atr=atr,
        atr_degraded=degraded,
        last_price=float(frame['close'].iloc[-1]),
        support=support,
        resistance=resistance,
        swing_lows=lows,
        swing_highs=highs,
    )


def nearest_structure(metrics: VolatilityMetrics, price: float, below: bool) -> Optional[float]:
    """Closest structural level strictly below (or above) `price`.

    Swing pivots are preferred; the trailing support/resistance is used
    when no pivot qualifies.
    """
    if below:
        candidates = [lvl for lvl in metrics.swing_lows + [metrics.support] if 0 < lvl < price]
        return max(candidates) if candidates else None
    candidates = [lvl for lvl in metrics.swing_highs + [metrics.resistance] if lvl > price]
    return min(candidates) if candidates else None
