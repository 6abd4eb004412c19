"""
Deterministic trend scoring.

Short-term direction is scored on hourly closes and medium-term
direction on daily closes, from the deviation of the last close to a
moving average, a momentum term and a volatility penalty.  The output
is a score, not a forecast.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple
import pandas as pd

from ..analysis.volatility import Candles, to_frame
from ..utils.timeutils import now_utc

UP = "up"
DOWN = "down"
SIDEWAYS = "sideways"


@dataclass
class TrendPrediction:
    direction: str
    confidence: int
    horizon: str
    label: str
    timestamp: pd.Timestamp = field(default_factory=now_utc)


def _indicators(closes: pd.Series, average_period: int) -> Tuple[float, float, float]:
    """Return ``(trend_pct, momentum_pct, volatility_pct)``."""
    last = float(closes.iloc[-1])
    average = float(closes.iloc[-average_period:].mean())
    trend = (last - average) / average * 100 if average else 0.0

    recent = closes.iloc[-20:]
    mean = float(recent.mean())
    volatility = float(recent.std(ddof=0)) / mean * 100 if mean else 0.0

    base = float(closes.iloc[-10]) if len(closes) >= 10 else float(closes.iloc[0])
    momentum = (last - base) / base * 100 if base else 0.0
    return trend, momentum, volatility


def score_direction(trend: float, momentum: float, volatility: float) -> Tuple[str, int]:
    """Blend trend and momentum into a direction and a 0-100 confidence."""
    combined = trend * 0.6 + momentum * 0.4
    if abs(combined) < 1:
        direction = SIDEWAYS
        confidence = 50 + (20 if volatility < 2 else 0)
    else:
        direction = UP if combined > 0 else DOWN
        confidence = min(95, 50 + abs(combined) * 8)
    if volatility > 5:
        confidence = max(40, confidence - 15)
    return direction, int(round(confidence))


def predict_trend(hourly: Candles, daily: Candles) -> Tuple[TrendPrediction, TrendPrediction]:
    """Score the short-term (1-24h) and medium-term (1-7d) direction.

    Empty inputs score as sideways with neutral confidence.
    """
    results = []
    for candles, period, horizon, label in (
        (hourly, 24, 'short-term', '1-24 hours'),
        (daily, 7, 'medium-term', '1-7 days'),
    ):
        closes = to_frame(candles)['close']
        if len(closes) < 2:
            results.append(TrendPrediction(SIDEWAYS, 50, horizon, label))
            continue
        direction, confidence = score_direction(*_indicators(closes, period))
        results.append(TrendPrediction(direction, confidence, horizon, label))
    return results[0], results[1]
