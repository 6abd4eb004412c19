"""
Indicator-based market sentiment.

Five signals vote bullish or bearish with fixed weights: RSI(14)
extremes, the MACD line against its signal line, the drift between the
two halves of the last 20 closes, a volume surge confirming momentum,
and 10-bar momentum itself.  The net vote decides the label; its share
of the maximum possible vote is the strength.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import pandas as pd

from ..analysis.volatility import Candles, to_frame
from ..utils.timeutils import now_utc

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"

# sum of the signal weights below
MAX_SCORE = 7.0

RSI_PERIOD = 14
MACD_FAST, MACD_SLOW, MACD_SIGNAL = 12, 26, 9


@dataclass
class SentimentFactor:
    indicator: str
    value: str
    impact: str


@dataclass
class SentimentReading:
    sentiment: str
    strength: int
    bullish_score: float
    bearish_score: float
    factors: List[SentimentFactor] = field(default_factory=list)
    timestamp: pd.Timestamp = field(default_factory=now_utc)


def rsi(closes: pd.Series, period: int = RSI_PERIOD) -> float:
    """Simple-average RSI over the latest `period` changes.

    Returns 50 when the series is too short or did not move.
    """
    if len(closes) <= period:
        return 50.0
    changes = closes.diff().iloc[-period:]
    gain = float(changes.clip(lower=0).mean())
    loss = float(-changes.clip(upper=0).mean())
    if loss == 0:
        return 100.0 if gain > 0 else 50.0
    return 100 - 100 / (1 + gain / loss)


def macd(closes: pd.Series) -> Optional[Tuple[float, float]]:
    """Return ``(macd, signal)`` or ``None`` below the slow EMA period."""
    if len(closes) < MACD_SLOW:
        return None
    line = (closes.ewm(span=MACD_FAST, adjust=False).mean()
            - closes.ewm(span=MACD_SLOW, adjust=False).mean())
    settled = line.iloc[MACD_SLOW - 1:].iloc[-MACD_SIGNAL:]
    signal = float(settled.ewm(span=MACD_SIGNAL, adjust=False).mean().iloc[-1])
    return float(line.iloc[-1]), signal


def _volumes(candles: Candles) -> pd.Series:
    if isinstance(candles, pd.DataFrame) and 'volume' in candles.columns:
        return candles['volume'].astype(float).reset_index(drop=True)
    return pd.Series(dtype=float)


def analyze_sentiment(candles: Candles) -> SentimentReading:
    """Score the sentiment of a candle series.

    Parameters
    ----------
    candles : DataFrame or sequence of float
        Candles with ``close`` and, optionally, ``volume`` columns, or
        bare closes.  Without volume the volume signal stays neutral.

    Returns
    -------
    SentimentReading
        Label, 0-100 strength, both vote totals and one factor per
        signal.
    """
    closes = to_frame(candles)['close']
    volumes = _volumes(candles)
    bullish = bearish = 0.0
    factors: List[SentimentFactor] = []

    value = rsi(closes)
    if value < 30:
        bullish += 2
        impact = BULLISH
    elif value > 70:
        bearish += 2
        impact = BEARISH
    else:
        impact = NEUTRAL
    factors.append(SentimentFactor('RSI', f"{value:.1f}", impact))

    lines = macd(closes)
    impact = NEUTRAL
    if lines is not None:
        line, signal = lines
        if line > signal and line > 0:
            bullish += 2
            impact = BULLISH
        elif line < signal and line < 0:
            bearish += 2
            impact = BEARISH
        factors.append(SentimentFactor('MACD', f"{line:.4f} / {signal:.4f}", impact))
    else:
        factors.append(SentimentFactor('MACD', 'insufficient data', NEUTRAL))

    impact = NEUTRAL
    label = 'sideways'
    if len(closes) >= 20:
        recent = closes.iloc[-20:]
        first, second = float(recent.iloc[:10].mean()), float(recent.iloc[10:].mean())
        drift = (second - first) / first * 100 if first else 0.0
        if drift > 2:
            bullish += 1.5
            impact, label = BULLISH, 'uptrend'
        elif drift < -2:
            bearish += 1.5
            impact, label = BEARISH, 'downtrend'
    factors.append(SentimentFactor('Price action', label, impact))

    momentum = 0.0
    if len(closes) >= 10:
        base = float(closes.iloc[-10])
        momentum = (float(closes.iloc[-1]) - base) / base * 100 if base else 0.0

    impact = NEUTRAL
    label = 'stable'
    if len(volumes) >= 10:
        last, previous = float(volumes.iloc[-5:].mean()), float(volumes.iloc[-10:-5].mean())
        change = (last - previous) / previous * 100 if previous else 0.0
        if change > 15:
            label = 'increasing'
            if momentum > 0:
                bullish += 1
                impact = BULLISH
            elif momentum < 0:
                bearish += 1
                impact = BEARISH
        elif change < -15:
            label = 'decreasing'
    factors.append(SentimentFactor('Volume', label, impact))

    impact = NEUTRAL
    if momentum > 5:
        bullish += 0.5
        impact = BULLISH
    elif momentum < -5:
        bearish += 0.5
        impact = BEARISH
    factors.append(SentimentFactor('Momentum', f"{momentum:.2f}%", impact))

    net = bullish - bearish
    if net > 1:
        sentiment = BULLISH
    elif net < -1:
        sentiment = BEARISH
    else:
        sentiment = NEUTRAL
    strength = int(round(min(100.0, abs(net) / MAX_SCORE * 100)))
    return SentimentReading(sentiment, strength, bullish, bearish, factors)
