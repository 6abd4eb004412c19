"""
Liquidation price estimation and live risk bands.

The same estimate is shared by the exposure, scenario and live-risk
views:

    Long:  entry * (1 - 1/leverage + mmr)
    Short: entry * (1 + 1/leverage - mmr)

where ``mmr`` is the maintenance margin ratio of the position's tier
in the exchange leverage-bracket schedule.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from ..execution.models import LONG, LeverageBracket, Position
from .pnl import calculate_pnl

DEFAULT_MAINT_MARGIN_RATIO = 0.004

SAFE = "safe"
WARNING = "warning"
DANGER = "danger"
UNKNOWN = "unknown"


def find_maint_margin_ratio(
    brackets: Optional[Sequence[LeverageBracket]],
    leverage: int,
    notional: Optional[float] = None,
    default: float = DEFAULT_MAINT_MARGIN_RATIO,
) -> float:
    """Look up the maintenance margin ratio for a position.

    With `notional`, the bracket whose ``[floor, cap)`` range contains it is
    used.  Otherwise the tier is the bracket with the smallest maximum
    leverage that still allows `leverage`; if none allows it, the bracket
    with the highest maximum leverage is used.  Without brackets, `default`.
    """
    if not brackets:
        return default
    if notional is not None:
        for bracket in brackets:
            if bracket.notional_floor <= notional < bracket.notional_cap:
                return bracket.maint_margin_ratio
    allowing = [b for b in brackets if b.initial_leverage >= leverage]
    if allowing:
        return min(allowing, key=lambda b: b.initial_leverage).maint_margin_ratio
    return max(brackets, key=lambda b: b.initial_leverage).maint_margin_ratio


def liquidation_price(
    entry_price: float,
    leverage: int,
    direction: str,
    maint_margin_ratio: float = DEFAULT_MAINT_MARGIN_RATIO,
) -> float:
    """Estimated price at which the exchange force-closes the position."""
    if direction == LONG:
        return entry_price * (1 - 1 / leverage + maint_margin_ratio)
    return entry_price * (1 + 1 / leverage - maint_margin_ratio)


def distance_to_liquidation(live_price: float, liq_price: float, direction: str) -> float:
    """Percent the price can move against the position before liquidation."""
    if direction == LONG:
        return (live_price - liq_price) / live_price * 100
    return (liq_price - live_price) / live_price * 100


def risk_band(distance: Optional[float]) -> str:
    if distance is None:
        return UNKNOWN
    if distance > 20:
        return SAFE
    if distance >= 10:
        return WARNING
    return DANGER


def is_liquidated(price: float, liq_price: float, direction: str) -> bool:
    """Whether `price` is at or beyond the liquidation price."""
    if direction == LONG:
        return price <= liq_price
    return price >= liq_price


@dataclass
class LiveRiskMetric:
    """Live liquidation and exposure figures for one position."""
    position_id: str
    symbol: str
    direction: str
    leverage: int
    entry_price: float
    maint_margin_ratio: float
    liquidation_price: float
    live_price: Optional[float] = None
    distance_to_liquidation: Optional[float] = None
    live_exposure: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    unrealized_pnl_pct: Optional[float] = None

    @property
    def band(self) -> str:
        return risk_band(self.distance_to_liquidation)


def live_risk_metrics(
    positions: Sequence[Position],
    prices: Mapping[str, float],
    brackets: Optional[Mapping[str, List[LeverageBracket]]] = None,
    default_mmr: float = DEFAULT_MAINT_MARGIN_RATIO,
) -> List[LiveRiskMetric]:
    """Compute a `LiveRiskMetric` per position.

    Positions whose symbol has no live price keep ``None`` in every
    price-dependent field.
    """
    brackets = brackets or {}
    metrics: List[LiveRiskMetric] = []
    for pos in positions:
        mmr = find_maint_margin_ratio(brackets.get(pos.symbol), pos.leverage, pos.total_exposure, default_mmr)
        liq = liquidation_price(pos.entry_price, pos.leverage, pos.direction, mmr)
        metric = LiveRiskMetric(
            position_id=pos.id,
            symbol=pos.symbol,
            direction=pos.direction,
            leverage=pos.leverage,
            entry_price=pos.entry_price,
            maint_margin_ratio=mmr,
            liquidation_price=liq,
        )
        live = prices.get(pos.symbol)
        if live:
            metric.live_price = live
            metric.distance_to_liquidation = distance_to_liquidation(live, liq, pos.direction)
            metric.live_exposure = pos.quantity * live
            metric.unrealized_pnl, metric.unrealized_pnl_pct = calculate_pnl(
                pos.entry_price, live, pos.investment_amount, pos.leverage, pos.direction,
            )
        metrics.append(metric)
    return metrics


def bracket_summary(metrics: Sequence[LiveRiskMetric]) -> Dict[str, int]:
    """Count positions per risk band."""
    counts = {SAFE: 0, WARNING: 0, DANGER: 0, UNKNOWN: 0}
    for metric in metrics:
        counts[metric.band] += 1
    return counts
