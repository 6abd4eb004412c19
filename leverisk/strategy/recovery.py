"""
Recovery options for a losing position.

For a position marked below water four ways out are weighed: re-plan
the exits around the current price, close part of it, hedge it with an
opposite position, or average the entry down (up, for a short).  Each
option carries a rough recovery potential and a risk grade; the list is
ordered from the safest option to the riskiest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

from ..analysis.volatility import Candles, compute_metrics, nearest_structure
from ..config.schema import RiskConfig
from ..execution.errors import InsufficientDataError
from ..execution.models import LONG, SHORT, PositionWithPrice, direction_sign

logger = logging.getLogger(__name__)

LOW = "low"
MEDIUM = "medium"
HIGH = "high"
_RISK_ORDER = {LOW: 0, MEDIUM: 1, HIGH: 2}

REPLAN = "replan-exits"
PARTIAL_CLOSE = "partial-close"
HEDGE = "hedge"
AVERAGE = "dollar-cost-average"

HEDGE_MIN_LOSS_PCT = 5.0
AVERAGE_MAX_LOSS_PCT = 50.0


@dataclass
class RecoveryOption:
    kind: str
    description: str
    risk: str
    recovery_pct: float
    details: Dict[str, Any] = field(default_factory=dict)


def recovery_options(marked: PositionWithPrice, candles: Optional[Candles] = None,
                     config: Optional[RiskConfig] = None) -> List[RecoveryOption]:
    """Rank the recovery options of a losing position.

    Parameters
    ----------
    marked : PositionWithPrice
        The position marked to its current price.
    candles : DataFrame or sequence of float, optional
        Recent candles for ATR and support/resistance.  Without them the
        ATR falls back to ``default_atr_pct`` of the price.
    config : RiskConfig, optional
        ATR period, structure lookback and fallback percentage.

    Returns
    -------
    list of RecoveryOption
        Empty when the position is unpriced or not losing.
    """
    if not marked.price_available or marked.pnl_percent >= 0:
        return []
    cfg = config or RiskConfig()
    position = marked.position
    price = marked.current_price
    sign = direction_sign(position.direction)
    loss_pct = abs(marked.pnl_percent)

    metrics = None
    if candles is not None and len(candles):
        try:
            metrics = compute_metrics(candles, cfg.atr_period, cfg.sr_lookback, cfg.default_atr_pct)
        except InsufficientDataError as exc:
            logger.debug("No usable candles for %s: %s", position.symbol, exc)
    atr = metrics.atr if metrics is not None and metrics.atr > 0 else price * cfg.default_atr_pct

    options = []

    target_distance_pct = 2.5 * atr / price * 100
    options.append(RecoveryOption(
        kind=REPLAN,
        description="Move the take-profit and stop-loss around the current price",
        risk=LOW,
        recovery_pct=min(80.0, target_distance_pct * position.leverage * 0.5),
        details={
            'take_profit': price + sign * 2.5 * atr,
            'stop_loss': price - sign * 1.2 * atr,
        },
    ))

    close_pct = 50.0 if loss_pct > 30 else 30.0
    equity = position.investment_amount + marked.pnl_usd
    options.append(RecoveryOption(
        kind=PARTIAL_CLOSE,
        description=f"Close {close_pct:.0f}% of the position to cap the loss",
        risk=LOW,
        recovery_pct=close_pct * 0.8,
        details={
            'close_pct': close_pct,
            'capital_recovered': equity * close_pct / 100,
            'remaining_exposure': position.total_exposure * (1 - close_pct / 100),
        },
    ))

    if loss_pct >= HEDGE_MIN_LOSS_PCT:
        size_pct = min(80.0, loss_pct * 1.5)
        options.append(RecoveryOption(
            kind=HEDGE,
            description=f"Open an opposite position sized at {size_pct:.0f}% of this one",
            risk=MEDIUM,
            recovery_pct=min(60.0, size_pct * 0.7),
            details={
                'direction': SHORT if position.direction == LONG else LONG,
                'size_pct': size_pct,
                'leverage': min(position.leverage, 5),
                'cost': position.investment_amount * size_pct / 100,
            },
        ))

    if loss_pct <= AVERAGE_MAX_LOSS_PCT:
        below = position.direction == LONG
        level = nearest_structure(metrics, price, below=below) if metrics is not None else None
        add_price = level if level is not None else price - sign * 1.5 * atr
        if add_price > 0 and (add_price < price if below else add_price > price):
            average = (position.entry_price + add_price) / 2
            options.append(RecoveryOption(
                kind=AVERAGE,
                description=f"Add the same investment at {add_price:.6g} to improve the average entry",
                risk=HIGH,
                recovery_pct=min(70.0, abs(position.entry_price - average)
                                 / abs(position.entry_price - price) * 100),
                details={
                    'add_price': add_price,
                    'additional_investment': position.investment_amount,
                    'new_average_entry': average,
                    'break_even': average,
                },
            ))

    return sorted(options, key=lambda o: _RISK_ORDER[o.risk])
