"""
Closed-trade bookkeeping.

When a tracked position goes away it becomes a `TradeRecord`: the exit
price, the realised P&L and how it ended.  Only a take-profit exit
counts as a win; a stop-loss exit and a manual close do not.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import pandas as pd

from ..execution.errors import InputValidationError
from ..execution.models import (
    LONG,
    MANUALLY_CLOSED,
    SL_HIT,
    TP_HIT,
    TRADE_OUTCOMES,
    Position,
    TradeRecord,
)
from ..risk.pnl import calculate_pnl


@dataclass
class PerformanceStats:
    total_trades: int = 0
    wins: int = 0
    win_rate: float = 0.0
    total_pnl_usd: float = 0.0
    by_outcome: Dict[str, int] = field(default_factory=dict)


def infer_outcome(position: Position, exit_price: float) -> str:
    """Classify an exit at `exit_price` against the position's levels.

    A price at or beyond the stop is a stop-loss exit, a price at or
    beyond any take-profit is a take-profit exit, anything else was
    closed by hand.
    """
    if position.direction == LONG:
        if exit_price <= position.stop_loss.price:
            return SL_HIT
        if any(exit_price >= tp.price for tp in position.take_profits):
            return TP_HIT
    else:
        if exit_price >= position.stop_loss.price:
            return SL_HIT
        if any(exit_price <= tp.price for tp in position.take_profits):
            return TP_HIT
    return MANUALLY_CLOSED


def close_trade(position: Position, exit_price: float, outcome: Optional[str] = None) -> TradeRecord:
    """Build the trade record of `position` closed at `exit_price`.

    Parameters
    ----------
    position : Position
        The position being closed.
    exit_price : float
        Price the position was closed at.
    outcome : str, optional
        One of ``TRADE_OUTCOMES``; inferred from the price when omitted.

    Raises
    ------
    InputValidationError
        On a non-positive exit price or an unknown outcome.
    """
    if exit_price <= 0:
        raise InputValidationError("Exit price must be positive")
    if outcome is None:
        outcome = infer_outcome(position, exit_price)
    elif outcome not in TRADE_OUTCOMES:
        raise InputValidationError(f"Unknown trade outcome {outcome!r}")
    pnl_usd, pnl_percent = calculate_pnl(
        position.entry_price, exit_price, position.investment_amount, position.leverage, position.direction,
    )
    return TradeRecord(
        id=position.id,
        symbol=position.symbol,
        direction=position.direction,
        entry_price=position.entry_price,
        exit_price=exit_price,
        investment_amount=position.investment_amount,
        pnl_usd=pnl_usd,
        pnl_percent=pnl_percent,
        outcome=outcome,
    )


def calculate_performance(trades: Sequence[TradeRecord]) -> PerformanceStats:
    """Aggregate win rate and realised P&L over `trades`."""
    if not trades:
        return PerformanceStats()
    df = pd.DataFrame([t.to_dict() for t in trades])
    counts = df['outcome'].value_counts()
    wins = int(counts.get(TP_HIT, 0))
    return PerformanceStats(
        total_trades=len(df),
        wins=wins,
        win_rate=wins / len(df) * 100,
        total_pnl_usd=float(df['pnl_usd'].sum()),
        by_outcome={str(k): int(v) for k, v in counts.items()},
    )
