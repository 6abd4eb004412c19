"""
Unrealized profit and loss of leveraged positions.
"""

from __future__ import annotations

from typing import Optional, Tuple

from ..execution.models import Position, PositionWithPrice, direction_sign


def calculate_pnl(
    entry_price: float,
    price: float,
    investment_amount: float,
    leverage: int,
    direction: str,
) -> Tuple[float, float]:
    """Return ``(pnl_usd, pnl_percent)`` of a position marked at `price`.

    The percentage is relative to the margin, so it scales with leverage.
    """
    if entry_price <= 0 or price <= 0:
        return 0.0, 0.0
    move = (price - entry_price) / entry_price * direction_sign(direction)
    pnl_percent = move * leverage * 100
    return investment_amount * pnl_percent / 100, pnl_percent


def mark_position(position: Position, price: Optional[float]) -> PositionWithPrice:
    """Mark a position to the latest price.

    When no price is available the position is marked at its entry
    price with zero P&L, and `price_available` is ``False``.
    """
    if price is None or price <= 0:
        return PositionWithPrice(
            position=position,
            current_price=position.entry_price,
            pnl_usd=0.0,
            pnl_percent=0.0,
            distance_to_tp1=0.0,
            distance_to_sl=0.0,
            price_available=False,
        )
    pnl_usd, pnl_percent = calculate_pnl(
        position.entry_price, price, position.investment_amount, position.leverage, position.direction,
    )
    first_tp = position.take_profits[0] if position.take_profits else None
    return PositionWithPrice(
        position=position,
        current_price=price,
        pnl_usd=pnl_usd,
        pnl_percent=pnl_percent,
        distance_to_tp1=(first_tp.price - price) / price * 100 if first_tp else 0.0,
        distance_to_sl=(position.stop_loss.price - price) / price * 100,
    )
