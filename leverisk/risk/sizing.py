"""
Risk-based position sizing.

The position is sized so that a stop-out loses exactly the configured
share of capital: the risk budget divided by the stop distance
expressed as a fraction of the entry price.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..execution.errors import InputValidationError


@dataclass
class SizeResult:
    """Output of `size_position`.

    Attributes
    ----------
    position_size : float
        Notional value of the position in quote currency.
    contracts : float
        Position size divided by the entry price.
    margin_required : float
        Notional divided by leverage.
    risk_amount : float
        Quote currency lost if the stop is hit.
    reward_amount : float
        Quote currency gained at the target.
    risk_reward_ratio : float
        ``reward_amount / risk_amount``.
    """
    position_size: float
    contracts: float
    margin_required: float
    risk_amount: float
    reward_amount: float
    risk_reward_ratio: float


def size_position(
    capital: float,
    risk_percent: float,
    entry_price: float,
    stop_price: float,
    leverage: int,
    target_price: Optional[float] = None,
    reward_to_risk: float = 2.0,
) -> SizeResult:
    """Size a position from a fixed capital-risk budget.

    Without `target_price` the reward distance is `reward_to_risk` times the
    stop distance.

    Raises
    ------
    InputValidationError
        If any amount or price is non-positive, leverage is below 1, the
        stop equals the entry, or the target is not on the profit side.
    """
    if capital <= 0:
        raise InputValidationError("Capital must be positive")
    if risk_percent <= 0:
        raise InputValidationError("Risk percent must be positive")
    if entry_price <= 0 or stop_price <= 0:
        raise InputValidationError("Entry and stop prices must be positive")
    if leverage < 1:
        raise InputValidationError("Leverage must be at least 1")
    if stop_price == entry_price:
        raise InputValidationError("Stop price must differ from entry price")

    risk_amount = capital * risk_percent / 100
    stop_distance = abs(stop_price - entry_price) / entry_price
    position_size = risk_amount / stop_distance

    if target_price is None:
        reward_distance = stop_distance * reward_to_risk
    else:
        # The target must lie on the opposite side of entry from the stop.
        if (target_price - entry_price) * (stop_price - entry_price) >= 0:
            raise InputValidationError("Target price must be on the profit side of entry")
        reward_distance = abs(target_price - entry_price) / entry_price
    reward_amount = position_size * reward_distance

    return SizeResult(
        position_size=position_size,
        contracts=position_size / entry_price,
        margin_required=position_size / leverage,
        risk_amount=risk_amount,
        reward_amount=reward_amount,
        risk_reward_ratio=reward_amount / risk_amount,
    )
