"""
Stop-loss and take-profit level calculation.

Given an entry price, leverage, direction and a candle series, this
module derives three take-profit targets and one stop-loss.  Targets
sit at increasing ATR multiples from entry and tighten as leverage
grows.  The stop starts at a leverage-scaled ATR distance, is pulled
in to the nearest swing level when that level is closer to entry, and
is finally clamped so that the capital risk it implies stays inside
the configured ``[min, max]`` band.

Everything here is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from ..analysis.volatility import Candles, VolatilityMetrics, compute_metrics, nearest_structure, to_frame
from ..config.schema import RiskConfig
from ..execution.errors import InputValidationError
from ..execution.models import (
    LONG,
    Position,
    StopLoss,
    TakeProfitLevel,
    direction_sign,
    new_position_id,
)

# Buffer placed beyond a structural level so the stop is not hit by a wick
# that merely tags the level.
STRUCTURE_BUFFER = 0.002

PARTIAL_EXIT_PLAYBOOK = (
    "Take 30-40% profit at TP1 and move the stop to breakeven. "
    "Take another 30-40% at TP2 and move the stop to TP1. "
    "Let the remaining 20-30% run to TP3 with a trailing stop at TP2."
)

_TP_ALLOCATIONS = {
    1: "Take 30-40% profit here.",
    2: "Take another 30-40% profit here.",
    3: "Let the remaining 20-30% run with a trailing stop at TP2.",
}


@dataclass
class RiskLevels:
    """Result of `calculate_risk_levels`."""
    take_profits: List[TakeProfitLevel]
    stop_loss: StopLoss
    metrics: VolatilityMetrics


def stop_atr_multiplier(leverage: int) -> float:
    """ATR multiple of the stop distance, smaller for higher leverage."""
    if leverage > 20:
        return 1.2
    if leverage > 10:
        return 1.5
    return 2.0


def target_scale(leverage: int) -> float:
    """Shrink factor applied to the take-profit ATR multiples."""
    if leverage > 50:
        return 0.5
    if leverage > 20:
        return 0.7
    if leverage > 10:
        return 0.85
    return 1.0


def capital_risk_pct(entry_price: float, stop_price: float, leverage: int) -> float:
    """Percent of margin lost if the stop is hit."""
    return abs(entry_price - stop_price) / entry_price * leverage * 100


def _validate_inputs(entry_price: float, investment_amount: float, leverage: int, config: RiskConfig) -> None:
    if entry_price <= 0:
        raise InputValidationError("Entry price must be positive")
    if investment_amount <= 0:
        raise InputValidationError("Investment amount must be positive")
    if int(leverage) != leverage or not 1 <= leverage <= config.max_leverage:
        raise InputValidationError(f"Leverage must be an integer between 1 and {config.max_leverage}")


def _metrics_for(candles: Candles, entry_price: float, config: RiskConfig) -> VolatilityMetrics:
    """Compute metrics, degrading to entry-based defaults when data is missing."""
    frame = to_frame(candles)
    if frame.empty:
        return VolatilityMetrics(
            atr=entry_price * config.default_atr_pct,
            atr_degraded=True,
            last_price=entry_price,
            support=0.0,
            resistance=0.0,
        )
    metrics = compute_metrics(frame, config.atr_period, config.sr_lookback, config.default_atr_pct)
    if metrics.atr <= 0:
        # A perfectly flat series has no range; fall back to the default estimate.
        metrics.atr = entry_price * config.default_atr_pct
        metrics.atr_degraded = True
    return metrics


def calculate_take_profits(
    entry_price: float,
    investment_amount: float,
    leverage: int,
    direction: str,
    atr: float,
    config: RiskConfig,
) -> List[TakeProfitLevel]:
    """Three targets at increasing ATR multiples from entry."""
    sign = direction_sign(direction)
    scale = target_scale(leverage)
    levels: List[TakeProfitLevel] = []
    for idx, multiple in enumerate(config.tp_atr_multiples, start=1):
        effective = multiple * scale
        price = entry_price + sign * atr * effective
        profit_pct = abs(price - entry_price) / entry_price * leverage * 100
        allocation = _TP_ALLOCATIONS.get(idx, "Scale out here.")
        levels.append(TakeProfitLevel(
            level=idx,
            price=price,
            profit_usd=investment_amount * profit_pct / 100,
            profit_percent=profit_pct,
            rationale=f"TP{idx} at {effective:.2f}x ATR ({atr:.4f}) from entry. {allocation}",
        ))
    return levels


def calculate_stop_loss(
    entry_price: float,
    investment_amount: float,
    leverage: int,
    direction: str,
    metrics: VolatilityMetrics,
    config: RiskConfig,
) -> StopLoss:
    """Stop-loss from ATR and structure, clamped to the capital-risk band."""
    sign = direction_sign(direction)
    multiplier = stop_atr_multiplier(leverage)
    stop = entry_price - sign * metrics.atr * multiplier
    basis = "volatility"

    level: Optional[float] = nearest_structure(metrics, entry_price, below=(direction == LONG))
    if level is not None:
        structural = level * (1 - sign * STRUCTURE_BUFFER)
        # Only a level closer to entry than the ATR stop tightens it.
        if (structural - stop) * sign > 0 and (entry_price - structural) * sign > 0:
            stop = structural
            basis = "structure"

    risk_pct = capital_risk_pct(entry_price, stop, leverage)
    clamp_note = ""
    if risk_pct > config.max_capital_risk_pct:
        risk_pct = config.max_capital_risk_pct
        clamp_note = " Pulled in to the capital-risk ceiling."
    elif risk_pct < config.min_capital_risk_pct:
        risk_pct = config.min_capital_risk_pct
        clamp_note = " Pushed out to the capital-risk floor to avoid noise exits."
    if clamp_note:
        stop = entry_price - sign * entry_price * risk_pct / leverage / 100

    loss_pct = capital_risk_pct(entry_price, stop, leverage)
    where = "beyond the nearest swing level" if basis == "structure" else "on volatility alone"
    rationale = (
        f"Stop placed with {multiplier}x ATR ({metrics.atr:.4f}) for {leverage}x leverage, {where}."
        f"{clamp_note} Risk limited to {risk_pct:.2f}% of capital."
    )
    return StopLoss(
        price=stop,
        loss_usd=investment_amount * loss_pct / 100,
        loss_percent=loss_pct,
        capital_risk_percent=risk_pct,
        rationale=rationale,
        partial_exit_strategy=PARTIAL_EXIT_PLAYBOOK,
    )


def calculate_risk_levels(
    entry_price: float,
    investment_amount: float,
    leverage: int,
    direction: str,
    candles: Candles,
    config: Optional[RiskConfig] = None,
) -> RiskLevels:
    """Derive take-profit and stop-loss levels for a new position.

    Parameters
    ----------
    entry_price : float
        Planned entry price (> 0).
    investment_amount : float
        Margin committed in quote currency (> 0).
    leverage : int
        Integer leverage between 1 and ``config.max_leverage``.
    direction : str
        ``'Long'`` or ``'Short'``.
    candles : DataFrame or sequence of float
        Recent price history; may be short or empty.
    config : RiskConfig, optional
        Thresholds; defaults are used when omitted.

    Raises
    ------
    InputValidationError
        On non-positive price/amount or out-of-range leverage.
    """
    config = config or RiskConfig()
    _validate_inputs(entry_price, investment_amount, leverage, config)
    direction_sign(direction)
    metrics = _metrics_for(candles, entry_price, config)
    return RiskLevels(
        take_profits=calculate_take_profits(entry_price, investment_amount, leverage, direction, metrics.atr, config),
        stop_loss=calculate_stop_loss(entry_price, investment_amount, leverage, direction, metrics, config),
        metrics=metrics,
    )


def plan_position(
    symbol: str,
    direction: str,
    entry_price: float,
    investment_amount: float,
    leverage: int,
    candles: Candles,
    config: Optional[RiskConfig] = None,
) -> Position:
    """Build a validated `Position` with calculated exits."""
    config = config or RiskConfig()
    levels = calculate_risk_levels(entry_price, investment_amount, leverage, direction, candles, config)
    position = Position(
        id=new_position_id(),
        symbol=symbol.upper(),
        direction=direction,
        entry_price=entry_price,
        leverage=int(leverage),
        investment_amount=investment_amount,
        take_profits=levels.take_profits,
        stop_loss=levels.stop_loss,
    )
    position.validate(config.max_leverage)
    return position


def placeholder_levels(entry_price: float, direction: str, leverage: int, investment_amount: float):
    """Provisional exits for a position imported from the exchange.

    Targets at 2/4/6% and a stop 2% away from entry, pending user review.
    """
    sign = direction_sign(direction)
    take_profits = []
    for idx, pct in enumerate((2.0, 4.0, 6.0), start=1):
        profit_pct = pct * leverage
        take_profits.append(TakeProfitLevel(
            level=idx,
            price=entry_price * (1 + sign * pct / 100),
            profit_usd=investment_amount * profit_pct / 100,
            profit_percent=profit_pct,
            rationale="Imported from exchange",
        ))
    loss_pct = 2.0 * leverage
    stop_loss = StopLoss(
        price=entry_price * (1 - sign * 0.02),
        loss_usd=investment_amount * loss_pct / 100,
        loss_percent=loss_pct,
        capital_risk_percent=loss_pct,
        rationale="Imported from exchange - please review",
        partial_exit_strategy="N/A",
    )
    return take_profits, stop_loss
