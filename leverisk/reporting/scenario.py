"""
What-if price shock simulation.

A uniform percentage shock is applied to the current price of every
open position.  For each position the projected P&L impact is the
change in P&L between the current price and the shocked price,
settled at the stop or the first crossed target when the move crosses one of
them.  The projection is stateless and repeatable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence

from ..execution.errors import InputValidationError
from ..execution.models import LeverageBracket, PositionWithPrice
from ..risk.liquidation import (
    DEFAULT_MAINT_MARGIN_RATIO,
    find_maint_margin_ratio,
    is_liquidated,
    liquidation_price,
)
from ..risk.pnl import calculate_pnl

MAX_SHOCK_PCT = 50.0


@dataclass(frozen=True)
class ScenarioPreset:
    name: str
    shock_pct: float
    description: str


SCENARIO_PRESETS = (
    ScenarioPreset('Market Crash', -20.0, 'Simulate a 20% market downturn'),
    ScenarioPreset('Bull Run', 30.0, 'Simulate a 30% market rally'),
    ScenarioPreset('High Volatility Down', -15.0, 'Simulate 15% downward volatility'),
    ScenarioPreset('High Volatility Up', 15.0, 'Simulate 15% upward volatility'),
)


@dataclass
class PositionOutcome:
    position_id: str
    symbol: str
    simulated_price: float
    projected_pnl: float
    projected_pnl_pct: float
    pnl_from_entry: float
    tp_hit: bool
    sl_hit: bool
    liquidation_risk: bool
    liquidation_price: float


@dataclass
class ScenarioResult:
    shock_pct: float
    total_impact_usd: float = 0.0
    total_impact_pct: float = 0.0
    outcomes: List[PositionOutcome] = field(default_factory=list)

    @property
    def liquidations(self) -> List[PositionOutcome]:
        return [o for o in self.outcomes if o.liquidation_risk]


def get_preset(name: str) -> ScenarioPreset:
    for preset in SCENARIO_PRESETS:
        if preset.name.lower() == name.lower():
            return preset
    raise InputValidationError(f"Unknown scenario preset: {name!r}")


def _crossed(start: float, end: float, level: float) -> bool:
    """Whether moving from `start` to `end` reaches `level` (start excluded)."""
    if end > start:
        return start < level <= end
    if end < start:
        return end <= level < start
    return False


def simulate_scenario(
    marked: Sequence[PositionWithPrice],
    shock_pct: float,
    brackets: Optional[Mapping[str, List[LeverageBracket]]] = None,
    default_mmr: float = DEFAULT_MAINT_MARGIN_RATIO,
) -> ScenarioResult:
    """Project a uniform price shock across the marked positions.

    Raises
    ------
    InputValidationError
        If `shock_pct` is outside ``[-50, 50]``.
    """
    if not -MAX_SHOCK_PCT <= shock_pct <= MAX_SHOCK_PCT:
        raise InputValidationError(f"Shock must be within +/-{MAX_SHOCK_PCT:.0f}%")
    brackets = brackets or {}
    result = ScenarioResult(shock_pct=shock_pct)
    total_capital = 0.0

    for item in marked:
        pos = item.position
        current = item.current_price
        simulated = current * (1 + shock_pct / 100)

        def pnl_at(price: float) -> float:
            return calculate_pnl(pos.entry_price, price, pos.investment_amount, pos.leverage, pos.direction)[0]

        crossed_tps = [tp for tp in pos.take_profits if _crossed(current, simulated, tp.price)]
        tp_hit = bool(crossed_tps)
        sl_hit = _crossed(current, simulated, pos.stop_loss.price)

        settle_price = simulated
        if sl_hit:
            settle_price = pos.stop_loss.price
        elif tp_hit:
            settle_price = crossed_tps[0].price
        impact = pnl_at(settle_price) - pnl_at(current)

        mmr = find_maint_margin_ratio(brackets.get(pos.symbol), pos.leverage, pos.total_exposure, default_mmr)
        liq = liquidation_price(pos.entry_price, pos.leverage, pos.direction, mmr)

        result.outcomes.append(PositionOutcome(
            position_id=pos.id,
            symbol=pos.symbol,
            simulated_price=simulated,
            projected_pnl=impact,
            projected_pnl_pct=impact / pos.investment_amount * 100,
            pnl_from_entry=pnl_at(settle_price),
            tp_hit=tp_hit,
            sl_hit=sl_hit,
            liquidation_risk=is_liquidated(simulated, liq, pos.direction),
            liquidation_price=liq,
        ))
        total_capital += pos.investment_amount

    result.total_impact_usd = sum(o.projected_pnl for o in result.outcomes)
    result.total_impact_pct = result.total_impact_usd / total_capital * 100 if total_capital else 0.0
    return result
