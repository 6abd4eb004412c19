"""
Adjustment suggestions for open positions.

The advisor re-evaluates an open position against fresh price history
and proposes stop-loss or take-profit revisions.  Three rules are
evaluated independently and may all fire at once:

- volatility widening: realised volatility above the threshold widens
  the stop, unless the change would be noise-sized;
- structural proximity: price next to resistance (long) or support
  (short) and near the first target moves that target just beyond the
  current price;
- momentum trailing: a strong favourable move with healthy unrealised
  profit trails the stop behind price.

Suggestions carry a stable identity so that dismissed ones are not
proposed again while the underlying level is unchanged.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Collection, List, Mapping, Optional, Sequence

from ..analysis.volatility import Candles, VolatilityMetrics, compute_metrics, price_change_pct, to_frame
from ..config.schema import AdvisorConfig, RiskConfig
from ..execution.errors import InputValidationError
from ..execution.models import (
    LONG,
    STOP_LOSS,
    TAKE_PROFIT,
    AdjustmentSuggestion,
    Position,
    PositionWithPrice,
    direction_sign,
)
from ..risk.levels import capital_risk_pct

logger = logging.getLogger(__name__)

RULE_VOLATILITY = "volatility-widening"
RULE_STRUCTURE = "structure-proximity"
RULE_MOMENTUM = "momentum-trailing"


def suggestion_id(position_id: str, rule: str, current_level: float) -> str:
    return f"{position_id}:{rule}:{current_level:.8g}"


class AdjustmentAdvisor:
    """Propose exit revisions for marked positions."""

    def __init__(self, config: Optional[AdvisorConfig] = None, risk_config: Optional[RiskConfig] = None) -> None:
        self.config = config or AdvisorConfig()
        self.risk_config = risk_config or RiskConfig()

    def _metrics(self, candles: Candles) -> Optional[VolatilityMetrics]:
        frame = to_frame(candles)
        if frame.empty:
            return None
        return compute_metrics(
            frame,
            self.risk_config.atr_period,
            self.risk_config.sr_lookback,
            self.risk_config.default_atr_pct,
        )

    def _suggest(self, position: Position, kind: str, rule: str, current: float,
                 proposed: float, rationale: str, confidence: int) -> AdjustmentSuggestion:
        return AdjustmentSuggestion(
            id=suggestion_id(position.id, rule, current),
            position_id=position.id,
            kind=kind,
            rule=rule,
            current_level=current,
            proposed_level=proposed,
            rationale=rationale,
            confidence=confidence,
        )

    def _volatility_widening(self, item: PositionWithPrice, metrics: VolatilityMetrics) -> Optional[AdjustmentSuggestion]:
        cfg = self.config
        pos = item.position
        price = item.current_price
        volatility = metrics.atr / price * 100
        if volatility <= cfg.volatility_threshold_pct:
            return None
        stop = pos.stop_loss.price
        widened = abs(stop - price) / price * cfg.widen_factor
        proposed = price * (1 - direction_sign(pos.direction) * widened)
        if abs(proposed - stop) / stop * 100 <= cfg.min_change_pct:
            return None
        return self._suggest(
            pos, STOP_LOSS, RULE_VOLATILITY, stop, proposed,
            f"Market volatility increased to {volatility:.2f}%. Widening the stop-loss to avoid "
            f"a premature exit while keeping risk managed.",
            75,
        )

    def _structure_proximity(self, item: PositionWithPrice, metrics: VolatilityMetrics) -> Optional[AdjustmentSuggestion]:
        cfg = self.config
        pos = item.position
        price = item.current_price
        if not pos.take_profits:
            return None
        first_tp = pos.take_profits[0]
        level = metrics.resistance if pos.direction == LONG else metrics.support
        if level <= 0:
            return None
        near_level = abs(price - level) / level * 100 < cfg.proximity_pct
        near_target = abs(price - first_tp.price) / first_tp.price * 100 <= cfg.tp_proximity_pct
        if not (near_level and near_target):
            return None
        proposed = price * (1 + direction_sign(pos.direction) * cfg.tp_bank_pct / 100)
        name = "resistance" if pos.direction == LONG else "support"
        return self._suggest(
            pos, TAKE_PROFIT, RULE_STRUCTURE, first_tp.price, proposed,
            f"Price approaching {name} at {level:.4f}. Consider taking partial profits to secure gains.",
            70,
        )

    def _momentum_trailing(self, item: PositionWithPrice, candles: Candles,
                           metrics: VolatilityMetrics) -> Optional[AdjustmentSuggestion]:
        cfg = self.config
        pos = item.position
        price = item.current_price
        change = price_change_pct(candles, cfg.momentum_lookback, price)
        sign = direction_sign(pos.direction)
        if change * sign <= cfg.momentum_pct or item.pnl_percent <= cfg.min_pnl_pct:
            return None
        proposed = price - sign * metrics.atr * cfg.trail_atr_multiple
        stop = pos.stop_loss.price
        if (proposed - stop) * sign <= 0:
            return None
        return self._suggest(
            pos, STOP_LOSS, RULE_MOMENTUM, stop, proposed,
            f"Strong {abs(change):.1f}% momentum in your favour. Trail the stop-loss to lock in "
            f"profit while letting the position run.",
            80,
        )

    def evaluate(
        self,
        item: PositionWithPrice,
        candles: Candles,
        dismissed: Collection[str] = (),
    ) -> List[AdjustmentSuggestion]:
        """Evaluate every rule for one marked position.

        Suggestions whose id is in `dismissed` are dropped.
        """
        if not item.price_available:
            return []
        metrics = self._metrics(candles)
        if metrics is None:
            return []
        found = [
            self._volatility_widening(item, metrics),
            self._structure_proximity(item, metrics),
            self._momentum_trailing(item, candles, metrics),
        ]
        return [s for s in found if s is not None and s.id not in dismissed]

    def evaluate_all(
        self,
        marked: Sequence[PositionWithPrice],
        candles_by_symbol: Mapping[str, Candles],
        dismissed: Collection[str] = (),
    ) -> List[AdjustmentSuggestion]:
        suggestions: List[AdjustmentSuggestion] = []
        for item in marked:
            candles = candles_by_symbol.get(item.position.symbol)
            if candles is None:
                logger.debug("No price history for %s, skipping", item.position.symbol)
                continue
            suggestions.extend(self.evaluate(item, candles, dismissed))
        return suggestions


def apply_suggestion(position: Position, suggestion: AdjustmentSuggestion) -> Position:
    """Return a copy of `position` with the suggested level applied.

    A take-profit suggestion replaces the first target still priced at
    the suggestion's current level; a stop-loss suggestion replaces the
    stop and recomputes its expected loss.

    Raises
    ------
    InputValidationError
        If the suggestion belongs to another position or its level no
        longer matches the position.
    """
    if suggestion.position_id != position.id:
        raise InputValidationError("Suggestion does not belong to this position")
    if suggestion.kind == TAKE_PROFIT:
        updated = []
        applied = False
        for tp in position.take_profits:
            if not applied and abs(tp.price - suggestion.current_level) <= 1e-9 * max(1.0, abs(tp.price)):
                profit_pct = abs(suggestion.proposed_level - position.entry_price) / position.entry_price \
                    * position.leverage * 100
                tp = replace(
                    tp,
                    price=suggestion.proposed_level,
                    profit_percent=profit_pct,
                    profit_usd=position.investment_amount * profit_pct / 100,
                    rationale=suggestion.rationale,
                )
                applied = True
            updated.append(tp)
        if not applied:
            raise InputValidationError("Take-profit level has changed since the suggestion was made")
        return replace(position, take_profits=updated)
    if suggestion.kind == STOP_LOSS:
        stop = position.stop_loss
        if abs(stop.price - suggestion.current_level) > 1e-9 * max(1.0, abs(stop.price)):
            raise InputValidationError("Stop-loss has changed since the suggestion was made")
        risk = capital_risk_pct(position.entry_price, suggestion.proposed_level, position.leverage)
        # A trailed stop past entry locks in profit rather than risking capital.
        in_loss_zone = (position.entry_price - suggestion.proposed_level) * direction_sign(position.direction) > 0
        new_stop = replace(
            stop,
            price=suggestion.proposed_level,
            loss_percent=risk if in_loss_zone else -risk,
            loss_usd=position.investment_amount * (risk if in_loss_zone else -risk) / 100,
            capital_risk_percent=risk if in_loss_zone else 0.0,
            rationale=suggestion.rationale,
        )
        return replace(position, stop_loss=new_stop)
    raise InputValidationError(f"Unknown suggestion kind: {suggestion.kind!r}")

