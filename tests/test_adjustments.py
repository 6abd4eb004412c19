import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leverisk.execution.errors import InputValidationError
from leverisk.execution.models import LONG, STOP_LOSS, TAKE_PROFIT, Position, StopLoss, TakeProfitLevel
from leverisk.risk.pnl import mark_position
from leverisk.strategy.adjustments import (
    RULE_MOMENTUM,
    RULE_STRUCTURE,
    RULE_VOLATILITY,
    AdjustmentAdvisor,
    apply_suggestion,
)

import unittest


def make_position(entry, leverage, tps, stop, investment=100.0):
    take_profits = [
        TakeProfitLevel(level=i, price=p, profit_usd=0.0, profit_percent=0.0, rationale='')
        for i, p in enumerate(tps, start=1)
    ]
    stop_loss = StopLoss(price=stop, loss_usd=0.0, loss_percent=0.0, capital_risk_percent=0.0,
                         rationale='', partial_exit_strategy='')
    return Position(id='pos-1', symbol='BTCUSDT', direction=LONG, entry_price=entry, leverage=leverage,
                    investment_amount=investment, take_profits=take_profits, stop_loss=stop_loss)


def swinging(amplitude, count=31):
    """Closes alternating between 100 and 100 + amplitude, ending on 100."""
    return [100.0 if i % 2 == 0 else 100.0 + amplitude for i in range(count)]


class TestVolatilityWidening(unittest.TestCase):
    def setUp(self) -> None:
        self.advisor = AdjustmentAdvisor()

    def test_small_change_is_suppressed(self) -> None:
        """Volatility above the threshold, but widening would move the stop under 5%."""
        item = mark_position(make_position(100.0, 10, [110.0, 120.0, 130.0], 99.0), 100.0)
        self.assertEqual(self.advisor.evaluate(item, swinging(3.2)), [])

    def test_large_change_is_proposed(self) -> None:
        item = mark_position(make_position(100.0, 10, [110.0, 120.0, 130.0], 80.0), 100.0)
        suggestions = self.advisor.evaluate(item, swinging(3.2))
        self.assertEqual([s.rule for s in suggestions], [RULE_VOLATILITY])
        suggestion = suggestions[0]
        self.assertEqual(suggestion.kind, STOP_LOSS)
        self.assertAlmostEqual(suggestion.proposed_level, 74.0)
        self.assertGreater(abs(suggestion.proposed_level - 80.0) / 80.0, 0.05)

    def test_below_threshold_is_silent(self) -> None:
        item = mark_position(make_position(100.0, 10, [110.0, 120.0, 130.0], 80.0), 100.0)
        self.assertEqual(self.advisor.evaluate(item, swinging(2.9)), [])

    def test_dismissed_suggestion_is_not_repeated(self) -> None:
        item = mark_position(make_position(100.0, 10, [110.0, 120.0, 130.0], 80.0), 100.0)
        first = self.advisor.evaluate(item, swinging(3.2))
        again = self.advisor.evaluate(item, swinging(3.2), dismissed={first[0].id})
        self.assertEqual(again, [])

    def test_missing_price_produces_nothing(self) -> None:
        item = mark_position(make_position(100.0, 10, [110.0], 80.0), None)
        self.assertEqual(self.advisor.evaluate(item, swinging(3.2)), [])


class TestStructureProximity(unittest.TestCase):
    def test_target_moved_near_resistance(self) -> None:
        position = make_position(98.0, 5, [102.0, 106.0, 110.0], 96.0)
        closes = [90.0 + i * 10.0 / 29 for i in range(30)]
        suggestions = AdjustmentAdvisor().evaluate(mark_position(position, 99.5), closes)
        self.assertEqual([s.rule for s in suggestions], [RULE_STRUCTURE])
        suggestion = suggestions[0]
        self.assertEqual(suggestion.kind, TAKE_PROFIT)
        self.assertEqual(suggestion.current_level, 102.0)
        self.assertAlmostEqual(suggestion.proposed_level, 99.5 * 1.02)

        updated = apply_suggestion(position, suggestion)
        self.assertAlmostEqual(updated.take_profits[0].price, 99.5 * 1.02)
        self.assertEqual(updated.take_profits[1].price, 106.0)
        self.assertEqual(position.take_profits[0].price, 102.0)


class TestMomentumTrailing(unittest.TestCase):
    def test_stop_trails_behind_strong_move(self) -> None:
        position = make_position(100.0, 10, [150.0, 160.0, 170.0], 95.0)
        closes = [100.0 + i * 12.0 / 29 for i in range(30)]
        suggestions = AdjustmentAdvisor().evaluate(mark_position(position, 112.0), closes)
        self.assertEqual([s.rule for s in suggestions], [RULE_MOMENTUM])
        suggestion = suggestions[0]
        self.assertAlmostEqual(suggestion.proposed_level, 112.0 - 2 * 12.0 / 29)
        self.assertGreater(suggestion.proposed_level, 95.0)

        updated = apply_suggestion(position, suggestion)
        self.assertAlmostEqual(updated.stop_loss.price, suggestion.proposed_level)
        self.assertEqual(updated.stop_loss.capital_risk_percent, 0.0)
        self.assertLess(updated.stop_loss.loss_usd, 0.0)

    def test_no_trail_without_profit(self) -> None:
        position = make_position(112.0, 10, [150.0], 108.0)
        closes = [100.0 + i * 12.0 / 29 for i in range(30)]
        self.assertEqual(AdjustmentAdvisor().evaluate(mark_position(position, 112.0), closes), [])


class TestApplySuggestion(unittest.TestCase):
    def test_rejects_stale_level(self) -> None:
        position = make_position(100.0, 10, [110.0], 80.0)
        suggestion = AdjustmentAdvisor().evaluate(mark_position(position, 100.0), swinging(3.2))[0]
        moved = make_position(100.0, 10, [110.0], 85.0)
        with self.assertRaises(InputValidationError):
            apply_suggestion(moved, suggestion)

    def test_stop_widening_recomputes_risk(self) -> None:
        position = make_position(100.0, 10, [110.0], 80.0)
        suggestion = AdjustmentAdvisor().evaluate(mark_position(position, 100.0), swinging(3.2))[0]
        updated = apply_suggestion(position, suggestion)
        self.assertAlmostEqual(updated.stop_loss.price, 74.0)
        self.assertAlmostEqual(updated.stop_loss.capital_risk_percent, 260.0)
        self.assertAlmostEqual(updated.stop_loss.loss_usd, 260.0)


if __name__ == '__main__':
    unittest.main()
