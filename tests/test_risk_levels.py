import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leverisk.config.schema import RiskConfig
from leverisk.execution.errors import InputValidationError
from leverisk.execution.models import LONG, SHORT
from leverisk.risk.levels import (
    calculate_risk_levels,
    capital_risk_pct,
    placeholder_levels,
    plan_position,
)

import unittest
import pandas as pd


def _ohlc(closes, spread):
    closes = pd.Series(closes, dtype=float)
    return pd.DataFrame({'high': closes + spread, 'low': closes - spread, 'close': closes})


CANDLE_SETS = {
    'empty': [],
    'short': [100.0, 101.0, 99.5],
    'calm': [100.0 + (0.01 if i % 2 else 0.0) for i in range(60)],
    'wild': [100.0 if i % 2 else 150.0 for i in range(60)] + [100.0],
    'ohlc': _ohlc([100 + (i % 7) - 3 for i in range(60)], 1.5),
}
LEVERAGES = [1, 2, 3, 5, 10, 15, 20, 25, 50, 75, 100, 125]


class TestCapitalRiskClamp(unittest.TestCase):
    def test_stop_risk_stays_inside_band(self) -> None:
        """Every stop implies a capital risk between 0.5% and 2%."""
        cfg = RiskConfig()
        for name, candles in CANDLE_SETS.items():
            for leverage in LEVERAGES:
                for direction in (LONG, SHORT):
                    levels = calculate_risk_levels(100.0, 1000.0, leverage, direction, candles, cfg)
                    risk = capital_risk_pct(100.0, levels.stop_loss.price, leverage)
                    msg = f"{name} {direction} {leverage}x: risk {risk:.4f}%"
                    self.assertGreaterEqual(risk, cfg.min_capital_risk_pct - 1e-9, msg)
                    self.assertLessEqual(risk, cfg.max_capital_risk_pct + 1e-9, msg)
                    self.assertGreaterEqual(levels.stop_loss.capital_risk_percent, cfg.min_capital_risk_pct)
                    self.assertLessEqual(levels.stop_loss.capital_risk_percent, cfg.max_capital_risk_pct)

    def test_wide_atr_is_pulled_in_to_ceiling(self) -> None:
        levels = calculate_risk_levels(100.0, 1000.0, 1, LONG, CANDLE_SETS['wild'])
        self.assertAlmostEqual(levels.stop_loss.price, 98.0)
        self.assertAlmostEqual(levels.stop_loss.capital_risk_percent, 2.0)

    def test_tiny_atr_is_pushed_out_to_floor(self) -> None:
        levels = calculate_risk_levels(100.0, 1000.0, 1, SHORT, CANDLE_SETS['calm'])
        self.assertAlmostEqual(levels.stop_loss.price, 100.5)
        self.assertAlmostEqual(levels.stop_loss.capital_risk_percent, 0.5)


class TestLevelOrdering(unittest.TestCase):
    def test_long_and_short_ordering(self) -> None:
        for name, candles in CANDLE_SETS.items():
            for leverage in LEVERAGES:
                long_levels = calculate_risk_levels(100.0, 500.0, leverage, LONG, candles)
                self.assertLess(long_levels.stop_loss.price, 100.0, name)
                for tp in long_levels.take_profits:
                    self.assertGreater(tp.price, 100.0, name)

                short_levels = calculate_risk_levels(100.0, 500.0, leverage, SHORT, candles)
                self.assertGreater(short_levels.stop_loss.price, 100.0, name)
                for tp in short_levels.take_profits:
                    self.assertLess(tp.price, 100.0, name)

    def test_targets_increase_away_from_entry(self) -> None:
        levels = calculate_risk_levels(100.0, 500.0, 10, LONG, CANDLE_SETS['ohlc'])
        prices = [tp.price for tp in levels.take_profits]
        self.assertEqual(len(prices), 3)
        self.assertEqual(prices, sorted(prices))

    def test_identical_inputs_give_identical_output(self) -> None:
        first = calculate_risk_levels(100.0, 500.0, 20, SHORT, CANDLE_SETS['ohlc'])
        second = calculate_risk_levels(100.0, 500.0, 20, SHORT, CANDLE_SETS['ohlc'])
        self.assertEqual(first.stop_loss, second.stop_loss)
        self.assertEqual(first.take_profits, second.take_profits)


class TestValidation(unittest.TestCase):
    def test_rejects_bad_inputs(self) -> None:
        with self.assertRaises(InputValidationError):
            calculate_risk_levels(0.0, 100.0, 10, LONG, [])
        with self.assertRaises(InputValidationError):
            calculate_risk_levels(100.0, -1.0, 10, LONG, [])
        with self.assertRaises(InputValidationError):
            calculate_risk_levels(100.0, 100.0, 0, LONG, [])
        with self.assertRaises(InputValidationError):
            calculate_risk_levels(100.0, 100.0, 200, LONG, [])
        with self.assertRaises(InputValidationError):
            calculate_risk_levels(100.0, 100.0, 10, 'Sideways', [])

    def test_plan_position_builds_valid_position(self) -> None:
        position = plan_position('btcusdt', LONG, 100.0, 250.0, 10, CANDLE_SETS['ohlc'])
        self.assertEqual(position.symbol, 'BTCUSDT')
        self.assertAlmostEqual(position.total_exposure, 2500.0)
        self.assertAlmostEqual(position.quantity, 25.0)
        self.assertFalse(position.imported)


class TestPlaceholderLevels(unittest.TestCase):
    def test_imported_exits(self) -> None:
        tps, stop = placeholder_levels(200.0, SHORT, 5, 100.0)
        self.assertEqual([round(tp.price, 6) for tp in tps], [196.0, 192.0, 188.0])
        self.assertAlmostEqual(stop.price, 204.0)
        self.assertIn("please review", stop.rationale)


if __name__ == '__main__':
    unittest.main()
