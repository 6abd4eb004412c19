import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leverisk.execution.errors import InputValidationError
from leverisk.risk.sizing import size_position

import unittest


class TestPositionSizer(unittest.TestCase):
    def test_basic_sizing(self) -> None:
        result = size_position(10000, 1, 100.0, 98.0, 10)
        # 100 USD risk over a 2% stop distance
        self.assertAlmostEqual(result.risk_amount, 100.0)
        self.assertAlmostEqual(result.position_size, 5000.0)
        self.assertAlmostEqual(result.contracts, 50.0)
        self.assertAlmostEqual(result.margin_required, 500.0)
        self.assertAlmostEqual(result.reward_amount, 200.0)
        self.assertAlmostEqual(result.risk_reward_ratio, 2.0)

    def test_scale_invariance(self) -> None:
        """Doubling capital doubles every amount and keeps the ratio."""
        for target in (None, 107.0):
            base = size_position(5000, 1.5, 100.0, 97.0, 20, target_price=target)
            double = size_position(10000, 1.5, 100.0, 97.0, 20, target_price=target)
            self.assertAlmostEqual(double.position_size, 2 * base.position_size)
            self.assertAlmostEqual(double.contracts, 2 * base.contracts)
            self.assertAlmostEqual(double.risk_amount, 2 * base.risk_amount)
            self.assertAlmostEqual(double.reward_amount, 2 * base.reward_amount)
            self.assertAlmostEqual(double.risk_reward_ratio, base.risk_reward_ratio)

    def test_explicit_target(self) -> None:
        result = size_position(10000, 1, 100.0, 102.0, 5, target_price=94.0)
        self.assertAlmostEqual(result.risk_reward_ratio, 3.0)

    def test_stop_equal_to_entry_fails(self) -> None:
        with self.assertRaises(InputValidationError):
            size_position(10000, 1, 100.0, 100.0, 10)

    def test_invalid_inputs(self) -> None:
        with self.assertRaises(InputValidationError):
            size_position(0, 1, 100.0, 98.0, 10)
        with self.assertRaises(InputValidationError):
            size_position(1000, -1, 100.0, 98.0, 10)
        with self.assertRaises(InputValidationError):
            size_position(1000, 1, 100.0, 98.0, 10, target_price=97.0)


if __name__ == '__main__':
    unittest.main()
