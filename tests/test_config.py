import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leverisk.app import main
from leverisk.config.schema import load_config
from leverisk.execution.errors import InputValidationError

import tempfile
import unittest


class TestLoadConfig(unittest.TestCase):
    def _write(self, text: str) -> str:
        fh = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False, encoding='utf-8')
        fh.write(text)
        fh.close()
        self.addCleanup(os.unlink, fh.name)
        return fh.name

    def test_missing_file_gives_defaults(self) -> None:
        cfg = load_config(os.path.join(tempfile.gettempdir(), 'no-such-config.yaml'))
        self.assertEqual(cfg.risk.atr_period, 14)
        self.assertEqual(cfg.exchange.order_timeout, 15.0)
        self.assertEqual(cfg.service.reconcile_interval, 60.0)

    def test_partial_override(self) -> None:
        path = self._write(
            "risk:\n"
            "  atr_period: 21\n"
            "  tp_atr_multiples: [1, 2, 4]\n"
            "  unknown_key: 3\n"
            "advisor:\n"
            "  min_change_pct: 7.5\n"
            "storage:\n"
            "  state_dir: /tmp/leverisk-state\n"
        )
        cfg = load_config(path)
        self.assertEqual(cfg.risk.atr_period, 21)
        self.assertEqual(cfg.risk.tp_atr_multiples, [1.0, 2.0, 4.0])
        self.assertEqual(cfg.risk.sr_lookback, 50)
        self.assertEqual(cfg.advisor.min_change_pct, 7.5)
        self.assertEqual(cfg.advisor.volatility_threshold_pct, 3.0)
        self.assertEqual(cfg.storage.state_dir, '/tmp/leverisk-state')

    def test_inverted_risk_band_is_rejected(self) -> None:
        path = self._write("risk:\n  min_capital_risk_pct: 3\n  max_capital_risk_pct: 2\n")
        with self.assertRaises(InputValidationError):
            load_config(path)

    def test_cli_reports_invalid_config(self) -> None:
        path = self._write("risk:\n  min_capital_risk_pct: 3\n  max_capital_risk_pct: 2\n")
        with self.assertLogs('leverisk.app', level='ERROR') as logs:
            code = main(['--config', path, 'capital', '1000'])
        self.assertEqual(code, 1)
        self.assertIn('min_capital_risk_pct', logs.output[0])


if __name__ == '__main__':
    unittest.main()
