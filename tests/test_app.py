import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from leverisk.app import main
from leverisk.execution.models import TP_HIT
from leverisk.utils.persistence import StateRepository

from fakes import make_position

import contextlib
import io
import tempfile
import unittest


class TestCommands(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = os.path.join(self.tmp.name, 'config.yaml')
        with open(self.config, 'w', encoding='utf-8') as fh:
            fh.write(f"storage:\n  state_dir: {os.path.join(self.tmp.name, 'state')}\n")
        self.repo = StateRepository.at(os.path.join(self.tmp.name, 'state'))

    def run_cli(self, *argv: str):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(['--config', self.config, *argv])
        return code, out.getvalue()

    def test_remove_records_the_trade(self) -> None:
        self.repo.positions.upsert(make_position())
        code, out = self.run_cli('remove', 'btcusdt', '--exit-price', '110')
        self.assertEqual(code, 0)
        self.assertIn('TP Hit', out)
        self.assertEqual(self.repo.positions.load(), [])
        self.assertEqual([t.outcome for t in self.repo.trades.load()], [TP_HIT])

        code, out = self.run_cli('performance')
        self.assertEqual(code, 0)
        self.assertIn('win rate: 100.0%', out)

    def test_remove_unknown_position_fails(self) -> None:
        with self.assertLogs('leverisk.app', level='ERROR'):
            code, _ = self.run_cli('remove', 'nope', '--exit-price', '1')
        self.assertEqual(code, 1)


if __name__ == '__main__':
    unittest.main()
