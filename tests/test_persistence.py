import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from leverisk.execution.models import (
    ACCEPTED,
    DISMISSED,
    STOP_LOSS,
    AdjustmentHistoryEntry,
    AdjustmentSuggestion,
    ExchangeCredentials,
    ExchangeOrderIds,
)
from leverisk.utils.persistence import API_KEY_ENV, API_SECRET_ENV, StateRepository, load_state

from fakes import make_position

import tempfile
import unittest
from unittest import mock


def _suggestion(sid='s1'):
    return AdjustmentSuggestion(id=sid, position_id='p1', kind=STOP_LOSS, rule='volatility-widening',
                                current_level=95.0, proposed_level=93.0, rationale='wider',
                                confidence=75)


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.repo = StateRepository.at(self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()


class TestPositionStore(StoreTestCase):
    def test_round_trip_and_remove(self) -> None:
        position = make_position('ETHUSDT', pid='p1')
        position.order_ids = ExchangeOrderIds(entry='1', stop_loss='3', take_profits={1: '2'})
        self.repo.positions.upsert(position)

        loaded = self.repo.positions.get('p1')
        self.assertEqual(loaded.symbol, 'ETHUSDT')
        self.assertEqual(loaded.stop_loss, position.stop_loss)
        self.assertEqual(loaded.take_profits, position.take_profits)
        self.assertEqual(loaded.order_ids.take_profits, {1: '2'})
        self.assertEqual(loaded.created_at, position.created_at)

        self.assertTrue(self.repo.positions.remove('p1'))
        self.assertFalse(self.repo.positions.remove('p1'))
        self.assertEqual(self.repo.positions.load(), [])

    def test_subscribers_receive_new_list(self) -> None:
        received = []
        unsubscribe = self.repo.positions.subscribe(received.append)
        self.repo.positions.upsert(make_position('BTCUSDT', pid='p1'))
        unsubscribe()
        self.repo.positions.upsert(make_position('ETHUSDT', pid='p2'))
        self.assertEqual(len(received), 1)
        self.assertEqual([p.id for p in received[0]], ['p1'])


class TestHistoryStore(StoreTestCase):
    def test_duplicate_outcome_is_ignored(self) -> None:
        history = self.repo.history
        self.assertTrue(history.append(AdjustmentHistoryEntry(_suggestion(), DISMISSED)))
        self.assertFalse(history.append(AdjustmentHistoryEntry(_suggestion(), DISMISSED)))
        self.assertTrue(history.append(AdjustmentHistoryEntry(_suggestion(), ACCEPTED)))
        entries = history.load()
        self.assertEqual([e.outcome for e in entries], [DISMISSED, ACCEPTED])
        self.assertEqual(entries[0].suggestion.proposed_level, 93.0)


class TestSettingsStore(StoreTestCase):
    def test_defaults(self) -> None:
        settings = self.repo.settings.load()
        self.assertIsNone(settings.credentials)
        self.assertFalse(settings.live_trading_enabled)
        self.assertFalse(settings.live_context().ready)

    def test_changes_are_published(self) -> None:
        changes = []
        self.repo.settings.subscribe(changes.append)
        self.repo.settings.set_credentials(' key ', 'secret')
        self.repo.settings.set_live_trading(True)
        self.repo.settings.set_total_capital(2500)

        self.assertEqual([sorted(c.keys) for c in changes],
                         [['credentials'], ['live_trading_enabled'], ['total_capital']])
        self.assertEqual([c.affects_live_trading for c in changes], [True, True, False])
        settings = self.repo.settings.load()
        self.assertEqual(settings.credentials.api_key, 'key')
        self.assertTrue(settings.live_context().ready)
        self.assertEqual(settings.total_capital, 2500.0)

    def test_dismissed_ids_are_unique(self) -> None:
        self.repo.settings.dismiss('a')
        self.repo.settings.dismiss('a')
        self.repo.settings.dismiss('b')
        self.assertEqual(self.repo.settings.load().dismissed_suggestions, ['a', 'b'])

    def test_environment_seeds_empty_store(self) -> None:
        with mock.patch.dict(os.environ, {API_KEY_ENV: 'env-key', API_SECRET_ENV: 'env-secret'}):
            self.assertTrue(self.repo.settings.seed_from_env())
            self.assertFalse(self.repo.settings.seed_from_env())
        self.assertEqual(self.repo.settings.load().credentials.api_secret, 'env-secret')

    def test_credentials_are_masked(self) -> None:
        creds = ExchangeCredentials('visible-key', 'hidden-secret')
        self.assertNotIn('hidden-secret', repr(creds))
        self.assertNotIn('visible-key', str(creds))

    def test_missing_file(self) -> None:
        self.assertIsNone(load_state(os.path.join(self.tmp.name, 'absent.json')))


if __name__ == '__main__':
    unittest.main()
