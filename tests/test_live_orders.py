import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from leverisk.execution.errors import ExchangeRejectedError, MalformedResponseError, NetworkTimeoutError
from leverisk.execution.live_orders import (
    FAILED,
    REJECTED,
    SKIPPED,
    SUCCESS,
    TIMED_OUT,
    LiveOrderOrchestrator,
)
from leverisk.execution.models import STOP_LOSS, TAKE_PROFIT, AdjustmentSuggestion, ExchangeOrderIds, OpenOrder
from leverisk.utils.notifications import ERROR, WARNING, Notifier
from leverisk.utils.persistence import LiveTradingContext, PositionStore

from fakes import CREDENTIALS, FakeGateway, make_position

import tempfile
import unittest


def _suggestion(kind, current, proposed, position_id='btcusdt'):
    return AdjustmentSuggestion(id=f'{position_id}:{kind}', position_id=position_id, kind=kind,
                                rule='test', current_level=current, proposed_level=proposed,
                                rationale='test', confidence=70)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = PositionStore(os.path.join(self.tmp.name, 'positions.json'))
        self.notifier = Notifier()
        self.notices = []
        self.notifier.subscribe(self.notices.append)
        self.live = LiveTradingContext(enabled=True, credentials=CREDENTIALS)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def orchestrator(self, gateway):
        return LiveOrderOrchestrator(self.store, self.notifier, gateway_factory=gateway.factory)


class TestOpenPosition(OrchestratorTestCase):
    async def test_steps_run_in_order(self) -> None:
        gateway = FakeGateway()
        report = await self.orchestrator(gateway).open_position(make_position(), self.live)
        self.assertEqual(gateway.calls, ['entry', 'tp@105', 'tp@110', 'tp@120', 'sl@95'])
        self.assertEqual([s.step for s in report.steps], ['entry', 'TP1', 'TP2', 'TP3', 'SL'])
        self.assertTrue(all(s.status == SUCCESS for s in report.steps))

        stored = self.store.get('btcusdt')
        self.assertIsNotNone(stored.order_ids.entry)
        self.assertEqual(sorted(stored.order_ids.take_profits), [1, 2, 3])
        self.assertEqual(stored.order_ids.stop_loss, report.outcome('SL').order_id)

    async def test_tp_timeout_still_places_stop_and_keeps_record(self) -> None:
        gateway = FakeGateway(failures={'tp@110': NetworkTimeoutError('POST /fapi/v1/order timed out')})
        report = await self.orchestrator(gateway).open_position(make_position(), self.live)

        self.assertEqual(gateway.calls[-1], 'sl@95')
        self.assertEqual(report.outcome('TP2').status, TIMED_OUT)
        self.assertEqual(report.outcome('SL').status, SUCCESS)
        self.assertEqual([s.step for s in report.failed_steps], ['TP2'])
        stored = self.store.get('btcusdt')
        self.assertIsNotNone(stored)
        self.assertNotIn(2, stored.order_ids.take_profits)
        self.assertTrue(any(n.level == ERROR and 'TP2' in n.message for n in self.notices))

    async def test_unexpected_error_does_not_stop_sequence(self) -> None:
        gateway = FakeGateway(failures={
            'tp@105': ValueError('bad number'),
            'tp@110': MalformedResponseError('Order response without an orderId'),
        })
        with self.assertLogs('leverisk.execution.live_orders', level='ERROR'):
            report = await self.orchestrator(gateway).open_position(make_position(), self.live)

        self.assertEqual(gateway.calls, ['entry', 'tp@105', 'tp@110', 'tp@120', 'sl@95'])
        self.assertEqual(report.outcome('TP1').status, FAILED)
        self.assertIn('ValueError', report.outcome('TP1').message)
        self.assertEqual(report.outcome('TP2').status, FAILED)
        self.assertEqual(report.outcome('SL').status, SUCCESS)
        stored = self.store.get('btcusdt')
        self.assertEqual(stored.order_ids.entry, report.outcome('entry').order_id)
        self.assertEqual(sorted(stored.order_ids.take_profits), [3])

    async def test_record_exists_before_first_order(self) -> None:
        gateway = FakeGateway(failures={'entry': ExchangeRejectedError(400, 'Margin is insufficient.', -2019)})
        seen = []
        gateway.on_call = lambda label: seen.append(self.store.get('btcusdt') is not None)
        report = await self.orchestrator(gateway).open_position(make_position(), self.live)
        self.assertTrue(seen[0])
        self.assertEqual(report.outcome('entry').status, REJECTED)
        self.assertEqual(report.outcome('entry').message, 'Margin is insufficient.')
        self.assertEqual(len(gateway.calls), 5)
        self.assertIsNotNone(self.store.get('btcusdt'))

    async def test_missing_credentials_single_notice(self) -> None:
        def no_gateway(credentials):
            raise AssertionError("gateway must not be created")

        orchestrator = LiveOrderOrchestrator(self.store, self.notifier, gateway_factory=no_gateway)
        report = await orchestrator.open_position(make_position(), LiveTradingContext(enabled=True))
        self.assertEqual(report.skipped_reason, 'credentials missing')
        self.assertEqual(report.steps, [])
        self.assertEqual([n.level for n in self.notices], [WARNING])
        self.assertIsNotNone(self.store.get('btcusdt'))

    async def test_live_disabled_is_silent(self) -> None:
        gateway = FakeGateway()
        report = await self.orchestrator(gateway).open_position(
            make_position(), LiveTradingContext(enabled=False, credentials=CREDENTIALS))
        self.assertFalse(report.attempted)
        self.assertEqual(gateway.calls, [])
        self.assertEqual(self.notices, [])


class TestAdjustments(OrchestratorTestCase):
    async def test_stop_cancelled_before_replacement(self) -> None:
        position = make_position()
        position.order_ids = ExchangeOrderIds(entry='1', stop_loss='55')
        self.store.upsert(position)
        gateway = FakeGateway()
        report = await self.orchestrator(gateway).apply_adjustment(
            position, _suggestion(STOP_LOSS, 95.0, 97.0), self.live)
        self.assertEqual(gateway.calls, ['cancel:55', 'sl@97'])
        self.assertEqual([s.status for s in report.steps], [SUCCESS, SUCCESS])
        self.assertEqual(self.store.get('btcusdt').order_ids.stop_loss, report.outcome('SL').order_id)

    async def test_stop_found_through_open_orders(self) -> None:
        position = make_position()
        self.store.upsert(position)
        resting = [
            OpenOrder('77', 'BTCUSDT', 'SELL', 'STOP_MARKET', 0.0, 95.0, 1.0, 'NEW', True),
            OpenOrder('78', 'BTCUSDT', 'SELL', 'TAKE_PROFIT_MARKET', 0.0, 105.0, 1.0, 'NEW', True),
        ]
        gateway = FakeGateway(open_orders=resting)
        await self.orchestrator(gateway).apply_adjustment(
            position, _suggestion(STOP_LOSS, 95.0, 97.0), self.live)
        self.assertEqual(gateway.calls, ['open_orders', 'cancel:77', 'sl@97'])

    async def test_failed_cancel_blocks_new_stop(self) -> None:
        position = make_position()
        position.order_ids = ExchangeOrderIds(stop_loss='55')
        self.store.upsert(position)
        gateway = FakeGateway(failures={'cancel:55': NetworkTimeoutError('DELETE timed out')})
        report = await self.orchestrator(gateway).apply_adjustment(
            position, _suggestion(STOP_LOSS, 95.0, 97.0), self.live)
        self.assertEqual(gateway.calls, ['cancel:55'])
        self.assertEqual(report.outcome('cancel-SL').status, TIMED_OUT)
        self.assertEqual(report.outcome('SL').status, SKIPPED)
        self.assertEqual(self.store.get('btcusdt').order_ids.stop_loss, '55')

    async def test_unexpected_cancel_error_blocks_new_stop(self) -> None:
        position = make_position()
        position.order_ids = ExchangeOrderIds(stop_loss='55')
        self.store.upsert(position)
        gateway = FakeGateway(failures={'cancel:55': KeyError('orderId')})
        with self.assertLogs('leverisk.execution.live_orders', level='ERROR'):
            report = await self.orchestrator(gateway).apply_adjustment(
                position, _suggestion(STOP_LOSS, 95.0, 97.0), self.live)
        self.assertEqual(gateway.calls, ['cancel:55'])
        self.assertEqual(report.outcome('cancel-SL').status, FAILED)
        self.assertEqual(report.outcome('SL').status, SKIPPED)

    async def test_take_profit_revision_places_new_order(self) -> None:
        position = make_position()
        self.store.upsert(position)
        gateway = FakeGateway()
        report = await self.orchestrator(gateway).apply_adjustment(
            position, _suggestion(TAKE_PROFIT, 110.0, 108.0), self.live)
        self.assertEqual(gateway.calls, ['tp@108'])
        self.assertEqual(report.steps[0].step, 'TP2')
        self.assertEqual(self.store.get('btcusdt').order_ids.take_profits[2], report.steps[0].order_id)


if __name__ == '__main__':
    unittest.main()
