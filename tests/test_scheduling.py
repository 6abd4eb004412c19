import os
import sys

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from leverisk.utils.scheduling import PeriodicTask

import asyncio
import unittest


class TestPeriodicTask(unittest.IsolatedAsyncioTestCase):
    async def test_overlapping_tick_is_skipped(self) -> None:
        release = asyncio.Event()
        runs = []

        async def slow() -> None:
            runs.append(1)
            await release.wait()

        task = PeriodicTask('slow', slow, 60)
        first = asyncio.ensure_future(task.run_once())
        await asyncio.sleep(0)
        self.assertTrue(task.in_flight)
        self.assertFalse(await task.run_once())
        release.set()
        self.assertTrue(await first)
        self.assertEqual(runs, [1])
        self.assertFalse(task.in_flight)

    async def test_errors_do_not_escape(self) -> None:
        async def broken() -> None:
            raise ValueError("boom")

        task = PeriodicTask('broken', broken, 60)
        with self.assertLogs('leverisk.utils.scheduling', level='ERROR'):
            self.assertTrue(await task.run_once())

    async def test_first_tick_is_immediate_and_stop_cancels(self) -> None:
        calls = []

        async def tick() -> None:
            calls.append(1)

        task = PeriodicTask('tick', tick, 60)
        task.start()
        await asyncio.sleep(0.05)
        self.assertEqual(calls, [1])
        self.assertTrue(task.running)
        task.stop()
        self.assertFalse(task.running)

    async def test_reset_reschedules(self) -> None:
        calls = []

        async def tick() -> None:
            calls.append(1)

        task = PeriodicTask('tick', tick, 60)
        task.start()
        await asyncio.sleep(0.02)
        task.reset()
        await asyncio.sleep(0.02)
        self.assertEqual(len(calls), 2)
        task.stop()

    async def test_loop_skips_while_previous_tick_runs(self) -> None:
        release = asyncio.Event()
        calls = []

        async def slow() -> None:
            calls.append(1)
            await release.wait()

        task = PeriodicTask('slow', slow, 0.01)
        task.start()
        await asyncio.sleep(0.1)
        self.assertEqual(calls, [1])
        release.set()
        task.stop()

    async def test_reset_waits_for_cancelled_tick(self) -> None:
        active = []
        peak = []
        calls = []

        async def stubborn() -> None:
            calls.append(1)
            active.append(1)
            peak.append(len(active))
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                await asyncio.sleep(0.05)
                raise
            finally:
                active.pop()

        task = PeriodicTask('stubborn', stubborn, 60)
        task.start()
        await asyncio.sleep(0.01)
        task.reset()
        await asyncio.sleep(0.01)
        self.assertTrue(task.in_flight)
        self.assertEqual(len(calls), 1)
        await asyncio.sleep(0.1)
        self.assertEqual(len(calls), 2)
        self.assertEqual(max(peak), 1)
        task.stop()
        await asyncio.sleep(0.1)
        self.assertFalse(task.in_flight)


if __name__ == '__main__':
    unittest.main()
