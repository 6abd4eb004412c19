"""
Recurring background work.

`PeriodicTask` runs one coroutine function on a fixed interval inside
the running event loop.  At most one invocation is in flight: a tick
that comes due while the previous one is still running is skipped, not
queued.  Errors raised by a tick are logged and the schedule continues.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `func` every `interval` seconds.

    Parameters
    ----------
    name : str
        Label used in log messages.
    func : callable
        Coroutine function taking no arguments.
    interval : float
        Seconds between the start of two ticks.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[None]], interval: float) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._tick: Optional[asyncio.Task] = None
        self._unwinding: Optional[asyncio.Task] = None
        self._in_flight = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run_once(self) -> bool:
        """Run one tick now.

        Returns
        -------
        bool
            ``False`` when skipped because a tick is already in flight.
        """
        if self._in_flight:
            logger.debug("%s: previous tick still running, skipping", self.name)
            return False
        self._in_flight = True
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: tick failed", self.name)
        finally:
            self._in_flight = False
        return True

    async def _loop(self) -> None:
        if self._unwinding is not None:
            # a tick from the previous schedule is still finishing
            await asyncio.wait([self._unwinding])
            self._unwinding = None
        while True:
            if self._in_flight:
                logger.debug("%s: previous tick still running, skipping", self.name)
            else:
                self._tick = asyncio.ensure_future(self.run_once())
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Schedule the task; the first tick runs immediately."""
        if self.running:
            return
        logger.debug("%s: scheduled every %ss", self.name, self.interval)
        self._task = asyncio.ensure_future(self._loop())

    def stop(self) -> None:
        """Cancel the schedule and any tick it started.

        The in-flight flag is left to the tick itself, so a restarted
        schedule does not overlap a tick that is still unwinding.
        """
        if self._task is not None:
            self._task.cancel()
            self._task = None
            tick = self._tick
            if tick is not None and not tick.done():
                if tick is not asyncio.current_task():
                    tick.cancel()
                self._unwinding = tick
            self._tick = None
            logger.debug("%s: stopped", self.name)

    def reset(self) -> None:
        """Cancel the current schedule and start a fresh one."""
        self.stop()
        self.start()
