"""
Timer scheduling for Loop Overdub.

Position ticks and the recording auto-stop are timer callbacks on the asyncio
event loop. Everything runs on one thread, so a cancelled handle can never
fire again once cancel() returns.

The scheduler is passed into the engine so tests can swap in a manual one and
drive time deterministically.
"""

import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("LoopOverdub.Scheduler")


class TimerHandle:
    """Cancelable handle for a one-shot or repeating timer."""

    def __init__(self):
        self.cancelled = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None


class AsyncioScheduler:
    """
    Scheduler backed by loop.call_later.

    Args:
        loop: Event loop to schedule on. If None, the running loop is looked up
              on each call, so the scheduler can be created before the loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()

        def _fire():
            if handle.cancelled:
                return
            handle._loop_handle = None
            callback()

        handle._loop_handle = self._get_loop().call_later(max(0.0, delay), _fire)
        return handle

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback every `interval` seconds until the handle is cancelled."""
        if interval <= 0:
            raise ValueError(f"Tick interval must be positive, got {interval}")

        handle = TimerHandle()
        loop = self._get_loop()

        def _fire():
            if handle.cancelled:
                return
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in tick callback: {e}")
            # callback may have cancelled us
            if not handle.cancelled:
                handle._loop_handle = loop.call_later(interval, _fire)

        handle._loop_handle = loop.call_later(interval, _fire)
        return handle
