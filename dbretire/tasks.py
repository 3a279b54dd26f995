"""
Periodic Tasks
==============

Background loops for the monitor flush, the alert throttle sweep and the
telemetry aggregation. A failing tick is logged and reported through the
error callback; the loop then waits for its next tick.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

ErrorReporter = Callable[[BaseException, str], Awaitable[None]]


class PeriodicTask:
    """Run an async callback every interval seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        on_error: Optional[ErrorReporter] = None,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.on_error = on_error
        self.ticks = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> None:
        """Run one tick with the same error boundary as the loop."""
        self.ticks += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.exception("Periodic task %s failed", self.name)
            if self.on_error is not None:
                try:
                    await self.on_error(e, self.name)
                except Exception:
                    logger.exception("Error reporter for %s failed", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
