"""
Clock and timer helpers.

Debouncing is done with asyncio tasks: each trigger supersedes the pending
quiet period instead of stacking another call.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Debouncer:
    """
    Run an async callback once a quiet period has elapsed since the last trigger.

    A trigger during the quiet period restarts it with the newest arguments.
    A trigger while the callback is already running schedules one more run
    after it; the running call is never interrupted.
    """

    def __init__(self, delay: float, callback: Callable[..., Awaitable[Any]], name: str = "debouncer"):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._waiting: Optional[asyncio.Task] = None
        self._running: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._waiting is not None and not self._waiting.done()

    def trigger(self, *args: Any) -> asyncio.Task:
        """Schedule the callback, superseding any pending quiet period."""
        if self.pending:
            self._waiting.cancel()
        self._waiting = asyncio.get_running_loop().create_task(self._wait_then_run(args))
        return self._waiting

    async def _wait_then_run(self, args) -> None:
        await asyncio.sleep(self.delay)
        if self._running is not None and not self._running.done():
            await asyncio.shield(self._running)
        self._running = asyncio.current_task()
        self._waiting = None
        try:
            await self.callback(*args)
        except Exception as e:
            logger.error("Debounced call failed", name=self.name, error=str(e))

    def cancel(self) -> None:
        """Drop the pending call, if any."""
        if self.pending:
            self._waiting.cancel()
        self._waiting = None

    async def flush(self) -> None:
        """Wait for the pending and running calls to settle."""
        for task in (self._waiting, self._running):
            if task is not None and not task.done() and task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
