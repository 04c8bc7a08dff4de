"""
foundpoems/workers/scheduler.py
Periodic background tasks owned by the app lifespan.

Each task is an asyncio.Task with its own stop handle. The cycle function is
blocking (database work) and runs in a worker thread.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from foundpoems.core.logging import log_event

logger = logging.getLogger("foundpoems")


class PeriodicTask:
    """Run `fn` every `interval` seconds until stopped. Failures are logged, never raised."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object], after: Optional[Callable[[], Awaitable[object]]] = None):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.after = after
        self.runs = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        try:
            await asyncio.to_thread(self.fn)
            if self.after is not None:
                await self.after()
        except Exception as exc:
            log_event(
                "error",
                f"{self.name}.cycle_failed",
                event_type="task.cycle_failed",
                error_code="cycle_failed",
                extra={"task": self.name, "error": str(exc)},
            )
        finally:
            self.runs += 1

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"[{self.name}] started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"[{self.name}] stopped")
