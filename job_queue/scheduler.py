"""
Tick Scheduler — fixed-interval trigger with a single-flight guard.

The loop never awaits the tick itself; each firing goes through
`SingleFlight`, so a firing that lands while a tick is still running is
skipped rather than queued or overlapped.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()


class SingleFlight:
    """Guarded execution: at most one run of `fn` in flight at a time."""

    def __init__(self, fn: Callable[[], Awaitable[Any]], name: str = "tick"):
        self._fn = fn
        self.name = name
        self._running = False
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> tuple[bool, Any]:
        """Returns (ran, result). `ran` is False when an earlier run is in flight."""
        if self._running:
            self.skipped += 1
            logger.warning("single_flight_skipped", name=self.name, skipped_total=self.skipped)
            return False, None
        self._running = True
        try:
            return True, await self._fn()
        finally:
            self._running = False


class TickScheduler:
    """
    Periodic trigger for the queue scanner.

    Usage:
        scheduler = TickScheduler(scanner.tick, interval_seconds=300, enabled=True)
        await scheduler.start()      # returns immediately, loop runs as a task
        ran, stats = await scheduler.fire()   # manual tick, same guard
        await scheduler.stop()
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[Any]],
        interval_seconds: float = 300,
        enabled: bool = False,
    ):
        self.guard = SingleFlight(tick, name="queue_tick")
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self._task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def fire(self) -> tuple[bool, Any]:
        try:
            return await self.guard.run()
        except Exception as e:
            logger.error("queue_tick_error", error=str(e))
            return True, None

    async def start(self) -> bool:
        if not self.enabled:
            logger.info("queue_scheduler_disabled")
            return False
        if self._running:
            return True
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="queue_scheduler")
        logger.info("queue_scheduler_started", interval_s=self.interval_seconds)
        return True

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # Let an in-flight tick finish; started jobs run to completion
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("queue_scheduler_stopped")

    async def _loop(self) -> None:
        # First firing is one interval after start, like a cron boundary
        while True:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                return
            task = asyncio.create_task(self.fire())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
