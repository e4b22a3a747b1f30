"""
Dispatch Worker — runs Dispatcher cycles on a fixed interval.

Runs as a background task inside the FastAPI lifespan, or standalone via
scripts/run_worker.py.

Every interval a tick is started as its own task, so a slow send never
delays the timer. A busy flag turns a tick that fires while the previous
cycle is still in flight into a no-op. Cycle errors are logged and the
loop carries on; stop() cancels the loop, any in-flight tick and all
receipt tracking.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core.dispatcher import CycleResult, Dispatcher
from receipts.tracker import ReceiptTracker

logger = structlog.get_logger()


class DispatchWorker:

    def __init__(self, dispatcher: Dispatcher, poll_interval_s: float = 2.0,
                 tracker: Optional[ReceiptTracker] = None):
        self.dispatcher = dispatcher
        self.poll_interval_s = poll_interval_s
        self.tracker = tracker
        self._running = False
        self._busy = False
        self._task: Optional[asyncio.Task] = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self) -> None:
        """Start the timer loop as a background task. The first tick fires immediately."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="dispatch_worker")
        logger.info("dispatch_worker_started", interval_s=self.poll_interval_s)

    async def stop(self) -> None:
        """Gracefully stop the worker."""
        self._running = False
        pending = [t for t in (self._task, *self._ticks) if t and not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.tracker is not None:
            await self.tracker.shutdown()
        logger.info("dispatch_worker_stopped")

    async def tick(self) -> Optional[CycleResult]:
        """Run one cycle unless one is already running."""
        if self._busy:
            logger.debug("dispatch_tick_skipped")
            return None
        self._busy = True
        try:
            return await self.dispatcher.run_cycle()
        except Exception as e:
            logger.error("dispatch_cycle_error", error=str(e), error_type=type(e).__name__)
            return None
        finally:
            self._busy = False

    async def _loop(self) -> None:
        """Main timer loop; runs until stopped."""
        while self._running:
            task = asyncio.create_task(self.tick(), name="dispatch_tick")
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            try:
                await asyncio.sleep(self.poll_interval_s)
            except asyncio.CancelledError:
                break
