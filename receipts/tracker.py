"""
Receipt Tracker — background delivery tracking for sent messages.

Flow per message (one asyncio task, independent of dispatch ticks):
    correlate with retry → merge correlation into the job
    → poll chat.db → report DELIVERED / RECEIVED to the web app

Tasks are fire-and-forget from the dispatcher's point of view; the tracker
keeps a reference to each until it finishes and cancels the rest on shutdown.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from backend.reporter import StatusReporter
from database.store_base import BaseJobStore
from models.schemas import MessageStatus, ScheduledMessage
from receipts.correlator import ReceiptCorrelator
from receipts.poller import ReceiptPoller

logger = structlog.get_logger()


class ReceiptTracker:

    def __init__(self, store: BaseJobStore, correlator: ReceiptCorrelator,
                 poller: ReceiptPoller, reporter: StatusReporter, enabled: bool = True):
        self.store = store
        self.correlator = correlator
        self.poller = poller
        self.reporter = reporter
        self.enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def track(self, job: ScheduledMessage, sent_at: datetime) -> Optional[asyncio.Task]:
        """Start tracking in the background. Returns the task (None when disabled)."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self._track(job, sent_at), name=f"receipt:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _track(self, job: ScheduledMessage, sent_at: datetime) -> None:
        try:
            correlation = await self.correlator.correlate_with_retry(job.to_handle, job.body, sent_at)
            await self.store.merge_correlation(job.id, correlation.to_payload())

            async def on_status(status: MessageStatus, payload: dict[str, Any]) -> None:
                await self.reporter.report(job.id, status, payload)

            await self.poller.poll(job.id, correlation, on_status)
        except asyncio.CancelledError:
            logger.info("receipt_tracking_cancelled", message_id=job.id)
            raise
        except Exception as e:
            logger.error("receipt_tracking_failed", message_id=job.id, error=str(e))

    async def wait_idle(self) -> None:
        """Wait for every in-flight tracking task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.correlator.chat_db.close()
        logger.info("receipt_tracker_stopped", cancelled=len(tasks))
