"""
Component wiring shared by the API process and the standalone worker.

Everything is built from Settings and handed down explicitly; nothing here
is a module-level singleton. Callers own the returned Gateway and must
close() it.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

import httpx

from backend.reporter import StatusReporter
from channels.base import MessageSender
from channels.imessage_adapter import AppleScriptSender
from config.settings import Settings
from core.dispatcher import Dispatcher
from core.reconciler import StatusReconciler
from database.store_base import BaseJobStore
from database.store_factory import create_store
from receipts.chat_db import ChatDb
from receipts.correlator import ReceiptCorrelator
from receipts.poller import ReceiptPoller
from receipts.tracker import ReceiptTracker
from worker.scheduler import DispatchWorker

logger = structlog.get_logger()


@dataclass
class Gateway:
    settings: Settings
    store: BaseJobStore
    sender: MessageSender
    reporter: StatusReporter
    tracker: ReceiptTracker
    dispatcher: Dispatcher
    worker: DispatchWorker
    reconciler: StatusReconciler

    async def close(self) -> None:
        await self.worker.stop()
        await self.reporter.close()
        await self.store.close()
        logger.info("gateway_closed")


async def build_gateway(
    settings: Settings,
    store: Optional[BaseJobStore] = None,
    sender: Optional[MessageSender] = None,
    callback_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Gateway:
    """Assemble every component. Pass store/sender/transport to override the defaults."""
    if store is None:
        store = await create_store(settings.database, echo=settings.debug)
    sender = sender or AppleScriptSender()
    reporter = StatusReporter(settings.gateway, transport=callback_transport)

    rc = settings.receipts
    chat_db = ChatDb(rc.chat_db_path)
    tracker = ReceiptTracker(
        store=store,
        correlator=ReceiptCorrelator(
            chat_db, attempts=rc.correlation_attempts, delay_s=rc.correlation_delay_ms / 1000),
        poller=ReceiptPoller(
            chat_db, interval_s=rc.poll_interval_ms / 1000, timeout_s=rc.poll_timeout_ms / 1000),
        reporter=reporter,
        enabled=rc.enabled,
    )

    dispatcher = Dispatcher(
        store=store,
        sender=sender,
        reporter=reporter,
        worker_config=settings.worker,
        rate_config=settings.rate_limit,
        tracker=tracker,
    )
    worker = DispatchWorker(
        dispatcher, poll_interval_s=settings.worker.poll_interval_ms / 1000, tracker=tracker)

    return Gateway(
        settings=settings,
        store=store,
        sender=sender,
        reporter=reporter,
        tracker=tracker,
        dispatcher=dispatcher,
        worker=worker,
        reconciler=StatusReconciler(store, settings.rate_limit),
    )
