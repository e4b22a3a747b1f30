"""
Receipt Poller — watches one matched chat.db row for delivery and read flags.

Emits at most one DELIVERED and one RECEIVED per message, DELIVERED always
first, then stops. A failed query or the deadline ends polling silently; the
job simply keeps its last reported status.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from models.schemas import MessageStatus, ReceiptCorrelation
from receipts.chat_db import ChatDb
from receipts.epoch import from_store_epoch
from utils.clock import iso

logger = structlog.get_logger()

# on_status(status, payload)
StatusCallback = Callable[[MessageStatus, dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ReceiptSnapshot:
    delivered: bool = False
    received: bool = False
    delivered_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def failed(self) -> bool:
        return bool(self.notes and self.notes.startswith("query_failed"))


def snapshot_from_row(row: Optional[dict[str, Any]]) -> ReceiptSnapshot:
    if row is None:
        return ReceiptSnapshot(notes="no_match")
    delivered_at = from_store_epoch(row.get("date_delivered"))
    received_at = from_store_epoch(row.get("date_read"))
    return ReceiptSnapshot(
        delivered=row.get("is_delivered") == 1 or delivered_at is not None,
        received=row.get("is_read") == 1 or received_at is not None,
        delivered_at=delivered_at,
        received_at=received_at,
    )


class ReceiptPoller:
    """Polls chat.db every interval_s until RECEIVED or timeout_s elapses."""

    def __init__(self, chat_db: ChatDb, interval_s: float = 10.0, timeout_s: float = 1800.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.chat_db = chat_db
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    async def read_snapshot(self, correlation: ReceiptCorrelation) -> ReceiptSnapshot:
        if not self.chat_db.exists():
            return ReceiptSnapshot(notes="chat_db_not_found")
        try:
            row = await self.chat_db.read_receipt_row(correlation.message_row_id, correlation.chat_guid)
        except (SQLAlchemyError, OSError) as e:
            return ReceiptSnapshot(notes=f"query_failed:{e}")
        return snapshot_from_row(row)

    async def poll(self, message_id: str, correlation: ReceiptCorrelation,
                   on_status: StatusCallback) -> int:
        """Run until terminal, failure or deadline. Returns the number of reads performed."""
        log = logger.bind(message_id=message_id,
                          message_row_id=correlation.message_row_id, chat_guid=correlation.chat_guid)

        if not correlation.matched:
            log.info("receipt_poll_skipped", reason="no_correlation_row")
            return 0

        deadline = self._clock() + self.timeout_s
        delivered_sent = False
        reads = 0

        while self._clock() < deadline:
            snapshot = await self.read_snapshot(correlation)
            reads += 1
            if snapshot.failed:
                log.info("receipt_poll_stopped", notes=snapshot.notes)
                return reads

            if snapshot.delivered and not delivered_sent:
                delivered_sent = True
                await on_status(MessageStatus.DELIVERED, self._payload(correlation, snapshot))

            if snapshot.received:
                if not delivered_sent:
                    await on_status(MessageStatus.DELIVERED, self._payload(correlation, snapshot))
                await on_status(MessageStatus.RECEIVED,
                                self._payload(correlation, snapshot, include_received=True))
                log.info("receipt_poll_complete", reads=reads)
                return reads

            await self._sleep(self.interval_s)

        log.info("receipt_poll_timeout", reads=reads)
        return reads

    @staticmethod
    def _payload(correlation: ReceiptCorrelation, snapshot: ReceiptSnapshot,
                 include_received: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "method": correlation.method,
            "messageRowId": correlation.message_row_id,
            "chatGuid": correlation.chat_guid,
            "deliveredAt": iso(snapshot.delivered_at) if snapshot.delivered_at else None,
        }
        if include_received:
            payload["receivedAt"] = iso(snapshot.received_at) if snapshot.received_at else None
        return payload
