"""
Receipt Correlator — finds the chat.db row for a message we just sent.

Messages.app gives no id back from an AppleScript send, so the match is:
same handle, same exact text, outgoing, dated within ±5 minutes of the send
(checked in both second and nanosecond store units), newest first.

Outcomes never raise:
  matched               → messageRowId / chatGuid + confidence
  notes=chat_db_not_found → no receipts for this send
  notes=no_match        → not written yet; worth retrying
  notes=query_failed:…  → locked/malformed store; not retried
"""
from __future__ import annotations

import asyncio
import hashlib
import structlog
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from models.schemas import ReceiptCorrelation
from receipts.chat_db import ChatDb
from receipts.epoch import build_time_window
from utils.clock import iso

logger = structlog.get_logger()

CORRELATION_METHOD = "chat.db"
CONFIDENCE_EXACT = "exact_text_handle"
NOTE_NOT_FOUND = "chat_db_not_found"
NOTE_NO_MATCH = "no_match"
NOTE_QUERY_FAILED = "query_failed"

MATCH_WINDOW = timedelta(minutes=5)


def hash_body(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _is_no_match(result: ReceiptCorrelation) -> bool:
    return not result.matched and result.notes == NOTE_NO_MATCH


def _log_retry(retry_state) -> None:
    handle = retry_state.args[0] if retry_state.args else None
    logger.debug("receipt_correlation_retry",
                 attempt=retry_state.attempt_number, handle=handle,
                 delay_s=retry_state.next_action.sleep if retry_state.next_action else None)


class ReceiptCorrelator:
    """Matches sent messages against one chat.db."""

    def __init__(self, chat_db: ChatDb, attempts: int = 8, delay_s: float = 2.0,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.chat_db = chat_db
        self.attempts = max(attempts, 1)
        self.delay_s = max(delay_s, 0.0)
        self._sleep = sleep or asyncio.sleep

    async def correlate(self, handle: str, body: str, sent_at: datetime) -> ReceiptCorrelation:
        base = ReceiptCorrelation(
            method=CORRELATION_METHOD,
            handle=handle,
            body_hash=hash_body(body),
            sent_at=iso(sent_at),
            chat_db_path=str(self.chat_db.path),
        )
        log = logger.bind(handle=handle, sent_at=base.sent_at)

        if not self.chat_db.exists():
            log.info("receipt_chat_db_not_found", chat_db_path=base.chat_db_path)
            return base.model_copy(update={"notes": NOTE_NOT_FOUND})

        try:
            row = await self.chat_db.find_sent_message(
                handle, body, build_time_window(sent_at, MATCH_WINDOW))
        except (SQLAlchemyError, OSError) as e:
            log.warning("receipt_query_failed", error=str(e))
            return base.model_copy(update={"notes": f"{NOTE_QUERY_FAILED}:{e}"})

        if row is None:
            log.debug("receipt_no_match")
            return base.model_copy(update={"notes": NOTE_NO_MATCH})

        row_id = row.get("messageRowId")
        result = base.model_copy(update={
            "message_row_id": row_id if isinstance(row_id, int) else None,
            "chat_guid": row.get("chatGuid"),
            "confidence": CONFIDENCE_EXACT,
        })
        log.info("receipt_match_found",
                 message_row_id=result.message_row_id, chat_guid=result.chat_guid)
        return result

    async def correlate_with_retry(self, handle: str, body: str,
                                   sent_at: datetime) -> ReceiptCorrelation:
        """Retry only while the row isn't visible yet; return the last outcome either way."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.delay_s),
            retry=retry_if_result(_is_no_match),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=_log_retry,
            sleep=self._sleep,
        )
        return await retrying(self.correlate, handle, body, sent_at)
