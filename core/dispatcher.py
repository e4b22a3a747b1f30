"""
Dispatcher — one polling cycle of the send worker.

Per cycle:
  1. Fetch a small batch of due QUEUED messages
  2. Order FIFO by (scheduled_for_utc, created_at) — never trust the fetch order
  3. For each candidate: quota check → CAS lock → send
       success → SENT + quota charge (one transaction), start receipt
                 tracking in the background, report SENT
       failure → requeue with backoff, or FAILED once attempts run out or
                 the sender says the error is permanent
  4. Stop after max_jobs_per_cycle processed messages (default 1); the rest
     wait for the next tick

A send exception is contained to its message. A job store exception
propagates: the cycle is abandoned and the worker tries again next tick.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from backend.reporter import StatusReporter
from channels.base import ChannelError, MessageSender
from config.settings import RateLimitConfig, WorkerConfig
from core.backoff import BackoffPolicy
from core.rate_limit import apply_send, evaluate
from database.store_base import BaseJobStore
from models.schemas import MessageStatus, ScheduledMessage
from receipts.tracker import ReceiptTracker
from utils.clock import iso, utcnow

logger = structlog.get_logger()


@dataclass
class CycleResult:
    fetched: int = 0
    rate_limited: list[str] = field(default_factory=list)
    lost_lock: list[str] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.sent) + len(self.retried) + len(self.failed)

    def as_dict(self) -> dict[str, int]:
        return {
            "fetched": self.fetched, "rate_limited": len(self.rate_limited),
            "lost_lock": len(self.lost_lock), "sent": len(self.sent),
            "retried": len(self.retried), "failed": len(self.failed),
        }


def sort_by_fifo(jobs: Iterable[ScheduledMessage]) -> list[ScheduledMessage]:
    return sorted(jobs, key=lambda j: (j.scheduled_for_utc, j.created_at or j.scheduled_for_utc))


class Dispatcher:

    def __init__(
        self,
        store: BaseJobStore,
        sender: MessageSender,
        reporter: StatusReporter,
        worker_config: WorkerConfig,
        rate_config: RateLimitConfig,
        tracker: Optional[ReceiptTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sender = sender
        self.reporter = reporter
        self.tracker = tracker
        self.config = worker_config
        self.rate_config = rate_config
        self.backoff = BackoffPolicy(
            base_seconds=worker_config.base_backoff_seconds,
            max_seconds=worker_config.max_backoff_seconds,
            max_attempts=worker_config.max_attempts,
        )
        self._clock = clock

    async def run_cycle(self) -> CycleResult:
        result = CycleResult()
        now = self._clock()

        batch = await self.store.select_eligible_batch(now, self.config.batch_size)
        result.fetched = len(batch)
        if not batch:
            return result

        for job in sort_by_fifo(batch):
            if result.processed >= self.config.max_jobs_per_cycle:
                break

            state, tier = await self.store.get_rate_limit(job.user_id)
            decision = evaluate(now, state, tier, self.rate_config)
            if not decision.allowed:
                result.rate_limited.append(job.id)
                logger.info("dispatch_rate_limited",
                            message_id=job.id, user_id=job.user_id, tier=tier.value,
                            reason=decision.reason.value,
                            next_allowed_at=iso(decision.next_allowed_at) if decision.next_allowed_at else None)
                continue

            if not await self.store.try_lock(job.id, self.config.worker_id, now):
                result.lost_lock.append(job.id)
                logger.debug("dispatch_lock_lost", message_id=job.id)
                continue

            await self._process(job, result)

        if result.processed or result.rate_limited:
            logger.info("dispatch_cycle_complete", **result.as_dict())
        return result

    async def _process(self, job: ScheduledMessage, result: CycleResult) -> None:
        logger.info("dispatch_sending", message_id=job.id, to=job.to_handle,
                    attempt=job.attempt_count + 1)
        try:
            await self.sender.send(job.to_handle, job.body)
        except Exception as e:
            retryable = not isinstance(e, ChannelError) or e.retryable
            await self._handle_failure(job, str(e) or type(e).__name__, result, retryable)
            return
        await self._handle_success(job, result)

    async def _handle_success(self, job: ScheduledMessage, result: CycleResult) -> None:
        sent_at = self._clock()

        def charge(state, tier):
            return apply_send(sent_at, state, tier, self.rate_config)

        new_state = await self.store.mark_sent(job.id, sent_at, charge)
        result.sent.append(job.id)
        if new_state is None:
            logger.warning("dispatch_job_moved_during_send", message_id=job.id)
        else:
            logger.info("dispatch_job_sent", message_id=job.id, user_id=job.user_id,
                        sent_in_window=new_state.sent_in_window)

        if self.tracker is not None:
            self.tracker.track(job, sent_at)

        await self.reporter.report(job.id, MessageStatus.SENT, {
            "method": self.sender.method,
            "sentAt": iso(sent_at),
        })

    async def _handle_failure(self, job: ScheduledMessage, error: str, result: CycleResult,
                              retryable: bool = True) -> None:
        attempt = job.attempt_count + 1
        now = self._clock()

        if retryable and self.backoff.should_retry(attempt):
            retry_at = self.backoff.next_run_at(now, attempt)
            await self.store.update_job(
                job.id,
                status=MessageStatus.QUEUED,
                attempt_count=attempt,
                last_error=error,
                scheduled_for_utc=retry_at,
                locked_at=None,
                locked_by=None,
            )
            result.retried.append(job.id)
            logger.warning("dispatch_send_retry_scheduled", message_id=job.id,
                           attempt=attempt, retry_at=iso(retry_at), error=error)
            return

        await self.store.update_job(
            job.id,
            status=MessageStatus.FAILED,
            attempt_count=attempt,
            last_error=error,
            locked_at=None,
            locked_by=None,
        )
        result.failed.append(job.id)
        logger.error("dispatch_send_failed", message_id=job.id, attempt=attempt, error=error)
        await self.reporter.report(job.id, MessageStatus.FAILED, {
            "method": self.sender.method,
            "error": error,
        })
