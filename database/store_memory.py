"""
InMemoryJobStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlJobStore
  - Multi-field writes serialized by one asyncio.Lock, so lock / mark_sent /
    apply_status_report are atomic within the event loop
  - All data lost on process restart

Best for: local development, unit tests, running the worker without MySQL.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from core.rate_limit import RateLimitState
from database.store_base import (
    BaseJobStore, JobNotFoundError, RateCharge, StatusChange, StatusResolver,
    RATE_CHARGED_FLAG, check_patch, merge_payload,
)
from models.schemas import MessageStatus, RateTier, ScheduledMessage
from utils.clock import ensure_utc, utcnow

logger = structlog.get_logger()


class InMemoryJobStore(BaseJobStore):
    """Same semantics as SqlJobStore. Hands out copies, never live objects."""

    def __init__(self):
        self._jobs: dict[str, ScheduledMessage] = {}         # id → job
        self._tiers: dict[str, RateTier] = {}                # user_id → tier
        self._rate: dict[str, RateLimitState] = {}           # user_id → quota
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Dispatch ──────────────────────────────────────────

    async def select_eligible_batch(self, now, limit):
        eligible = [
            job for job in self._jobs.values()
            if job.status == MessageStatus.QUEUED
            and job.scheduled_for_utc <= now
            and job.canceled_at is None
        ]
        eligible.sort(key=lambda job: (job.scheduled_for_utc, job.created_at))
        return [job.model_copy(deep=True) for job in eligible[:limit]]

    async def try_lock(self, job_id, worker_id, now):
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != MessageStatus.QUEUED or job.canceled_at is not None:
                return False
            self._jobs[job_id] = job.model_copy(update={
                "status": MessageStatus.SENDING,
                "locked_at": now,
                "locked_by": worker_id,
                "updated_at": now,
            })
            return True

    async def mark_sent(self, job_id: str, now, charge: RateCharge) -> Optional[RateLimitState]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != MessageStatus.SENDING:
                return None

            state = self._rate.get(job.user_id, RateLimitState())
            tier = self._tiers.get(job.user_id, RateTier.FREE)
            new_state = charge(state, tier)
            self._rate[job.user_id] = new_state

            self._jobs[job_id] = job.model_copy(update={
                "status": MessageStatus.SENT,
                "locked_at": None,
                "locked_by": None,
                "receipt_correlation": merge_payload(
                    job.receipt_correlation, {RATE_CHARGED_FLAG: True}),
                "updated_at": now,
            })
            return new_state

    async def update_job(self, job_id: str, **patch: Any) -> int:
        check_patch(patch)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return 0
            self._jobs[job_id] = self._patched(job, patch)
            return 1

    async def get_job(self, job_id):
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    # ── Quota ─────────────────────────────────────────────

    async def get_rate_limit(self, user_id):
        return (
            self._rate.get(user_id, RateLimitState()),
            self._tiers.get(user_id, RateTier.FREE),
        )

    # ── Receipts & status reports ─────────────────────────

    async def merge_correlation(self, job_id, data):
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return 0
            self._jobs[job_id] = job.model_copy(update={
                "receipt_correlation": merge_payload(job.receipt_correlation, data),
                "updated_at": utcnow(),
            })
            return 1

    async def apply_status_report(self, job_id: str, resolve: StatusResolver) -> Optional[StatusChange]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            state = self._rate.get(job.user_id, RateLimitState())
            tier = self._tiers.get(job.user_id, RateTier.FREE)

            change = resolve(job.model_copy(deep=True), state, tier)
            if change.is_noop:
                return change

            if change.fields:
                check_patch(change.fields)
                self._jobs[job_id] = self._patched(job, change.fields)
            if change.rate_limit is not None:
                self._rate[job.user_id] = change.rate_limit
            return change

    # ── Seeding ───────────────────────────────────────────

    async def add_job(self, job):
        now = utcnow()
        stored = job.model_copy(update={
            "scheduled_for_utc": ensure_utc(job.scheduled_for_utc),
            "created_at": ensure_utc(job.created_at) or now,
            "updated_at": now,
        })
        self._jobs[stored.id] = stored
        self._tiers.setdefault(stored.user_id, RateTier.FREE)
        return stored.model_copy(deep=True)

    async def set_user_tier(self, user_id, tier):
        self._tiers[user_id] = tier

    async def set_rate_limit(self, user_id, state):
        self._rate[user_id] = state

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _patched(job: ScheduledMessage, patch: dict[str, Any]) -> ScheduledMessage:
        update = dict(patch)
        if "status" in update:
            update["status"] = MessageStatus(update["status"])
        update.setdefault("updated_at", utcnow())
        return job.model_copy(update=update)
