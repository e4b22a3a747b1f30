"""
Abstract Job Store — Interface for all storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)

Every write that must change several fields together (lock, send result,
status report plus rate-limit charge) is a single method here, so each
backend can make it atomic in its own way.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from core.rate_limit import RateLimitState
from models.schemas import RateTier, ScheduledMessage


class StoreError(Exception):
    """Base exception for job store misuse."""


class JobNotFoundError(StoreError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


# Fields a caller may patch through update_job()
PATCHABLE_FIELDS = frozenset({
    "status", "attempt_count", "last_error", "scheduled_for_utc",
    "locked_at", "locked_by", "receipt_correlation",
    "canceled_at", "delivered_at", "received_at", "updated_at",
})


@dataclass
class StatusChange:
    """
    What a status report does to one job, decided against a consistent
    snapshot of that job and its owner's quota.

    fields    : column updates (may include receipt_correlation)
    rate_limit: new quota state to persist, or None for no charge
    applied   : whether the reported status itself was accepted
    """
    fields: dict[str, Any] = field(default_factory=dict)
    rate_limit: Optional[RateLimitState] = None
    applied: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.fields and self.rate_limit is None


# resolve(job, rate_state, tier) -> StatusChange
StatusResolver = Callable[[ScheduledMessage, RateLimitState, RateTier], StatusChange]

# charge(rate_state, tier) -> new rate_state
RateCharge = Callable[[RateLimitState, RateTier], RateLimitState]

RATE_CHARGED_FLAG = "rateLimitCharged"


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Dispatch ──────────────────────────────────────────────

    @abstractmethod
    async def select_eligible_batch(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        """QUEUED, due (scheduled_for_utc <= now) and not canceled. Order is not guaranteed."""
        ...

    @abstractmethod
    async def try_lock(self, job_id: str, worker_id: str, now: datetime) -> bool:
        """Compare-and-swap QUEUED → SENDING. True only for the caller that won."""
        ...

    @abstractmethod
    async def mark_sent(self, job_id: str, now: datetime, charge: RateCharge) -> Optional[RateLimitState]:
        """
        SENDING → SENT, clear the lock, persist charge() for the owner and set
        the rate-charged flag, all in one unit. Returns the new quota state,
        or None when the job was no longer SENDING.
        """
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **patch: Any) -> int:
        """Partial field update. Returns the number of rows affected."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ScheduledMessage]:
        ...

    # ── Quota ─────────────────────────────────────────────────

    @abstractmethod
    async def get_rate_limit(self, user_id: str) -> tuple[RateLimitState, RateTier]:
        ...

    # ── Receipts & status reports ─────────────────────────────

    @abstractmethod
    async def merge_correlation(self, job_id: str, data: dict[str, Any]) -> int:
        """Additively merge keys into receipt_correlation (new keys win)."""
        ...

    @abstractmethod
    async def apply_status_report(self, job_id: str, resolve: StatusResolver) -> Optional[StatusChange]:
        """
        Run resolve() against a consistent snapshot and persist its result
        atomically. Returns None for an unknown job. A no-op change writes nothing.
        """
        ...

    # ── Seeding (web app side in production) ──────────────────

    @abstractmethod
    async def add_job(self, job: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def set_user_tier(self, user_id: str, tier: RateTier) -> None:
        ...

    @abstractmethod
    async def set_rate_limit(self, user_id: str, state: RateLimitState) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None


def check_patch(patch: dict[str, Any]) -> None:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise StoreError(f"Unknown job fields: {sorted(unknown)}")


def merge_payload(existing: Optional[dict[str, Any]],
                  payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Shallow merge, later keys overwrite. No payload → existing unchanged."""
    if not payload:
        return existing
    return {**(existing or {}), **payload}
