"""
SqlJobStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The dispatch lock is a conditional UPDATE (… WHERE status = 'QUEUED'), so two
workers racing for the same row see rowcount 1 and 0. Multi-field writes
(send result + quota charge, status report + quota charge) happen inside
one session, which commits or rolls back as a unit.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.rate_limit import RateLimitState
from database.models import MessageRow, UserRow, UserRateLimitRow
from database.session import Database
from database.store_base import (
    BaseJobStore, JobNotFoundError, RateCharge, StatusChange, StatusResolver,
    RATE_CHARGED_FLAG, check_patch, merge_payload,
)
from models.schemas import MessageStatus, RateTier, ScheduledMessage
from utils.clock import ensure_utc, utcnow

logger = structlog.get_logger()

_DATETIME_FIELDS = (
    "scheduled_for_utc", "locked_at", "created_at", "updated_at",
    "canceled_at", "delivered_at", "received_at",
)


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db: Database):
        self._db = db

    # ── Dispatch ───────────────────────────────────────────

    async def select_eligible_batch(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        async with self._db.session() as s:
            stmt = (
                select(MessageRow)
                .where(
                    MessageRow.status == MessageStatus.QUEUED.value,
                    MessageRow.scheduled_for_utc <= now,
                    MessageRow.canceled_at.is_(None),
                )
                .order_by(MessageRow.scheduled_for_utc.asc(), MessageRow.created_at.asc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def try_lock(self, job_id: str, worker_id: str, now: datetime) -> bool:
        async with self._db.session() as s:
            stmt = (
                update(MessageRow)
                .where(
                    MessageRow.id == job_id,
                    MessageRow.status == MessageStatus.QUEUED.value,
                    MessageRow.canceled_at.is_(None),
                )
                .values(
                    status=MessageStatus.SENDING.value,
                    locked_at=now,
                    locked_by=worker_id,
                    updated_at=now,
                )
            )
            result = await s.execute(stmt)
            return result.rowcount == 1

    async def mark_sent(self, job_id: str, now: datetime, charge: RateCharge) -> Optional[RateLimitState]:
        async with self._db.session() as s:
            row = await s.get(MessageRow, job_id, with_for_update=True)
            if row is None:
                raise JobNotFoundError(job_id)
            if row.status != MessageStatus.SENDING.value:
                return None

            state, tier = await self._load_rate_limit(s, row.user_id)
            new_state = charge(state, tier)
            await self._save_rate_limit(s, row.user_id, new_state)

            row.status = MessageStatus.SENT.value
            row.locked_at = None
            row.locked_by = None
            row.receipt_correlation = merge_payload(
                row.receipt_correlation, {RATE_CHARGED_FLAG: True})
            row.updated_at = now
            return new_state

    async def update_job(self, job_id: str, **patch: Any) -> int:
        check_patch(patch)
        values = self._to_columns(patch)
        values.setdefault("updated_at", utcnow())
        async with self._db.session() as s:
            result = await s.execute(
                update(MessageRow).where(MessageRow.id == job_id).values(**values)
            )
            return result.rowcount

    async def get_job(self, job_id: str) -> Optional[ScheduledMessage]:
        async with self._db.session() as s:
            row = await s.get(MessageRow, job_id)
            return self._row_to_job(row) if row else None

    # ── Quota ──────────────────────────────────────────────

    async def get_rate_limit(self, user_id: str) -> tuple[RateLimitState, RateTier]:
        async with self._db.session() as s:
            return await self._load_rate_limit(s, user_id)

    # ── Receipts & status reports ──────────────────────────

    async def merge_correlation(self, job_id: str, data: dict[str, Any]) -> int:
        async with self._db.session() as s:
            row = await s.get(MessageRow, job_id, with_for_update=True)
            if row is None:
                return 0
            row.receipt_correlation = merge_payload(row.receipt_correlation, data)
            row.updated_at = utcnow()
            return 1

    async def apply_status_report(self, job_id: str, resolve: StatusResolver) -> Optional[StatusChange]:
        async with self._db.session() as s:
            row = await s.get(MessageRow, job_id, with_for_update=True)
            if row is None:
                return None
            state, tier = await self._load_rate_limit(s, row.user_id)

            change = resolve(self._row_to_job(row), state, tier)
            if change.is_noop:
                return change

            if change.fields:
                check_patch(change.fields)
                for key, value in self._to_columns(change.fields).items():
                    setattr(row, key, value)
            if change.rate_limit is not None:
                await self._save_rate_limit(s, row.user_id, change.rate_limit)
            return change

    # ── Seeding ────────────────────────────────────────────

    async def add_job(self, job: ScheduledMessage) -> ScheduledMessage:
        now = utcnow()
        async with self._db.session() as s:
            if await s.get(UserRow, job.user_id) is None:
                s.add(UserRow(id=job.user_id, paid_user=False))
            row = MessageRow(
                id=job.id,
                user_id=job.user_id,
                to_handle=job.to_handle,
                body=job.body,
                scheduled_for_utc=ensure_utc(job.scheduled_for_utc),
                timezone=job.timezone,
                status=job.status.value,
                attempt_count=job.attempt_count,
                last_error=job.last_error,
                locked_at=ensure_utc(job.locked_at),
                locked_by=job.locked_by,
                receipt_correlation=job.receipt_correlation,
                created_at=ensure_utc(job.created_at) or now,
                updated_at=now,
                canceled_at=ensure_utc(job.canceled_at),
                delivered_at=ensure_utc(job.delivered_at),
                received_at=ensure_utc(job.received_at),
            )
            s.add(row)
            await s.flush()
            return self._row_to_job(row)

    async def set_user_tier(self, user_id: str, tier: RateTier) -> None:
        async with self._db.session() as s:
            user = await s.get(UserRow, user_id)
            if user is None:
                s.add(UserRow(id=user_id, paid_user=tier == RateTier.PAID))
            else:
                user.paid_user = tier == RateTier.PAID

    async def set_rate_limit(self, user_id: str, state: RateLimitState) -> None:
        async with self._db.session() as s:
            await self._save_rate_limit(s, user_id, state)

    async def close(self) -> None:
        await self._db.dispose()

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _load_rate_limit(s: AsyncSession, user_id: str) -> tuple[RateLimitState, RateTier]:
        user = await s.get(UserRow, user_id)
        tier = RateTier.PAID if user is not None and user.paid_user else RateTier.FREE
        rl = await s.get(UserRateLimitRow, user_id)
        if rl is None:
            return RateLimitState(), tier
        return RateLimitState(
            last_sent_at=ensure_utc(rl.last_sent_at),
            window_started_at=ensure_utc(rl.window_started_at),
            sent_in_window=rl.sent_in_window or 0,
        ), tier

    @staticmethod
    async def _save_rate_limit(s: AsyncSession, user_id: str, state: RateLimitState) -> None:
        rl = await s.get(UserRateLimitRow, user_id)
        if rl is None:
            rl = UserRateLimitRow(user_id=user_id)
            s.add(rl)
        rl.last_sent_at = state.last_sent_at
        rl.window_started_at = state.window_started_at
        rl.sent_in_window = state.sent_in_window

    @staticmethod
    def _to_columns(patch: dict[str, Any]) -> dict[str, Any]:
        values = dict(patch)
        if "status" in values:
            values["status"] = MessageStatus(values["status"]).value
        for key in _DATETIME_FIELDS:
            if key in values:
                values[key] = ensure_utc(values[key])
        return values

    @staticmethod
    def _row_to_job(row: MessageRow) -> ScheduledMessage:
        data = {
            "id": row.id,
            "user_id": row.user_id,
            "to_handle": row.to_handle,
            "body": row.body,
            "timezone": row.timezone or "UTC",
            "status": MessageStatus(row.status),
            "attempt_count": row.attempt_count or 0,
            "last_error": row.last_error,
            "locked_by": row.locked_by,
            "receipt_correlation": dict(row.receipt_correlation) if row.receipt_correlation else None,
        }
        for key in _DATETIME_FIELDS:
            data[key] = ensure_utc(getattr(row, key))
        return ScheduledMessage(**data)
