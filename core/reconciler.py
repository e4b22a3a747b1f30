"""
Status Reconciler — applies status callbacks to stored messages.

Rules:
  - FAILED and CANCELED are final; nothing moves a message out of them
  - a FAILED report never downgrades DELIVERED or RECEIVED
  - SENT / DELIVERED / RECEIVED only move forward on the status ladder
  - the callback payload is merged into receipt_correlation even when the
    status itself is ignored
  - the first SENT report for a message that the dispatcher has not already
    charged charges the owner's quota; the rateLimitCharged flag in
    receipt_correlation makes that charge happen once

Status write, payload merge and quota charge are decided together against
one snapshot and persisted in one store transaction.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from config.settings import RateLimitConfig
from core.rate_limit import RateLimitState, apply_send
from database.store_base import (
    BaseJobStore, StatusChange, StatusResolver, RATE_CHARGED_FLAG, merge_payload,
)
from models.schemas import (
    FailedReport, MessageStatus, RateTier, ScheduledMessage, StatusReport,
)
from utils.clock import utcnow

logger = structlog.get_logger()

STATUS_ORDER: dict[MessageStatus, int] = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.RECEIVED: 4,
    MessageStatus.FAILED: 5,
    MessageStatus.CANCELED: 5,
}

_FORWARD_ONLY = {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.RECEIVED}


def should_apply_status(current: MessageStatus, incoming: MessageStatus) -> bool:
    if current in (MessageStatus.FAILED, MessageStatus.CANCELED):
        return False
    if incoming == MessageStatus.FAILED:
        return current not in (MessageStatus.DELIVERED, MessageStatus.RECEIVED)
    if incoming in _FORWARD_ONLY:
        return STATUS_ORDER[incoming] > STATUS_ORDER[current]
    return False


def resolve_report(report: StatusReport, job: ScheduledMessage, state: RateLimitState,
                   tier: RateTier, config: RateLimitConfig, now: datetime) -> StatusChange:
    """Pure decision: what this report does to this job."""
    incoming = report.status_enum
    applied = should_apply_status(job.status, incoming)
    existing = job.receipt_correlation
    already_charged = bool((existing or {}).get(RATE_CHARGED_FLAG))

    merged = merge_payload(existing, report.payload)
    if already_charged and not merged.get(RATE_CHARGED_FLAG):
        merged = {**merged, RATE_CHARGED_FLAG: True}

    charge: Optional[RateLimitState] = None
    if incoming == MessageStatus.SENT and not already_charged and not job.is_terminal:
        charge = apply_send(now, state, tier, config)
        merged = merge_payload(merged, {RATE_CHARGED_FLAG: True})

    fields: dict = {}
    if merged != existing:
        fields["receipt_correlation"] = merged

    if applied:
        fields["status"] = incoming
        if incoming == MessageStatus.DELIVERED:
            fields["delivered_at"] = now
        elif incoming == MessageStatus.RECEIVED:
            fields["received_at"] = now
        elif isinstance(report, FailedReport):
            fields["last_error"] = report.error

    if fields:
        fields["updated_at"] = now
    return StatusChange(fields=fields, rate_limit=charge, applied=applied)


class StatusReconciler:

    def __init__(self, store: BaseJobStore, rate_config: RateLimitConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.rate_config = rate_config
        self._clock = clock

    def resolver(self, report: StatusReport) -> StatusResolver:
        now = self._clock()

        def resolve(job: ScheduledMessage, state: RateLimitState, tier: RateTier) -> StatusChange:
            return resolve_report(report, job, state, tier, self.rate_config, now)

        return resolve

    async def apply(self, report: StatusReport) -> Optional[StatusChange]:
        """Apply one report. None means the message id is unknown."""
        change = await self.store.apply_status_report(report.message_id, self.resolver(report))
        if change is None:
            logger.warning("status_report_unknown_message", message_id=report.message_id)
            return None
        logger.info("status_report_applied" if change.applied else "status_report_ignored",
                    message_id=report.message_id, status=report.status,
                    charged=change.rate_limit is not None, wrote=not change.is_noop)
        return change
