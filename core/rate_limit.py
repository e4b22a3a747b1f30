"""
Per-user send quota — pure decision functions, no I/O.

Two checks, in order:
  1. MIN_INTERVAL  — a tier may require a gap between consecutive sends
  2. MAX_PER_HOUR  — a rolling one-hour window counts sends per user

A stale window (older than an hour, or never started) is normalized to a
fresh one before either check runs. Normalization never writes anything;
the counter only moves when apply_send() is persisted with a status change.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from config.settings import RateLimitConfig
from models.schemas import RateTier

WINDOW = timedelta(hours=1)


class RateLimitReason(str, Enum):
    MIN_INTERVAL = "MIN_INTERVAL"
    MAX_PER_HOUR = "MAX_PER_HOUR"


@dataclass(frozen=True)
class RateLimitState:
    last_sent_at: Optional[datetime] = None
    window_started_at: Optional[datetime] = None
    sent_in_window: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[RateLimitReason]
    next_allowed_at: Optional[datetime]
    remaining: int
    normalized: RateLimitState


def normalize_window(now: datetime, state: RateLimitState) -> RateLimitState:
    if state.window_started_at is None or now >= state.window_started_at + WINDOW:
        return replace(state, window_started_at=now, sent_in_window=0)
    return state


def evaluate(now: datetime, state: RateLimitState, tier: RateTier,
             config: RateLimitConfig) -> RateLimitDecision:
    limits = config.for_tier(tier)
    normalized = normalize_window(now, state)

    if limits.min_interval_seconds > 0 and normalized.last_sent_at is not None:
        earliest = normalized.last_sent_at + timedelta(seconds=limits.min_interval_seconds)
        if now < earliest:
            return RateLimitDecision(
                allowed=False,
                reason=RateLimitReason.MIN_INTERVAL,
                next_allowed_at=earliest,
                remaining=max(limits.max_per_hour - normalized.sent_in_window, 0),
                normalized=normalized,
            )

    if normalized.sent_in_window >= limits.max_per_hour:
        return RateLimitDecision(
            allowed=False,
            reason=RateLimitReason.MAX_PER_HOUR,
            next_allowed_at=normalized.window_started_at + WINDOW,
            remaining=0,
            normalized=normalized,
        )

    return RateLimitDecision(
        allowed=True,
        reason=None,
        next_allowed_at=None,
        remaining=limits.max_per_hour - normalized.sent_in_window,
        normalized=normalized,
    )


def apply_send(now: datetime, state: RateLimitState, tier: RateTier,
               config: RateLimitConfig) -> RateLimitState:
    """Charge one send against the user's window. Persist exactly once per send."""
    normalized = normalize_window(now, state)
    return RateLimitState(
        last_sent_at=now,
        window_started_at=normalized.window_started_at or now,
        sent_in_window=normalized.sent_in_window + 1,
    )

