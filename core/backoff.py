"""Retry delay for failed sends: doubles per attempt, capped."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


def compute_backoff_seconds(attempt_count: int, base_seconds: int, max_seconds: int) -> int:
    """attempt 1 → base, 2 → 2*base, 3 → 4*base, ... never above max_seconds."""
    backoff = base_seconds * 2 ** max(attempt_count - 1, 0)
    return min(backoff, max_seconds)


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: int = 30
    max_seconds: int = 1800
    max_attempts: int = 5

    def should_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def delay(self, attempt_count: int) -> timedelta:
        return timedelta(seconds=compute_backoff_seconds(
            attempt_count, self.base_seconds, self.max_seconds))

    def next_run_at(self, now: datetime, attempt_count: int) -> datetime:
        return now + self.delay(attempt_count)
