"""
Apple epoch conversion for the Messages store.

chat.db stamps message.date, date_delivered and date_read relative to
2001-01-01T00:00:00Z. Older macOS versions store whole seconds, newer ones
store nanoseconds, so every time window is built in both units.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

APPLE_EPOCH_OFFSET_SECONDS = 978307200      # 2001-01-01T00:00:00Z as unix seconds
NANOS_PER_SECOND = 1_000_000_000
# Anything above this is nanoseconds (1e12 seconds is ~31,700 years)
NANOSECOND_THRESHOLD = 1_000_000_000_000


def to_store_epoch_seconds(value: datetime) -> int:
    return math.floor(value.timestamp()) - APPLE_EPOCH_OFFSET_SECONDS


def from_store_epoch(value: Optional[float]) -> Optional[datetime]:
    """Store timestamp (seconds or nanoseconds) → UTC datetime. Zero/None means unset."""
    if not value or value <= 0:
        return None
    seconds = value / NANOS_PER_SECOND if value > NANOSECOND_THRESHOLD else value
    return datetime.fromtimestamp(seconds + APPLE_EPOCH_OFFSET_SECONDS, tz=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    start_seconds: int
    end_seconds: int
    start_nanos: int
    end_nanos: int


def build_time_window(sent_at: datetime, window: timedelta = timedelta(minutes=5)) -> TimeWindow:
    """±window around sent_at, centred on the whole store-epoch second."""
    center = to_store_epoch_seconds(sent_at)
    offset = int(window.total_seconds())
    start, end = center - offset, center + offset
    return TimeWindow(
        start_seconds=start,
        end_seconds=end,
        start_nanos=start * NANOS_PER_SECOND,
        end_nanos=end * NANOS_PER_SECOND,
    )
