"""
Message Senders — base infrastructure for outbound transports.

Provides:
- ChannelError: structured error hierarchy
- SendMetrics: per-sender send/fail/latency counters
- MessageSender: abstract base; subclasses implement _do_send and the base
  adds logging and metrics around every send

The dispatcher only needs send(handle, body) to return or raise. Retry and
backoff are the dispatcher's job, so senders never retry on their own.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class SendError(ChannelError):
    """The transport refused or failed to hand the message off."""

    def __init__(self, message: str, channel: str = "", retryable: bool = True):
        super().__init__(message, channel, retryable=retryable)


class SendTimeoutError(SendError):
    def __init__(self, channel: str = "", timeout_s: float = 0.0):
        super().__init__(f"Send timed out after {timeout_s:.0f}s on {channel}", channel)


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class SendMetrics:
    """Counters for one sender instance."""

    def __init__(self, channel: str):
        self.channel = channel
        self.sent = 0
        self.failed = 0
        self.total_latency_ms = 0.0
        self.last_error = ""

    def record_send(self, latency_ms: float = 0.0):
        self.sent += 1
        self.total_latency_ms += latency_ms

    def record_failure(self, error: str = ""):
        self.failed += 1
        self.last_error = error

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.sent if self.sent else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_error": self.last_error,
        }


# ══════════════════════════════════════════════════════════════
#  SENDER BASE
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):
    """
    Base class for all message senders.

    Subclasses implement _do_send. send() raises ChannelError (or whatever
    the transport raised) on failure and returns None on success.
    """

    channel: str = "unknown"
    method: str = "unknown"        # reported to the web app as the send method

    def __init__(self):
        self.metrics = SendMetrics(self.channel)

    @abc.abstractmethod
    async def _do_send(self, handle: str, body: str) -> None:
        ...

    async def send(self, handle: str, body: str) -> None:
        start = time.monotonic()
        try:
            await self._do_send(handle, body)
        except Exception as e:
            self.metrics.record_failure(str(e))
            logger.warning("message_send_failed", channel=self.channel, to=handle, error=str(e))
            raise
        latency = (time.monotonic() - start) * 1000
        self.metrics.record_send(latency)
        logger.info("message_sent", channel=self.channel, to=handle, latency_ms=round(latency, 1))
