"""
Status Reporter — tells the web app what happened to a message.

POSTs {messageId, status, payload} to <web_base_url>/api/gateway/status
with the shared secret in X-Gateway-Secret. One attempt per report: receipts
are best-effort telemetry, and the dispatcher's own status/attempt_count
columns stay the source of truth for retries.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config.settings import GatewayConfig
from models.schemas import MessageStatus, build_status_report

logger = structlog.get_logger()

STATUS_PATH = "/api/gateway/status"
SECRET_HEADER = "X-Gateway-Secret"


class StatusReporter:
    """Authenticated outbound status callbacks over httpx."""

    def __init__(self, config: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.web_base_url,
                headers={SECRET_HEADER: self.config.secret},
                timeout=self.config.callback_timeout_s,
                transport=self._transport,
            )
        return self.client

    async def report(self, message_id: str, status: MessageStatus,
                     payload: Optional[dict[str, Any]] = None) -> bool:
        """Send one status callback. True only for a 2xx response."""
        try:
            envelope = build_status_report(message_id, status, payload).to_envelope()
        except ValidationError as e:
            logger.error("status_report_invalid", message_id=message_id, error=str(e))
            return False

        try:
            client = await self._get_client()
            resp = await client.post(STATUS_PATH, json=envelope)
        except httpx.HTTPError as e:
            logger.warning("status_report_failed",
                           message_id=message_id, status=envelope["status"], error=str(e))
            return False

        ok = 200 <= resp.status_code < 300
        if ok:
            logger.info("status_reported", message_id=message_id, status=envelope["status"])
        else:
            logger.warning("status_report_rejected",
                           message_id=message_id, status=envelope["status"],
                           http_status=resp.status_code)
        return ok

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()
