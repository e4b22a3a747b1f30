"""
Tests — StatusReporter outbound callbacks (httpx.MockTransport, no network)
"""
import json
import uuid

import httpx
import pytest

from backend.reporter import SECRET_HEADER, STATUS_PATH, StatusReporter
from config.settings import GatewayConfig
from models.schemas import MessageStatus
from support import SECRET


def _reporter(handler):
    config = GatewayConfig(secret=SECRET, web_base_url="http://web.test")
    return StatusReporter(config, transport=httpx.MockTransport(handler))


class TestStatusReporter:

    @pytest.mark.asyncio
    async def test_posts_envelope_with_secret(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        reporter = _reporter(handler)
        message_id = str(uuid.uuid4())
        try:
            ok = await reporter.report(message_id, MessageStatus.SENT, {"method": "applescript"})
        finally:
            await reporter.close()

        assert ok is True
        (request,) = seen
        assert request.method == "POST"
        assert str(request.url) == f"http://web.test{STATUS_PATH}"
        assert request.headers[SECRET_HEADER] == SECRET
        assert json.loads(request.content) == {
            "messageId": message_id,
            "status": "SENT",
            "payload": {"method": "applescript"},
        }

    @pytest.mark.asyncio
    async def test_non_2xx_is_false(self):
        reporter = _reporter(lambda request: httpx.Response(404, json={"error": "not_found"}))
        try:
            assert await reporter.report(str(uuid.uuid4()), MessageStatus.DELIVERED) is False
        finally:
            await reporter.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_false(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        reporter = _reporter(handler)
        try:
            assert await reporter.report(str(uuid.uuid4()), MessageStatus.FAILED, {"error": "x"}) is False
        finally:
            await reporter.close()

    @pytest.mark.asyncio
    async def test_invalid_message_id_never_posts(self):
        calls = []
        reporter = _reporter(lambda request: calls.append(request) or httpx.Response(200))
        try:
            assert await reporter.report("not-a-uuid", MessageStatus.SENT) is False
        finally:
            await reporter.close()
        assert calls == []

    @pytest.mark.asyncio
    async def test_status_outside_callback_set_rejected(self):
        reporter = _reporter(lambda request: httpx.Response(200))
        try:
            assert await reporter.report(str(uuid.uuid4()), MessageStatus.CANCELED) is False
        finally:
            await reporter.close()

    @pytest.mark.asyncio
    async def test_client_reopened_after_close(self):
        reporter = _reporter(lambda request: httpx.Response(204))
        await reporter.report(str(uuid.uuid4()), MessageStatus.SENT)
        await reporter.close()
        assert await reporter.report(str(uuid.uuid4()), MessageStatus.SENT) is True
        await reporter.close()
