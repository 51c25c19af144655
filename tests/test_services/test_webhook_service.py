"""
Tests para WebhookNotifier.

Usa httpx.MockTransport: ninguna petición sale de proceso.
"""

import json

import httpx
import pytest

from wa_bot_service.services.webhook_service import WebhookEndpoint, WebhookNotifier


def _notifier(handler) -> WebhookNotifier:
    return WebhookNotifier("http://backend.test/", timeout=5.0, transport=httpx.MockTransport(handler))


class TestWebhookNotifier:
    """Tests para el envío best-effort de webhooks."""

    @pytest.mark.asyncio
    async def test_successful_post_with_reply(self):
        # Arrange
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"reply": "hello"})

        notifier = _notifier(handler)

        # Act
        result = await notifier.notify(
            WebhookEndpoint.INCOMING_MESSAGE,
            {"sessionId": "acme", "from": "1@s.whatsapp.net", "text": "hi"}
        )

        # Assert
        assert result.ok
        assert result.status_code == 200
        assert result.reply == "hello"
        assert str(requests[0].url) == "http://backend.test/api/webhook/wa/incoming-message"
        assert requests[0].method == "POST"
        assert json.loads(requests[0].content) == {"sessionId": "acme", "from": "1@s.whatsapp.net", "text": "hi"}
        assert notifier.stats == {"webhooks_sent": 1, "webhooks_failed": 0}
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self):
        # Arrange
        notifier = _notifier(lambda request: httpx.Response(500, json={"reply": "ignored"}))

        # Act
        result = await notifier.notify(WebhookEndpoint.HEARTBEAT, {"sessionId": "acme"})

        # Assert
        assert not result.ok
        assert result.status_code == 500
        assert result.reply is None
        assert notifier.stats["webhooks_failed"] == 1
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_does_not_raise(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        notifier = _notifier(handler)

        # Act
        result = await notifier.notify(WebhookEndpoint.QR_UPDATE, {"sessionId": "acme", "qrCode": "data:"})

        # Assert
        assert not result.ok
        assert result.status_code is None
        assert "connection refused" in result.error
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_timeout_does_not_raise(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        notifier = _notifier(handler)

        result = await notifier.notify(WebhookEndpoint.CONNECTION_UPDATE, {"sessionId": "acme"})

        assert not result.ok
        assert notifier.stats["webhooks_failed"] == 1
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body_has_no_reply(self):
        # Arrange
        notifier = _notifier(lambda request: httpx.Response(200, text="OK"))

        # Act
        result = await notifier.notify(WebhookEndpoint.INCOMING_MESSAGE, {"sessionId": "acme"})

        # Assert
        assert result.ok
        assert result.data is None
        assert result.reply is None
        await notifier.aclose()

    @pytest.mark.asyncio
    async def test_empty_reply_is_ignored(self):
        notifier = _notifier(lambda request: httpx.Response(200, json={"reply": ""}))

        result = await notifier.notify(WebhookEndpoint.INCOMING_MESSAGE, {"sessionId": "acme"})

        assert result.ok
        assert result.reply is None
        await notifier.aclose()

    def test_endpoint_paths(self):
        assert WebhookEndpoint.QR_UPDATE.value == "/api/webhook/wa/qr-update"
        assert WebhookEndpoint.CONNECTION_UPDATE.value == "/api/webhook/wa/connection-update"
        assert WebhookEndpoint.INCOMING_MESSAGE.value == "/api/webhook/wa/incoming-message"
        assert WebhookEndpoint.HEARTBEAT.value == "/api/webhook/wa/heartbeat"
