"""Tests for HTTP provider clients and the in-app pusher."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.notifications.errors import (
    ProviderClientError,
    ProviderServerError,
    ProviderTimeoutError,
)
from src.notifications.providers import SMS_MAX_LENGTH, EmailProvider, InAppPusher, SmsProvider


def _response(status_code: int = 200, body: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=body if body is not None else {},
        request=httpx.Request("POST", "https://mail.test/emails"),
    )


@pytest.fixture
def email_provider():
    return EmailProvider("https://mail.test/", "mail-key", "alerts@example.com")


@pytest.fixture
def mock_client():
    """Patch httpx.AsyncClient inside the providers module."""
    with patch("src.notifications.providers.httpx.AsyncClient") as mock_client_cls:
        client = AsyncMock()
        mock_client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        mock_client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client


class TestEmailProvider:
    @pytest.mark.asyncio
    async def test_success_returns_message_id(self, email_provider, mock_client):
        mock_client.post.return_value = _response(202, {"id": "msg-123"})

        ref = await email_provider.send("user@example.com", "Low balance", "Below $100", "key-1")

        assert ref == "msg-123"
        args, kwargs = mock_client.post.call_args
        assert args[0] == "https://mail.test/emails"
        assert kwargs["headers"]["Idempotency-Key"] == "key-1"
        assert kwargs["headers"]["Authorization"] == "Bearer mail-key"
        assert kwargs["json"] == {
            "from": "alerts@example.com",
            "to": ["user@example.com"],
            "subject": "Low balance",
            "text": "Below $100",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_retryable_statuses(self, email_provider, mock_client, status):
        mock_client.post.return_value = _response(status)
        with pytest.raises(ProviderServerError) as exc_info:
            await email_provider.send("u@example.com", "s", "b", "k")
        assert exc_info.value.status_code == status
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self, email_provider, mock_client):
        mock_client.post.return_value = _response(422, {"error": {"code": "invalid_payload"}})
        with pytest.raises(ProviderClientError) as exc_info:
            await email_provider.send("u@example.com", "s", "b", "k")
        assert not exc_info.value.retryable
        assert not exc_info.value.bounced
        assert "invalid_payload" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bounce_code(self, email_provider, mock_client):
        mock_client.post.return_value = _response(400, {"error": "invalid_recipient"})
        with pytest.raises(ProviderClientError) as exc_info:
            await email_provider.send("nobody@example.com", "s", "b", "k")
        assert exc_info.value.bounced

    @pytest.mark.asyncio
    async def test_gone_is_bounce(self, email_provider, mock_client):
        mock_client.post.return_value = _response(410)
        with pytest.raises(ProviderClientError) as exc_info:
            await email_provider.send("old@example.com", "s", "b", "k")
        assert exc_info.value.bounced

    @pytest.mark.asyncio
    async def test_timeout(self, email_provider, mock_client):
        mock_client.post.side_effect = httpx.ReadTimeout("timed out")
        with pytest.raises(ProviderTimeoutError):
            await email_provider.send("u@example.com", "s", "b", "k")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, email_provider, mock_client):
        mock_client.post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(ProviderServerError):
            await email_provider.send("u@example.com", "s", "b", "k")


class TestSmsProvider:
    @pytest.mark.asyncio
    async def test_payload_truncated(self, mock_client):
        provider = SmsProvider("https://sms.test", "sms-key", "+15550000000")
        mock_client.post.return_value = _response(200, {"message_id": "sms-9"})

        ref = await provider.send("+15551234567", "", "x" * 1000, "k")

        assert ref == "sms-9"
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["to"] == "+15551234567"
        assert len(payload["body"]) == SMS_MAX_LENGTH
        assert mock_client.post.call_args.args[0] == "https://sms.test/sms"


class TestInAppPusher:
    @pytest.mark.asyncio
    async def test_publishes_to_user_channel(self, notification):
        redis = AsyncMock()
        redis.publish.return_value = 2
        pusher = InAppPusher(redis, "notifications:user")

        assert await pusher.push(notification) == 2

        channel, payload = redis.publish.call_args.args
        assert channel == "notifications:user:7"
        message = json.loads(payload)
        assert message["type"] == "notification"
        assert message["data"]["notification_id"] == "n-1"

    @pytest.mark.asyncio
    async def test_without_redis(self, notification):
        assert await InAppPusher(None, "p").push(notification) == 0
