"""External provider clients for email, SMS and live in-app pushes.

Provider clients know the wire call and nothing else: no retries, no
circuit breaking, no ledger writes. They translate every failure into the
typed ``ProviderError`` hierarchy so the channel adapters can decide
whether to retry.

Creates a new ``httpx.AsyncClient`` per call (short-lived, no pooling).
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from src.alerts.schemas import Notification
from src.notifications.errors import (
    ProviderClientError,
    ProviderServerError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

# Provider error codes that mean the destination itself is rejected
BOUNCE_ERROR_CODES: frozenset[str] = frozenset({
    "invalid_recipient",
    "invalid_number",
    "unsubscribed",
    "blocked",
    "hard_bounce",
})

# 4xx statuses that are still worth retrying
RETRYABLE_CLIENT_STATUSES: frozenset[int] = frozenset({408, 409, 425, 429})

SMS_MAX_LENGTH = 480


class ProviderClient(ABC):
    """Abstract base for outbound message providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier, also the circuit breaker name."""

    @abstractmethod
    async def send(
        self,
        destination: str,
        subject: str,
        body: str,
        idempotency_key: str,
    ) -> str:
        """Send one message.

        Args:
            destination: Address or phone number.
            subject: Subject line (ignored by providers without one).
            body: Message text.
            idempotency_key: Stable key for provider-side duplicate suppression.

        Returns:
            Provider message id.

        Raises:
            ProviderClientError: Request rejected; do not retry.
            ProviderServerError: Provider or transport failure; retry.
            ProviderTimeoutError: No answer within the timeout; retry.
        """


class HttpProvider(ProviderClient):
    """JSON-over-HTTP provider with bearer auth and an Idempotency-Key header."""

    path: str = "/messages"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 10.0,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    @abstractmethod
    def _build_payload(self, destination: str, subject: str, body: str) -> dict[str, Any]:
        """Provider-specific request body."""

    async def send(
        self,
        destination: str,
        subject: str,
        body: str,
        idempotency_key: str,
    ) -> str:
        payload = self._build_payload(destination, subject, body)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Idempotency-Key": idempotency_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._api_url}{self.path}",
                    json=payload,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.name} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderServerError(f"{self.name} transport error: {e}") from e

        return self._handle_response(resp)

    def _handle_response(self, resp: httpx.Response) -> str:
        body = _json_or_empty(resp)

        if resp.is_success:
            message_id = body.get("id") or body.get("message_id")
            return str(message_id) if message_id else ""

        error = body.get("error")
        error_code = error.get("code") if isinstance(error, dict) else error
        detail = f"{self.name} returned {resp.status_code}" + (
            f" ({error_code})" if error_code else ""
        )

        if resp.status_code >= 500 or resp.status_code in RETRYABLE_CLIENT_STATUSES:
            raise ProviderServerError(detail, status_code=resp.status_code)

        raise ProviderClientError(
            detail,
            status_code=resp.status_code,
            bounced=error_code in BOUNCE_ERROR_CODES or resp.status_code == 410,
        )


class EmailProvider(HttpProvider):
    """Transactional email API."""

    path = "/emails"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(api_url, api_key, timeout)
        self._from_address = from_address

    @property
    def name(self) -> str:
        return "email"

    def _build_payload(self, destination: str, subject: str, body: str) -> dict[str, Any]:
        return {
            "from": self._from_address,
            "to": [destination],
            "subject": subject,
            "text": body,
        }


class SmsProvider(HttpProvider):
    """SMS gateway API."""

    path = "/sms"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_number: str,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(api_url, api_key, timeout)
        self._from_number = from_number

    @property
    def name(self) -> str:
        return "sms"

    def _build_payload(self, destination: str, subject: str, body: str) -> dict[str, Any]:
        text = f"{subject}: {body}" if subject else body
        return {
            "from": self._from_number,
            "to": destination,
            "body": text[:SMS_MAX_LENGTH],
        }


class InAppPusher:
    """Best-effort live push to connected clients over Redis pub/sub.

    Each user has a channel ``{prefix}:{user_id}``; API processes holding a
    WebSocket for that user subscribe to it.
    """

    def __init__(self, redis_client: Any | None, channel_prefix: str) -> None:
        self._redis = redis_client
        self._prefix = channel_prefix

    def channel_for(self, user_id: int) -> str:
        return f"{self._prefix}:{user_id}"

    async def push(self, notification: Notification) -> int:
        """Publish the notification; returns the number of live receivers.

        Raises whatever the Redis client raises; callers treat any failure
        as non-critical.
        """
        if self._redis is None:
            return 0
        payload = json.dumps({"type": "notification", "data": notification.to_dict()})
        return await self._redis.publish(self.channel_for(notification.user_id), payload)


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
