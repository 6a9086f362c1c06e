from __future__ import annotations

from typing import Optional, Protocol

import httpx

from addisverify.logging import get_logger, mask_phone

logger = get_logger(__name__)


class DeliveryError(Exception):
    """The provider did not accept the message."""


class Messenger(Protocol):
    async def send(self, destination: str, body: str) -> None: ...

    async def close(self) -> None: ...


class LoggingMessenger:
    """Development messenger: records the send instead of delivering it.

    The message body is never logged because it carries the code.
    """

    def __init__(self) -> None:
        self.sent_count = 0

    async def send(self, destination: str, body: str) -> None:
        self.sent_count += 1
        logger.info(
            "sms_mock_sent",
            destination=mask_phone(destination),
            body_length=len(body),
        )

    async def close(self) -> None:
        return None


class HttpSmsMessenger:
    """Deliver messages through a JSON-over-HTTP SMS gateway.

    Posts ``{"to", "from", "body"}`` to ``gateway_url`` with an optional bearer
    API key. Any transport failure or non-2xx response raises
    :class:`DeliveryError`; nothing is retried here.
    """

    def __init__(
        self,
        gateway_url: str,
        *,
        api_key: Optional[str] = None,
        sender_id: str = "AddisVerify",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not gateway_url:
            raise ValueError("SMS gateway URL is required for the http provider")
        self.gateway_url = gateway_url
        self.sender_id = sender_id
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def send(self, destination: str, body: str) -> None:
        payload = {"to": destination, "from": self.sender_id, "body": body}
        try:
            response = await self._client.post(self.gateway_url, json=payload)
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_transport_error",
                destination=mask_phone(destination),
                error_type=type(exc).__name__,
            )
            raise DeliveryError("sms gateway unreachable") from exc
        if response.status_code >= 300:
            logger.error(
                "sms_send_rejected",
                destination=mask_phone(destination),
                status_code=response.status_code,
            )
            raise DeliveryError(f"sms gateway returned {response.status_code}")
        logger.info("sms_sent", destination=mask_phone(destination))

    async def close(self) -> None:
        await self._client.aclose()
