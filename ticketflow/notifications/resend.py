"""Resend HTTP API dispatcher."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..errors import NotificationError
from .base import DeliveryReceipt, EmailMessage, NotificationDispatcher

logger = logging.getLogger(__name__)


class ResendDispatcher(NotificationDispatcher):
    """Send email through the Resend REST API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.sender = sender
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def deliver(self, message: EmailMessage) -> DeliveryReceipt:
        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.body_html,
            "tags": [
                {"name": "category", "value": message.category},
                {"name": "severity", "value": message.severity},
            ],
        }
        try:
            response = await self._client.post("/emails", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                f"Resend rejected email to {message.to}: "
                f"{e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(f"Could not reach Resend: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise NotificationError(
                f"Resend returned an unreadable response for {message.to}: {response.text!r}"
            ) from e
        message_id = body.get("id") if isinstance(body, dict) else None
        logger.info(f"Sent '{message.category}' email to {message.to} (id={message_id})")
        return DeliveryReceipt(message_id=message_id, backend="resend")
