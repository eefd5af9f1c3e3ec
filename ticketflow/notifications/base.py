"""Base interface for outbound notifications."""

from __future__ import annotations

import abc
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

NotificationCategory = Literal["new_ticket", "escalation", "deadline", "reminder", "default"]
NotificationSeverity = Literal["info", "warning", "error", "success"]


class EmailMessage(BaseModel):
    """A single outbound email."""

    to: str
    subject: str
    category: NotificationCategory = "default"
    severity: NotificationSeverity = "info"
    body_html: str


class DeliveryReceipt(BaseModel):
    """Acknowledgement returned by the delivery backend."""

    message_id: Optional[str] = None
    backend: str
    accepted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationDispatcher(metaclass=abc.ABCMeta):
    """Abstract email dispatcher."""

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
        pass

    async def send(
        self,
        to: str,
        subject: str,
        category: NotificationCategory,
        body_html: str,
        severity: NotificationSeverity = "info",
    ) -> DeliveryReceipt:
        """Validate and deliver one email.

        Raises:
            NotificationError: If the backend rejects or cannot deliver it.
        """
        message = EmailMessage(
            to=to,
            subject=subject,
            category=category,
            severity=severity,
            body_html=body_html,
        )
        return await self.deliver(message)

    @abc.abstractmethod
    async def deliver(self, message: EmailMessage) -> DeliveryReceipt:
        """Hand the message to the backend."""
        raise NotImplementedError
