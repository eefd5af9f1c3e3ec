"""In-memory dispatcher for testing."""

from __future__ import annotations

import uuid
from typing import List

from .base import DeliveryReceipt, EmailMessage, NotificationDispatcher


class InMemoryDispatcher(NotificationDispatcher):
    """Collects messages in an outbox instead of sending them."""

    def __init__(self) -> None:
        self.outbox: List[EmailMessage] = []

    async def deliver(self, message: EmailMessage) -> DeliveryReceipt:
        self.outbox.append(message)
        return DeliveryReceipt(message_id=str(uuid.uuid4()), backend="inmemory")
