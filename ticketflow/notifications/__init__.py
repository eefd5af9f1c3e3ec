"""Notification dispatcher factory."""

from __future__ import annotations

from typing import Optional

from ..config import TicketflowConfig, load_config
from .base import (
    DeliveryReceipt,
    EmailMessage,
    NotificationCategory,
    NotificationDispatcher,
    NotificationSeverity,
)
from .inmemory import InMemoryDispatcher


def get_dispatcher(
    backend: Optional[str] = None, config: Optional[TicketflowConfig] = None
) -> NotificationDispatcher | None:
    """Return the configured dispatcher, or ``None`` when notifications are off."""

    config = config or load_config()
    settings = config.notifications
    backend = (backend or settings.backend).lower()

    if backend == "none":
        return None
    elif backend == "inmemory":
        return InMemoryDispatcher()
    elif backend == "resend":
        from .resend import ResendDispatcher

        if not settings.api_key:
            raise ValueError("Resend backend requires an API key (RESEND_API_KEY)")
        return ResendDispatcher(
            api_key=settings.api_key,
            sender=settings.sender,
            base_url=settings.base_url,
            timeout=settings.timeout,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = [
    "DeliveryReceipt",
    "EmailMessage",
    "InMemoryDispatcher",
    "NotificationCategory",
    "NotificationDispatcher",
    "NotificationSeverity",
    "get_dispatcher",
]
