from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class NotificationConfig(BaseModel):
    """Configuration for outbound email notifications."""

    backend: Literal["none", "inmemory", "resend"] = "none"
    api_key: Optional[str] = None
    sender: str = "Ticket System <notifications@resend.dev>"
    base_url: str = "https://api.resend.com"
    timeout: float = 10.0


class TicketflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    notifications: NotificationConfig = NotificationConfig()


def load_config(path: Optional[str] = None) -> TicketflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to TICKETFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("TICKETFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TicketflowConfig(**data)
    else:
        config = TicketflowConfig()

    env_db_url = os.getenv("TICKETFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_api_key = os.getenv("RESEND_API_KEY")
    if env_api_key:
        config.notifications.api_key = env_api_key
    return config
