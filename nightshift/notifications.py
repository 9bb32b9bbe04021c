"""Push notifications through ntfy."""

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from .config import NtfyConfig

logger = logging.getLogger(__name__)

NTFY_TIMEOUT_SECONDS = 5


@dataclass
class NtfyMessage:
    title: str
    body: str = ""
    priority: int = 3
    tags: list[str] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)


class NtfyClient:
    """Posts JSON messages to an ntfy topic.

    send() never raises. A failed notification is logged and dropped.
    """

    def __init__(self, config: NtfyConfig, session: requests.Session | None = None):
        self.url = f"{config.base_url.rstrip('/')}/{config.topic}"
        self.session = session or requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        if config.token:
            self.session.headers["Authorization"] = f"Bearer {config.token}"

    def send(self, message: NtfyMessage) -> bool:
        payload: dict[str, Any] = {
            "title": message.title,
            "message": message.body,
            "priority": message.priority,
        }
        if message.tags:
            payload["tags"] = message.tags
        if message.actions:
            payload["actions"] = message.actions

        try:
            response = self.session.post(self.url, json=payload, timeout=NTFY_TIMEOUT_SECONDS)
        except requests.RequestException as e:
            logger.warning("ntfy notification error for %s: %s", self.url, e)
            return False

        if not response.ok:
            logger.warning("ntfy notification failed with HTTP %d for %s", response.status_code, self.url)
            return False

        logger.debug("ntfy notification sent to %s", self.url)
        return True
