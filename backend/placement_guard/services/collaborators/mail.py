"""
Mail Delivery Collaborator

Contract: send(to, template, vars) -> ACCEPTED | FAILED.
Template rendering lives on the mail service side; we only pick the
template and pass variables.
"""
import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from ...config import MAIL_API_KEY, MAIL_API_URL, MAIL_TIMEOUT_SECONDS


logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    ACCEPTED = "accepted"
    FAILED = "failed"


class MailClient(Protocol):
    def send(self, to: str, template: str, vars: Dict[str, Any]) -> DeliveryStatus:
        ...


class HttpMailClient:
    """Posts send requests to the platform mail service."""

    def __init__(
        self,
        base_url: str = MAIL_API_URL,
        api_key: Optional[str] = MAIL_API_KEY,
        timeout: float = MAIL_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)

    def send(self, to: str, template: str, vars: Dict[str, Any]) -> DeliveryStatus:
        try:
            response = self.client.post("/send", json={"to": to, "template": template, "vars": vars})
        except httpx.HTTPError as e:
            logger.warning(f"Mail service unreachable sending '{template}' to {to}: {e}")
            return DeliveryStatus.FAILED

        if response.is_success:
            return DeliveryStatus.ACCEPTED

        logger.warning(f"Mail service rejected '{template}' to {to}: HTTP {response.status_code}")
        return DeliveryStatus.FAILED

    def close(self):
        self.client.close()
