"""
Notification Dispatcher

Sends templated emails (customer and warehouse) through the email-routing
service. Transport is external; this module only renders and submits.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from core.observability import traced

from .templates import render

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """Permanent delivery failure (bad address, rejected payload)."""

    retryable = False


class RetryableNotificationError(NotificationError):
    """Transient delivery failure; the same idempotency key may be retried."""

    retryable = True


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str
    template: str
    recipient: str
    idempotency_key: str
    sent_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "template": self.template,
            "recipient": self.recipient,
            "idempotency_key": self.idempotency_key,
            "sent_at": self.sent_at,
        }


class NotificationDispatcher(ABC):
    """Interface for sending templated emails."""

    @abstractmethod
    def send_email(
        self,
        template: str,
        variables: Dict[str, Any],
        *,
        to: str,
        idempotency_key: str,
        user_id: Optional[str] = None,
    ) -> DeliveryReceipt:
        """Send one email or raise NotificationError / RetryableNotificationError."""


class HttpNotificationDispatcher(NotificationDispatcher):
    """Posts rendered emails to the email-routing service."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @traced("notifications.send_email")
    def send_email(
        self,
        template: str,
        variables: Dict[str, Any],
        *,
        to: str,
        idempotency_key: str,
        user_id: Optional[str] = None,
    ) -> DeliveryReceipt:
        email = render(template, variables)
        payload = {
            "user_id": user_id,
            "to": to,
            "subject": email.subject,
            "text": email.body,
            "html": email.html,
            "template": template,
        }
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.base_url}/emails/send"
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise RetryableNotificationError(f"Email routing unreachable: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise RetryableNotificationError(f"Email routing error: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise NotificationError(f"Email rejected: HTTP {resp.status_code} {resp.text[:200]}")

        data = resp.json() if resp.content else {}
        receipt = DeliveryReceipt(
            message_id=str(data.get("message_id") or data.get("id") or idempotency_key),
            template=template,
            recipient=to,
            idempotency_key=idempotency_key,
            sent_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        logger.info("Sent %s email to %s (message_id=%s)", template, to, receipt.message_id)
        return receipt
