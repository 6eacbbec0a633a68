"""
Refund Processor

Refunds are issued by the merchant's commerce platform. The engine always
supplies a stable idempotency key (the workflow id) so a retried or
duplicated call can never refund twice.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from core.observability import traced

logger = logging.getLogger(__name__)


class RefundError(RuntimeError):
    """Refund could not be issued. Never rolls back a completed cancellation."""

    code = "refund_failed"
    category = "refund"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    order_id: str
    amount: Decimal
    idempotency_key: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefundResult":
        return cls(
            refund_id=str(data["refund_id"]),
            order_id=str(data["order_id"]),
            amount=Decimal(str(data["amount"])),
            idempotency_key=str(data["idempotency_key"]),
        )


class RefundProcessor(ABC):
    """Interface for issuing refunds."""

    @abstractmethod
    def process_refund(self, order_id: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        """Issue a refund or raise RefundError."""


class HttpRefundProcessor(RefundProcessor):
    """Issues refunds through the commerce platform's HTTP API."""

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

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @traced("refunds.process_refund")
    def process_refund(self, order_id: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        url = f"{self.base_url}/orders/{order_id}/refunds"
        payload = {"amount": str(amount), "idempotency_key": idempotency_key, "reason": "order_cancellation"}
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, headers=self._headers(idempotency_key), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(url, json=payload, headers=self._headers(idempotency_key))
        except httpx.HTTPError as e:
            logger.warning("Refund request failed for order %s: %s", order_id, e)
            raise RefundError(f"Refund request failed: {e}", details={"order_id": order_id}) from e

        if resp.status_code not in (200, 201):
            raise RefundError(
                f"Refund rejected: HTTP {resp.status_code}",
                details={"order_id": order_id, "status_code": resp.status_code, "body": resp.text[:500]},
            )

        data = resp.json() if resp.content else {}
        refund_id = str(data.get("refund_id") or data.get("id") or "")
        if not refund_id:
            raise RefundError("Refund response missing refund id", details={"order_id": order_id})
        return RefundResult(
            refund_id=refund_id,
            order_id=order_id,
            amount=Decimal(str(data.get("amount", amount))),
            idempotency_key=idempotency_key,
            raw=data,
        )
