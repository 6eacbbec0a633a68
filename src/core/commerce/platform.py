"""
Commerce Platform Client

Used by in-house (self) fulfillment to cancel an order directly on the
merchant's store, and by health checks to verify connectivity.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from core.observability import traced

logger = logging.getLogger(__name__)


class CommercePlatformError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class OrderNotCancellable(CommercePlatformError):
    """The platform refused the cancellation (e.g. the order already shipped)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message, retryable=False, status_code=status_code)


class CommercePlatform(ABC):
    @abstractmethod
    def cancel_order(self, order_id: str, *, reason: str, idempotency_key: str) -> Dict[str, Any]:
        """Cancel the order without restocking side effects beyond the platform default."""

    def health_check(self) -> Dict[str, Any]:
        return {"status": "unknown"}


class HttpCommercePlatform(CommercePlatform):
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

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return self._client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        with httpx.Client(timeout=self.timeout) as client:
            return client.request(method, url, headers=headers, **kwargs)

    @traced("commerce.cancel_order")
    def cancel_order(self, order_id: str, *, reason: str, idempotency_key: str) -> Dict[str, Any]:
        try:
            resp = self._request(
                "POST",
                f"/orders/{order_id}/cancel",
                json={"reason": reason},
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            raise CommercePlatformError(f"Commerce platform unreachable: {e}", retryable=True) from e

        if resp.status_code in (200, 201, 202):
            return resp.json() if resp.content else {}
        if resp.status_code in (409, 422):
            raise OrderNotCancellable(f"Order {order_id} cannot be cancelled: {resp.text[:200]}", status_code=resp.status_code)
        retryable = resp.status_code == 429 or resp.status_code >= 500
        raise CommercePlatformError(
            f"Commerce platform error: HTTP {resp.status_code}",
            retryable=retryable,
            status_code=resp.status_code,
        )

    def health_check(self) -> Dict[str, Any]:
        try:
            resp = self._request("GET", "/health")
        except httpx.HTTPError as e:
            return {"status": "unhealthy", "error": str(e)[:200]}
        return {"status": "healthy" if resp.status_code == 200 else "unhealthy", "status_code": resp.status_code}
