from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from cancellations.engine.errors import ExternalApiError
from cancellations.engine.models import FulfillmentConfig, OrderSnapshot

from . import _http
from .base import CancelAttempt, FulfillmentStrategy, StrategyContext

logger = logging.getLogger(__name__)

SHIPBOB_BASE_URL = "https://api.shipbob.com/1.0"
SHIPBOB_SANDBOX_URL = "https://sandbox-api.shipbob.com/1.0"
SERVICE = "shipbob"

_SHIPPED_STATUSES = frozenset({"completed", "fulfilled", "shipped", "partiallyfulfilled", "partially fulfilled"})


def base_url(config: FulfillmentConfig) -> str:
    return SHIPBOB_SANDBOX_URL if config.use_sandbox else SHIPBOB_BASE_URL


def _headers(config: FulfillmentConfig) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {config.shipbob_access_token}",
        "shipbob_channel_id": str(config.shipbob_channel_id or ""),
        "Content-Type": "application/json",
    }


class ShipBobStrategy(FulfillmentStrategy):
    """Cancels through the ShipBob order API, looked up by the store's order number."""

    method = "shipbob"

    def validate_config(self, config: FulfillmentConfig) -> Optional[str]:
        if not config.shipbob_access_token or not config.shipbob_channel_id:
            return "shipbob_not_configured"
        return None

    def health_check(self, config: FulfillmentConfig, *, http_client: Optional[httpx.Client] = None) -> Dict[str, Any]:
        if self.validate_config(config):
            return {"healthy": False, "reason": "ShipBob not connected"}
        try:
            resp = _http.send("GET", f"{base_url(config)}/channel", service=SERVICE, client=http_client, timeout=5.0, headers=_headers(config))
        except ExternalApiError as e:
            return {"healthy": False, "reason": e.message}
        if resp.status_code == 401:
            return {"healthy": False, "reason": "ShipBob authentication failed - access token invalid"}
        if resp.status_code == 403:
            return {"healthy": False, "reason": "ShipBob access forbidden - insufficient permissions"}
        if resp.status_code >= 400:
            return {"healthy": False, "reason": f"ShipBob API error: HTTP {resp.status_code}"}
        return {"healthy": True}

    def _find_order(self, order: OrderSnapshot, ctx: StrategyContext) -> Dict[str, Any]:
        resp = _http.send(
            "GET",
            f"{base_url(ctx.config)}/order",
            service=SERVICE,
            client=ctx.http_client,
            timeout=ctx.timeout,
            headers=_headers(ctx.config),
            params={"ReferenceIds": order.order_number},
        )
        _http.raise_for_failure(resp, service=SERVICE)
        orders = _http.json_body(resp, service=SERVICE) or []
        if not isinstance(orders, list) or not orders:
            raise ExternalApiError(
                f"Order #{order.order_number} not found in ShipBob",
                retryable=False,
                code="shipbob_order_not_found",
            )
        return orders[0]

    def _attempt(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        found = self._find_order(order, ctx)
        shipbob_id = found.get("id")
        status = str(found.get("status") or "").strip().lower()

        if status == "cancelled":
            return CancelAttempt.canceled("Order already cancelled in ShipBob", shipbob_order_id=shipbob_id)
        if status in _SHIPPED_STATUSES:
            return CancelAttempt.cannot_cancel(
                "Order has already been shipped and cannot be cancelled",
                shipbob_order_id=shipbob_id,
                shipbob_status=found.get("status"),
            )

        logger.info("Cancelling ShipBob order %s for order #%s", shipbob_id, order.order_number)
        resp = _http.send(
            "POST",
            f"{base_url(ctx.config)}/order/{shipbob_id}/cancel",
            service=SERVICE,
            client=ctx.http_client,
            timeout=ctx.timeout,
            headers=_headers(ctx.config),
        )
        if 200 <= resp.status_code < 300:
            return CancelAttempt.canceled("Order cancelled in ShipBob", shipbob_order_id=shipbob_id)
        if resp.status_code in _http.REFUSED_STATUS_CODES:
            return CancelAttempt.cannot_cancel(
                f"ShipBob refused the cancellation: HTTP {resp.status_code}",
                shipbob_order_id=shipbob_id,
                body=resp.text[:500],
            )
        _http.raise_for_failure(resp, service=SERVICE)
        return CancelAttempt.canceled("Order cancelled in ShipBob", shipbob_order_id=shipbob_id)
