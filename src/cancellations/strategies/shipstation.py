from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from cancellations.engine.errors import ExternalApiError
from cancellations.engine.models import FulfillmentConfig, OrderSnapshot

from . import _http
from .base import CancelAttempt, FulfillmentStrategy, StrategyContext

logger = logging.getLogger(__name__)

SHIPSTATION_BASE_URL = "https://ssapi.shipstation.com"
SERVICE = "shipstation"


def _auth(config: FulfillmentConfig) -> Tuple[str, str]:
    return (config.shipstation_api_key or "", config.shipstation_api_secret or "")


class ShipStationStrategy(FulfillmentStrategy):
    """Marks the ShipStation order cancelled unless it already shipped."""

    method = "shipstation"

    def validate_config(self, config: FulfillmentConfig) -> Optional[str]:
        if not config.shipstation_api_key or not config.shipstation_api_secret:
            return "shipstation_not_configured"
        return None

    def health_check(self, config: FulfillmentConfig, *, http_client: Optional[httpx.Client] = None) -> Dict[str, Any]:
        if self.validate_config(config):
            return {"healthy": False, "reason": "ShipStation API credentials not configured"}
        try:
            resp = _http.send(
                "GET", f"{SHIPSTATION_BASE_URL}/stores", service=SERVICE, client=http_client, timeout=5.0, auth=_auth(config)
            )
        except ExternalApiError as e:
            return {"healthy": False, "reason": e.message}
        if resp.status_code >= 400:
            return {"healthy": False, "reason": f"ShipStation API error: HTTP {resp.status_code}"}
        return {"healthy": True}

    def _find_order(self, order: OrderSnapshot, ctx: StrategyContext) -> Dict[str, Any]:
        resp = _http.send(
            "GET",
            f"{SHIPSTATION_BASE_URL}/orders",
            service=SERVICE,
            client=ctx.http_client,
            timeout=ctx.timeout,
            auth=_auth(ctx.config),
            params={"orderNumber": order.order_number},
        )
        _http.raise_for_failure(resp, service=SERVICE)
        data = _http.json_body(resp, service=SERVICE) or {}
        # orderNumber is a prefix filter on ShipStation's side
        matches = [o for o in data.get("orders") or [] if str(o.get("orderNumber")) == order.order_number]
        if not matches:
            raise ExternalApiError(
                f"Order #{order.order_number} not found in ShipStation",
                retryable=False,
                code="shipstation_order_not_found",
            )
        return matches[0]

    def _attempt(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        found = self._find_order(order, ctx)
        ss_id = found.get("orderId")
        status = str(found.get("orderStatus") or "").strip().lower()

        if status == "cancelled":
            return CancelAttempt.canceled("Order already cancelled in ShipStation", shipstation_order_id=ss_id)
        if status == "shipped":
            return CancelAttempt.cannot_cancel(
                "Order has already shipped from ShipStation", shipstation_order_id=ss_id
            )

        logger.info("Cancelling ShipStation order %s for order #%s", ss_id, order.order_number)
        payload = dict(found)
        payload["orderStatus"] = "cancelled"
        resp = _http.send(
            "POST",
            f"{SHIPSTATION_BASE_URL}/orders/createorder",
            service=SERVICE,
            client=ctx.http_client,
            timeout=ctx.timeout,
            auth=_auth(ctx.config),
            json=payload,
        )
        if resp.status_code in _http.REFUSED_STATUS_CODES:
            return CancelAttempt.cannot_cancel(
                f"ShipStation refused the cancellation: HTTP {resp.status_code}",
                shipstation_order_id=ss_id,
                body=resp.text[:500],
            )
        _http.raise_for_failure(resp, service=SERVICE)
        return CancelAttempt.canceled("Order cancelled in ShipStation", shipstation_order_id=ss_id)
