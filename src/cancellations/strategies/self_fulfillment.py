from __future__ import annotations

from typing import Any, Dict

from cancellations.engine.errors import ExternalApiError
from cancellations.engine.models import OrderSnapshot
from core.commerce import CommercePlatformError, OrderNotCancellable

from .base import CancelAttempt, FulfillmentStrategy, StrategyContext

_SHIPPED_FULFILLMENT = frozenset({"shipped", "fulfilled", "partial", "partially_fulfilled", "in_transit", "delivered"})


class SelfFulfillmentStrategy(FulfillmentStrategy):
    """The merchant ships in-house: cancel directly on the commerce platform."""

    method = "self_fulfillment"

    def health_check(self, config, *, http_client=None) -> Dict[str, Any]:
        return {"healthy": True}

    def _attempt(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        fulfillment = (order.fulfillment_status or "").strip().lower()
        if fulfillment in _SHIPPED_FULFILLMENT:
            return CancelAttempt.cannot_cancel(f"Order already {fulfillment}", fulfillment_status=fulfillment)

        if ctx.commerce is None:
            raise ExternalApiError("No commerce platform configured", retryable=False, code="commerce_platform_missing")

        try:
            result = ctx.commerce.cancel_order(
                order.order_id,
                reason="customer_request",
                idempotency_key=f"{ctx.workflow.workflow_id}:cancel_order",
            )
        except OrderNotCancellable as e:
            return CancelAttempt.cannot_cancel(str(e), status_code=e.status_code)
        except CommercePlatformError as e:
            raise ExternalApiError(
                str(e),
                retryable=e.retryable,
                code="commerce_platform_error",
                status_code=e.status_code,
            ) from e
        return CancelAttempt.canceled("Order cancelled on the commerce platform", platform_response=result or {})
