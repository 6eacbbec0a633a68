from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from .models import CancellationRequest, parse_iso, to_iso
from .store import WorkflowStore

MAX_ORDER_AGE = timedelta(days=30)
RATE_LIMIT_WINDOW = timedelta(hours=24)

_ORDER_NUMBER_PATTERNS = (
    re.compile(r"#(\d{4,})"),
    re.compile(r"order\s*#?(\d{4,})", re.IGNORECASE),
    re.compile(r"order\s*number\s*#?(\d{4,})", re.IGNORECASE),
)


@dataclass
class WorkflowCreationValidationError(Exception):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


def extract_order_number(*texts: Optional[str]) -> Optional[str]:
    """Find an order reference such as "#12345" or "order 12345" in free text."""
    content = " ".join(t for t in texts if t)
    for pattern in _ORDER_NUMBER_PATTERNS:
        match = pattern.search(content)
        if match:
            return match.group(1)
    return None


def validate_workflow_creation(
    request: CancellationRequest,
    *,
    store: WorkflowStore,
    now: datetime,
    max_requests_per_day: int = 5,
) -> None:
    """
    Validate that a cancellation can start *before* writing it to the store.

    Order matters: configuration problems are reported before duplicate and
    rate-limit checks so a misconfigured merchant sees the actionable error.
    """
    from cancellations.strategies.registry import get_strategy

    order = request.order
    config = request.fulfillment_config

    if not (order.order_number or "").strip():
        raise WorkflowCreationValidationError(
            code="order_number_missing",
            message="Could not determine the order number for this request",
        )

    strategy = get_strategy(config.method)
    if strategy is None:
        raise WorkflowCreationValidationError(
            code="fulfillment_method_unsupported",
            message=f"No fulfillment strategy registered for method: {config.method}",
            details={"fulfillment_method": config.method},
        )
    config_error = strategy.validate_config(config)
    if config_error:
        messages = {
            "warehouse_email_missing": "Warehouse email not configured. Please add your warehouse email address in settings.",
            "shipbob_not_configured": "ShipBob not connected. Please connect your ShipBob account in settings.",
            "shipstation_not_configured": "ShipStation API not configured. Please add your ShipStation API credentials in settings.",
        }
        raise WorkflowCreationValidationError(
            code=config_error,
            message=messages.get(config_error, f"Fulfillment configuration invalid: {config_error}"),
            details={"fulfillment_method": config.method},
        )

    if order.customer_email.strip().lower() != request.customer_email.strip().lower():
        raise WorkflowCreationValidationError(
            code="customer_email_mismatch",
            message="Customer email does not match the order's email address",
            details={"order_number": order.order_number},
        )

    if Decimal(order.order_total) <= 0:
        raise WorkflowCreationValidationError(
            code="order_total_invalid",
            message="Order total must be positive",
            details={"order_number": order.order_number, "order_total": str(order.order_total)},
        )

    created = parse_iso(order.created_at)
    if created is None:
        raise WorkflowCreationValidationError(
            code="order_created_at_invalid",
            message="Order creation time is missing or not ISO8601",
            details={"created_at": order.created_at},
        )
    if now - created > MAX_ORDER_AGE:
        raise WorkflowCreationValidationError(
            code="order_too_old",
            message="Order is older than 30 days",
            details={"order_number": order.order_number, "created_at": order.created_at},
        )

    active = store.find_active_workflow(user_id=request.user_id, order_number=order.order_number)
    if active is not None:
        raise WorkflowCreationValidationError(
            code="duplicate_request",
            message="A cancellation for this order is already in progress",
            details={"workflow_id": active.workflow_id, "status": active.status},
        )

    since = to_iso(now - RATE_LIMIT_WINDOW)
    recent = store.count_workflows_for_customer(customer_email=request.customer_email, since=since, user_id=request.user_id)
    if recent >= max_requests_per_day:
        raise WorkflowCreationValidationError(
            code="too_many_requests",
            message="Too many cancellation requests from this customer in the last 24 hours",
            details={"customer_email": request.customer_email, "count": recent, "limit": max_requests_per_day},
        )
