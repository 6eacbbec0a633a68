from __future__ import annotations

import re
from typing import Any, Dict, Optional, Tuple

from cancellations.engine.errors import ExternalApiError
from cancellations.engine.models import CancellationWorkflow, FulfillmentConfig, OrderSnapshot

from .base import CancelAttempt, FulfillmentStrategy, StrategyContext

WAREHOUSE_TEMPLATE = "warehouse_cancel_request"

# Negative phrases are checked first: "cannot cancel" also contains "cancel".
_DECLINED_RE = re.compile(
    r"\b(cannot|can't|can not|could not|couldn't|unable to)\s+(be\s+)?cancel"
    r"|\btoo late\b|\balready\s+(shipped|left|dispatched|fulfilled)\b|\bunable\b",
    re.IGNORECASE,
)
_CANCELED_RE = re.compile(r"\bcancel(l)?ed\b", re.IGNORECASE)


def interpret_reply(text: Optional[str]) -> Optional[str]:
    """
    Map a free-text warehouse reply onto an outcome.

    Returns "canceled", "cannot_cancel", or None when the reply is ambiguous.
    """
    t = (text or "").strip()
    if not t:
        return None
    if _DECLINED_RE.search(t):
        return "cannot_cancel"
    if _CANCELED_RE.search(t):
        return "canceled"
    return None


def warehouse_message(workflow: CancellationWorkflow, extra: Optional[Dict[str, Any]] = None) -> Tuple[str, Dict[str, Any]]:
    """Resolve the recipient and template variables for the warehouse request."""
    config = workflow.fulfillment_config
    if config.test_mode and config.warehouse_test_email:
        recipient = config.warehouse_test_email
    else:
        recipient = config.warehouse_email or ""

    variables: Dict[str, Any] = {
        "order_number": workflow.order_number,
        "store_name": config.store_name,
        "customer_email": workflow.customer_email,
    }
    if config.test_mode:
        variables.update(
            {
                "test_prefix": "[TEST] ",
                "test_banner": "*** TEST MODE - this is a test cancellation request ***\n\n",
                "test_footer": f"\n\n[Test mode: the live warehouse address is {config.warehouse_email}]",
            }
        )
    variables.update(extra or {})
    return recipient, variables


class WarehouseEmailStrategy(FulfillmentStrategy):
    """Asks a human-staffed warehouse to stop the order; the answer arrives later as an inbound reply."""

    method = "warehouse_email"

    def validate_config(self, config: FulfillmentConfig) -> Optional[str]:
        if not (config.warehouse_email or "").strip():
            return "warehouse_email_missing"
        return None

    def health_check(self, config, *, http_client=None) -> Dict[str, Any]:
        if self.validate_config(config):
            return {"healthy": False, "reason": "Warehouse email address not configured"}
        return {"healthy": True}

    def _attempt(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        recipient, variables = warehouse_message(ctx.workflow, ctx.variables)
        if not recipient:
            raise ExternalApiError("No warehouse email address configured", retryable=False, code="warehouse_email_missing")

        result = ctx.effects.send_email_once(
            ctx.workflow,
            key=f"{ctx.workflow.workflow_id}:warehouse_email",
            template=WAREHOUSE_TEMPLATE,
            variables=variables,
            to=recipient,
        )
        return CancelAttempt.pending(
            f"Cancellation request emailed to warehouse for order #{order.order_number}",
            recipient=recipient,
            message_id=result.get("message_id"),
            test_mode=ctx.config.test_mode,
        )

    interpret_reply = staticmethod(interpret_reply)
