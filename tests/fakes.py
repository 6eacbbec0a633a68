"""
Test doubles: a controllable clock, recording fakes for the email, refund and
commerce collaborators, scripted strategies and request builders.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from cancellations.engine.models import (
    CancellationRequest,
    CancellationWorkflow,
    FulfillmentConfig,
    OrderSnapshot,
    compute_idempotency_key,
)
from cancellations.strategies import FulfillmentStrategy
from core.commerce import CommercePlatform
from core.notifications import DeliveryReceipt, NotificationDispatcher, render
from core.refunds import RefundProcessor, RefundResult

# Tuesday 2026-03-10 15:00 UTC
NOW = datetime(2026, 3, 10, 15, 0, 0, tzinfo=timezone.utc)
ELIGIBLE_CREATED_AT = "2026-03-10T09:00:00Z"
TOO_LATE_CREATED_AT = "2026-03-09T10:00:00Z"


class FakeClock:
    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    """Renders every template (so missing variables fail loudly) and records it."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []

    def send_email(self, template, variables, *, to, idempotency_key, user_id=None):
        if self.failures:
            raise self.failures.pop(0)
        email = render(template, variables)
        self.sent.append(
            {
                "template": template,
                "to": to,
                "subject": email.subject,
                "body": email.body,
                "idempotency_key": idempotency_key,
                "variables": dict(variables),
            }
        )
        return DeliveryReceipt(
            message_id=f"msg-{len(self.sent)}",
            template=template,
            recipient=to,
            idempotency_key=idempotency_key,
            sent_at="2026-03-10T15:00:00Z",
        )

    @property
    def templates(self) -> List[str]:
        return [m["template"] for m in self.sent]


class RecordingRefunds(RefundProcessor):
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def process_refund(self, order_id, amount, idempotency_key):
        self.calls.append({"order_id": order_id, "amount": amount, "idempotency_key": idempotency_key})
        if self.error is not None:
            raise self.error
        return RefundResult(
            refund_id=f"re_{len(self.calls)}",
            order_id=order_id,
            amount=Decimal(amount),
            idempotency_key=idempotency_key,
        )


class FakeCommerce(CommercePlatform):
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.outcomes: List[Any] = []

    def cancel_order(self, order_id, *, reason, idempotency_key):
        self.calls.append({"order_id": order_id, "reason": reason, "idempotency_key": idempotency_key})
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return {"status": "cancelled"}

    def health_check(self):
        return {"status": "healthy"}


class ScriptedStrategy(FulfillmentStrategy):
    """Returns (or raises) pre-scripted attempts in order; repeats the last one."""

    def __init__(self, method: str, *attempts):
        self.method = method
        self.attempts = list(attempts)
        self.calls = 0

    def _attempt(self, order, ctx):
        self.calls += 1
        index = min(self.calls, len(self.attempts)) - 1
        attempt = self.attempts[index]
        if isinstance(attempt, Exception):
            raise attempt
        return attempt


_METHOD_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "warehouse_email": {"warehouse_email": "warehouse@3pl.example"},
    "shipbob": {"shipbob_access_token": "sb-token", "shipbob_channel_id": "123"},
    "shipstation": {"shipstation_api_key": "ss-key", "shipstation_api_secret": "ss-secret"},
    "self_fulfillment": {},
}


def make_config(method: str = "warehouse_email", **overrides) -> FulfillmentConfig:
    values: Dict[str, Any] = {"method": method, "store_name": "Acme Outdoor", **_METHOD_DEFAULTS[method]}
    values.update(overrides)
    return FulfillmentConfig(**values)


def make_request(
    method: str = "warehouse_email",
    *,
    order_number: str = "10045",
    created_at: str = ELIGIBLE_CREATED_AT,
    email_id: str = "email-1",
    user_id: str = "merchant-1",
    customer_email: str = "jane@example.com",
    order_total: str = "49.99",
    order_status: str = "open",
    fulfillment_status: Optional[str] = None,
    **config_overrides,
) -> CancellationRequest:
    return CancellationRequest(
        user_id=user_id,
        email_id=email_id,
        customer_email=customer_email,
        customer_name="Jane",
        order=OrderSnapshot(
            order_id=f"gid-{order_number}",
            order_number=order_number,
            order_total=Decimal(order_total),
            customer_email=customer_email,
            created_at=created_at,
            status=order_status,
            fulfillment_status=fulfillment_status,
        ),
        fulfillment_config=make_config(method, **config_overrides),
    )


def make_workflow(request: Optional[CancellationRequest] = None, **fields) -> CancellationWorkflow:
    """A workflow record as create_workflow would persist it, before any step runs."""
    request = request or make_request()
    order = request.order
    values: Dict[str, Any] = {
        "idempotency_key": compute_idempotency_key(request.user_id, request.email_id, order.order_number),
        "user_id": request.user_id,
        "email_id": request.email_id,
        "order_id": order.order_id,
        "order_number": order.order_number,
        "order_total": order.order_total,
        "order_created_at": order.created_at,
        "customer_email": request.customer_email,
        "customer_name": request.customer_name,
        "fulfillment_method": request.fulfillment_config.method,
        "fulfillment_config": request.fulfillment_config,
        "order": order,
    }
    values.update(fields)
    return CancellationWorkflow(**values)


class StallingStrategy(ScriptedStrategy):
    """Runs `stall(workflow)` inside the cancel call, as a slow backend would."""

    def __init__(self, method: str, attempt, stall: Callable[[Any], None]):
        super().__init__(method, attempt)
        self.stall = stall

    def _attempt(self, order, ctx):
        self.stall(ctx.workflow)
        return super()._attempt(order, ctx)
