"""
Email templates for the cancellation workflow.

"Too late" (order outside the window) and "declined" (warehouse or API
could not stop the order) are deliberately separate templates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

SIGNATURE = "- {store_name} support (automated for speed; a human is monitoring)"


@dataclass(frozen=True)
class EmailTemplate:
    name: str
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedEmail:
    template: str
    subject: str
    body: str

    @property
    def html(self) -> str:
        return self.body.replace("\n", "<br>")


TEMPLATES: Dict[str, EmailTemplate] = {
    "cancellation_acknowledgment": EmailTemplate(
        name="cancellation_acknowledgment",
        subject="We're on it - your cancellation request",
        body=(
            "We received your cancellation request for Order #{order_number} and are working to stop it "
            "before it ships. We'll update you as soon as we hear back.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
    "cancellation_too_late": EmailTemplate(
        name="cancellation_too_late",
        subject="Order #{order_number} - cancellation not possible",
        body=(
            "We received your cancellation request for Order #{order_number}. Unfortunately, this order was "
            "placed outside our cancellation window and has likely already been processed for shipping.\n\n"
            "If you'd like to start a return once your order arrives, reply to this email and we'll help.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
    "warehouse_cancel_request": EmailTemplate(
        name="warehouse_cancel_request",
        subject="{test_prefix}URGENT: Cancel Order #{order_number}",
        body=(
            "{test_banner}Please cancel Order #{order_number} if it has not been picked or shipped.\n\n"
            "Reply 'Canceled' or 'Cannot cancel'.\n\n"
            "{custom_message}" + SIGNATURE + "{test_footer}"
        ),
    ),
    "cancellation_confirmed": EmailTemplate(
        name="cancellation_confirmed",
        subject="Order #{order_number} canceled and refunded",
        body=(
            "Good news: we caught your order in time. Order #{order_number} is canceled and a refund of "
            "{refund_amount} {currency} has been issued to your original payment method.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
    "cancellation_confirmed_refund_pending": EmailTemplate(
        name="cancellation_confirmed_refund_pending",
        subject="Order #{order_number} canceled",
        body=(
            "Good news: we caught your order in time and Order #{order_number} is canceled. Your refund is "
            "being processed by our team and you'll receive a confirmation once it is issued.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
    "cancellation_declined": EmailTemplate(
        name="cancellation_declined",
        subject="Order #{order_number} - cancellation attempt result",
        body=(
            "We weren't able to stop Order #{order_number} before it shipped. If you'd like to start a return, "
            "reply to this email and we'll help.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
    "cancellation_under_review": EmailTemplate(
        name="cancellation_under_review",
        subject="Update on your cancellation request for Order #{order_number}",
        body=(
            "We're still working on your cancellation request for Order #{order_number}. A member of our team "
            "is reviewing it and will follow up with you shortly.\n\n"
            "{custom_message}" + SIGNATURE
        ),
    ),
}

_DEFAULTS: Dict[str, Any] = {
    "store_name": "our store",
    "custom_message": "",
    "test_prefix": "",
    "test_banner": "",
    "test_footer": "",
    "refund_amount": "",
    "currency": "",
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        raise KeyError(f"missing_template_variable:{key}")


def render(template: str, variables: Dict[str, Any]) -> RenderedEmail:
    """Render a named template. Unknown templates or missing variables raise KeyError."""
    tmpl = TEMPLATES.get(template)
    if tmpl is None:
        raise KeyError(f"unknown_template:{template}")
    values = _SafeDict(_DEFAULTS)
    values.update({k: v for k, v in (variables or {}).items() if v is not None})
    custom = str(values.get("custom_message") or "").strip()
    values["custom_message"] = f"{custom}\n\n" if custom else ""
    return RenderedEmail(
        template=template,
        subject=tmpl.subject.format_map(values),
        body=tmpl.body.format_map(values),
    )
