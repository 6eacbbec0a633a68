from __future__ import annotations

import hashlib
import json
import os
import socket
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from typing_extensions import Literal


FulfillmentMethod = Literal["warehouse_email", "shipbob", "shipstation", "self_fulfillment"]
WorkflowStatus = Literal["processing", "awaiting_warehouse", "canceled", "cannot_cancel", "completed", "failed"]
WorkflowStep = Literal[
    "identify_order",
    "check_eligibility",
    "acknowledge_customer",
    "email_warehouse",
    "await_warehouse",
    "process_cancellation",
    "process_result",
    "completed",
]
CancelOutcome = Literal["canceled", "cannot_cancel"]
ApprovalItemStatus = Literal["pending", "approved", "rejected", "edited"]
EscalationKind = Literal[
    "warehouse_timeout",
    "retries_exhausted",
    "backend_error",
    "refund_reconciliation",
    "order_identification",
    "ambiguous_warehouse_reply",
    "notification_failure",
]
EscalationPriority = Literal["low", "normal", "high"]
ErrorCategory = Literal["validation", "external_api", "approval", "timeout", "refund", "notification", "unknown"]

TERMINAL_STATUSES = frozenset({"canceled", "cannot_cancel", "completed", "failed"})

WAREHOUSE_STEPS: List[str] = [
    "identify_order",
    "check_eligibility",
    "acknowledge_customer",
    "email_warehouse",
    "await_warehouse",
    "process_result",
    "completed",
]

AUTOMATED_STEPS: List[str] = [
    "identify_order",
    "check_eligibility",
    "acknowledge_customer",
    "process_cancellation",
    "process_result",
    "completed",
]

STEP_SEQUENCES: Dict[str, List[str]] = {
    "warehouse_email": WAREHOUSE_STEPS,
    "shipbob": AUTOMATED_STEPS,
    "shipstation": AUTOMATED_STEPS,
    "self_fulfillment": AUTOMATED_STEPS,
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_utc_iso() -> str:
    return to_iso(now_utc())


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    v = value.strip()
    if not v:
        return None
    try:
        if v.endswith("Z"):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        parsed = datetime.fromisoformat(v)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def safe_uuid() -> str:
    return str(uuid.uuid4())


def compute_idempotency_key(*parts: str) -> str:
    raw = "|".join([p.strip() for p in parts if (p or "").strip()])
    if not raw:
        raw = safe_uuid()
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def next_step(method: str, step: str) -> str:
    sequence = STEP_SEQUENCES[method]
    idx = sequence.index(step)
    return sequence[min(idx + 1, len(sequence) - 1)]


class WorkflowError(BaseModel):
    code: str = Field(min_length=1)
    message: str = Field(min_length=1)
    category: ErrorCategory = "unknown"
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class AuditEvent(BaseModel):
    audit_id: str = Field(default_factory=safe_uuid)
    timestamp: str = Field(default_factory=now_utc_iso)
    event: str = Field(min_length=1)
    actor: str = Field(min_length=1)
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class OrderSnapshot(BaseModel):
    """Order state as resolved by the commerce-platform lookup when the request arrived."""

    order_id: str = Field(min_length=1)
    order_number: str = Field(min_length=1, max_length=64)
    order_total: Decimal
    currency: str = "USD"
    customer_email: str = Field(min_length=3)
    created_at: str = Field(min_length=1, description="ISO8601 order creation time")
    status: str = "open"
    fulfillment_status: Optional[str] = None

    model_config = {"extra": "forbid"}


class FulfillmentConfig(BaseModel):
    """Immutable snapshot of the merchant's fulfillment settings, captured at workflow creation."""

    method: FulfillmentMethod
    warehouse_email: Optional[str] = None
    warehouse_test_email: Optional[str] = None
    test_mode: bool = False
    shipbob_access_token: Optional[str] = None
    shipbob_channel_id: Optional[str] = None
    shipstation_api_key: Optional[str] = None
    shipstation_api_secret: Optional[str] = None
    use_sandbox: bool = False
    approval_required: bool = False
    store_timezone: str = "UTC"
    store_name: str = "our store"
    warehouse_reply_sla_hours: float = Field(default=8.0, gt=0)

    model_config = {"extra": "forbid", "frozen": True}


class CancellationRequest(BaseModel):
    user_id: str = Field(min_length=1)
    email_id: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    customer_name: Optional[str] = None
    order: OrderSnapshot
    fulfillment_config: FulfillmentConfig

    model_config = {"extra": "forbid"}


class CancellationWorkflow(BaseModel):
    workflow_id: str = Field(default_factory=lambda: f"CXL-{now_utc().strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:8]}")
    idempotency_key: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    email_id: str = Field(min_length=1)

    order_id: str = Field(min_length=1)
    order_number: str = Field(min_length=1)
    order_total: Decimal
    order_created_at: str
    customer_email: str = Field(min_length=3)
    customer_name: Optional[str] = None
    fulfillment_method: FulfillmentMethod
    fulfillment_config: FulfillmentConfig
    order: OrderSnapshot

    status: WorkflowStatus = "processing"
    step: WorkflowStep = "identify_order"

    eligible: Optional[bool] = None
    eligibility_reason: Optional[str] = None
    eligibility_deadline: Optional[str] = None

    customer_acknowledgment_sent: bool = False
    warehouse_email_sent: bool = False
    awaiting_since: Optional[str] = None
    warehouse_reply_due_at: Optional[str] = None
    warehouse_reply_received: bool = False
    warehouse_reply: Optional[str] = None
    warehouse_reply_at: Optional[str] = None

    cancel_outcome: Optional[CancelOutcome] = None
    was_canceled: Optional[bool] = None
    refund_processed: bool = False
    refund_amount: Optional[Decimal] = None
    refund_id: Optional[str] = None
    needs_reconciliation: bool = False

    attempt_count: int = 0
    next_attempt_at: Optional[str] = None
    error: Optional[WorkflowError] = None
    escalation_reason: Optional[str] = None

    created_at: str = Field(default_factory=now_utc_iso)
    updated_at: str = Field(default_factory=now_utc_iso)
    completed_at: Optional[str] = None

    audit_trail: List[AuditEvent] = Field(default_factory=list)

    # Runner lock state (server-managed)
    lock_owner: Optional[str] = None
    lock_expires_at: Optional[str] = None

    model_config = {"extra": "forbid"}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.workflow_id,
            "orderNumber": self.order_number,
            "customerEmail": self.customer_email,
            "fulfillmentMethod": self.fulfillment_method,
            "status": self.status,
            "step": self.step,
            "wasCanceled": self.was_canceled,
            "refundProcessed": self.refund_processed,
            "refundAmount": str(self.refund_amount) if self.refund_amount is not None else None,
            "warehouseReplyReceived": self.warehouse_reply_received,
            "warehouseReply": self.warehouse_reply,
            "createdAt": self.created_at,
        }


class ApprovalItem(BaseModel):
    approval_id: str = Field(default_factory=safe_uuid)
    workflow_id: str = Field(min_length=1)
    proposed_action: str = Field(min_length=1)
    status: ApprovalItemStatus = "pending"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    edits: Dict[str, Any] = Field(default_factory=dict)
    requested_at: str = Field(default_factory=now_utc_iso)
    decided_by: Optional[str] = None
    decided_at: Optional[str] = None
    decision_reason: Optional[str] = None

    model_config = {"extra": "forbid"}

    @property
    def is_approved(self) -> bool:
        return self.status in ("approved", "edited")


class Escalation(BaseModel):
    escalation_id: str = Field(default_factory=safe_uuid)
    workflow_id: str = Field(min_length=1)
    kind: EscalationKind
    priority: EscalationPriority = "normal"
    reason: str = Field(min_length=1)
    status: Literal["open", "resolved"] = "open"
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_utc_iso)
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    model_config = {"extra": "forbid"}


class SideEffectRecord(BaseModel):
    idempotency_key: str = Field(min_length=1)
    workflow_id: str = Field(min_length=1)
    kind: Literal["email", "refund"]
    status: Literal["claimed", "succeeded", "failed"] = "claimed"
    result: Dict[str, Any] = Field(default_factory=dict)
    claimed_at: str = Field(default_factory=now_utc_iso)
    completed_at: Optional[str] = None

    model_config = {"extra": "forbid"}


class RunnerLease(BaseModel):
    runner_name: str
    owner_id: str
    lease_expires_at: str
    heartbeat_at: str
    pid: int
    host: str

    model_config = {"extra": "forbid"}


def default_runner_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def json_loads(raw: Optional[str]) -> Any:
    if not raw:
        return None
    return json.loads(raw)
