"""
Operations API

Escalation queue, engine metrics, fulfillment connection checks and the
inbound mailbox hook for warehouse replies.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from cancellations.engine.machine import WorkflowStateMachine
from cancellations.engine.models import FulfillmentConfig
from cancellations.engine.validation import extract_order_number
from cancellations.strategies import get_strategy

from ...shared.exceptions import ConflictError, FulfillmentNotSupported, NotFoundError, ValidationError
from ...shared.responses import ErrorDetail, ListResponse, SuccessResponse
from ..deps import get_engine, get_trace_id

router = APIRouter(tags=["operations"])


class ResolveEscalationRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    note: Optional[str] = None


class InboundWarehouseReply(BaseModel):
    """A warehouse email routed to this service by the merchant's mailbox."""
    user_id: str = Field(..., min_length=1)
    subject: str = ""
    body: str = Field("", max_length=20000)
    event_id: Optional[str] = Field(None, max_length=128)
    sender: Optional[str] = None


@router.get("/api/escalations")
def list_escalations(
    status: Optional[str] = Query("open"),
    kind: Optional[str] = Query(None),
    workflow_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """Escalations for human follow-up, high priority first."""
    items = engine.store.list_escalations(status=status or None, kind=kind, workflow_id=workflow_id, limit=limit)
    return ListResponse.create(
        data=[e.model_dump(mode="json") for e in items],
        total=len(items),
        limit=limit,
        trace_id=trace_id,
    )


@router.post("/api/escalations/{escalation_id}/resolve")
def resolve_escalation(
    escalation_id: str,
    body: ResolveEscalationRequest,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    try:
        escalation = engine.store.resolve_escalation(escalation_id=escalation_id, actor=body.actor, note=body.note)
    except KeyError:
        raise NotFoundError("Escalation", escalation_id, trace_id=trace_id)
    except ValueError as e:
        raise ConflictError(str(e), trace_id=trace_id) from e
    return SuccessResponse.create(escalation.model_dump(mode="json"), trace_id=trace_id)


@router.get("/api/operations/metrics")
def engine_metrics(
    window_hours: int = Query(24, ge=1, le=24 * 30),
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    return SuccessResponse.create(engine.store.workflow_metrics(window_hours=window_hours), trace_id=trace_id)


@router.post("/api/operations/fulfillment-check")
def check_fulfillment_connection(
    body: FulfillmentConfig,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """Validate a merchant's fulfillment settings and probe the provider's API."""
    strategy = get_strategy(body.method)
    if strategy is None:
        raise FulfillmentNotSupported(body.method, trace_id=trace_id)
    problem = strategy.validate_config(body)
    if problem:
        return SuccessResponse.create({"method": body.method, "healthy": False, "reason": problem}, trace_id=trace_id)
    result = strategy.health_check(body, http_client=engine.http_client)
    return SuccessResponse.create({"method": body.method, **result}, trace_id=trace_id)


@router.post("/api/warehouse-replies")
def inbound_warehouse_reply(
    body: InboundWarehouseReply,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """
    Match an inbound warehouse email to its workflow by order number and
    record it. Unmatched mail is rejected so the mailbox can route it elsewhere.
    """
    order_number = extract_order_number(body.subject, body.body)
    if not order_number:
        raise ValidationError(
            "No order number found in warehouse reply",
            details=[ErrorDetail(field="subject", message="expected an order reference like #12345", code="order_number_missing")],
            trace_id=trace_id,
        )
    workflow = engine.store.find_active_workflow(user_id=body.user_id, order_number=order_number)
    if workflow is None:
        raise NotFoundError("Workflow", f"order #{order_number}", trace_id=trace_id)

    actor = f"warehouse:{body.sender}" if body.sender else "warehouse"
    result = engine.record_warehouse_reply(
        workflow.workflow_id,
        body.body or body.subject,
        event_id=body.event_id,
        actor=actor,
    )
    return SuccessResponse.create(result.to_dict(), trace_id=trace_id)
