"""
Cancellation Workflow API

Create cancellations, inspect them, and feed them the events they wait on
(warehouse replies, approval decisions, operator stops).
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from typing_extensions import Literal

from cancellations.engine.errors import InvalidWorkflowState
from cancellations.engine.machine import WorkflowStateMachine
from cancellations.engine.models import CancellationRequest, CancellationWorkflow
from core.hitl import ApprovalNotFound

from ...shared.exceptions import NotFoundError, ValidationError
from ...shared.responses import ErrorDetail, ListResponse, SuccessResponse
from ..deps import get_engine, get_trace_id

router = APIRouter(prefix="/api/cancellations", tags=["cancellations"])


class WarehouseReplyRequest(BaseModel):
    """A reply from the warehouse team, as text or an explicit outcome."""
    reply: str = Field("", max_length=20000)
    outcome: Optional[Literal["canceled", "cannot_cancel"]] = None
    event_id: Optional[str] = Field(None, max_length=128)
    actor: str = "warehouse"


class ApprovalDecisionRequest(BaseModel):
    """A reviewer decision on one approval item; redelivery is a no-op."""
    approval_id: str = Field(..., min_length=1, max_length=64)
    decision: Literal["approved", "rejected", "edited"]
    reason: Optional[str] = None
    actor: str = Field(..., min_length=1)
    edits: Optional[Dict[str, Any]] = None
    event_id: Optional[str] = Field(None, max_length=128)


class FailWorkflowRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)


def _detail(wf: CancellationWorkflow) -> Dict[str, Any]:
    return wf.model_dump(mode="json", exclude={"lock_owner", "lock_expires_at"})


@router.post("")
def create_cancellation(
    body: CancellationRequest,
    response: Response,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """
    Start a cancellation for an inbound customer email.

    Returns 201 with the new workflow, or 200 with the existing one when the
    same (user, email, order) was already submitted.
    """
    workflow, created = engine.create_workflow(body, actor="api")
    response.status_code = 201 if created else 200
    return SuccessResponse.create(
        {"workflow": _detail(workflow), "created": created, "summary": workflow.public_view()},
        trace_id=trace_id,
    )


@router.get("")
def list_cancellations(
    user_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    customer_email: Optional[str] = Query(None),
    active_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    filters = {"user_id": user_id, "status": status, "customer_email": customer_email, "active_only": active_only}
    workflows = engine.list_workflows(limit=limit, offset=offset, **filters)
    return ListResponse.create(
        data=[wf.public_view() for wf in workflows],
        total=engine.store.count_workflows(**filters),
        limit=limit,
        offset=offset,
        trace_id=trace_id,
    )


@router.post("/sweep")
def run_sweep(
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """Run one sweep pass: enforce reply SLAs and resume due workflows."""
    report = engine.sweep(actor="api_sweep")
    return SuccessResponse.create(report.to_dict(), trace_id=trace_id)


@router.get("/{workflow_id}")
def get_cancellation(
    workflow_id: str,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    return SuccessResponse.create(_detail(engine.get_workflow(workflow_id)), trace_id=trace_id)


@router.get("/{workflow_id}/audit")
def get_audit_trail(
    workflow_id: str,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    engine.get_workflow(workflow_id)
    events = engine.store.list_audit_events(workflow_id)
    return SuccessResponse.create([e.model_dump(mode="json") for e in events], trace_id=trace_id)


@router.get("/{workflow_id}/approvals")
def get_approval_history(
    workflow_id: str,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    engine.get_workflow(workflow_id)
    items = engine.store.list_approvals(workflow_id)
    return SuccessResponse.create([i.model_dump(mode="json") for i in items], trace_id=trace_id)


@router.get("/{workflow_id}/side-effects")
def get_side_effects(
    workflow_id: str,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """Emails and refunds issued for this workflow, keyed for exactly-once delivery."""
    engine.get_workflow(workflow_id)
    records = engine.store.list_side_effects(workflow_id)
    return SuccessResponse.create([r.model_dump(mode="json") for r in records], trace_id=trace_id)


@router.post("/{workflow_id}/advance")
def advance_cancellation(
    workflow_id: str,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    workflow = engine.advance(workflow_id, actor="api")
    return SuccessResponse.create(_detail(workflow), trace_id=trace_id)


@router.post("/{workflow_id}/warehouse-reply")
def record_warehouse_reply(
    workflow_id: str,
    body: WarehouseReplyRequest,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """
    Record the warehouse's answer for a workflow awaiting one.

    Replays of the same event_id return idempotent_hit=true without changes.
    """
    if not body.reply.strip() and body.outcome is None:
        raise ValidationError(
            "Either reply text or an explicit outcome is required",
            details=[ErrorDetail(field="reply", message="empty reply", code="reply_required")],
            trace_id=trace_id,
        )
    result = engine.record_warehouse_reply(
        workflow_id,
        body.reply,
        event_id=body.event_id,
        outcome=body.outcome,
        actor=body.actor,
    )
    return SuccessResponse.create(result.to_dict(), trace_id=trace_id)


@router.post("/{workflow_id}/approval")
def resolve_approval(
    workflow_id: str,
    body: ApprovalDecisionRequest,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    try:
        result = engine.resolve_approval(
            workflow_id,
            body.approval_id,
            body.decision,
            body.reason,
            actor=body.actor,
            edits=body.edits,
            event_id=body.event_id,
        )
    except ApprovalNotFound as e:
        raise NotFoundError("Approval", body.approval_id, trace_id=trace_id) from e
    except InvalidWorkflowState:
        raise
    except ValueError as e:
        raise ValidationError(str(e), trace_id=trace_id) from e
    payload = result.to_dict()
    payload["workflow"] = _detail(result.workflow)
    return SuccessResponse.create(payload, trace_id=trace_id)


@router.post("/{workflow_id}/fail")
def fail_cancellation(
    workflow_id: str,
    body: FailWorkflowRequest,
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    """Operator stop: mark a non-terminal workflow failed."""
    workflow = engine.fail_workflow(workflow_id, reason=body.reason, actor=body.actor)
    return SuccessResponse.create(_detail(workflow), trace_id=trace_id)
