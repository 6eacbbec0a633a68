"""
Approval Queue API

Reviewers list the side effects waiting on a human decision. Decisions are
posted per workflow via POST /api/cancellations/{id}/approval.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from cancellations.engine.machine import WorkflowStateMachine

from ...shared.responses import ListResponse
from ..deps import get_engine, get_trace_id

router = APIRouter(prefix="/api/approvals", tags=["approvals"])


@router.get("/pending")
def list_pending_approvals(
    user_id: Optional[str] = Query(None, description="Only approvals for this merchant"),
    limit: int = Query(50, ge=1, le=200),
    engine: WorkflowStateMachine = Depends(get_engine),
    trace_id: str = Depends(get_trace_id),
):
    items = engine.approvals.pending_approvals(user_id=user_id, limit=limit)
    return ListResponse.create(
        data=[i.model_dump(mode="json") for i in items],
        total=len(items),
        limit=limit,
        trace_id=trace_id,
    )
