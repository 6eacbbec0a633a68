"""
Approval Gate

Human-in-the-loop checkpoint for cancellation workflows:
- Request approval before a customer-facing, warehouse-facing or financial step
- Track approval status (at most one pending item per workflow)
- Record approval/rejection/edit decisions with an audit trail

Pausing is persisted state, never a blocking call; the state machine resumes
the paused step once a decision is recorded.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from cancellations.engine.models import ApprovalItem
from cancellations.engine.store import WorkflowStore

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    """Status of an approval item."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"


class ApprovalNotFound(LookupError):
    def __init__(self, workflow_id: str, approval_id: str):
        super().__init__(f"Approval {approval_id} not found for workflow {workflow_id}")
        self.workflow_id = workflow_id
        self.approval_id = approval_id


class ApprovalGate:
    """
    Creates and resolves ApprovalItems for workflow steps.

    Usage:
        gate = ApprovalGate(store)

        item = gate.request_approval(workflow_id, "email_warehouse", metadata)
        # halt; the external review surface calls resolve() later

        gate.resolve(workflow_id, item.approval_id, "approved", actor="ops@merchant")

    A decision names the item it answers. Deciding an item that is no longer
    pending changes nothing, so a redelivered decision can never approve the
    step that was requested after it.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    def request_approval(
        self,
        workflow_id: str,
        proposed_action: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        requested_by: str = "engine",
    ) -> ApprovalItem:
        """Create a pending item, or return the one already outstanding."""
        item, created = self.store.create_approval(
            ApprovalItem(workflow_id=workflow_id, proposed_action=proposed_action, metadata=metadata or {}),
            actor=requested_by,
        )
        if created:
            logger.info(
                "Created approval request: approval_id=%s workflow_id=%s action=%s",
                item.approval_id,
                workflow_id,
                proposed_action,
            )
        elif item.proposed_action != proposed_action:
            logger.warning(
                "Workflow %s already has a pending approval for %s; not creating one for %s",
                workflow_id,
                item.proposed_action,
                proposed_action,
            )
        return item

    def get(self, workflow_id: str, approval_id: str) -> ApprovalItem:
        item = self.store.get_approval(approval_id)
        if item is None or item.workflow_id != workflow_id:
            raise ApprovalNotFound(workflow_id, approval_id)
        return item

    def resolve(
        self,
        workflow_id: str,
        approval_id: str,
        decision: str,
        reason: Optional[str] = None,
        *,
        actor: str,
        edits: Optional[Dict[str, Any]] = None,
    ) -> Tuple[ApprovalItem, bool]:
        """
        Record `decision` on one item. Returns (item, applied); applied is
        False when the item had already been decided.
        """
        status = ApprovalStatus(decision)
        if status == ApprovalStatus.PENDING:
            raise ValueError("invalid_approval_decision:pending")
        if status == ApprovalStatus.EDITED and not edits:
            raise ValueError("edited_decision_requires_edits")

        item = self.get(workflow_id, approval_id)
        if item.status != ApprovalStatus.PENDING.value:
            logger.info("Approval %s already %s; ignoring %s from %s", approval_id, item.status, status.value, actor)
            return item, False

        resolved = self.store.resolve_approval(
            approval_id=approval_id,
            status=status.value,
            actor=actor,
            reason=reason,
            edits=edits,
        )
        if resolved is None:
            # Another reviewer decided first
            return self.get(workflow_id, approval_id), False

        logger.info(
            "Approval resolved: approval_id=%s workflow_id=%s decision=%s by=%s",
            approval_id,
            workflow_id,
            status.value,
            actor,
        )
        return resolved, True

    def approval_for(self, workflow_id: str, proposed_action: str) -> Optional[ApprovalItem]:
        return self.store.get_latest_approval(workflow_id=workflow_id, proposed_action=proposed_action)

    def pending_approvals(self, *, user_id: Optional[str] = None, limit: int = 50) -> List[ApprovalItem]:
        return self.store.list_pending_approvals(user_id=user_id, limit=limit)
