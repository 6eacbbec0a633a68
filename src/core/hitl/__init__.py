"""
Human-in-the-Loop (HITL) Module

Approval checkpoints that pause a cancellation workflow before any
customer-visible or financial side effect.

Usage:
    from core.hitl import ApprovalGate

    gate = ApprovalGate(store)
    item = gate.request_approval(workflow_id, "issue_refund", {"amount": "42.00"})
    gate.resolve(workflow_id, item.approval_id, "approved", actor="ops@merchant")
"""

from .approval import (
    ApprovalGate,
    ApprovalNotFound,
    ApprovalStatus,
)

__all__ = [
    "ApprovalGate",
    "ApprovalNotFound",
    "ApprovalStatus",
]
