"""
Cancellation engine error taxonomy.

Step handlers classify failures locally with these types. Only escalated or
unrecoverable conditions reach the audit trail and the escalation queue;
customers only ever see templated messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from core.refunds import RefundError

from .models import WorkflowError


class CancellationEngineError(RuntimeError):
    """Base class for engine errors that map onto a persisted WorkflowError."""

    code = "engine_error"
    category = "unknown"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_workflow_error(self) -> WorkflowError:
        return WorkflowError(
            code=self.code,
            message=self.message,
            category=self.category,  # type: ignore[arg-type]
            retryable=self.retryable,
            details=self.details,
        )


class EligibilityDenied(CancellationEngineError):
    """Not a fault: redirects the workflow onto the cannot_cancel path."""

    code = "eligibility_denied"
    category = "validation"


class OrderIdentificationFailed(CancellationEngineError):
    code = "order_identification_failed"
    category = "validation"


class ExternalApiError(CancellationEngineError):
    code = "external_api_error"
    category = "external_api"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if status_code is not None:
            merged.setdefault("status_code", status_code)
        super().__init__(message, details=merged)
        self.retryable = retryable
        self.status_code = status_code
        if code:
            self.code = code


class NotificationFailed(ExternalApiError):
    code = "notification_failed"
    category = "notification"


class ApprovalRejected(CancellationEngineError):
    code = "approval_rejected"
    category = "approval"


class WarehouseTimeout(CancellationEngineError):
    code = "warehouse_timeout"
    category = "timeout"


class SideEffectInFlight(CancellationEngineError):
    """Another runner holds an unexpired claim on the same keyed side effect."""

    code = "side_effect_in_flight"
    category = "refund"
    retryable = True


class WorkflowNotFound(KeyError):
    def __init__(self, workflow_id: str):
        super().__init__(workflow_id)
        self.workflow_id = workflow_id


class InvalidWorkflowState(ValueError):
    pass


__all__ = [
    "CancellationEngineError",
    "EligibilityDenied",
    "OrderIdentificationFailed",
    "ExternalApiError",
    "NotificationFailed",
    "ApprovalRejected",
    "WarehouseTimeout",
    "SideEffectInFlight",
    "RefundError",
    "WorkflowNotFound",
    "InvalidWorkflowState",
]
