"""
Cancellation workflow engine: models, persistence, eligibility and the state
machine (`cancellations.engine.machine`).
"""

from .errors import (
    ApprovalRejected,
    CancellationEngineError,
    ExternalApiError,
    InvalidWorkflowState,
    WarehouseTimeout,
    WorkflowNotFound,
)
from .models import CancellationRequest, CancellationWorkflow, FulfillmentConfig, OrderSnapshot

__all__ = [
    "ApprovalRejected",
    "CancellationEngineError",
    "ExternalApiError",
    "InvalidWorkflowState",
    "WarehouseTimeout",
    "WorkflowNotFound",
    "CancellationRequest",
    "CancellationWorkflow",
    "FulfillmentConfig",
    "OrderSnapshot",
]
