from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from typing_extensions import Literal

from cancellations.engine.errors import ExternalApiError
from cancellations.engine.models import CancellationWorkflow, FulfillmentConfig, OrderSnapshot, WorkflowError
from core.observability import create_span

logger = logging.getLogger(__name__)

AttemptOutcome = Literal["canceled", "cannot_cancel", "pending", "error"]


@dataclass(frozen=True)
class CancelAttempt:
    outcome: AttemptOutcome
    detail: str = ""
    retryable: bool = False
    error: Optional[WorkflowError] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def canceled(cls, detail: str, **data: Any) -> "CancelAttempt":
        return cls(outcome="canceled", detail=detail, data=data)

    @classmethod
    def cannot_cancel(cls, detail: str, **data: Any) -> "CancelAttempt":
        return cls(outcome="cannot_cancel", detail=detail, data=data)

    @classmethod
    def pending(cls, detail: str, **data: Any) -> "CancelAttempt":
        return cls(outcome="pending", detail=detail, data=data)

    @classmethod
    def from_error(cls, err: ExternalApiError) -> "CancelAttempt":
        return cls(outcome="error", detail=err.message, retryable=err.retryable, error=err.to_workflow_error())


@dataclass(frozen=True)
class StrategyContext:
    """
    Strategy context.

    Everything a strategy may touch is passed in here; strategies never reach
    for global clients or settings.
    """

    workflow: CancellationWorkflow
    effects: Any = None
    commerce: Any = None
    http_client: Optional[httpx.Client] = None
    timeout: float = 30.0
    # Extra template variables, e.g. a reviewer-edited custom_message
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def config(self) -> FulfillmentConfig:
        return self.workflow.fulfillment_config


class FulfillmentStrategy:
    """Interface for fulfillment-channel cancellation plugins."""

    method: str = ""

    def validate_config(self, config: FulfillmentConfig) -> Optional[str]:
        """Return an error code when the config cannot drive this strategy."""
        return None

    def health_check(self, config: FulfillmentConfig, *, http_client: Optional[httpx.Client] = None) -> Dict[str, Any]:
        return {"healthy": True}

    def attempt_cancel(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        """
        Try to stop the order in this fulfillment channel.

        Collaborator failures come back as an `error` attempt rather than an
        exception so the state machine can apply its retry policy.
        """
        attributes = {
            "workflow.id": ctx.workflow.workflow_id,
            "fulfillment.method": self.method,
            "order.number": order.order_number,
        }
        with create_span(f"strategy.{self.method}.attempt_cancel", attributes) as span:
            try:
                attempt = self._attempt(order, ctx)
            except ExternalApiError as e:
                logger.warning(
                    "%s cancellation attempt failed for order %s (retryable=%s): %s",
                    self.method,
                    order.order_number,
                    e.retryable,
                    e.message,
                )
                attempt = CancelAttempt.from_error(e)
            span.set_attribute("cancel.outcome", attempt.outcome)
            return attempt

    def _attempt(self, order: OrderSnapshot, ctx: StrategyContext) -> CancelAttempt:
        raise NotImplementedError
