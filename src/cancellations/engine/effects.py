"""
At-most-once side effects.

Every outbound email and refund is keyed and recorded in the side-effect
ledger before and after the collaborator call. A replayed step finds the
recorded result and returns it instead of calling out again.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from core.notifications import NotificationDispatcher, NotificationError
from core.observability import record_counter
from core.refunds import RefundError, RefundProcessor, RefundResult

from .errors import NotificationFailed, SideEffectInFlight
from .models import CancellationWorkflow
from .store import WorkflowStore

logger = logging.getLogger(__name__)


class IdempotentEffects:
    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: NotificationDispatcher,
        refunds: RefundProcessor,
        *,
        stale_after_seconds: int = 300,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.refunds = refunds
        self.stale_after_seconds = stale_after_seconds

    def send_email_once(
        self,
        workflow: CancellationWorkflow,
        *,
        key: str,
        template: str,
        variables: Dict[str, Any],
        to: str,
    ) -> Dict[str, Any]:
        """
        Send `template` to `to` at most once per `key`.

        Raises NotificationFailed; `retryable` tells the caller whether the
        same key may be tried again later.
        """
        record, claimed = self.store.claim_side_effect(
            idempotency_key=key,
            workflow_id=workflow.workflow_id,
            kind="email",
            stale_after_seconds=self.stale_after_seconds,
        )
        if not claimed:
            if record.status == "succeeded":
                logger.info("Email %s already sent for workflow %s; skipping", key, workflow.workflow_id)
                return dict(record.result, replayed=True)
            if record.status == "failed":
                raise NotificationFailed(
                    f"Email {template} previously failed permanently",
                    retryable=False,
                    details={"idempotency_key": key, **record.result},
                )
            raise NotificationFailed(
                f"Email {template} is already being sent",
                retryable=True,
                code="side_effect_in_flight",
                details={"idempotency_key": key},
            )

        try:
            receipt = self.dispatcher.send_email(
                template,
                variables,
                to=to,
                idempotency_key=key,
                user_id=workflow.user_id,
            )
        except NotificationError as e:
            if e.retryable:
                self.store.release_side_effect(idempotency_key=key)
            else:
                self.store.complete_side_effect(idempotency_key=key, result={"error": str(e)}, succeeded=False)
            record_counter("side_effects_total", 1, {"kind": "email", "result": "failed", "template": template})
            raise NotificationFailed(
                f"Failed to send {template}: {e}",
                retryable=e.retryable,
                details={"idempotency_key": key, "template": template},
            ) from e

        result = receipt.to_dict()
        self.store.complete_side_effect(idempotency_key=key, result=result)
        record_counter("side_effects_total", 1, {"kind": "email", "result": "sent", "template": template})
        return result

    def refund_once(self, workflow: CancellationWorkflow) -> RefundResult:
        """
        Refund the order total at most once; the workflow id is the idempotency key.

        Raises RefundError. A failed refund is recorded and never retried here.
        Raises SideEffectInFlight while another runner holds a fresh claim.
        """
        key = workflow.workflow_id
        record, claimed = self.store.claim_side_effect(
            idempotency_key=key,
            workflow_id=workflow.workflow_id,
            kind="refund",
            stale_after_seconds=self.stale_after_seconds,
        )
        if not claimed:
            if record.status == "succeeded":
                logger.info("Refund already issued for workflow %s; replaying result", workflow.workflow_id)
                return RefundResult.from_dict(record.result)
            if record.status == "failed":
                raise RefundError("Refund previously failed", details=dict(record.result))
            raise SideEffectInFlight(
                "Refund already in progress",
                details={"idempotency_key": key, "claimed_at": record.claimed_at},
            )

        try:
            result = self.refunds.process_refund(workflow.order_id, workflow.order_total, key)
        except RefundError as e:
            self.store.complete_side_effect(
                idempotency_key=key,
                result={"error": e.message, **e.details},
                succeeded=False,
            )
            record_counter("side_effects_total", 1, {"kind": "refund", "result": "failed"})
            raise

        self.store.complete_side_effect(idempotency_key=key, result=result.to_dict())
        record_counter("side_effects_total", 1, {"kind": "refund", "result": "succeeded"})
        return result
