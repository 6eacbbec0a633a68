"""
Cancellation workflow state machine.

Each workflow is a persisted record driven forward one step at a time. A
step handler performs its side effect (keyed, at most once), then moves the
record with a conditional update on the step it started from. Waiting for a
warehouse reply, an approval decision or a scheduled retry is persisted state;
nothing blocks. The sweep resumes stalled work and enforces the reply SLA.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

import httpx

from cancellations.strategies.base import CancelAttempt, StrategyContext
from cancellations.strategies.registry import get_strategy
from cancellations.strategies.warehouse_email import interpret_reply
from core.commerce import CommercePlatform
from core.config import EngineConfig
from core.hitl import ApprovalGate
from core.inbox import InboxGuard
from core.notifications import NotificationDispatcher
from core.observability import add_event_to_span, add_workflow_id_to_span, create_span, record_counter, record_histogram
from core.refunds import RefundError, RefundProcessor

from .effects import IdempotentEffects
from .eligibility import evaluate_order
from .errors import (
    ApprovalRejected,
    EligibilityDenied,
    ExternalApiError,
    InvalidWorkflowState,
    NotificationFailed,
    OrderIdentificationFailed,
    SideEffectInFlight,
    WarehouseTimeout,
    WorkflowNotFound,
)
from .models import (
    ApprovalItem,
    CancellationRequest,
    CancellationWorkflow,
    Escalation,
    WorkflowError,
    compute_idempotency_key,
    default_runner_owner_id,
    next_step,
    now_utc,
    parse_iso,
    to_iso,
)
from .store import WorkflowStore, workflow_due_cutoff
from .validation import validate_workflow_creation

logger = logging.getLogger(__name__)

ENGINE_ACTOR = "engine"
SWEEP_ACTOR = "sweeper"
WAREHOUSE_REPLY_CONSUMER = "warehouse_reply"
APPROVAL_DECISION_CONSUMER = "approval_decision"

# Upper bound on handlers run by one advance(); the longest path has 7 steps.
MAX_STEPS_PER_ADVANCE = 12

# Approval-only keys a reviewer may edit on an "edited" decision.
EDITABLE_TEMPLATE_FIELDS = ("custom_message",)


def next_backoff_seconds(*, retry_count: int, base_seconds: int = 30, max_seconds: int = 900) -> int:
    # retry_count starts at 1 for the first retry
    delay = base_seconds * (2 ** max(0, retry_count - 1))
    return int(min(max_seconds, delay))


@dataclass(frozen=True)
class EngineSettings:
    max_cancel_attempts: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    stall_seconds: int = 600
    lock_seconds: int = 120
    max_requests_per_customer_per_day: int = 5
    sweep_batch_size: int = 100
    http_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, cfg: EngineConfig) -> "EngineSettings":
        return cls(
            max_cancel_attempts=max(1, int(cfg.MAX_CANCEL_ATTEMPTS)),
            retry_base_seconds=int(cfg.RETRY_BASE_SECONDS),
            retry_max_seconds=int(cfg.RETRY_MAX_SECONDS),
            stall_seconds=int(cfg.STALL_SECONDS),
            lock_seconds=max(10, int(cfg.LOCK_SECONDS)),
            max_requests_per_customer_per_day=int(cfg.MAX_REQUESTS_PER_CUSTOMER_PER_DAY),
            sweep_batch_size=int(cfg.SWEEP_BATCH_SIZE),
            http_timeout_seconds=float(cfg.HTTP_TIMEOUT_SECONDS),
        )


@dataclass
class WarehouseReplyResult:
    workflow: CancellationWorkflow
    applied: bool
    idempotent_hit: bool = False
    outcome: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "idempotent_hit": self.idempotent_hit,
            "outcome": self.outcome,
            "reason": self.reason,
            "workflow": self.workflow.public_view(),
        }


@dataclass
class ApprovalDecisionResult:
    item: ApprovalItem
    workflow: CancellationWorkflow
    applied: bool
    idempotent_hit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "idempotent_hit": self.idempotent_hit,
            "approval": self.item.model_dump(mode="json"),
            "workflow": self.workflow.public_view(),
        }


@dataclass
class SweepReport:
    timed_out: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"timed_out": list(self.timed_out), "resumed": list(self.resumed), "errors": list(self.errors)}


class WorkflowStateMachine:
    """
    Drives cancellation workflows through their fulfillment-specific steps.

    Usage:
        machine = WorkflowStateMachine(store, dispatcher=..., refunds=...)
        workflow, created = machine.create_workflow(request)
        machine.record_warehouse_reply(workflow.workflow_id, "Canceled")
        machine.sweep()
    """

    def __init__(
        self,
        store: WorkflowStore,
        *,
        dispatcher: NotificationDispatcher,
        refunds: RefundProcessor,
        commerce: Optional[CommercePlatform] = None,
        approvals: Optional[ApprovalGate] = None,
        strategy_resolver: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        settings: Optional[EngineSettings] = None,
        owner_id: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.store = store
        self.effects = IdempotentEffects(store, dispatcher, refunds)
        self.commerce = commerce
        self.approvals = approvals or ApprovalGate(store)
        self.strategy_resolver = strategy_resolver or get_strategy
        self.clock = clock or now_utc
        self.settings = settings or EngineSettings()
        self.owner_id = owner_id or default_runner_owner_id()
        self.http_client = http_client
        self._handlers: Dict[str, Callable[[CancellationWorkflow, str], bool]] = {
            "identify_order": self._identify_order,
            "check_eligibility": self._check_eligibility,
            "acknowledge_customer": self._acknowledge_customer,
            "email_warehouse": self._email_warehouse,
            "await_warehouse": self._await_warehouse,
            "process_cancellation": self._process_cancellation,
            "process_result": self._process_result,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def create_workflow(self, request: CancellationRequest, *, actor: str = "api") -> Tuple[CancellationWorkflow, bool]:
        """
        Start a cancellation for one inbound customer email.

        Idempotent on (user_id, email_id, order_number): a replayed request
        returns the existing workflow without validating or advancing again.
        """
        idempotency_key = compute_idempotency_key(request.user_id, request.email_id, request.order.order_number)
        existing = self.store.get_workflow_by_idempotency_key(idempotency_key)
        if existing is not None:
            logger.info("Idempotent cancellation request for order #%s -> %s", request.order.order_number, existing.workflow_id)
            return self.get_workflow(existing.workflow_id), False

        with create_span(
            "cancellation.create",
            {"order.number": request.order.order_number, "fulfillment.method": request.fulfillment_config.method},
        ) as span:
            validate_workflow_creation(
                request,
                store=self.store,
                now=self.clock(),
                max_requests_per_day=self.settings.max_requests_per_customer_per_day,
            )

            order = request.order
            workflow = CancellationWorkflow(
                idempotency_key=idempotency_key,
                user_id=request.user_id,
                email_id=request.email_id,
                order_id=order.order_id,
                order_number=order.order_number,
                order_total=order.order_total,
                order_created_at=order.created_at,
                customer_email=request.customer_email,
                customer_name=request.customer_name,
                fulfillment_method=request.fulfillment_config.method,
                fulfillment_config=request.fulfillment_config,
                order=order,
            )
            stored, created = self.store.create_workflow(workflow, actor=actor)
            add_workflow_id_to_span(stored.workflow_id, span)

        if not created:
            return stored, False

        record_counter("cancellation_workflows_created_total", 1, {"fulfillment_method": stored.fulfillment_method})
        logger.info(
            "Created cancellation workflow %s for order #%s (%s)",
            stored.workflow_id,
            stored.order_number,
            stored.fulfillment_method,
            extra={"workflow_id": stored.workflow_id},
        )
        return self.advance(stored.workflow_id, actor=actor), True

    def advance(self, workflow_id: str, *, actor: str = ENGINE_ACTOR) -> CancellationWorkflow:
        """
        Run step handlers until the workflow waits or terminates.

        No-op when the workflow is terminal or another runner holds its lock.
        The lock is renewed before every step; losing it ends the advance.
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.is_terminal:
            return workflow

        started = time.monotonic()
        with self._workflow_lock(workflow_id) as token:
            if token is None:
                logger.info("Workflow %s is locked by another runner; skipping advance", workflow_id)
                return workflow
            try:
                with create_span("cancellation.advance", {"workflow.id": workflow_id, "actor": actor}) as span:
                    for _ in range(MAX_STEPS_PER_ADVANCE):
                        current = self.store.get_workflow(workflow_id)
                        if current is None or current.is_terminal:
                            break
                        if not self._retry_due(current):
                            break
                        handler = self._handlers.get(current.step)
                        if handler is None:
                            raise InvalidWorkflowState(f"no_handler_for_step:{current.step}")
                        if not self._renew_lock(workflow_id, token):
                            logger.warning("Lost the lock on workflow %s before step %s", workflow_id, current.step)
                            break
                        with create_span(f"cancellation.step.{current.step}", {"workflow.id": workflow_id}):
                            if not handler(current, actor):
                                break
                    final = self.get_workflow(workflow_id)
                    span.set_attribute("workflow.status", final.status)
                    span.set_attribute("workflow.step", final.step)
            finally:
                record_histogram("advance_duration_seconds", time.monotonic() - started)
        return final

    def record_warehouse_reply(
        self,
        workflow_id: str,
        reply: str,
        *,
        event_id: Optional[str] = None,
        outcome: Optional[str] = None,
        actor: str = "warehouse",
    ) -> WarehouseReplyResult:
        """
        Apply an inbound warehouse reply exactly once.

        `outcome` lets an operator state the result explicitly; otherwise the
        reply text is interpreted. Ambiguous replies leave the workflow waiting
        and open an escalation.
        """
        if outcome is not None and outcome not in ("canceled", "cannot_cancel"):
            raise ValueError(f"invalid_warehouse_outcome:{outcome}")

        workflow = self.get_workflow(workflow_id)
        event_id = event_id or compute_idempotency_key(workflow_id, reply or "", outcome or "")

        with InboxGuard(self.store, event_id, WAREHOUSE_REPLY_CONSUMER) as guard:
            if not guard.should_process:
                logger.info("Duplicate warehouse reply event %s for %s", event_id, workflow_id)
                return WarehouseReplyResult(workflow=workflow, applied=False, idempotent_hit=True, reason="duplicate_event")

            if workflow.is_terminal or workflow.step != "await_warehouse":
                self.store.record_event(
                    workflow_id,
                    event="warehouse_reply_ignored",
                    actor=actor,
                    details={"event_id": event_id, "status": workflow.status, "step": workflow.step},
                )
                return WarehouseReplyResult(workflow=workflow, applied=False, reason="not_awaiting_reply")

            interpreted = outcome or interpret_reply(reply)
            if interpreted is None:
                self.store.record_event(
                    workflow_id,
                    event="warehouse_reply_ambiguous",
                    actor=actor,
                    details={"event_id": event_id, "reply": (reply or "")[:1000]},
                )
                self._escalate(
                    workflow,
                    kind="ambiguous_warehouse_reply",
                    reason=f"Warehouse reply for order #{workflow.order_number} needs review",
                    actor=actor,
                    details={"reply": (reply or "")[:1000]},
                )
                return WarehouseReplyResult(workflow=self.get_workflow(workflow_id), applied=False, reason="ambiguous_reply")

            updated = self.store.update_workflow(
                workflow_id,
                {
                    "warehouse_reply_received": True,
                    "warehouse_reply": (reply or "")[:4000],
                    "warehouse_reply_at": to_iso(self.clock()),
                    "cancel_outcome": interpreted,
                    "status": "processing",
                    "step": "process_result",
                },
                actor=actor,
                event="warehouse_reply_received",
                details={"event_id": event_id, "outcome": interpreted},
                expected_step="await_warehouse",
                expected_status="awaiting_warehouse",
            )
            if updated is None:
                return WarehouseReplyResult(workflow=self.get_workflow(workflow_id), applied=False, reason="not_awaiting_reply")

        record_counter("workflow_step_transitions_total", 1, {"from_step": "await_warehouse", "to_step": "process_result"})
        return WarehouseReplyResult(workflow=self.advance(workflow_id, actor=actor), applied=True, outcome=interpreted)

    def resolve_approval(
        self,
        workflow_id: str,
        approval_id: str,
        decision: str,
        reason: Optional[str] = None,
        *,
        actor: str,
        edits: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> ApprovalDecisionResult:
        """
        Record a reviewer decision on one approval item and resume (or fail)
        the paused step.

        Exactly once per event: a redelivered decision, or one for an item
        that was already decided, changes nothing.
        """
        if decision == "rejected" and not (reason or "").strip():
            raise ValueError("rejection_reason_required")

        workflow = self.get_workflow(workflow_id)
        event_id = event_id or compute_idempotency_key(workflow_id, approval_id, decision)

        with InboxGuard(self.store, event_id, APPROVAL_DECISION_CONSUMER) as guard:
            item = self.approvals.get(workflow_id, approval_id)
            if not guard.should_process:
                logger.info("Duplicate approval decision %s for %s", event_id, workflow_id)
                return ApprovalDecisionResult(item=item, workflow=workflow, applied=False, idempotent_hit=True)
            if item.status != "pending":
                logger.info("Approval %s already %s; ignoring %s", approval_id, item.status, decision)
                return ApprovalDecisionResult(item=item, workflow=workflow, applied=False)
            if workflow.is_terminal:
                raise InvalidWorkflowState(f"workflow_terminal:{workflow.status}")

            item, applied = self.approvals.resolve(workflow_id, approval_id, decision, reason, actor=actor, edits=edits)

        if not applied:
            return ApprovalDecisionResult(item=item, workflow=self.get_workflow(workflow_id), applied=False)
        return ApprovalDecisionResult(item=item, workflow=self.advance(workflow_id, actor=actor), applied=True)

    def fail_workflow(self, workflow_id: str, *, reason: str, actor: str) -> CancellationWorkflow:
        """
        Operator action: stop a non-terminal workflow.

        Takes the workflow lock so a stop never interleaves with a running
        advance; a locked workflow is reported as a conflict.
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.is_terminal:
            raise InvalidWorkflowState(f"workflow_terminal:{workflow.status}")
        with self._workflow_lock(workflow_id) as token:
            if token is None:
                raise InvalidWorkflowState("workflow_locked")
            workflow = self.get_workflow(workflow_id)
            if workflow.is_terminal:
                raise InvalidWorkflowState(f"workflow_terminal:{workflow.status}")
            error = WorkflowError(code="operator_failed", message=reason or "Stopped by operator", category="unknown")
            updated = self._fail(workflow, error, actor=actor)
        if updated is None:
            raise InvalidWorkflowState("workflow_changed_concurrently")
        return updated

    def sweep(self, *, actor: str = SWEEP_ACTOR) -> SweepReport:
        """
        One pass over non-terminal workflows.

        Warehouse replies past their SLA fail with a timeout escalation; due
        retries and stalled workflows are advanced. One workflow's failure
        never stops the pass.
        """
        report = SweepReport()
        started = time.monotonic()
        limit = self.settings.sweep_batch_size
        with create_span("cancellation.sweep") as span:
            for workflow_id in self.store.list_sla_breached_workflow_ids(limit=limit):
                try:
                    if self._timeout_warehouse(workflow_id, actor=actor):
                        report.timed_out.append(workflow_id)
                except Exception as e:
                    logger.exception("Sweep failed to time out workflow %s", workflow_id)
                    report.errors.append({"workflow_id": workflow_id, "error": str(e)})

            cutoff = workflow_due_cutoff(self.clock(), self.settings.stall_seconds)
            for workflow_id in self.store.list_due_workflow_ids(stalled_before=cutoff, limit=limit):
                try:
                    self.advance(workflow_id, actor=actor)
                    report.resumed.append(workflow_id)
                except Exception as e:
                    logger.exception("Sweep failed to advance workflow %s", workflow_id)
                    report.errors.append({"workflow_id": workflow_id, "error": str(e)})

            span.set_attribute("sweep.timed_out", len(report.timed_out))
            span.set_attribute("sweep.resumed", len(report.resumed))
            span.set_attribute("sweep.errors", len(report.errors))

        record_counter("sweeps_total", 1)
        record_histogram("sweep_duration_seconds", time.monotonic() - started)
        if report.timed_out or report.resumed or report.errors:
            logger.info(
                "Sweep: timed_out=%d resumed=%d errors=%d",
                len(report.timed_out),
                len(report.resumed),
                len(report.errors),
            )
        return report

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> CancellationWorkflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def list_workflows(self, **filters: Any) -> List[CancellationWorkflow]:
        return self.store.list_workflows(**filters)

    # ------------------------------------------------------------------
    # Step handlers. Each returns True when the workflow moved and the
    # next handler should run in this advance.
    # ------------------------------------------------------------------

    def _identify_order(self, wf: CancellationWorkflow, actor: str) -> bool:
        order = wf.order
        problem = None
        if order.order_number != wf.order_number or order.order_id != wf.order_id:
            problem = "Order snapshot does not match the request"
        elif order.customer_email.strip().lower() != wf.customer_email.strip().lower():
            problem = "Customer email does not match the order"
        elif Decimal(order.order_total) <= 0:
            problem = "Order total is not positive"

        if problem:
            error = OrderIdentificationFailed(problem, details={"order_number": wf.order_number}).to_workflow_error()
            self._fail(
                wf,
                error,
                actor=actor,
                escalation_kind="order_identification",
                reason=f"Could not verify order #{wf.order_number}: {problem}",
            )
            return False

        return self._advance_step(wf, "check_eligibility", actor=actor, event="order_identified")

    def _check_eligibility(self, wf: CancellationWorkflow, actor: str) -> bool:
        try:
            decision = evaluate_order(wf.order, self.clock(), store_timezone=wf.fulfillment_config.store_timezone)
        except ValueError as e:
            error = OrderIdentificationFailed(str(e), details={"order_created_at": wf.order_created_at}).to_workflow_error()
            self._fail(wf, error, actor=actor, escalation_kind="order_identification")
            return False

        return self._advance_step(
            wf,
            "acknowledge_customer",
            actor=actor,
            event="eligibility_checked",
            details=decision.to_dict(),
            changes={
                "eligible": decision.eligible,
                "eligibility_reason": decision.reason,
                "eligibility_deadline": to_iso(decision.deadline) if decision.deadline else None,
            },
        )

    def _acknowledge_customer(self, wf: CancellationWorkflow, actor: str) -> bool:
        template = "cancellation_acknowledgment" if wf.eligible else "cancellation_too_late"
        verdict, item = self._gate(wf, "acknowledge_customer", actor=actor, template=template, recipient=wf.customer_email)
        if verdict != "proceed":
            return False

        try:
            self.effects.send_email_once(
                wf,
                key=f"{wf.workflow_id}:customer_ack",
                template=template,
                variables=self._customer_variables(wf, item),
                to=wf.customer_email,
            )
        except NotificationFailed as e:
            self._handle_step_error(wf, e.to_workflow_error(), actor=actor)
            return False

        if not wf.eligible:
            # Terminal at this step: nothing was sent to a fulfillment channel.
            self._move(
                wf,
                {"customer_acknowledgment_sent": True, "status": "cannot_cancel", "was_canceled": False},
                actor=actor,
                event="cancellation_ineligible",
                details={"code": EligibilityDenied.code, "reason": wf.eligibility_reason, "template": template},
            )
            return False

        return self._advance_step(
            wf,
            next_step(wf.fulfillment_method, wf.step),
            actor=actor,
            event="customer_acknowledged",
            details={"template": template},
            changes={"customer_acknowledgment_sent": True},
        )

    def _email_warehouse(self, wf: CancellationWorkflow, actor: str) -> bool:
        config = wf.fulfillment_config
        recipient = config.warehouse_test_email if config.test_mode and config.warehouse_test_email else config.warehouse_email
        verdict, item = self._gate(wf, "email_warehouse", actor=actor, template="warehouse_cancel_request", recipient=recipient)
        if verdict != "proceed":
            return False

        attempt = self._attempt_cancel(wf, item)
        if attempt.outcome == "error":
            self._handle_step_error(wf, attempt.error or self._attempt_error(attempt), actor=actor)
            return False
        if attempt.outcome != "pending":
            return self._record_outcome(wf, attempt, actor=actor)

        now = self.clock()
        due = now + timedelta(hours=config.warehouse_reply_sla_hours)
        return self._advance_step(
            wf,
            "await_warehouse",
            actor=actor,
            event="warehouse_emailed",
            details={"detail": attempt.detail, **attempt.data, "reply_due_at": to_iso(due)},
            changes={
                "warehouse_email_sent": True,
                "status": "awaiting_warehouse",
                "awaiting_since": to_iso(now),
                "warehouse_reply_due_at": to_iso(due),
            },
        )

    def _await_warehouse(self, wf: CancellationWorkflow, actor: str) -> bool:
        # Resumed only by record_warehouse_reply() or the SLA sweep.
        return False

    def _process_cancellation(self, wf: CancellationWorkflow, actor: str) -> bool:
        verdict, item = self._gate(wf, "process_cancellation", actor=actor)
        if verdict != "proceed":
            return False

        attempt = self._attempt_cancel(wf, item)
        if attempt.outcome == "error":
            self._handle_step_error(wf, attempt.error or self._attempt_error(attempt), actor=actor)
            return False
        if attempt.outcome == "pending":
            error = WorkflowError(
                code="unexpected_pending_outcome",
                message=f"{wf.fulfillment_method} returned a pending outcome",
                category="external_api",
            )
            self._fail(wf, error, actor=actor, escalation_kind="backend_error")
            return False
        return self._record_outcome(wf, attempt, actor=actor)

    def _process_result(self, wf: CancellationWorkflow, actor: str) -> bool:
        if wf.cancel_outcome == "canceled":
            return self._finish_canceled(wf, actor)
        if wf.cancel_outcome == "cannot_cancel":
            return self._finish_declined(wf, actor)

        error = WorkflowError(code="missing_cancel_outcome", message="No cancellation outcome recorded", category="unknown")
        self._fail(wf, error, actor=actor, escalation_kind="backend_error")
        return False

    def _finish_canceled(self, wf: CancellationWorkflow, actor: str) -> bool:
        verdict, item = self._gate(
            wf,
            "issue_refund",
            actor=actor,
            amount=str(wf.order_total),
            currency=wf.order.currency,
            template="cancellation_confirmed",
        )
        if verdict != "proceed":
            return False

        try:
            refund = self.effects.refund_once(wf)
        except SideEffectInFlight as e:
            self._wait_for_side_effect(wf, e, actor=actor)
            return False
        except RefundError as e:
            return self._finish_refund_failed(wf, e, item, actor)

        variables = self._customer_variables(wf, item)
        variables.update({"refund_amount": str(refund.amount), "currency": wf.order.currency})
        if not self._send_final_notice(wf, "cancellation_confirmed", variables, actor=actor):
            return False

        self._move(
            wf,
            {
                "status": "canceled",
                "step": "completed",
                "was_canceled": True,
                "refund_processed": True,
                "refund_amount": refund.amount,
                "refund_id": refund.refund_id,
                "attempt_count": 0,
                "error": None,
            },
            actor=actor,
            event="cancellation_completed",
            details={"refund_id": refund.refund_id, "refund_amount": str(refund.amount)},
        )
        logger.info("Order #%s canceled and refunded (%s)", wf.order_number, wf.workflow_id)
        return False

    def _finish_refund_failed(
        self,
        wf: CancellationWorkflow,
        err: RefundError,
        item: Optional[ApprovalItem],
        actor: str,
    ) -> bool:
        logger.error("Refund failed for canceled order #%s (%s): %s", wf.order_number, wf.workflow_id, err.message)
        if not self._send_final_notice(wf, "cancellation_confirmed_refund_pending", self._customer_variables(wf, item), actor=actor):
            return False

        error = WorkflowError(
            code=err.code,
            message=err.message,
            category="refund",
            retryable=False,
            details=err.details,
        )
        reason = f"Order #{wf.order_number} was canceled but the refund failed; reconcile manually"
        updated = self._move(
            wf,
            {
                "status": "completed",
                "step": "completed",
                "was_canceled": True,
                "needs_reconciliation": True,
                "error": error,
                "escalation_reason": reason,
            },
            actor=actor,
            event="refund_failed",
            details={"error": err.message},
        )
        if updated is not None:
            self._escalate(updated, kind="refund_reconciliation", reason=reason, actor=actor, priority="high", details=err.details)
        return False

    def _finish_declined(self, wf: CancellationWorkflow, actor: str) -> bool:
        verdict, item = self._gate(wf, "send_decline_notice", actor=actor, template="cancellation_declined")
        if verdict != "proceed":
            return False
        if not self._send_final_notice(wf, "cancellation_declined", self._customer_variables(wf, item), actor=actor):
            return False
        self._move(
            wf,
            {"status": "cannot_cancel", "step": "completed", "was_canceled": False, "attempt_count": 0, "error": None},
            actor=actor,
            event="cancellation_declined",
        )
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _retry_due(self, wf: CancellationWorkflow) -> bool:
        due = parse_iso(wf.next_attempt_at)
        return due is None or due <= self.clock()

    def _move(
        self,
        wf: CancellationWorkflow,
        changes: Dict[str, Any],
        *,
        actor: str,
        event: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[CancellationWorkflow]:
        updated = self.store.update_workflow(
            wf.workflow_id,
            changes,
            actor=actor,
            event=event,
            details=details,
            expected_step=wf.step,
            expected_status=wf.status,
        )
        if updated is None:
            logger.info(
                "Workflow %s moved on before %s could apply (expected step=%s status=%s)",
                wf.workflow_id,
                event,
                wf.step,
                wf.status,
            )
            return None
        record_counter(
            "workflow_step_transitions_total",
            1,
            {"from_step": wf.step, "to_step": updated.step, "status": updated.status},
        )
        return updated

    def _advance_step(
        self,
        wf: CancellationWorkflow,
        step: str,
        *,
        actor: str,
        event: str,
        details: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> bool:
        merged = {"step": step, "attempt_count": 0, "next_attempt_at": None, "error": None}
        merged.update(changes or {})
        return self._move(wf, merged, actor=actor, event=event, details=details) is not None

    def _record_outcome(self, wf: CancellationWorkflow, attempt: CancelAttempt, *, actor: str) -> bool:
        return self._advance_step(
            wf,
            "process_result",
            actor=actor,
            event="cancel_attempt_completed",
            details={"outcome": attempt.outcome, "detail": attempt.detail, **attempt.data},
            changes={"cancel_outcome": attempt.outcome, "status": "processing"},
        )

    def _attempt_cancel(self, wf: CancellationWorkflow, item: Optional[ApprovalItem]) -> CancelAttempt:
        strategy = self.strategy_resolver(wf.fulfillment_method)
        if strategy is None:
            return CancelAttempt.from_error(
                ExternalApiError(
                    f"No fulfillment strategy for {wf.fulfillment_method}",
                    retryable=False,
                    code="fulfillment_method_unsupported",
                )
            )
        ctx = StrategyContext(
            workflow=wf,
            effects=self.effects,
            commerce=self.commerce,
            http_client=self.http_client,
            timeout=self.settings.http_timeout_seconds,
            variables=self._edited_fields(item),
        )
        return strategy.attempt_cancel(wf.order, ctx)

    @staticmethod
    def _attempt_error(attempt: CancelAttempt) -> WorkflowError:
        return WorkflowError(
            code="cancel_attempt_failed",
            message=attempt.detail or "Cancellation attempt failed",
            category="external_api",
            retryable=attempt.retryable,
        )

    def _handle_step_error(self, wf: CancellationWorkflow, error: WorkflowError, *, actor: str) -> None:
        """Schedule a backoff retry, or fail once attempts are exhausted or the error is permanent."""
        attempts = wf.attempt_count + 1
        if error.retryable and attempts < self.settings.max_cancel_attempts:
            delay = next_backoff_seconds(
                retry_count=attempts,
                base_seconds=self.settings.retry_base_seconds,
                max_seconds=self.settings.retry_max_seconds,
            )
            retry_at = to_iso(self.clock() + timedelta(seconds=delay))
            logger.warning(
                "Step %s failed for %s (attempt %d/%d); retrying at %s: %s",
                wf.step,
                wf.workflow_id,
                attempts,
                self.settings.max_cancel_attempts,
                retry_at,
                error.message,
            )
            self._move(
                wf,
                {"attempt_count": attempts, "next_attempt_at": retry_at, "error": error},
                actor=actor,
                event="retry_scheduled",
                details={"step": wf.step, "attempt": attempts, "retry_at": retry_at, "code": error.code},
            )
            return

        kind = "retries_exhausted" if error.retryable else "backend_error"
        reason = (
            f"Cancellation of order #{wf.order_number} failed after {attempts} attempts: {error.message}"
            if error.retryable
            else f"Cancellation of order #{wf.order_number} failed: {error.message}"
        )
        self._fail(wf, error, actor=actor, escalation_kind=kind, reason=reason, changes={"attempt_count": attempts})

    def _wait_for_side_effect(self, wf: CancellationWorkflow, err: SideEffectInFlight, *, actor: str) -> None:
        """
        Another runner is mid-call on the same keyed side effect. Check again
        once its claim could have gone stale; this does not use up an attempt.
        """
        retry_at = to_iso(self.clock() + timedelta(seconds=self.effects.stale_after_seconds + 1))
        logger.info("Workflow %s: %s; checking again at %s", wf.workflow_id, err.message, retry_at)
        self._move(
            wf,
            {"next_attempt_at": retry_at},
            actor=actor,
            event="side_effect_in_flight",
            details={"step": wf.step, "retry_at": retry_at, **err.details},
        )

    def _fail(
        self,
        wf: CancellationWorkflow,
        error: WorkflowError,
        *,
        actor: str,
        escalation_kind: Optional[str] = None,
        reason: Optional[str] = None,
        priority: str = "normal",
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[CancellationWorkflow]:
        reason = reason or error.message
        merged: Dict[str, Any] = {"status": "failed", "error": error}
        if escalation_kind:
            merged["escalation_reason"] = reason
        merged.update(changes or {})
        updated = self._move(
            wf,
            merged,
            actor=actor,
            event="failed",
            details={"code": error.code, "message": error.message, "category": error.category},
        )
        if updated is None:
            return None

        logger.warning("Workflow %s failed at %s: %s", wf.workflow_id, wf.step, error.message, extra={"workflow_id": wf.workflow_id})
        # The review notice follows the persisted failure, never precedes it.
        if updated.customer_acknowledgment_sent and error.category != "approval":
            try:
                self.effects.send_email_once(
                    updated,
                    key=f"{wf.workflow_id}:failure_notice",
                    template="cancellation_under_review",
                    variables=self._customer_variables(updated, None),
                    to=updated.customer_email,
                )
            except NotificationFailed as e:
                logger.error("Failed to send review notice for %s: %s", wf.workflow_id, e.message)
                self.store.record_event(
                    wf.workflow_id,
                    event="failure_notice_failed",
                    actor=actor,
                    details={"error": e.message},
                )

        if escalation_kind:
            self._escalate(updated, kind=escalation_kind, reason=reason, actor=actor, priority=priority, details={"code": error.code})
        return updated

    def _escalate(
        self,
        wf: CancellationWorkflow,
        *,
        kind: str,
        reason: str,
        actor: str,
        priority: str = "normal",
        details: Optional[Dict[str, Any]] = None,
    ) -> Escalation:
        escalation, created = self.store.create_escalation(
            Escalation(
                workflow_id=wf.workflow_id,
                kind=kind,
                priority=priority,
                reason=reason,
                details={"order_number": wf.order_number, "step": wf.step, **(details or {})},
            ),
            actor=actor,
        )
        if created:
            record_counter("escalations_total", 1, {"kind": kind, "priority": priority})
            add_event_to_span("escalation_opened", {"workflow.id": wf.workflow_id, "kind": kind})
            logger.warning("Escalated %s (%s): %s", wf.workflow_id, kind, reason)
        return escalation

    def _gate(self, wf: CancellationWorkflow, action: str, *, actor: str, **metadata: Any) -> Tuple[str, Optional[ApprovalItem]]:
        """
        Approval checkpoint before a side effect.

        Returns ("proceed" | "wait" | "rejected", item). A rejection fails the
        workflow here.
        """
        if not wf.fulfillment_config.approval_required:
            return "proceed", None

        item = self.approvals.approval_for(wf.workflow_id, action)
        if item is None:
            self.approvals.request_approval(wf.workflow_id, action, self._approval_metadata(wf, action, metadata), requested_by=actor)
            record_counter("approvals_requested_total", 1, {"proposed_action": action})
            return "wait", None
        if item.status == "pending":
            return "wait", item
        if item.is_approved:
            return "proceed", item
        message = f"Approval rejected for {action}: {item.decision_reason or 'no reason given'}"
        error = ApprovalRejected(message, details={"approval_id": item.approval_id, "decided_by": item.decided_by})
        self._fail(wf, error.to_workflow_error(), actor=actor)
        return "rejected", item

    def _approval_metadata(self, wf: CancellationWorkflow, action: str, extra: Dict[str, Any]) -> Dict[str, Any]:
        planned = ["acknowledge_customer"]
        if wf.fulfillment_method == "warehouse_email":
            planned += ["email_warehouse", "await_warehouse"]
        else:
            planned += ["process_cancellation"]
        planned += ["issue_refund", "send_confirmation"]
        return {
            "order_number": wf.order_number,
            "order_total": str(wf.order_total),
            "customer_email": wf.customer_email,
            "fulfillment_method": wf.fulfillment_method,
            "eligible": wf.eligible,
            "eligibility_reason": wf.eligibility_reason,
            "eligibility_deadline": wf.eligibility_deadline,
            "planned_actions": planned if wf.eligible else ["acknowledge_customer"],
            "proposed_action": action,
            **extra,
        }

    @staticmethod
    def _edited_fields(item: Optional[ApprovalItem]) -> Dict[str, Any]:
        if item is None or item.status != "edited":
            return {}
        return {k: v for k, v in (item.edits or {}).items() if k in EDITABLE_TEMPLATE_FIELDS and v is not None}

    def _customer_variables(self, wf: CancellationWorkflow, item: Optional[ApprovalItem]) -> Dict[str, Any]:
        variables: Dict[str, Any] = {
            "order_number": wf.order_number,
            "store_name": wf.fulfillment_config.store_name,
            "customer_name": wf.customer_name or "",
        }
        variables.update(self._edited_fields(item))
        return variables

    def _send_final_notice(self, wf: CancellationWorkflow, template: str, variables: Dict[str, Any], *, actor: str) -> bool:
        """
        Send the closing customer email.

        False when a transient failure scheduled a retry. A permanent failure
        (or the last attempt) escalates and lets the workflow finish.
        """
        try:
            self.effects.send_email_once(
                wf,
                key=f"{wf.workflow_id}:final_notice",
                template=template,
                variables=variables,
                to=wf.customer_email,
            )
            return True
        except NotificationFailed as e:
            if e.retryable and wf.attempt_count + 1 < self.settings.max_cancel_attempts:
                self._handle_step_error(wf, e.to_workflow_error(), actor=actor)
                return False
            logger.error("Final notice %s could not be sent for %s: %s", template, wf.workflow_id, e.message)
            self._escalate(
                wf,
                kind="notification_failure",
                reason=f"Customer notice {template} for order #{wf.order_number} could not be sent",
                actor=actor,
                details={"template": template, "error": e.message},
            )
            return True

    def _timeout_warehouse(self, workflow_id: str, *, actor: str) -> bool:
        with self._workflow_lock(workflow_id) as token:
            if token is None:
                return False
            wf = self.store.get_workflow(workflow_id)
            if wf is None or wf.is_terminal or wf.step != "await_warehouse" or wf.warehouse_reply_received:
                return False
            due = parse_iso(wf.warehouse_reply_due_at)
            if due is None or due > self.clock():
                return False

            sla_hours = wf.fulfillment_config.warehouse_reply_sla_hours
            error = WarehouseTimeout(
                f"No warehouse response within {sla_hours:g} hours",
                details={"awaiting_since": wf.awaiting_since, "reply_due_at": wf.warehouse_reply_due_at},
            ).to_workflow_error()
            updated = self._fail(
                wf,
                error,
                actor=actor,
                escalation_kind="warehouse_timeout",
                priority="high",
                reason=f"Order cancellation timeout - no warehouse response for order #{wf.order_number}",
            )
            return updated is not None

    @contextmanager
    def _workflow_lock(self, workflow_id: str) -> Iterator[Optional[str]]:
        """
        Hold the per-workflow lock for one advance, timeout or operator stop.

        Yields the lock token, or None when someone else holds the lock. Each
        hold gets its own token so two callers in one process still exclude
        each other.
        """
        token = f"{self.owner_id}:{uuid4().hex[:12]}"
        if not self._renew_lock(workflow_id, token):
            yield None
            return
        try:
            yield token
        finally:
            self.store.release_workflow_lock(workflow_id=workflow_id, owner_id=token)

    def _renew_lock(self, workflow_id: str, token: str) -> bool:
        return self.store.claim_workflow_lock(
            workflow_id=workflow_id,
            owner_id=token,
            lease_seconds=self.settings.lock_seconds,
        )


__all__ = [
    "WorkflowStateMachine",
    "EngineSettings",
    "SweepReport",
    "WarehouseReplyResult",
    "ApprovalDecisionResult",
    "next_backoff_seconds",
]
