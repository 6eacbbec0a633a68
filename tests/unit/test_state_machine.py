"""
Tests for the cancellation workflow state machine.

Every scenario runs against a real sqlite store with recording fakes for
email, refunds and the commerce platform, and a clock the test controls.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cancellations.engine.eligibility import REASON_ALREADY_PROCESSED, REASON_TOO_LATE, REASON_WEEKEND
from cancellations.engine.errors import ExternalApiError, InvalidWorkflowState, WorkflowNotFound
from cancellations.engine.machine import next_backoff_seconds
from cancellations.engine.models import WorkflowError
from cancellations.engine.validation import WorkflowCreationValidationError
from cancellations.strategies import CancelAttempt
from core.hitl import ApprovalNotFound
from core.notifications import NotificationError, RetryableNotificationError
from core.refunds import RefundError

from fakes import TOO_LATE_CREATED_AT, ScriptedStrategy, StallingStrategy, make_request, make_workflow


def escalation_kinds(store, workflow_id):
    return [e.kind for e in store.list_escalations(status="open", workflow_id=workflow_id)]


def audit_events(workflow):
    return [e.event for e in workflow.audit_trail]


def decide(machine, store, workflow_id, decision="approved", reason=None, **kwargs):
    """Decide whatever approval item is pending for the workflow right now."""
    approval_id = store.get_pending_approval(workflow_id).approval_id
    return machine.resolve_approval(workflow_id, approval_id, decision, reason, actor="ops", **kwargs)


class TestWarehouseEmailFlow:
    """Warehouse email: ask the warehouse, wait for its reply, then finish."""

    @pytest.fixture
    def awaiting(self, machine):
        workflow, created = machine.create_workflow(make_request())
        assert created is True
        return workflow

    def test_request_emails_customer_then_warehouse(self, awaiting, dispatcher):
        assert awaiting.status == "awaiting_warehouse"
        assert awaiting.step == "await_warehouse"
        assert awaiting.eligible is True
        assert awaiting.customer_acknowledgment_sent is True
        assert awaiting.warehouse_email_sent is True
        assert awaiting.awaiting_since == "2026-03-10T15:00:00Z"
        assert awaiting.warehouse_reply_due_at == "2026-03-10T23:00:00Z"

        assert dispatcher.templates == ["cancellation_acknowledgment", "warehouse_cancel_request"]
        assert dispatcher.sent[0]["to"] == "jane@example.com"
        assert dispatcher.sent[1]["to"] == "warehouse@3pl.example"

    def test_canceled_reply_refunds_and_confirms(self, machine, awaiting, dispatcher, refunds):
        result = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled", event_id="reply-1")

        assert result.applied is True
        assert result.outcome == "canceled"
        workflow = result.workflow
        assert workflow.status == "canceled"
        assert workflow.step == "completed"
        assert workflow.was_canceled is True
        assert workflow.refund_processed is True
        assert workflow.refund_amount == Decimal("49.99")
        assert workflow.refund_id == "re_1"
        assert workflow.warehouse_reply == "Canceled"
        assert workflow.completed_at is not None

        assert refunds.calls == [
            {"order_id": "gid-10045", "amount": Decimal("49.99"), "idempotency_key": awaiting.workflow_id}
        ]
        assert dispatcher.templates[-1] == "cancellation_confirmed"
        assert "49.99 USD" in dispatcher.sent[-1]["body"]

    def test_audit_trail_records_every_step(self, machine, awaiting):
        workflow = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled").workflow

        assert audit_events(workflow) == [
            "created",
            "order_identified",
            "eligibility_checked",
            "customer_acknowledged",
            "warehouse_emailed",
            "warehouse_reply_received",
            "cancellation_completed",
        ]

    def test_cannot_cancel_reply_sends_decline(self, machine, awaiting, dispatcher, refunds):
        workflow = machine.record_warehouse_reply(awaiting.workflow_id, "Cannot cancel - already picked").workflow

        assert workflow.status == "cannot_cancel"
        assert workflow.step == "completed"
        assert workflow.was_canceled is False
        assert workflow.refund_processed is False
        assert refunds.calls == []
        assert dispatcher.templates[-1] == "cancellation_declined"

    def test_explicit_outcome_wins(self, machine, awaiting):
        result = machine.record_warehouse_reply(awaiting.workflow_id, "", outcome="cannot_cancel")
        assert result.workflow.status == "cannot_cancel"

    def test_invalid_outcome_rejected(self, machine, awaiting):
        with pytest.raises(ValueError, match="invalid_warehouse_outcome"):
            machine.record_warehouse_reply(awaiting.workflow_id, "Canceled", outcome="maybe")

    def test_duplicate_reply_event_applies_once(self, machine, awaiting, refunds):
        machine.record_warehouse_reply(awaiting.workflow_id, "Canceled", event_id="reply-1")
        again = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled", event_id="reply-1")

        assert again.applied is False
        assert again.idempotent_hit is True
        assert len(refunds.calls) == 1

    def test_late_reply_is_ignored(self, machine, awaiting, dispatcher):
        machine.record_warehouse_reply(awaiting.workflow_id, "Cannot cancel", event_id="reply-1")
        sent_before = len(dispatcher.sent)

        late = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled", event_id="reply-2")

        assert late.applied is False
        assert late.reason == "not_awaiting_reply"
        assert late.workflow.status == "cannot_cancel"
        assert len(dispatcher.sent) == sent_before
        assert "warehouse_reply_ignored" in audit_events(machine.get_workflow(awaiting.workflow_id))

    def test_ambiguous_reply_escalates_and_keeps_waiting(self, machine, awaiting, store):
        result = machine.record_warehouse_reply(awaiting.workflow_id, "Let me check with the floor team")

        assert result.applied is False
        assert result.reason == "ambiguous_reply"
        assert result.workflow.status == "awaiting_warehouse"
        assert escalation_kinds(store, awaiting.workflow_id) == ["ambiguous_warehouse_reply"]

        follow_up = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled")
        assert follow_up.workflow.status == "canceled"

    def test_no_reply_within_sla_times_out(self, machine, awaiting, clock, store, dispatcher):
        clock.advance(hours=9)
        report = machine.sweep()

        assert report.timed_out == [awaiting.workflow_id]
        workflow = machine.get_workflow(awaiting.workflow_id)
        assert workflow.status == "failed"
        assert workflow.error.code == "warehouse_timeout"
        assert workflow.error.category == "timeout"
        assert workflow.escalation_reason.startswith("Order cancellation timeout")

        escalations = store.list_escalations(workflow_id=awaiting.workflow_id)
        assert [(e.kind, e.priority) for e in escalations] == [("warehouse_timeout", "high")]
        assert dispatcher.templates[-1] == "cancellation_under_review"

    def test_sweep_within_sla_leaves_workflow_waiting(self, machine, awaiting, clock):
        clock.advance(hours=7)
        report = machine.sweep()

        assert report.timed_out == []
        assert report.resumed == []
        assert machine.get_workflow(awaiting.workflow_id).status == "awaiting_warehouse"

    def test_custom_sla(self, machine, clock):
        workflow, _ = machine.create_workflow(make_request(warehouse_reply_sla_hours=2))
        assert workflow.warehouse_reply_due_at == "2026-03-10T17:00:00Z"

        clock.advance(hours=2)
        assert machine.sweep().timed_out == [workflow.workflow_id]

    def test_test_mode_routes_to_merchant(self, machine, dispatcher):
        machine.create_workflow(make_request(test_mode=True, warehouse_test_email="owner@acme.example"))

        assert dispatcher.sent[1]["to"] == "owner@acme.example"
        assert dispatcher.sent[1]["subject"].startswith("[TEST]")


class TestEligibility:
    """Orders outside the window end without touching the fulfillment channel."""

    def test_too_late_order(self, machine, dispatcher, refunds):
        workflow, _ = machine.create_workflow(make_request(created_at=TOO_LATE_CREATED_AT))

        assert workflow.status == "cannot_cancel"
        assert workflow.step == "acknowledge_customer"
        assert workflow.eligible is False
        assert workflow.eligibility_reason == REASON_TOO_LATE
        assert workflow.was_canceled is False
        assert workflow.warehouse_email_sent is False
        assert dispatcher.templates == ["cancellation_too_late"]
        assert refunds.calls == []
        assert "cancellation_ineligible" in audit_events(workflow)

    def test_already_processed_order(self, machine, dispatcher):
        workflow, _ = machine.create_workflow(make_request(order_status="shipped"))

        assert workflow.status == "cannot_cancel"
        assert workflow.eligibility_reason == REASON_ALREADY_PROCESSED
        assert dispatcher.templates == ["cancellation_too_late"]

    def test_weekend_order_on_monday_morning(self, machine, clock, dispatcher):
        clock.now = datetime(2026, 3, 16, 11, 0, tzinfo=timezone.utc)
        workflow, _ = machine.create_workflow(make_request(created_at="2026-03-13T14:00:00Z"))

        assert workflow.eligible is True
        assert workflow.eligibility_reason == REASON_WEEKEND
        assert workflow.eligibility_deadline == "2026-03-16T12:00:00Z"
        assert workflow.status == "awaiting_warehouse"

    def test_store_timezone_applies(self, machine, clock):
        clock.now = datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)
        workflow, _ = machine.create_workflow(
            make_request(created_at="2026-03-13T15:00:00Z", store_timezone="America/New_York")
        )

        assert workflow.eligible is False
        assert workflow.status == "cannot_cancel"


class TestAutomatedFulfillment:
    """ShipBob, ShipStation and self-fulfillment settle the outcome in one step."""

    def test_shipbob_cancel_completes_with_refund(self, build_machine, dispatcher, refunds):
        machine = build_machine(ScriptedStrategy("shipbob", CancelAttempt.canceled("Order cancelled in ShipBob")))
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.status == "canceled"
        assert workflow.step == "completed"
        assert workflow.warehouse_email_sent is False
        assert len(refunds.calls) == 1
        assert dispatcher.templates == ["cancellation_acknowledgment", "cancellation_confirmed"]
        assert "cancel_attempt_completed" in audit_events(workflow)

    def test_shipstation_shipped_order_is_declined(self, build_machine, dispatcher, refunds):
        machine = build_machine(ScriptedStrategy("shipstation", CancelAttempt.cannot_cancel("Order has already shipped")))
        workflow, _ = machine.create_workflow(make_request("shipstation"))

        assert workflow.status == "cannot_cancel"
        assert workflow.was_canceled is False
        assert refunds.calls == []
        assert dispatcher.templates == ["cancellation_acknowledgment", "cancellation_declined"]

    def test_self_fulfillment_cancels_on_platform(self, machine, commerce, refunds):
        workflow, _ = machine.create_workflow(make_request("self_fulfillment"))

        assert workflow.status == "canceled"
        assert commerce.calls[0]["idempotency_key"] == f"{workflow.workflow_id}:cancel_order"
        assert len(refunds.calls) == 1

    def test_transient_failure_is_retried_by_sweep(self, build_machine, clock):
        strategy = ScriptedStrategy(
            "shipbob",
            ExternalApiError("ShipBob temporarily unavailable", retryable=True, code="shipbob_unavailable"),
            CancelAttempt.canceled("Order cancelled in ShipBob"),
        )
        machine = build_machine(strategy)
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.status == "processing"
        assert workflow.step == "process_cancellation"
        assert workflow.attempt_count == 1
        assert workflow.next_attempt_at == "2026-03-10T15:00:30Z"
        assert workflow.error.code == "shipbob_unavailable"

        # Not due yet
        machine.advance(workflow.workflow_id)
        assert strategy.calls == 1

        clock.advance(seconds=30)
        report = machine.sweep()

        assert report.resumed == [workflow.workflow_id]
        assert strategy.calls == 2
        final = machine.get_workflow(workflow.workflow_id)
        assert final.status == "canceled"
        assert final.error is None

    def test_retries_exhausted(self, build_machine, clock, store, dispatcher):
        strategy = ScriptedStrategy(
            "shipbob", ExternalApiError("ShipBob temporarily unavailable", retryable=True, code="shipbob_unavailable")
        )
        machine = build_machine(strategy)
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        clock.advance(seconds=30)
        second = machine.advance(workflow.workflow_id)
        assert second.attempt_count == 2
        assert second.next_attempt_at == "2026-03-10T15:01:30Z"

        clock.advance(seconds=60)
        final = machine.advance(workflow.workflow_id)

        assert strategy.calls == 3
        assert final.status == "failed"
        assert final.attempt_count == 3
        assert escalation_kinds(store, workflow.workflow_id) == ["retries_exhausted"]
        assert dispatcher.templates == ["cancellation_acknowledgment", "cancellation_under_review"]

    def test_permanent_failure_fails_immediately(self, build_machine, store):
        strategy = ScriptedStrategy(
            "shipbob", ExternalApiError("ShipBob rejected credentials", retryable=False, code="shipbob_auth_failed")
        )
        machine = build_machine(strategy)
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.status == "failed"
        assert workflow.attempt_count == 1
        assert workflow.error.code == "shipbob_auth_failed"
        assert escalation_kinds(store, workflow.workflow_id) == ["backend_error"]

    def test_pending_outcome_from_api_channel_fails(self, build_machine, store):
        machine = build_machine(ScriptedStrategy("shipstation", CancelAttempt.pending("queued")))
        workflow, _ = machine.create_workflow(make_request("shipstation"))

        assert workflow.status == "failed"
        assert workflow.error.code == "unexpected_pending_outcome"

    def test_refund_failure_still_completes(self, build_machine, refunds, dispatcher, store):
        refunds.error = RefundError("Refund rejected: HTTP 402")
        machine = build_machine(ScriptedStrategy("shipbob", CancelAttempt.canceled("ok")))
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.status == "completed"
        assert workflow.was_canceled is True
        assert workflow.refund_processed is False
        assert workflow.needs_reconciliation is True
        assert workflow.error.category == "refund"
        assert dispatcher.templates == ["cancellation_acknowledgment", "cancellation_confirmed_refund_pending"]

        escalations = store.list_escalations(workflow_id=workflow.workflow_id)
        assert [(e.kind, e.priority) for e in escalations] == [("refund_reconciliation", "high")]

    def test_refund_in_flight_elsewhere_waits_instead_of_reconciling(self, machine, store, clock, refunds, dispatcher):
        awaiting, _ = machine.create_workflow(make_request())
        store.claim_side_effect(idempotency_key=awaiting.workflow_id, workflow_id=awaiting.workflow_id, kind="refund")

        workflow = machine.record_warehouse_reply(awaiting.workflow_id, "Canceled").workflow

        assert workflow.status == "processing"
        assert workflow.step == "process_result"
        assert workflow.needs_reconciliation is False
        assert workflow.attempt_count == 0
        assert workflow.next_attempt_at == "2026-03-10T15:05:01Z"
        assert refunds.calls == []
        assert dispatcher.templates == ["cancellation_acknowledgment", "warehouse_cancel_request"]
        assert store.list_escalations(workflow_id=awaiting.workflow_id) == []

        clock.advance(seconds=302)
        machine.sweep()

        final = machine.get_workflow(awaiting.workflow_id)
        assert final.status == "canceled"
        assert final.refund_processed is True
        assert len(refunds.calls) == 1

    def test_step_outliving_the_lock_still_completes(self, build_machine, clock, refunds):
        machine = build_machine(
            StallingStrategy("shipbob", CancelAttempt.canceled("ok"), lambda wf: clock.advance(seconds=200))
        )
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.status == "canceled"
        assert len(refunds.calls) == 1

    def test_advance_stops_once_another_runner_takes_the_lock(self, build_machine, store, clock, refunds):
        def stall(wf):
            clock.advance(seconds=200)
            store.claim_workflow_lock(workflow_id=wf.workflow_id, owner_id="other-runner", lease_seconds=120)

        machine = build_machine(StallingStrategy("shipbob", CancelAttempt.canceled("ok"), stall))
        workflow, _ = machine.create_workflow(make_request("shipbob"))

        assert workflow.step == "process_result"
        assert workflow.status == "processing"
        assert workflow.lock_owner == "other-runner"
        assert refunds.calls == []


class TestNotificationFailures:
    def test_acknowledgment_bounce_fails_without_customer_notice(self, machine, dispatcher, store):
        dispatcher.failures.append(NotificationError("mailbox does not exist"))
        workflow, _ = machine.create_workflow(make_request())

        assert workflow.status == "failed"
        assert workflow.error.category == "notification"
        assert dispatcher.sent == []
        assert escalation_kinds(store, workflow.workflow_id) == ["backend_error"]

    def test_acknowledgment_outage_is_retried(self, machine, dispatcher, clock):
        dispatcher.failures.append(RetryableNotificationError("HTTP 503"))
        workflow, _ = machine.create_workflow(make_request())

        assert workflow.step == "acknowledge_customer"
        assert workflow.attempt_count == 1

        clock.advance(seconds=30)
        machine.sweep()
        assert machine.get_workflow(workflow.workflow_id).status == "awaiting_warehouse"

    def test_final_notice_bounce_escalates_but_completes(self, machine, dispatcher, store):
        workflow, _ = machine.create_workflow(make_request())
        dispatcher.failures.append(NotificationError("mailbox full"))

        final = machine.record_warehouse_reply(workflow.workflow_id, "Canceled").workflow

        assert final.status == "canceled"
        assert final.refund_processed is True
        assert escalation_kinds(store, workflow.workflow_id) == ["notification_failure"]


class TestApprovalGating:
    """With approval required, every outbound side effect waits for a reviewer."""

    @pytest.fixture
    def paused(self, machine):
        workflow, _ = machine.create_workflow(make_request(approval_required=True))
        return workflow

    def test_pauses_before_any_side_effect(self, machine, paused, dispatcher, store):
        assert paused.status == "processing"
        assert paused.step == "acknowledge_customer"
        assert dispatcher.sent == []

        pending = store.get_pending_approval(paused.workflow_id)
        assert pending.proposed_action == "acknowledge_customer"
        assert pending.metadata["template"] == "cancellation_acknowledgment"
        assert pending.metadata["planned_actions"] == [
            "acknowledge_customer",
            "email_warehouse",
            "await_warehouse",
            "issue_refund",
            "send_confirmation",
        ]

    def test_each_step_needs_its_own_approval(self, machine, paused, dispatcher, refunds, store):
        workflow = decide(machine, store, paused.workflow_id).workflow
        assert dispatcher.templates == ["cancellation_acknowledgment"]
        assert store.get_pending_approval(paused.workflow_id).proposed_action == "email_warehouse"

        workflow = decide(machine, store, paused.workflow_id).workflow
        assert workflow.status == "awaiting_warehouse"

        workflow = machine.record_warehouse_reply(paused.workflow_id, "Canceled").workflow
        assert workflow.step == "process_result"
        assert refunds.calls == []
        assert store.get_pending_approval(paused.workflow_id).proposed_action == "issue_refund"

        result = decide(machine, store, paused.workflow_id)
        assert result.item.status == "approved"
        assert result.workflow.status == "canceled"
        assert len(refunds.calls) == 1

    def test_redelivered_decision_approves_only_its_own_item(self, machine, paused, dispatcher, store):
        approval_id = store.get_pending_approval(paused.workflow_id).approval_id

        first = machine.resolve_approval(paused.workflow_id, approval_id, "approved", actor="ops")
        again = machine.resolve_approval(paused.workflow_id, approval_id, "approved", actor="ops")

        assert first.applied is True
        assert again.applied is False
        assert again.idempotent_hit is True
        assert dispatcher.templates == ["cancellation_acknowledgment"]
        assert store.get_pending_approval(paused.workflow_id).proposed_action == "email_warehouse"
        assert machine.get_workflow(paused.workflow_id).warehouse_email_sent is False

    def test_decision_on_already_decided_item_is_noop(self, machine, paused, dispatcher, store):
        approval_id = store.get_pending_approval(paused.workflow_id).approval_id
        machine.resolve_approval(paused.workflow_id, approval_id, "approved", actor="ops", event_id="evt-1")

        late = machine.resolve_approval(
            paused.workflow_id, approval_id, "rejected", "too slow", actor="ops2", event_id="evt-2"
        )

        assert late.applied is False
        assert late.idempotent_hit is False
        assert late.item.status == "approved"
        assert late.workflow.status == "processing"
        assert dispatcher.templates == ["cancellation_acknowledgment"]

    def test_unknown_approval(self, machine, paused):
        with pytest.raises(ApprovalNotFound):
            machine.resolve_approval(paused.workflow_id, "no-such-approval", "approved", actor="ops")

    def test_rejection_fails_quietly(self, machine, paused, dispatcher, store):
        result = decide(machine, store, paused.workflow_id, "rejected", "Customer already emailed back")

        assert result.item.status == "rejected"
        assert result.workflow.status == "failed"
        assert result.workflow.error.code == "approval_rejected"
        assert dispatcher.sent == []
        assert store.list_escalations(workflow_id=paused.workflow_id) == []

    def test_rejection_requires_reason(self, machine, paused, store):
        with pytest.raises(ValueError, match="rejection_reason_required"):
            decide(machine, store, paused.workflow_id, "rejected")
        assert store.get_pending_approval(paused.workflow_id) is not None

    def test_edited_message_reaches_customer(self, machine, paused, dispatcher, store):
        decide(machine, store, paused.workflow_id, "edited", edits={"custom_message": "We're expediting this for you."})
        assert "We're expediting this for you." in dispatcher.sent[0]["body"]

    def test_sweep_never_skips_a_pending_approval(self, machine, paused, clock, dispatcher):
        clock.advance(hours=3)
        report = machine.sweep()

        assert report.resumed == []
        assert dispatcher.sent == []

    def test_decline_notice_is_gated(self, build_machine, dispatcher, store):
        machine = build_machine(ScriptedStrategy("shipbob", CancelAttempt.cannot_cancel("shipped")))
        workflow, _ = machine.create_workflow(make_request("shipbob", approval_required=True))

        decide(machine, store, workflow.workflow_id)
        decide(machine, store, workflow.workflow_id)
        assert store.get_pending_approval(workflow.workflow_id).proposed_action == "send_decline_notice"
        assert dispatcher.templates == ["cancellation_acknowledgment"]

        final = decide(machine, store, workflow.workflow_id).workflow
        assert final.status == "cannot_cancel"
        assert dispatcher.templates == ["cancellation_acknowledgment", "cancellation_declined"]

    def test_decision_on_terminal_workflow_is_invalid_state(self, machine, paused, store):
        approval_id = store.get_pending_approval(paused.workflow_id).approval_id
        machine.fail_workflow(paused.workflow_id, reason="handled by phone", actor="ops")

        with pytest.raises(InvalidWorkflowState):
            machine.resolve_approval(paused.workflow_id, approval_id, "approved", actor="ops")


class TestCreateWorkflow:
    def test_replayed_request_is_idempotent(self, machine, dispatcher):
        first, created = machine.create_workflow(make_request())
        second, created_again = machine.create_workflow(make_request())

        assert created is True
        assert created_again is False
        assert second.workflow_id == first.workflow_id
        assert len(dispatcher.sent) == 2

    def test_second_email_for_active_order_is_duplicate(self, machine):
        machine.create_workflow(make_request())

        with pytest.raises(WorkflowCreationValidationError) as exc_info:
            machine.create_workflow(make_request(email_id="email-2"))
        assert exc_info.value.code == "duplicate_request"

    def test_rejected_request_persists_nothing(self, machine, store, dispatcher):
        with pytest.raises(WorkflowCreationValidationError):
            machine.create_workflow(make_request(warehouse_email=None))

        assert store.count_workflows() == 0
        assert dispatcher.sent == []

    def test_customer_rate_limit(self, build_machine):
        machine = build_machine(max_requests_per_customer_per_day=2)
        machine.create_workflow(make_request(order_number="20001", email_id="e1"))
        machine.create_workflow(make_request(order_number="20002", email_id="e2"))

        with pytest.raises(WorkflowCreationValidationError) as exc_info:
            machine.create_workflow(make_request(order_number="20003", email_id="e3"))
        assert exc_info.value.code == "too_many_requests"


class TestOperatorAndRecovery:
    def test_fail_workflow_notifies_customer(self, machine, dispatcher):
        workflow, _ = machine.create_workflow(make_request())
        failed = machine.fail_workflow(workflow.workflow_id, reason="Customer asked by phone", actor="ops")

        assert failed.status == "failed"
        assert failed.error.code == "operator_failed"
        assert dispatcher.templates[-1] == "cancellation_under_review"

        with pytest.raises(InvalidWorkflowState):
            machine.fail_workflow(workflow.workflow_id, reason="again", actor="ops")

    def test_fail_workflow_conflicts_with_running_advance(self, machine, store, dispatcher):
        workflow, _ = machine.create_workflow(make_request())
        store.claim_workflow_lock(workflow_id=workflow.workflow_id, owner_id="other-runner", lease_seconds=120)

        with pytest.raises(InvalidWorkflowState, match="workflow_locked"):
            machine.fail_workflow(workflow.workflow_id, reason="Customer asked by phone", actor="ops")

        assert machine.get_workflow(workflow.workflow_id).status == "awaiting_warehouse"
        assert "cancellation_under_review" not in dispatcher.templates

    def test_failure_on_stale_snapshot_sends_no_review_notice(self, machine, dispatcher):
        snapshot, _ = machine.create_workflow(make_request())
        machine.record_warehouse_reply(snapshot.workflow_id, "Canceled")

        error = WorkflowError(code="operator_failed", message="stop", category="unknown")
        assert machine._fail(snapshot, error, actor="ops") is None

        assert machine.get_workflow(snapshot.workflow_id).status == "canceled"
        assert dispatcher.templates[-1] == "cancellation_confirmed"
        assert "cancellation_under_review" not in dispatcher.templates

    def test_unknown_workflow(self, machine):
        with pytest.raises(WorkflowNotFound):
            machine.get_workflow("CXL-missing")

    def test_advance_skips_workflow_locked_elsewhere(self, machine, store, dispatcher):
        workflow, _ = store.create_workflow(make_workflow(), actor="test")
        store.claim_workflow_lock(workflow_id=workflow.workflow_id, owner_id="other-runner", lease_seconds=120)

        result = machine.advance(workflow.workflow_id)

        assert result.step == "identify_order"
        assert dispatcher.sent == []

    def test_sweep_resumes_stalled_workflow(self, machine, store, clock):
        workflow, _ = store.create_workflow(make_workflow(), actor="test")
        clock.advance(seconds=601)

        report = machine.sweep()

        assert report.resumed == [workflow.workflow_id]
        assert machine.get_workflow(workflow.workflow_id).status == "awaiting_warehouse"

    def test_advance_on_terminal_workflow_is_noop(self, machine, dispatcher):
        workflow, _ = machine.create_workflow(make_request(created_at=TOO_LATE_CREATED_AT))
        assert machine.advance(workflow.workflow_id).status == "cannot_cancel"
        assert len(dispatcher.sent) == 1


class TestBackoff:
    @pytest.mark.parametrize("retry_count,expected", [(1, 30), (2, 60), (3, 120), (10, 900)])
    def test_exponential_with_cap(self, retry_count, expected):
        assert next_backoff_seconds(retry_count=retry_count) == expected
