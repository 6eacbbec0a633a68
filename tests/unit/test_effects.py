"""
Tests for at-most-once side effects and the HTTP refund/commerce clients.
"""

import json
from decimal import Decimal

import httpx
import pytest

from cancellations.engine.effects import IdempotentEffects
from cancellations.engine.errors import NotificationFailed, SideEffectInFlight
from core.commerce import CommercePlatformError, HttpCommercePlatform, OrderNotCancellable
from core.notifications import NotificationError, RetryableNotificationError
from core.refunds import HttpRefundProcessor, RefundError

from fakes import make_workflow


@pytest.fixture
def effects(store, dispatcher, refunds):
    return IdempotentEffects(store, dispatcher, refunds)


@pytest.fixture
def workflow():
    return make_workflow()


class TestSendEmailOnce:
    def _send(self, effects, workflow, key="wf:ack"):
        return effects.send_email_once(
            workflow,
            key=key,
            template="cancellation_acknowledgment",
            variables={"order_number": workflow.order_number},
            to=workflow.customer_email,
        )

    def test_second_send_replays_receipt(self, effects, workflow, dispatcher):
        first = self._send(effects, workflow)
        second = self._send(effects, workflow)

        assert len(dispatcher.sent) == 1
        assert second["message_id"] == first["message_id"]
        assert second["replayed"] is True

    def test_transient_failure_allows_retry(self, effects, workflow, dispatcher):
        dispatcher.failures.append(RetryableNotificationError("HTTP 503"))

        with pytest.raises(NotificationFailed) as exc_info:
            self._send(effects, workflow)
        assert exc_info.value.retryable is True

        self._send(effects, workflow)
        assert dispatcher.templates == ["cancellation_acknowledgment"]

    def test_permanent_failure_is_remembered(self, effects, workflow, dispatcher, store):
        dispatcher.failures.append(NotificationError("mailbox does not exist"))

        with pytest.raises(NotificationFailed) as first:
            self._send(effects, workflow)
        with pytest.raises(NotificationFailed) as second:
            self._send(effects, workflow)

        assert first.value.retryable is False
        assert second.value.retryable is False
        assert dispatcher.sent == []
        assert [r.status for r in store.list_side_effects(workflow.workflow_id)] == ["failed"]

    def test_in_flight_claim_is_retryable(self, effects, workflow, store, dispatcher):
        store.claim_side_effect(idempotency_key="wf:ack", workflow_id=workflow.workflow_id, kind="email")

        with pytest.raises(NotificationFailed) as exc_info:
            self._send(effects, workflow)

        assert exc_info.value.code == "side_effect_in_flight"
        assert exc_info.value.retryable is True
        assert dispatcher.sent == []


class TestRefundOnce:
    def test_refund_keyed_by_workflow_id(self, effects, workflow, refunds):
        result = effects.refund_once(workflow)

        assert result.amount == Decimal("49.99")
        assert refunds.calls == [
            {"order_id": "gid-10045", "amount": Decimal("49.99"), "idempotency_key": workflow.workflow_id}
        ]

    def test_replay_never_refunds_twice(self, effects, workflow, refunds):
        first = effects.refund_once(workflow)
        second = effects.refund_once(workflow)

        assert len(refunds.calls) == 1
        assert second.refund_id == first.refund_id

    def test_failed_refund_is_not_retried(self, effects, workflow, refunds):
        refunds.error = RefundError("card expired")

        with pytest.raises(RefundError):
            effects.refund_once(workflow)
        with pytest.raises(RefundError, match="previously failed"):
            effects.refund_once(workflow)

        assert len(refunds.calls) == 1

    def test_claim_held_elsewhere_is_in_flight(self, effects, workflow, refunds, store, clock):
        store.claim_side_effect(idempotency_key=workflow.workflow_id, workflow_id=workflow.workflow_id, kind="refund")

        with pytest.raises(SideEffectInFlight) as exc_info:
            effects.refund_once(workflow)
        assert exc_info.value.retryable is True
        assert refunds.calls == []

        clock.advance(seconds=301)
        assert effects.refund_once(workflow).refund_id
        assert len(refunds.calls) == 1


class TestHttpRefundProcessor:
    def _processor(self, handler) -> HttpRefundProcessor:
        return HttpRefundProcessor(
            "https://shop.example/api",
            api_key="shop-key",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

    def test_refund_posts_idempotent_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"id": "re_9", "amount": "49.99"})

        result = self._processor(handler).process_refund("gid-1", Decimal("49.99"), "CXL-1")

        assert result.refund_id == "re_9"
        assert result.amount == Decimal("49.99")
        assert seen[0].url.path == "/api/orders/gid-1/refunds"
        assert seen[0].headers["Idempotency-Key"] == "CXL-1"
        assert json.loads(seen[0].content)["amount"] == "49.99"

    def test_rejection_raises(self):
        with pytest.raises(RefundError, match="HTTP 402"):
            self._processor(lambda request: httpx.Response(402)).process_refund("gid-1", Decimal("1"), "k")

    def test_missing_refund_id_raises(self):
        with pytest.raises(RefundError, match="missing refund id"):
            self._processor(lambda request: httpx.Response(200, json={})).process_refund("gid-1", Decimal("1"), "k")


class TestHttpCommercePlatform:
    def _platform(self, handler) -> HttpCommercePlatform:
        return HttpCommercePlatform("https://shop.example/api", client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_cancel_order(self):
        result = self._platform(lambda request: httpx.Response(200, json={"status": "cancelled"})).cancel_order(
            "gid-1", reason="customer_request", idempotency_key="k"
        )
        assert result == {"status": "cancelled"}

    def test_conflict_means_not_cancellable(self):
        with pytest.raises(OrderNotCancellable):
            self._platform(lambda request: httpx.Response(409, text="fulfilled")).cancel_order(
                "gid-1", reason="customer_request", idempotency_key="k"
            )

    def test_server_error_is_retryable(self):
        with pytest.raises(CommercePlatformError) as exc_info:
            self._platform(lambda request: httpx.Response(502)).cancel_order(
                "gid-1", reason="customer_request", idempotency_key="k"
            )
        assert exc_info.value.retryable is True

    def test_health_check(self):
        assert self._platform(lambda request: httpx.Response(200)).health_check()["status"] == "healthy"
