"""
Tests for the cancellation eligibility window.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cancellations.engine.eligibility import (
    REASON_ALREADY_PROCESSED,
    REASON_TOO_LATE,
    REASON_WEEKEND,
    REASON_WITHIN_WINDOW,
    cancellation_deadline,
    evaluate,
    evaluate_order,
    store_zone,
)
from cancellations.engine.models import OrderSnapshot


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def snapshot(created_at: str, status: str = "open") -> OrderSnapshot:
    return OrderSnapshot(
        order_id="gid-1",
        order_number="1001",
        order_total=Decimal("20.00"),
        customer_email="jane@example.com",
        created_at=created_at,
        status=status,
    )


class TestWeekdayWindow:
    """Orders placed Monday-Thursday or Friday morning get 24 hours."""

    def test_tuesday_order_deadline_is_24_hours_later(self):
        created = utc(2026, 3, 10, 9, 0)
        assert cancellation_deadline(created) == utc(2026, 3, 11, 9, 0)

    def test_friday_before_noon_is_a_weekday_order(self):
        created = utc(2026, 3, 13, 11, 59)
        decision = evaluate(created, created + timedelta(hours=1))

        assert decision.eligible is True
        assert decision.reason == REASON_WITHIN_WINDOW
        assert decision.deadline == utc(2026, 3, 14, 11, 59)

    def test_deadline_itself_is_still_eligible(self):
        """The boundary is inclusive."""
        created = utc(2026, 3, 10, 9, 0)
        assert evaluate(created, utc(2026, 3, 11, 9, 0)).eligible is True

    def test_one_second_past_deadline_is_too_late(self):
        created = utc(2026, 3, 10, 9, 0)
        decision = evaluate(created, utc(2026, 3, 11, 9, 0, 1))

        assert decision.eligible is False
        assert decision.reason == REASON_TOO_LATE
        assert decision.deadline == utc(2026, 3, 11, 9, 0)


class TestWeekendWindow:
    """Friday-noon-onward and weekend orders run until Monday 12:00."""

    @pytest.mark.parametrize(
        "created",
        [
            utc(2026, 3, 13, 12, 0),
            utc(2026, 3, 13, 14, 0),
            utc(2026, 3, 14, 8, 30),
            utc(2026, 3, 15, 23, 59),
        ],
    )
    def test_deadline_is_next_monday_noon(self, created):
        assert cancellation_deadline(created) == utc(2026, 3, 16, 12, 0)

    def test_friday_afternoon_order_eligible_on_monday_morning(self):
        decision = evaluate(utc(2026, 3, 13, 14, 0), utc(2026, 3, 16, 11, 0))

        assert decision.eligible is True
        assert decision.reason == REASON_WEEKEND

    def test_monday_noon_is_inclusive(self):
        assert evaluate(utc(2026, 3, 14, 10, 0), utc(2026, 3, 16, 12, 0)).eligible is True

    def test_monday_afternoon_is_too_late(self):
        decision = evaluate(utc(2026, 3, 14, 10, 0), utc(2026, 3, 16, 12, 1))

        assert decision.eligible is False
        assert decision.reason == REASON_TOO_LATE


class TestEvaluateOrder:
    """Order snapshots are judged in the store's local time."""

    def test_store_timezone_changes_the_rule_applied(self):
        # 15:00 UTC on Friday is 11:00 in New York (EDT): a weekday order there.
        order = snapshot("2026-03-13T15:00:00Z")
        now = utc(2026, 3, 15, 10, 0)

        in_new_york = evaluate_order(order, now, store_timezone="America/New_York")
        in_utc = evaluate_order(order, now, store_timezone="UTC")

        assert in_new_york.eligible is False
        assert in_new_york.reason == REASON_TOO_LATE
        assert in_utc.eligible is True
        assert in_utc.reason == REASON_WEEKEND

    def test_naive_now_is_treated_as_utc(self):
        order = snapshot("2026-03-10T09:00:00Z")
        decision = evaluate_order(order, datetime(2026, 3, 10, 15, 0))
        assert decision.eligible is True

    @pytest.mark.parametrize("status", ["shipped", "Completed", "cancelled", "refunded"])
    def test_processed_orders_are_not_eligible(self, status):
        decision = evaluate_order(snapshot("2026-03-10T09:00:00Z", status=status), utc(2026, 3, 10, 10, 0))

        assert decision.eligible is False
        assert decision.reason == REASON_ALREADY_PROCESSED
        assert decision.deadline is None

    def test_unparseable_created_at_raises(self):
        with pytest.raises(ValueError, match="invalid_order_created_at"):
            evaluate_order(snapshot("last tuesday"), utc(2026, 3, 10, 10, 0))

    def test_to_dict_serializes_deadline(self):
        decision = evaluate_order(snapshot("2026-03-10T09:00:00Z"), utc(2026, 3, 10, 10, 0))
        assert decision.to_dict() == {
            "eligible": True,
            "reason": REASON_WITHIN_WINDOW,
            "deadline": "2026-03-11T09:00:00Z",
        }


class TestStoreZone:
    def test_unknown_zone_falls_back_to_utc(self):
        assert store_zone("Mars/Olympus_Mons").key == "UTC"

    def test_empty_zone_is_utc(self):
        assert store_zone(None).key == "UTC"
