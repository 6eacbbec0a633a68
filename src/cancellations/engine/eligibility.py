"""
Cancellation eligibility window.

Orders placed Monday through Thursday, or Friday before noon, can be
cancelled for 24 hours. Orders placed Friday at/after noon or over the
weekend can be cancelled until the following Monday at 12:00. Both
boundaries are inclusive. All wall-clock rules apply in the store's
timezone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import OrderSnapshot, parse_iso, to_iso

WINDOW = timedelta(hours=24)
WEEKEND_CUTOFF = time(12, 0)

REASON_WITHIN_WINDOW = "Within 24-hour cancellation window"
REASON_WEEKEND = "Weekend order - eligible until Monday 12:00"
REASON_TOO_LATE = "Too Late"
REASON_ALREADY_PROCESSED = "Already Processed"

# Order states from the commerce platform that can no longer be cancelled.
PROCESSED_ORDER_STATUSES = frozenset({"completed", "shipped", "delivered", "cancelled", "canceled", "refunded"})


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    reason: str
    deadline: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "reason": self.reason,
            "deadline": to_iso(self.deadline) if self.deadline else None,
        }


def _is_weekend_order(created: datetime) -> bool:
    weekday = created.weekday()
    if weekday >= 5:
        return True
    return weekday == 4 and created.time() >= WEEKEND_CUTOFF


def cancellation_deadline(order_created_at: datetime) -> datetime:
    if not _is_weekend_order(order_created_at):
        return order_created_at + WINDOW
    days_until_monday = 7 - order_created_at.weekday()
    monday = order_created_at.date() + timedelta(days=days_until_monday)
    return datetime.combine(monday, WEEKEND_CUTOFF, tzinfo=order_created_at.tzinfo)


def evaluate(order_created_at: datetime, now: datetime) -> EligibilityDecision:
    """Pure eligibility check; both datetimes must be in the same wall-clock frame."""
    deadline = cancellation_deadline(order_created_at)
    if now > deadline:
        return EligibilityDecision(eligible=False, reason=REASON_TOO_LATE, deadline=deadline)
    reason = REASON_WEEKEND if _is_weekend_order(order_created_at) else REASON_WITHIN_WINDOW
    return EligibilityDecision(eligible=True, reason=reason, deadline=deadline)


def store_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def evaluate_order(order: OrderSnapshot, now: datetime, *, store_timezone: str = "UTC") -> EligibilityDecision:
    """Evaluate an order snapshot, converting both instants into store-local time."""
    if (order.status or "").strip().lower() in PROCESSED_ORDER_STATUSES:
        return EligibilityDecision(eligible=False, reason=REASON_ALREADY_PROCESSED, deadline=None)

    created = parse_iso(order.created_at)
    if created is None:
        raise ValueError(f"invalid_order_created_at:{order.created_at}")

    zone = store_zone(store_timezone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return evaluate(created.astimezone(zone), now.astimezone(zone))
