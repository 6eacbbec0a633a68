"""
Inbox Pattern Implementation

Provides consumer-side deduplication for exactly-once processing.

Usage:
    from core.inbox import InboxGuard

    with InboxGuard(store, event_id, consumer_id="warehouse-reply") as guard:
        if guard.should_process:
            handle(event)
"""

from .guard import InboxGuard

__all__ = [
    "InboxGuard",
]
