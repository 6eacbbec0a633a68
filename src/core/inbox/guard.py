"""
Inbox Guard

Provides exactly-once processing for inbound events (warehouse replies,
approval decisions) via the inbox deduplication table.
"""

import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class InboxBackend(Protocol):
    def inbox_mark(self, *, event_id: str, consumer_id: str) -> bool: ...

    def inbox_remove(self, *, event_id: str, consumer_id: str) -> None: ...


class InboxGuard:
    """
    Guards against duplicate event processing.

    Usage:
        with InboxGuard(store, event_id, "warehouse-reply") as guard:
            if guard.should_process:
                process_event(event)
            else:
                logger.info("Event already processed, skipping")

    If processing fails (exception raised), the inbox entry is removed
    to allow retry.
    """

    def __init__(self, backend: InboxBackend, event_id: str, consumer_id: str):
        self.backend = backend
        self.event_id = str(event_id)
        self.consumer_id = consumer_id
        self.should_process = False

    def __enter__(self) -> "InboxGuard":
        self.should_process = self.backend.inbox_mark(event_id=self.event_id, consumer_id=self.consumer_id)
        if self.should_process:
            logger.debug("InboxGuard: event %s marked for processing by %s", self.event_id, self.consumer_id)
        else:
            logger.debug("InboxGuard: event %s already processed by %s", self.event_id, self.consumer_id)
        return self

    def __exit__(self, exc_type: Optional[type], exc_val: Optional[BaseException], exc_tb: Any) -> bool:
        if exc_type is not None and self.should_process:
            # Processing failed, remove from inbox to allow retry
            try:
                self.backend.inbox_remove(event_id=self.event_id, consumer_id=self.consumer_id)
                logger.warning("InboxGuard: removed entry for failed processing of event %s", self.event_id)
            except Exception as delete_error:
                logger.error("InboxGuard: failed to remove inbox entry after error: %s", delete_error)
        return False
