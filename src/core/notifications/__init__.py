"""
Notifications

Templated outbound email for customers and warehouse teams.
"""

from .dispatcher import (
    DeliveryReceipt,
    HttpNotificationDispatcher,
    NotificationDispatcher,
    NotificationError,
    RetryableNotificationError,
)
from .templates import TEMPLATES, RenderedEmail, render

__all__ = [
    "NotificationDispatcher",
    "HttpNotificationDispatcher",
    "DeliveryReceipt",
    "NotificationError",
    "RetryableNotificationError",
    "TEMPLATES",
    "RenderedEmail",
    "render",
]
