"""Commerce platform collaborator (order cancellation on the merchant's store)."""

from .platform import CommercePlatform, CommercePlatformError, HttpCommercePlatform, OrderNotCancellable

__all__ = [
    "CommercePlatform",
    "CommercePlatformError",
    "OrderNotCancellable",
    "HttpCommercePlatform",
]
