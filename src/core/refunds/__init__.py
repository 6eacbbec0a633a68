"""
Refund Processing

External-collaborator interface for issuing refunds on cancelled orders.
"""

from .processor import HttpRefundProcessor, RefundError, RefundProcessor, RefundResult

__all__ = [
    "RefundProcessor",
    "RefundResult",
    "RefundError",
    "HttpRefundProcessor",
]
