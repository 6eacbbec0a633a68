"""Error envelopes and request tracing for the cancellation API."""

from .error_handler import error_response, register_error_handlers
from .tracing import TracingMiddleware, get_trace_id_from_request

__all__ = [
    "error_response",
    "register_error_handlers",
    "TracingMiddleware",
    "get_trace_id_from_request",
]
