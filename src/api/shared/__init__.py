"""
Pieces shared by the API routers: response envelopes, error codes,
exceptions, error handlers and request tracing.
"""

from .error_codes import ErrorCode, creation_error_code, get_status_code
from .exceptions import (
    APIException,
    ConflictError,
    FulfillmentNotSupported,
    NotFoundError,
    ValidationError,
)
from .middleware import TracingMiddleware, get_trace_id_from_request, register_error_handlers
from .responses import ErrorBody, ErrorDetail, ErrorResponse, ListMeta, ListResponse, ResponseMeta, SuccessResponse

__all__ = [
    "ErrorCode",
    "creation_error_code",
    "get_status_code",
    "APIException",
    "ConflictError",
    "FulfillmentNotSupported",
    "NotFoundError",
    "ValidationError",
    "TracingMiddleware",
    "get_trace_id_from_request",
    "register_error_handlers",
    "ErrorBody",
    "ErrorDetail",
    "ErrorResponse",
    "ListMeta",
    "ListResponse",
    "ResponseMeta",
    "SuccessResponse",
]
