"""
API exceptions.

Routers raise these; register_error_handlers() turns them into the
{"error": {...}} envelope with the status from ERROR_STATUS_CODES. Engine
exceptions (WorkflowNotFound, InvalidWorkflowState, rejected creation) are
mapped by their own handlers and need no wrapping here.
"""

from typing import List, Optional

from .error_codes import ErrorCode, get_status_code
from .responses import ErrorDetail


class APIException(Exception):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[List[ErrorDetail]] = None,
        trace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.trace_id = trace_id
        self.status_code = get_status_code(code)


class ValidationError(APIException):
    """400: the request parsed but makes no sense (e.g. an empty warehouse reply)."""

    def __init__(self, message: str, details: Optional[List[ErrorDetail]] = None, trace_id: Optional[str] = None):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details=details, trace_id=trace_id)


_NOT_FOUND_CODES = {
    "Workflow": ErrorCode.WORKFLOW_NOT_FOUND,
    "Escalation": ErrorCode.ESCALATION_NOT_FOUND,
    "Approval": ErrorCode.APPROVAL_NOT_FOUND,
}


class NotFoundError(APIException):
    """404 for a workflow, approval, escalation or other named resource."""

    def __init__(self, resource: str, resource_id: Optional[str] = None, trace_id: Optional[str] = None):
        message = f"{resource} '{resource_id}' not found" if resource_id else f"{resource} not found"
        super().__init__(_NOT_FOUND_CODES.get(resource, ErrorCode.NOT_FOUND), message, trace_id=trace_id)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(APIException):
    """409: the target exists but is no longer in a state that allows the action."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.CONFLICT, trace_id: Optional[str] = None):
        super().__init__(code, message, trace_id=trace_id)


class FulfillmentNotSupported(APIException):
    """422: no strategy is registered for the requested fulfillment method."""

    def __init__(self, method: str, trace_id: Optional[str] = None):
        super().__init__(
            ErrorCode.FULFILLMENT_NOT_CONFIGURED,
            f"Fulfillment method '{method}' is not supported",
            details=[ErrorDetail(field="method", message="unsupported fulfillment method", code="method_unsupported")],
            trace_id=trace_id,
        )
        self.method = method
