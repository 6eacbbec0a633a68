"""
Error codes returned by the cancellation API, and their HTTP statuses.
"""

from enum import Enum
from typing import Dict


class ErrorCode(str, Enum):
    # Request problems
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"

    # Unknown resources
    NOT_FOUND = "NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    ESCALATION_NOT_FOUND = "ESCALATION_NOT_FOUND"
    APPROVAL_NOT_FOUND = "APPROVAL_NOT_FOUND"

    # Workflow rules
    INVALID_WORKFLOW_STATE = "INVALID_WORKFLOW_STATE"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    FULFILLMENT_NOT_CONFIGURED = "FULFILLMENT_NOT_CONFIGURED"

    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.WORKFLOW_NOT_FOUND: 404,
    ErrorCode.ESCALATION_NOT_FOUND: 404,
    ErrorCode.APPROVAL_NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DUPLICATE_REQUEST: 409,
    ErrorCode.INVALID_WORKFLOW_STATE: 409,
    ErrorCode.FULFILLMENT_NOT_CONFIGURED: 422,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
}

# WorkflowCreationValidationError.code -> API error; anything else is a 400
CREATION_ERROR_CODES: Dict[str, ErrorCode] = {
    "duplicate_request": ErrorCode.DUPLICATE_REQUEST,
    "too_many_requests": ErrorCode.RATE_LIMITED,
    "warehouse_email_missing": ErrorCode.FULFILLMENT_NOT_CONFIGURED,
    "shipbob_not_configured": ErrorCode.FULFILLMENT_NOT_CONFIGURED,
    "shipstation_not_configured": ErrorCode.FULFILLMENT_NOT_CONFIGURED,
}


def get_status_code(error_code: ErrorCode) -> int:
    """HTTP status for an error code; unmapped codes are 500."""
    return ERROR_STATUS_CODES.get(error_code, 500)


def creation_error_code(code: str) -> ErrorCode:
    """Map a workflow-creation rejection to the API error code."""
    return CREATION_ERROR_CODES.get(code, ErrorCode.VALIDATION_ERROR)
