"""
Exception handlers for the cancellation API.

Every failure leaves the API as {"error": {code, message, details, trace_id,
timestamp}}. Expected outcomes (unknown workflow, wrong state, rejected
creation) log at INFO; only unhandled exceptions log at ERROR.
"""

import logging
from typing import List, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from cancellations.engine.errors import InvalidWorkflowState, WorkflowNotFound
from cancellations.engine.validation import WorkflowCreationValidationError

from ..error_codes import ErrorCode, creation_error_code, get_status_code
from ..exceptions import APIException
from ..responses import ErrorBody, ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


def _trace_id(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or uuid4().hex


def error_response(
    code: ErrorCode,
    message: str,
    trace_id: str,
    details: Optional[List[ErrorDetail]] = None,
    status_code: Optional[int] = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code.value, message=message, details=details, trace_id=trace_id))
    return JSONResponse(status_code=status_code or get_status_code(code), content=body.model_dump(mode="json"))


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        trace_id = exc.trace_id or _trace_id(request)
        logger.warning(
            "API error %s: %s",
            exc.code.value,
            exc.message,
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        return error_response(exc.code, exc.message, trace_id, details=exc.details, status_code=exc.status_code)

    @app.exception_handler(WorkflowNotFound)
    async def workflow_not_found_handler(request: Request, exc: WorkflowNotFound):
        return error_response(
            ErrorCode.WORKFLOW_NOT_FOUND,
            f"Workflow '{exc.workflow_id}' not found",
            _trace_id(request),
        )

    @app.exception_handler(InvalidWorkflowState)
    async def invalid_state_handler(request: Request, exc: InvalidWorkflowState):
        trace_id = _trace_id(request)
        logger.info("Rejected action on workflow: %s", exc, extra={"trace_id": trace_id, "path": request.url.path})
        return error_response(ErrorCode.INVALID_WORKFLOW_STATE, str(exc), trace_id)

    @app.exception_handler(WorkflowCreationValidationError)
    async def creation_rejected_handler(request: Request, exc: WorkflowCreationValidationError):
        """Creation refused before anything was persisted."""
        trace_id = _trace_id(request)
        logger.info(
            "Cancellation request rejected: %s",
            exc.code,
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        return error_response(
            creation_error_code(exc.code),
            exc.message,
            trace_id,
            details=[ErrorDetail(message=exc.message, code=exc.code)],
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        trace_id = _trace_id(request)
        details = [
            ErrorDetail(field=".".join(str(part) for part in error["loc"]), message=error["msg"], code=error["type"])
            for error in exc.errors()
        ]
        logger.warning(
            "Request validation failed: %d field(s)",
            len(details),
            extra={"trace_id": trace_id, "path": request.url.path, "fields": [d.field for d in details]},
        )
        return error_response(ErrorCode.VALIDATION_ERROR, "Request validation failed", trace_id, details=details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        trace_id = _trace_id(request)
        logger.exception(
            "Unhandled %s on %s",
            type(exc).__name__,
            request.url.path,
            extra={"trace_id": trace_id, "path": request.url.path},
        )
        return error_response(ErrorCode.INTERNAL_ERROR, "An internal error occurred", trace_id)
