"""
Request dependencies for the cancellation API.
"""

from fastapi import Request

from cancellations.engine.machine import WorkflowStateMachine

from ..shared.error_codes import ErrorCode
from ..shared.exceptions import APIException
from ..shared.middleware import get_trace_id_from_request


def get_engine(request: Request) -> WorkflowStateMachine:
    """Return the state machine bound to this app at startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise APIException(ErrorCode.INTERNAL_ERROR, "Cancellation engine not initialized")
    return engine


def get_trace_id(request: Request) -> str:
    return get_trace_id_from_request(request)
