"""
Request tracing middleware.

Opens a server span per request (continuing any inbound W3C trace context),
tags it with the workflow id when the path addresses one, records request
metrics by route template rather than raw path, and returns X-Trace-ID.
"""

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from core.observability import (
    add_workflow_id_to_span,
    extract_trace_context,
    get_trace_id,
    get_tracer,
    record_counter,
    record_histogram,
)

logger = logging.getLogger(__name__)

_UNTRACED_PATHS = frozenset({"/health", "/health/live", "/health/ready"})
_WORKFLOW_PATH = re.compile(r"^/api/cancellations/(?!sweep$)([^/]+)")


def _workflow_id_from(request: Request) -> Optional[str]:
    match = _WORKFLOW_PATH.match(request.url.path)
    if match:
        return match.group(1)
    return request.headers.get("X-Workflow-ID")


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class TracingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in _UNTRACED_PATHS:
            return await call_next(request)

        trace_id = request.headers.get("X-Trace-ID") or uuid4().hex
        workflow_id = _workflow_id_from(request)
        request.state.trace_id = trace_id
        request.state.workflow_id = workflow_id

        started = time.monotonic()
        with get_tracer().start_as_current_span(
            f"{request.method} {request.url.path}",
            context=extract_trace_context(dict(request.headers)),
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.target": request.url.path,
                "http.user_agent": request.headers.get("user-agent", ""),
                "request.trace_id": trace_id,
            },
        ) as span:
            if workflow_id:
                add_workflow_id_to_span(workflow_id, span)

            status = "500"
            try:
                response = await call_next(request)
                status = str(response.status_code)
                span.set_attribute("http.status_code", response.status_code)
                response.headers["X-Trace-ID"] = get_trace_id() or trace_id
                return response
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise
            finally:
                route = _route_template(request)
                record_counter("http_requests_total", 1, {"method": request.method, "route": route, "status": status})
                record_histogram(
                    "http_request_duration_seconds",
                    time.monotonic() - started,
                    {"method": request.method, "route": route},
                )


def get_trace_id_from_request(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)
