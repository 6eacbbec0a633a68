"""
OpenTelemetry Tracing

Spans for the cancellation engine: one per workflow advance, one per step
handler, one per sweep pass and one per outbound collaborator call. W3C trace
context rides on outbound HTTP headers so ShipBob, ShipStation and the
email/commerce services can be correlated with the workflow that called them.
"""

import logging
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract, inject, set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

TRACER_NAME = "order-cancellations"

_tracer: Optional[trace.Tracer] = None


def init_tracing(
    service_name: str = TRACER_NAME,
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> trace.Tracer:
    """
    Install a TracerProvider for this process.

    Without an OTLP endpoint or console export the provider records nothing,
    which keeps the API and sweeper usable on a laptop.
    """
    global _tracer

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})
    )
    if otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
        logger.info("OTel tracing: exporting to %s", otlp_endpoint)
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())

    _tracer = trace.get_tracer(service_name, service_version)
    logger.info("OTel tracing initialized: %s v%s", service_name, service_version)
    return _tracer


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


def get_current_span() -> Span:
    return trace.get_current_span()


def get_trace_id() -> Optional[str]:
    """Hex trace id of the active span, or None outside a recorded trace."""
    ctx = get_current_span().get_span_context()
    if ctx.is_valid:
        return format(ctx.trace_id, "032x")
    return None


@contextmanager
def create_span(
    name: str,
    attributes: Optional[Dict[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """
    Run a block inside a span; an escaping exception marks the span as failed.

    Usage:
        with create_span("cancellation.advance", {"workflow.id": wf_id}) as span:
            span.set_attribute("workflow.status", "canceled")
    """
    clean = {k: v for k, v in (attributes or {}).items() if v is not None}
    with get_tracer().start_as_current_span(name, kind=kind, attributes=clean) as span:
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise


def traced(name: Optional[str] = None, kind: trace.SpanKind = trace.SpanKind.CLIENT) -> Callable:
    """
    Wrap a collaborator call in a client span.

    Usage:
        @traced("refunds.process_refund")
        def process_refund(self, order_id, amount, idempotency_key): ...
    """

    def decorator(func: Callable) -> Callable:
        span_name = name or func.__qualname__

        @wraps(func)
        def wrapper(*args, **kwargs):
            with create_span(span_name, kind=kind):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def inject_trace_context(carrier: Dict[str, str]) -> Dict[str, str]:
    """Add traceparent headers for an outbound request; returns the carrier."""
    inject(carrier)
    return carrier


def extract_trace_context(carrier: Dict[str, str]):
    return extract(carrier)


def add_workflow_id_to_span(workflow_id: str, span: Optional[Span] = None) -> None:
    (span or get_current_span()).set_attribute("workflow.id", workflow_id)


def add_event_to_span(name: str, attributes: Optional[Dict[str, Any]] = None, span: Optional[Span] = None) -> None:
    """Record a point-in-time event (escalation, reconciliation flag) on the active span."""
    clean = {k: v for k, v in (attributes or {}).items() if v is not None}
    (span or get_current_span()).add_event(name, clean)
