"""
Observability for the cancellation engine.

Spans and metrics are no-ops until init_observability() (see .setup) installs
providers, so the engine can be imported and tested without a collector.
"""

from .tracing import (
    init_tracing,
    get_tracer,
    get_current_span,
    get_trace_id,
    create_span,
    inject_trace_context,
    extract_trace_context,
    traced,
    add_workflow_id_to_span,
    add_event_to_span,
)
from .metrics import (
    init_metrics,
    get_meter,
    record_counter,
    record_histogram,
)
from .logging import configure_logging

__all__ = [
    # Tracing
    "init_tracing",
    "get_tracer",
    "get_current_span",
    "get_trace_id",
    "create_span",
    "inject_trace_context",
    "extract_trace_context",
    "traced",
    "add_workflow_id_to_span",
    "add_event_to_span",
    # Metrics
    "init_metrics",
    "get_meter",
    "record_counter",
    "record_histogram",
    # Logging
    "configure_logging",
]
