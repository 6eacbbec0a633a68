"""
Structured Logging with Trace Correlation

One JSON object per line. Every entry carries the active trace/span ids;
fields passed through `extra=` (workflow_id, order_number, trace_id, path...)
are lifted to the top level so log queries can filter on a single workflow.

    logger.info("Refund issued", extra={"workflow_id": wf.workflow_id, "order_number": wf.order_number})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from .tracing import get_current_span, get_trace_id

# LogRecord attributes that are never copied into the JSON entry
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "opentelemetry")


class StructuredFormatter(logging.Formatter):
    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        span_ctx = get_current_span().get_span_context()
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "trace_id": getattr(record, "trace_id", None) or get_trace_id(),
            "span_id": format(span_ctx.span_id, "016x") if span_ctx.is_valid else None,
        }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_") or key in entry:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry)


class TraceContextFilter(logging.Filter):
    """Give plain-text records a trace_id so the text format never KeyErrors."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "trace_id", None):
            record.trace_id = get_trace_id() or "-"
        return True


def configure_logging(
    level: str = "INFO",
    structured: bool = True,
    service_name: str = "order-cancellations",
) -> None:
    """
    Replace root handlers with a single stdout handler.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        structured: JSON lines (production) or a human-readable format
        service_name: Stamped on every JSON entry
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if structured:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s [%(trace_id)s] %(message)s")
        )
    handler.addFilter(TraceContextFilter())
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured: %s, level=%s, structured=%s", service_name, level, structured
    )
