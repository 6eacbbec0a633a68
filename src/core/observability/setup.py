"""Process-level observability bootstrap shared by the API and the sweeper."""

from typing import Optional

from core.config import EngineConfig

from .logging import configure_logging
from .metrics import init_metrics
from .tracing import init_tracing


def init_observability(cfg: EngineConfig, *, service_name: Optional[str] = None) -> None:
    """Initialize observability components (logging, tracing, metrics)."""
    name = service_name or cfg.SERVICE_NAME

    # Configure structured logging first
    configure_logging(level=cfg.LOG_LEVEL, structured=cfg.LOG_STRUCTURED, service_name=name)

    if cfg.OTEL_ENABLED or cfg.OTLP_ENDPOINT:
        init_tracing(
            service_name=name,
            service_version=cfg.APP_VERSION,
            otlp_endpoint=cfg.OTLP_ENDPOINT,
            console_export=cfg.OTEL_CONSOLE_EXPORT,
        )
        init_metrics(
            service_name=name,
            otlp_endpoint=cfg.OTLP_ENDPOINT,
            console_export=cfg.OTEL_CONSOLE_EXPORT,
        )
