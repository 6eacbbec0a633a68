"""
OpenTelemetry Metrics

Engine instruments are declared once below and created by init_metrics().
Until then record_counter/record_histogram are no-ops, so library code and
tests never need a meter provider.
"""

import logging
from typing import Any, Dict, Optional

from opentelemetry import metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource

logger = logging.getLogger(__name__)

METER_NAME = "order-cancellations"

COUNTERS: Dict[str, str] = {
    "http_requests_total": "HTTP requests, by route and status",
    "cancellation_workflows_created_total": "Cancellation workflows created, by fulfillment method",
    "workflow_step_transitions_total": "Persisted step/status transitions",
    "side_effects_total": "Emails and refunds attempted, by kind and result",
    "escalations_total": "Escalations opened, by kind and priority",
    "approvals_requested_total": "Approval items requested, by proposed action",
    "sweeps_total": "Sweep passes executed",
}

HISTOGRAMS: Dict[str, str] = {
    "http_request_duration_seconds": "HTTP request duration",
    "advance_duration_seconds": "Duration of one workflow advance",
    "sweep_duration_seconds": "Duration of one sweep pass",
}

_meter: Optional[metrics.Meter] = None
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}


def init_metrics(
    service_name: str = METER_NAME,
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
) -> metrics.Meter:
    """
    Install a MeterProvider and create the engine instruments.

    Args:
        service_name: Resource service name (the sweeper uses a "-sweeper" suffix)
        otlp_endpoint: OTLP gRPC collector, e.g. "http://otel-collector:4317"
        console_export: Also print metrics to stdout
        export_interval_ms: Reader export interval
    """
    global _meter

    readers = []
    if otlp_endpoint:
        readers.append(
            PeriodicExportingMetricReader(
                OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True),
                export_interval_millis=export_interval_ms,
            )
        )
        logger.info("OTel metrics: exporting to %s", otlp_endpoint)
    if console_export:
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter(), export_interval_millis=export_interval_ms))

    provider = MeterProvider(resource=Resource.create({SERVICE_NAME: service_name}), metric_readers=readers)
    metrics.set_meter_provider(provider)
    _meter = metrics.get_meter(service_name)

    for name, description in COUNTERS.items():
        _counters[name] = _meter.create_counter(name, description=description, unit="1")
    for name, description in HISTOGRAMS.items():
        _histograms[name] = _meter.create_histogram(name, description=description, unit="s")

    logger.info("OTel metrics initialized: %s (%d instruments)", service_name, len(_counters) + len(_histograms))
    return _meter


def get_meter() -> metrics.Meter:
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME)
    return _meter


def record_counter(name: str, value: int = 1, attributes: Optional[Dict[str, Any]] = None) -> None:
    counter = _counters.get(name)
    if counter is not None:
        counter.add(value, _clean(attributes))


def record_histogram(name: str, value: float, attributes: Optional[Dict[str, Any]] = None) -> None:
    histogram = _histograms.get(name)
    if histogram is not None:
        histogram.record(value, _clean(attributes))


def _clean(attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # OTel rejects None attribute values
    return {k: v for k, v in (attributes or {}).items() if v is not None}
