"""OpenTelemetry + Prometheus fallback wiring for the heXcms sync service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from hexcms import config

logger = logging.getLogger("hexcms.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_entry_counter: Any | None = None
_entry_latency_hist: Any | None = None
_fetch_retry_counter: Any | None = None
_changeset_counter: Any | None = None

_prom_enabled = False
_prom_entry_counter: Any | None = None
_prom_entry_latency_hist: Any | None = None
_prom_fetch_retry_counter: Any | None = None
_prom_changeset_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _entry_counter, _entry_latency_hist, _fetch_retry_counter, _changeset_counter
    global _prom_enabled, _prom_entry_counter, _prom_entry_latency_hist
    global _prom_fetch_retry_counter, _prom_changeset_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (HEXCMS_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "hexcms-sync"

    resource = Resource.create({"service.name": service_name, "service.namespace": "hexcms"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("hexcms.sync")

    _entry_counter = meter.create_counter(
        "hexcms_sync_entries_total",
        unit="1",
        description="Changeset entries processed, by kind, operation and outcome",
    )
    _entry_latency_hist = meter.create_histogram(
        "hexcms_sync_entry_latency_ms",
        unit="ms",
        description="Per-entry fetch, decode and reconcile latency",
    )
    _fetch_retry_counter = meter.create_counter(
        "hexcms_fetch_retries_total",
        unit="1",
        description="Document fetch retries after transient failures",
    )
    _changeset_counter = meter.create_counter(
        "hexcms_changesets_total",
        unit="1",
        description="Changesets processed, by trigger and final status",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("hexcms.sync")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_entry_counter = Counter(
                "hexcms_sync_entries_total",
                "Changeset entries processed, by kind, operation and outcome",
                ["kind", "operation", "status"],
            )
            _prom_entry_latency_hist = Histogram(
                "hexcms_sync_entry_latency_ms",
                "Per-entry fetch, decode and reconcile latency",
                ["kind", "status"],
            )
            _prom_fetch_retry_counter = Counter(
                "hexcms_fetch_retries_total",
                "Document fetch retries after transient failures",
                ["source"],
            )
            _prom_changeset_counter = Counter(
                "hexcms_changesets_total",
                "Changesets processed, by trigger and final status",
                ["trigger", "status"],
            )
            _prom_enabled = True
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_sync_entry(kind: str, operation: str, status: str, duration_ms: float) -> None:
    labels = _labels(kind=kind, operation=operation, status=status)
    if _enabled and _entry_counter is not None:
        _entry_counter.add(1, labels)
    if _enabled and _entry_latency_hist is not None:
        _entry_latency_hist.record(max(0.0, float(duration_ms)), {"kind": labels["kind"], "status": labels["status"]})
    if _prom_enabled and _prom_entry_counter is not None:
        _prom_entry_counter.labels(**labels).inc()
    if _prom_enabled and _prom_entry_latency_hist is not None:
        _prom_entry_latency_hist.labels(kind=labels["kind"], status=labels["status"]).observe(max(0.0, float(duration_ms)))


def record_fetch_retry(source: str) -> None:
    labels = _labels(source=source)
    if _enabled and _fetch_retry_counter is not None:
        _fetch_retry_counter.add(1, labels)
    if _prom_enabled and _prom_fetch_retry_counter is not None:
        _prom_fetch_retry_counter.labels(**labels).inc()


def record_changeset(trigger: str, status: str) -> None:
    labels = _labels(trigger=trigger, status=status)
    if _enabled and _changeset_counter is not None:
        _changeset_counter.add(1, labels)
    if _prom_enabled and _prom_changeset_counter is not None:
        _prom_changeset_counter.labels(**labels).inc()
