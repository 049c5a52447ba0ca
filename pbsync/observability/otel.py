"""OpenTelemetry + Prometheus fallback wiring for pbsync."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from pbsync import config

logger = logging.getLogger("pbsync.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_runs_counter: Any | None = None
_sync_duration_hist: Any | None = None
_entity_writes_counter: Any | None = None
_source_requests_counter: Any | None = None
_source_latency_hist: Any | None = None

_prom_enabled = False
_prom_sync_runs_counter: Any | None = None
_prom_sync_duration_hist: Any | None = None
_prom_entity_writes_counter: Any | None = None
_prom_source_requests_counter: Any | None = None
_prom_source_latency_hist: Any | None = None


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


def _prom_labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _sync_runs_counter, _sync_duration_hist, _entity_writes_counter
    global _source_requests_counter, _source_latency_hist
    global _prom_enabled, _prom_sync_runs_counter, _prom_sync_duration_hist
    global _prom_entity_writes_counter, _prom_source_requests_counter, _prom_source_latency_hist

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PBSYNC_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "pbsync"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "pbsync",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("pbsync")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("pbsync")

    _sync_runs_counter = meter.create_counter(
        "pbsync_sync_runs_total",
        unit="1",
        description="Hierarchy sync runs by terminal status",
    )
    _sync_duration_hist = meter.create_histogram(
        "pbsync_sync_duration_ms",
        unit="ms",
        description="Wall-clock duration of hierarchy sync runs",
    )
    _entity_writes_counter = meter.create_counter(
        "pbsync_entity_writes_total",
        unit="1",
        description="Persistence outcomes per entity type",
    )
    _source_requests_counter = meter.create_counter(
        "pbsync_source_requests_total",
        unit="1",
        description="ProductBoard API requests by outcome",
    )
    _source_latency_hist = meter.create_histogram(
        "pbsync_source_latency_ms",
        unit="ms",
        description="ProductBoard API request latency",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_sync_runs_counter = Counter(
                "pbsync_sync_runs_total",
                "Hierarchy sync runs by terminal status",
                ["status", "workspace"],
            )
            _prom_sync_duration_hist = Histogram(
                "pbsync_sync_duration_ms",
                "Wall-clock duration of hierarchy sync runs",
                ["status", "workspace"],
            )
            _prom_entity_writes_counter = Counter(
                "pbsync_entity_writes_total",
                "Persistence outcomes per entity type",
                ["entity", "result", "workspace"],
            )
            _prom_source_requests_counter = Counter(
                "pbsync_source_requests_total",
                "ProductBoard API requests by outcome",
                ["endpoint", "outcome"],
            )
            _prom_source_latency_hist = Histogram(
                "pbsync_source_latency_ms",
                "ProductBoard API request latency",
                ["endpoint", "outcome"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
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


def record_sync_run(status: str, duration_ms: float, *, workspace_id: str) -> None:
    labels = {"status": status or "unknown", "workspace_id": workspace_id or "unknown"}
    if _enabled and _sync_runs_counter is not None:
        _sync_runs_counter.add(1, labels)
    if _enabled and _sync_duration_hist is not None:
        _sync_duration_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_sync_runs_counter is not None:
        _prom_sync_runs_counter.labels(**_prom_labels(status=status, workspace=workspace_id)).inc()
    if _prom_enabled and _prom_sync_duration_hist is not None:
        prom = _prom_labels(status=status, workspace=workspace_id)
        _prom_sync_duration_hist.labels(**prom).observe(max(0.0, float(duration_ms)))


def record_entity_writes(entity: str, result: str, count: int, *, workspace_id: str) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {
        "entity": entity or "unknown",
        "result": result or "unknown",
        "workspace_id": workspace_id or "unknown",
    }
    if _enabled and _entity_writes_counter is not None:
        _entity_writes_counter.add(safe_count, labels)
    if _prom_enabled and _prom_entity_writes_counter is not None:
        prom = _prom_labels(entity=entity, result=result, workspace=workspace_id)
        _prom_entity_writes_counter.labels(**prom).inc(safe_count)


def record_source_request(endpoint: str, outcome: str, duration_ms: float = 0.0) -> None:
    labels = {"endpoint": endpoint or "unknown", "outcome": outcome or "unknown"}
    if _enabled and _source_requests_counter is not None:
        _source_requests_counter.add(1, labels)
    if _enabled and _source_latency_hist is not None and duration_ms > 0:
        _source_latency_hist.record(float(duration_ms), labels)
    if _prom_enabled and _prom_source_requests_counter is not None:
        _prom_source_requests_counter.labels(**_prom_labels(endpoint=endpoint, outcome=outcome)).inc()
    if _prom_enabled and _prom_source_latency_hist is not None and duration_ms > 0:
        prom = _prom_labels(endpoint=endpoint, outcome=outcome)
        _prom_source_latency_hist.labels(**prom).observe(float(duration_ms))
