"""OpenTelemetry + Prometheus fallback wiring for convsync."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from convsync import config

logger = logging.getLogger("convsync.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_upstream_requests_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_upstream_requests_counter: Any | None = None


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
    global _ingestion_counter, _ingestion_latency_hist, _parser_failure_counter, _upstream_requests_counter
    global _prom_enabled
    global _prom_ingestion_counter, _prom_ingestion_latency_hist
    global _prom_parser_failure_counter, _prom_upstream_requests_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CONVSYNC_OTEL_ENABLED=false)")
        return

    from opentelemetry import metrics, trace
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "convsync"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "convsync",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("convsync")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("convsync")

    _ingestion_counter = meter.create_counter(
        "convsync_ingestion_events_total",
        unit="1",
        description="Count of sync ingestion outcomes",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "convsync_ingestion_latency_ms",
        unit="ms",
        description="Latency of agent, session, conversation and log ingestion",
    )
    _parser_failure_counter = meter.create_counter(
        "convsync_parser_failures_total",
        unit="1",
        description="Count of context snapshot parse failures",
    )
    _upstream_requests_counter = meter.create_counter(
        "convsync_upstream_requests_total",
        unit="1",
        description="Upstream API requests by endpoint and status",
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
            _prom_ingestion_counter = Counter(
                "convsync_ingestion_events_total",
                "Count of sync ingestion outcomes",
                ["entity", "result", "agent"],
            )
            _prom_ingestion_latency_hist = Histogram(
                "convsync_ingestion_latency_ms",
                "Latency of agent, session, conversation and log ingestion",
                ["entity", "result", "agent"],
            )
            _prom_parser_failure_counter = Counter(
                "convsync_parser_failures_total",
                "Count of context snapshot parse failures",
                ["parser", "agent"],
            )
            _prom_upstream_requests_counter = Counter(
                "convsync_upstream_requests_total",
                "Upstream API requests by endpoint and status",
                ["endpoint", "status"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except OSError as exc:
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
    if app and _fastapi_instrumentor:
        _fastapi_instrumentor.uninstrument_app(app)
    if _meter_provider is not None:
        _meter_provider.shutdown()
    if _trace_provider is not None:
        _trace_provider.shutdown()
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


def _endpoint_label(path: str) -> str:
    # /agents/<name>/logs -> agents.logs; keeps agent names out of label values.
    parts = [part for part in (path or "").strip("/").split("/") if part]
    if not parts:
        return "unknown"
    if len(parts) >= 3:
        return f"{parts[0]}.{parts[-1]}"
    return parts[0]


def record_ingestion(entity: str, result: str, duration_ms: float = 0.0, *, agent: str = "") -> None:
    labels = {
        "entity": entity or "unknown",
        "result": result or "unknown",
        "agent": agent or "unknown",
    }
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None and duration_ms > 0:
        _ingestion_latency_hist.record(float(duration_ms), labels)
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(**_prom_labels(entity=entity, result=result, agent=agent)).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None and duration_ms > 0:
        prom = _prom_labels(entity=entity, result=result, agent=agent)
        _prom_ingestion_latency_hist.labels(**prom).observe(float(duration_ms))


def record_parser_failure(parser: str, *, agent: str = "") -> None:
    labels = {
        "parser": parser or "unknown",
        "agent": agent or "unknown",
    }
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**_prom_labels(parser=parser, agent=agent)).inc()


def record_upstream_request(path: str, status: int) -> None:
    endpoint = _endpoint_label(path)
    labels = {"endpoint": endpoint, "status": str(status)}
    if _enabled and _upstream_requests_counter is not None:
        _upstream_requests_counter.add(1, labels)
    if _prom_enabled and _prom_upstream_requests_counter is not None:
        _prom_upstream_requests_counter.labels(endpoint=endpoint, status=str(status)).inc()
