"""Optional OpenTelemetry tracing and metrics.

Everything here is a no-op unless `OTEL_ENABLED=1` and the `otel` extra is
installed. Callers never need to check; `span()` and the `record_*` helpers
return immediately when telemetry is off.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from .config import settings

logger = logging.getLogger(__name__)

_METER_NAME = "ratekeeper"


@dataclass
class _Telemetry:
    tracer: Any = None
    http_requests: Any = None
    http_duration_ms: Any = None
    decisions: Any = None
    upsert_duration_ms: Any = None


_telemetry: _Telemetry | None = None
_setup_done = False


def _trace_exporter_mode() -> str:
    mode = (settings.otel_traces_exporter or "auto").strip().lower()
    if mode == "auto":
        return "otlp" if settings.otel_exporter_otlp_endpoint else "none"
    return mode


def _attach_span_exporter(provider: Any) -> None:
    from opentelemetry.sdk.trace.export import BatchSpanProcessor  # type: ignore[import-not-found]

    endpoint = settings.otel_exporter_otlp_endpoint
    if _trace_exporter_mode() != "otlp":
        logger.info("OTEL tracing enabled without exporter; spans stay in-process")
        return
    if not endpoint:
        logger.warning("OTEL_TRACES_EXPORTER=otlp but OTEL_EXPORTER_OTLP_ENDPOINT is unset; spans stay in-process")
        return
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[import-not-found]
            OTLPSpanExporter,
        )
    except ImportError as e:  # pragma: no cover
        logger.warning("OTLP span exporter unavailable; spans stay in-process. error=%s", e)
        return
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))


def _build_instruments(resource: Any, telemetry: _Telemetry) -> None:
    from opentelemetry import metrics  # type: ignore[import-not-found]
    from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # type: ignore[import-not-found]

    readers: list[Any] = []
    endpoint = settings.otel_exporter_otlp_endpoint
    if endpoint:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import (  # type: ignore[import-not-found]
            OTLPMetricExporter,
        )

        readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint)))
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))
    meter = metrics.get_meter(_METER_NAME)

    telemetry.http_requests = meter.create_counter(
        "ratekeeper.http.server.requests", unit="1", description="HTTP requests handled"
    )
    telemetry.http_duration_ms = meter.create_histogram(
        "ratekeeper.http.server.duration_ms", unit="ms", description="HTTP request latency"
    )
    telemetry.decisions = meter.create_counter(
        "ratekeeper.decisions", unit="1", description="Rate limit decisions by endpoint and outcome"
    )
    telemetry.upsert_duration_ms = meter.create_histogram(
        "ratekeeper.store.upsert.duration_ms", unit="ms", description="Atomic bucket upsert latency"
    )


def setup_otel(app: Any) -> bool:
    """Instrument the FastAPI app once per process. Returns True when telemetry is live."""

    global _telemetry, _setup_done
    if _setup_done:
        return _telemetry is not None
    _setup_done = True

    if not settings.otel_enabled:
        return False

    try:
        from opentelemetry import trace  # type: ignore[import-not-found]
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor  # type: ignore[import-not-found]
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]
        from opentelemetry.sdk.trace import TracerProvider  # type: ignore[import-not-found]
    except ImportError as e:
        logger.warning("OTEL_ENABLED=1 but the otel extra is not installed; telemetry disabled. error=%s", e)
        return False

    resource = Resource.create({"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    _attach_span_exporter(provider)
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)

    telemetry = _Telemetry(tracer=trace.get_tracer(_METER_NAME))
    try:
        _build_instruments(resource, telemetry)
    except Exception as e:  # pragma: no cover
        logger.warning("OTEL metrics unavailable; tracing only. error=%s", e)

    _telemetry = telemetry
    return True


def _clean(attrs: dict[str, Any]) -> dict[str, Any]:
    return {
        str(k): v if isinstance(v, (str, bool, int, float)) else str(v)
        for k, v in attrs.items()
        if v is not None
    }


@contextmanager
def span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    t = _telemetry
    if t is None or t.tracer is None:
        yield None
        return
    with t.tracer.start_as_current_span(name, attributes=_clean(attributes or {})) as s:
        yield s


def record_http_request_metric(*, method: str, path: str, status_code: int, latency_ms: float) -> None:
    t = _telemetry
    if t is None or t.http_requests is None:
        return
    attrs = _clean({"http.method": method, "http.route": path, "http.status_code": int(status_code)})
    t.http_requests.add(1, attributes=attrs)
    t.http_duration_ms.record(float(latency_ms), attributes=attrs)


def record_rate_limit_decision_metric(*, endpoint: str, outcome: str) -> None:
    t = _telemetry
    if t is None or t.decisions is None:
        return
    t.decisions.add(1, attributes={"ratelimit.endpoint": endpoint, "ratelimit.outcome": outcome})


def record_store_latency_metric(*, latency_ms: float, backend: str) -> None:
    t = _telemetry
    if t is None or t.upsert_duration_ms is None:
        return
    t.upsert_duration_ms.record(float(latency_ms), attributes={"store.backend": backend})
