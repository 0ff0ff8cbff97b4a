"""OpenTelemetry configuration helpers."""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace import SpanProcessor
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes

from portfolio_engine.config import EngineSettings

logger = logging.getLogger(__name__)

_TELEMETRY_INITIALISED = False

# Instruments resolve through the API proxies, so they are safe to use before
# (or without) setup_telemetry.
tracer = trace.get_tracer("portfolio_engine")
_meter = metrics.get_meter("portfolio_engine")

missing_price_counter = _meter.create_counter(
    "portfolio_engine.missing_prices",
    unit="1",
    description="Position-days skipped because no price was resolvable",
)
fx_fallback_counter = _meter.create_counter(
    "portfolio_engine.fx_fallbacks",
    unit="1",
    description="Conversions that degraded to a fallback exchange rate",
)


def _build_resource(settings: EngineSettings) -> Resource:
    attributes: dict[str, Any] = {
        ResourceAttributes.SERVICE_NAME: settings.telemetry_service_name or settings.app_name,
        ResourceAttributes.SERVICE_NAMESPACE: "portfolio-engine",
    }
    return Resource.create(attributes)


def setup_telemetry(settings: EngineSettings) -> bool:
    """Configure tracing and metric exporters once; return whether telemetry is active."""

    global _TELEMETRY_INITIALISED  # noqa: PLW0603 - single initialisation guard

    if _TELEMETRY_INITIALISED:
        return True

    if not settings.telemetry_enabled:
        logger.info("Telemetry disabled via configuration")
        return False

    resource = _build_resource(settings)
    tracer_provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.telemetry_sample_ratio)),
    )
    tracer_provider.add_span_processor(_span_processor(settings))
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[_metric_reader(settings)]))

    _TELEMETRY_INITIALISED = True
    logger.info("Telemetry initialised: %s", settings.dict_for_logging())
    return True


def _exporter_options(settings: EngineSettings) -> dict[str, Any]:
    options: dict[str, Any] = {"insecure": settings.telemetry_otlp_insecure}
    if settings.telemetry_otlp_endpoint:
        options["endpoint"] = settings.telemetry_otlp_endpoint
    return options


def _span_processor(settings: EngineSettings) -> SpanProcessor:
    return BatchSpanProcessor(OTLPSpanExporter(**_exporter_options(settings)))


def _metric_reader(settings: EngineSettings) -> MetricReader:
    return PeriodicExportingMetricReader(
        OTLPMetricExporter(**_exporter_options(settings)),
        export_interval_millis=settings.telemetry_metric_interval_ms,
    )


__all__ = [
    "setup_telemetry",
    "tracer",
    "missing_price_counter",
    "fx_fallback_counter",
]
