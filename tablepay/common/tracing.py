"""OpenTelemetry wiring for the reconciliation service."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from tablepay.common.config import settings


tracer = trace.get_tracer("tablepay")

# Scrapes and probes would otherwise dominate the span volume.
UNTRACED_URLS = "health,metrics"


def setup_tracing(service_name: str, endpoint: str | None = None) -> TracerProvider:
    """Install the global tracer provider.

    Spans go to the OTLP HTTP endpoint from settings unless `endpoint` is given;
    an empty endpoint keeps tracing in-process only (local runs, tests).
    """

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    endpoint = settings.otel_exporter_otlp_endpoint if endpoint is None else endpoint
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    return provider


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def annotate_span(**attributes) -> None:
    """Attach order/payment attributes to whatever span is current."""

    span = trace.get_current_span()
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(f"tablepay.{key}", str(value))
