"""OpenTelemetry setup for the gateway app and webhook spans."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from ultrapay.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Register a tracer provider exporting over OTLP HTTP."""

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
    )
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    FastAPIInstrumentor.instrument_app(app)


def get_tracer(name: str) -> trace.Tracer:
    """Tracer for manual spans; a no-op until `setup_tracing` has run."""

    return trace.get_tracer(name)
