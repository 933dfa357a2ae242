"""OpenTelemetry wiring: one tracer provider per process plus outbound gateway spans."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind

tracer = trace.get_tracer("clinicpay")


def setup_tracing(service_name: str, endpoint: str) -> None:
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Request spans for every route except health checks."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")


@contextmanager
def gateway_span(gateway: str, operation: str):
    """Client span around one payment-provider call."""

    with tracer.start_as_current_span(f"{gateway}.{operation}", kind=SpanKind.CLIENT) as span:
        span.set_attribute("payment.gateway", gateway)
        span.set_attribute("payment.operation", operation)
        yield span
