import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger(__name__)

SERVICE_NAMESPACE = "payments"


def build_tracer_provider(service_name: str, otlp_endpoint: str) -> TracerProvider:
    resource = Resource.create(
        {"service.name": service_name, "service.namespace": SERVICE_NAMESPACE}
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    return provider


def setup_tracing(service_name: str, otlp_endpoint: str) -> TracerProvider | None:
    """
    Install the global tracer provider.

    Returns the provider so the caller can flush it on shutdown, or None
    when no endpoint is configured and spans stay no-ops.
    """
    if not otlp_endpoint:
        logger.info("Tracing disabled (no OTLP endpoint)", extra={"service": service_name})
        return None
    provider = build_tracer_provider(service_name, otlp_endpoint)
    trace.set_tracer_provider(provider)
    return provider
