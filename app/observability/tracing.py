# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing configuration for OrderDesk.

Tracing is opt-in: without an OTLP endpoint the global no-op tracer stays
in place and spans cost nothing. With an endpoint, spans are batched to the
collector and SQLAlchemy plus the httpx notification client are
auto-instrumented. FastAPI itself is instrumented in app.main.
"""

from typing import Any, Dict

from loguru import logger
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.settings import settings


# ==== TRACING INITIALIZATION ==== #

def init_tracing(service_name: str) -> bool:
    """
    Initialize OpenTelemetry tracing with an OTLP exporter.

    Args:
        service_name (str): Fallback service name when OTEL_SERVICE_NAME is unset

    Returns:
        bool: True if an exporter was configured
    """
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        return False

    # --► RESOURCE ATTRIBUTES CONFIGURATION
    resource_attrs = _parse_pairs(settings.OTEL_RESOURCE_ATTRIBUTES)
    resource_attrs["service.name"] = settings.OTEL_SERVICE_NAME or service_name

    provider = TracerProvider(resource=Resource.create(resource_attrs))
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(
                endpoint=endpoint,
                headers=_parse_pairs(settings.OTEL_EXPORTER_OTLP_HEADERS),
            )
        )
    )
    trace.set_tracer_provider(provider)

    try:
        SQLAlchemyInstrumentor().instrument()
        HTTPXClientInstrumentor().instrument()
    except Exception as e:
        # Startup continues without auto-instrumentation
        logger.warning(f"Failed to setup auto-instrumentation: {e}")

    return True


def _parse_pairs(raw: str | None) -> Dict[str, Any]:
    """Parse comma-separated key=value pairs (OTEL header/attribute syntax)."""
    pairs: Dict[str, Any] = {}
    if not raw:
        return pairs

    for part in filter(None, map(str.strip, raw.split(","))):
        if "=" in part:
            key, value = part.split("=", 1)
            pairs[key.strip()] = value.strip()
    return pairs


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)
