"""OpenTelemetry tracing for keyfence.

Provides distributed tracing with OTLP export:
- Spans around single-flight runs
- Redis operation tracing (when the instrumentation package is installed)
- Custom span creation

Usage:
    from keyfence.observability.tracing import get_tracer

    tracer = get_tracer(__name__)

    with tracer.start_as_current_span("my_operation") as span:
        span.set_attribute("key", "value")
        ...
"""

from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from keyfence.config import settings

logger = logging.getLogger(__name__)

# Global tracer provider
_tracer_provider: TracerProvider | None = None
_initialized = False


def setup_tracing() -> None:
    """Initialize OpenTelemetry tracing.

    Configures:
    - OTLP exporter (if endpoint configured)
    - Console exporter (for development)
    - Automatic instrumentation for Redis
    """
    global _tracer_provider, _initialized

    if _initialized:
        return

    if not settings.enable_tracing:
        logger.info("Tracing is disabled")
        _initialized = True
        return

    resource = Resource.create(
        {
            "service.name": settings.app_name,
            "service.instance.id": settings.instance_id,
            "deployment.environment": settings.env,
        }
    )
    _tracer_provider = TracerProvider(resource=resource)

    if settings.otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
            _tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            logger.info(f"OTLP tracing enabled: {settings.otlp_endpoint}")
        except ImportError:
            logger.warning(
                "opentelemetry-exporter-otlp-proto-grpc not installed, OTLP export disabled"
            )
    elif settings.env == "dev":
        _tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console tracing enabled (dev mode)")

    trace.set_tracer_provider(_tracer_provider)
    _setup_auto_instrumentation()

    _initialized = True
    logger.info("OpenTelemetry tracing initialized")


def _setup_auto_instrumentation() -> None:
    """Instrument redis-py if the instrumentation package is present."""
    try:
        from opentelemetry.instrumentation.redis import RedisInstrumentor

        RedisInstrumentor().instrument()
        logger.debug("Redis instrumentation enabled")
    except ImportError:
        pass


def get_tracer(name: str) -> Any:
    """Get a tracer for the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        OpenTelemetry tracer, or a no-op tracer if tracing is disabled
    """
    if not settings.enable_tracing:
        return trace.NoOpTracer()
    return trace.get_tracer(name)


def shutdown_tracing() -> None:
    """Shutdown tracing and flush remaining spans."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None:
        try:
            _tracer_provider.shutdown()
            logger.info("OpenTelemetry tracing shutdown complete")
        except Exception as e:
            logger.warning(f"Error shutting down tracing: {e}")

    _tracer_provider = None
    _initialized = False
