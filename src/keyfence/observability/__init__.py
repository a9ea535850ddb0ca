"""Observability module for keyfence.

Provides tracing, metrics, and structured logging:
- OpenTelemetry tracing with OTLP export
- Prometheus metrics for leases, single-flight runs and tag cleanup
- JSON structured logging with operation context
"""

from keyfence.observability.logging import (
    LogContext,
    configure_logging,
    correlation_id_var,
    get_logger,
    operation_key_var,
)
from keyfence.observability.metrics import (
    get_metrics,
    metrics_registry,
)
from keyfence.observability.tracing import (
    get_tracer,
    setup_tracing,
    shutdown_tracing,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
    "operation_key_var",
    "correlation_id_var",
    # Tracing
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
