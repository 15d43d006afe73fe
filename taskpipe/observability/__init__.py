"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from taskpipe.observability.logging import (
    bind_context,
    delivery_context,
    get_logger,
    setup_logging,
)
from taskpipe.observability.metrics import (
    MetricsCollector,
    get_metrics,
    serve_metrics,
    setup_metrics,
)
from taskpipe.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "bind_context",
    "delivery_context",
    "setup_metrics",
    "get_metrics",
    "serve_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
