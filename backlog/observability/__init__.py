"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from backlog.observability.logging import bind_worker_context, clear_context, setup_logging
from backlog.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from backlog.observability.tracing import (
    get_tracer,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)

__all__ = [
    "setup_logging",
    "bind_worker_context",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "instrument_fastapi",
    "instrument_sqlalchemy",
]
