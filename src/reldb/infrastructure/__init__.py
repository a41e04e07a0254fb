"""Infrastructure layer - configuration, logging, metrics and tracing."""

from reldb.infrastructure.config import Config, get_config
from reldb.infrastructure.logging import get_logger, session_context, setup_logging
from reldb.infrastructure.metrics import MetricsRegistry, get_metrics, setup_metrics
from reldb.infrastructure.tracing import (
    get_tracer,
    setup_tracing,
    shutdown_tracing,
    statement_span,
    trace_function,
    trace_span,
)

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "session_context",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    "trace_span",
    "statement_span",
    "trace_function",
]
