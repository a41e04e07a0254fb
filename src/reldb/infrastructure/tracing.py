"""OpenTelemetry tracing for statements, commits and recovery.

Spans carry the database semantic-convention keys (``db.system``,
``db.operation``) next to reldb's own ``reldb.*`` attributes. Until
:func:`setup_tracing` runs, the API's no-op tracer is used.
"""

from __future__ import annotations

import functools
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

F = TypeVar("F", bound=Callable[..., Any])

DB_SYSTEM = "reldb"

_provider: TracerProvider | None = None


def setup_tracing(
    service_name: str = "reldb",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
) -> TracerProvider:
    """Install the global tracer provider.

    OpenTelemetry allows one global provider per process, so later calls
    return the provider installed first.

    Args:
        service_name: ``service.name`` resource attribute
        otlp_endpoint: OTLP gRPC collector, e.g. ``http://localhost:4317``
        console_export: Also print finished spans (debugging)
    """
    global _provider
    if _provider is not None:
        return _provider

    from reldb import __version__

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.version": __version__,
                "db.system": DB_SYSTEM,
            }
        )
    )
    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True))
        )
    if console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def shutdown_tracing() -> None:
    """Flush buffered spans to the exporters."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def get_tracer() -> trace.Tracer:
    return trace.get_tracer("reldb")


@contextmanager
def trace_span(
    name: str,
    attributes: Mapping[str, Any] | None = None,
) -> Iterator[trace.Span]:
    """Run the block inside a span; an escaping exception is recorded on it.

    Attributes whose value is None are left out.
    """
    clean = {k: v for k, v in (attributes or {}).items() if v is not None}
    with get_tracer().start_as_current_span(name, attributes=clean) as span:
        yield span


def statement_span(
    statement_type: str, session_id: int, txn_id: int | None = None
) -> Any:
    """Span around one SQL statement."""
    return trace_span(
        f"reldb.{statement_type}",
        {
            "db.system": DB_SYSTEM,
            "db.operation": statement_type.upper(),
            "reldb.session_id": session_id,
            "reldb.txn_id": txn_id,
        },
    )


def trace_function(name: str | None = None) -> Callable[[F], F]:
    """Decorator wrapping every call of the function in a span.

    Args:
        name: Span name; defaults to the function's qualified name
    """

    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name, {"code.function": func.__qualname__}):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
