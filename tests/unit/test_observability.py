"""Unit tests for the logging and tracing helpers."""

from __future__ import annotations

import pytest
import structlog

from reldb.infrastructure.logging import get_logger, session_context, setup_logging
from reldb.infrastructure.tracing import statement_span, trace_function, trace_span

pytestmark = pytest.mark.unit


class TestLogging:
    """Tests for logger helpers."""

    def test_unknown_level_rejected(self) -> None:
        """A misspelled level fails before anything is configured."""
        with pytest.raises(ValueError, match="unknown log level"):
            setup_logging("VERBOSE")

    def test_session_context_binds_and_unbinds(self) -> None:
        """Context is visible inside the block only."""
        with session_context(7, txn_id=3):
            bound = structlog.contextvars.get_contextvars()
            assert bound["session_id"] == 7
            assert bound["txn_id"] == 3
        assert "session_id" not in structlog.contextvars.get_contextvars()

    def test_logger_initial_context(self) -> None:
        """Initial context is bound to the returned logger."""
        logger = get_logger("reldb.test", component="test")
        assert logger is not None


class TestTracing:
    """Tests for span helpers with the default no-op tracer."""

    def test_trace_function_preserves_function(self) -> None:
        """The decorated function keeps its name and return value."""

        @trace_function("reldb.test")
        def add(a: int, b: int) -> int:
            return a + b

        assert add(2, 3) == 5
        assert add.__name__ == "add"

    def test_trace_function_propagates_errors(self) -> None:
        """Exceptions pass through the span unchanged."""

        @trace_function()
        def fail() -> None:
            raise KeyError("boom")

        with pytest.raises(KeyError):
            fail()

    def test_none_attributes_dropped(self) -> None:
        """A span accepts None attribute values and skips them."""
        with trace_span("reldb.test", {"reldb.txn_id": None, "reldb.rows": 1}) as span:
            assert span is not None

    def test_statement_span(self) -> None:
        """Statement spans work with and without a transaction id."""
        with statement_span("select", 1, 5):
            pass
        with statement_span("insert", 1):
            pass
