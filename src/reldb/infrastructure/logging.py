"""Structured logging configuration.

Modules log through ``get_logger(__name__, component=...)``. Events are
snake_case names with key/value context, for example
``logger.info("transaction_committed", txn_id=7, commit_ts=12)``.
Inside :func:`session_context` every event also carries the session id.
"""

from __future__ import annotations

import datetime
import logging
import sys
from decimal import Decimal
from typing import Any, ContextManager

import structlog
from structlog.types import Processor


def _json_default(value: Any) -> Any:
    # SQL values that show up in event context.
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return repr(value)


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structlog and the standard library root logger.

    Both write to stderr so stdout stays free for query output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: 'json' for one object per line, 'console' for humans

    Raises:
        ValueError: On an unknown level name
    """
    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        raise ValueError(f"unknown log level: {level!r}")

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level_no, force=True)

    renderer: Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(default=_json_default)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def session_context(session_id: int, **context: Any) -> ContextManager[Any]:
    """Bind ``session_id`` and extra keys to every event logged in the block."""
    return structlog.contextvars.bound_contextvars(session_id=session_id, **context)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Return a logger bound to ``initial_context`` (usually ``component``)."""
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger
