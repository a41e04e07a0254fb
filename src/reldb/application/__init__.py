"""Application layer for the query engine.

The application layer turns parsed statements into work on the domain
services: expressions are compiled to closures, queries planned into
operator pipelines, and statements run inside engine-managed transactions.

Exports:
    DatabaseEngine:
        - DatabaseEngine: Main entry point (sessions, transactions, execute)
    Executor:
        - StatementExecutor: Runs one statement in a transaction
        - ExecutionResult: Rows, schema, affected-row count or message
        - Row: One result row
        - bind_parameters: Maps ``?``/``:name`` markers to values
    Planner:
        - QueryPlanner: Builds operator pipelines for queries
"""

from reldb.application.database_engine import DatabaseEngine, SessionState
from reldb.application.executor import (
    ExecutionResult,
    Row,
    StatementExecutor,
    bind_parameters,
)
from reldb.application.planner import QueryPlan, QueryPlanner

__all__ = [
    "DatabaseEngine",
    "SessionState",
    "StatementExecutor",
    "ExecutionResult",
    "Row",
    "bind_parameters",
    "QueryPlanner",
    "QueryPlan",
]
