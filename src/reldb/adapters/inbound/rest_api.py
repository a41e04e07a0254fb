"""REST API adapter for the query engine.

This module provides a FastAPI-based REST API for executing SQL
against a DatabaseEngine.

Endpoints:
    GET /health - Health check
    GET /stats - Engine statistics
    GET /metrics - Prometheus exposition of the engine's registry
    POST /execute - Execute one statement
    POST /execute/batch - Execute one statement per parameter set, atomically
    POST /session - Create a session
    DELETE /session/{id} - Close a session
    PUT /session/{id}/autocommit - Switch a session's autocommit mode

Errors are returned as ``{"kind", "error", "message", "retryable"}`` with
status 400 (bad statement or violated constraint), 404 (unknown session or
catalog object), 409 (concurrency and transaction-state conflicts) or 500.

Usage:
    reldb-server            # configured through RELDB_* environment variables
"""

from __future__ import annotations

import datetime
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from reldb import __version__
from reldb.application import DatabaseEngine, ExecutionResult
from reldb.domain.errors import (
    ColumnNotFound,
    DatabaseError,
    ErrorKind,
    IndexNotFound,
    TableNotFound,
)
from reldb.infrastructure.config import Config, get_config
from reldb.infrastructure.logging import get_logger, setup_logging
from reldb.infrastructure.metrics import setup_metrics
from reldb.infrastructure.tracing import setup_tracing, shutdown_tracing

logger = get_logger(__name__, component="rest_api")

_CONFLICT_KINDS = {
    ErrorKind.LOCK_TIMEOUT,
    ErrorKind.DEADLOCK_DETECTED,
    ErrorKind.SERIALIZATION_FAILURE,
    ErrorKind.TRANSACTION_STATE,
}


class SQLRequest(BaseModel):
    """Request model for SQL execution."""

    sql: str = Field(..., description="SQL statement to execute")
    params: list[Any] | dict[str, Any] | None = Field(
        None, description="Positional (list) or named (object) parameters"
    )
    session_id: int | None = Field(None, description="Optional session ID")


class BatchRequest(BaseModel):
    """Request model for executing one statement with many parameter sets."""

    sql: str = Field(..., description="SQL statement to execute")
    params: list[list[Any] | dict[str, Any]] = Field(
        default_factory=list, description="One parameter set per execution"
    )
    session_id: int | None = Field(None, description="Optional session ID")


class SQLResponse(BaseModel):
    """Response model for SQL execution."""

    statement_type: str | None = Field(None, description="Kind of statement executed")
    message: str = Field("", description="Status message")
    columns: list[str] = Field(default_factory=list, description="Column names")
    column_types: list[str] = Field(default_factory=list, description="Column SQL types")
    rows: list[list[Any]] = Field(default_factory=list, description="Result rows")
    affected_rows: int = Field(0, description="Number of affected rows")


class SessionRequest(BaseModel):
    """Request model for session creation."""

    isolation_level: str | None = Field(
        None, description="Isolation level, e.g. 'REPEATABLE READ'"
    )


class SessionResponse(BaseModel):
    """Response model for session creation."""

    session_id: int = Field(..., description="The created session ID")


class AutocommitRequest(BaseModel):
    enabled: bool = Field(..., description="Whether statements commit on their own")


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="Engine version")


def _json_value(value: Any) -> Any:
    """Render a SQL value for JSON: exact decimals as strings, ISO temporals."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


def _result_to_response(result: ExecutionResult) -> SQLResponse:
    return SQLResponse(
        statement_type=result.statement_type.value if result.statement_type else None,
        message=result.message,
        columns=result.columns,
        column_types=result.column_types,
        rows=[[_json_value(v) for v in row.values] for row in result.rows],
        affected_rows=result.affected_rows,
    )


def _status_for(error: DatabaseError) -> int:
    if isinstance(error, (TableNotFound, ColumnNotFound, IndexNotFound)):
        return 404
    if error.kind in _CONFLICT_KINDS:
        return 409
    return 400


def create_app(db: DatabaseEngine) -> FastAPI:
    """Create a FastAPI application for the engine.

    The engine is started with the application if it is not running yet,
    and then also stopped with it.

    Args:
        db: The database engine to serve.

    Returns:
        A configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = not db.is_started
        if owned:
            db.start()
        try:
            yield
        finally:
            if owned:
                db.stop()

    app = FastAPI(
        title="reldb API",
        description="REST API for executing SQL against reldb",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())

    @app.exception_handler(KeyError)
    async def not_found_handler(request: Request, exc: KeyError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"kind": "NOT_FOUND", "message": str(exc.args[0]), "retryable": False},
        )

    @app.exception_handler(RuntimeError)
    async def unavailable_handler(request: Request, exc: RuntimeError) -> JSONResponse:
        logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"kind": "INTERNAL", "message": str(exc), "retryable": False},
        )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy" if db.is_started else "unhealthy",
            version=__version__,
        )

    @app.get("/stats", tags=["Stats"])
    def get_stats() -> dict[str, Any]:
        """Get engine statistics."""
        return db.get_stats()

    @app.get("/metrics", tags=["Stats"])
    def metrics() -> Response:
        """Prometheus metrics of this engine."""
        return Response(generate_latest(db.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    @app.post("/execute", response_model=SQLResponse, tags=["SQL"])
    def execute_sql(request: SQLRequest) -> SQLResponse:
        """Execute a SQL statement."""
        result = db.execute(request.sql, request.params, request.session_id)
        return _result_to_response(result)

    @app.post("/execute/batch", response_model=SQLResponse, tags=["SQL"])
    def execute_batch(request: BatchRequest) -> SQLResponse:
        """Execute a statement once per parameter set; all or nothing."""
        result = db.execute_many(request.sql, request.params, request.session_id)
        return _result_to_response(result)

    @app.post("/session", response_model=SessionResponse, tags=["Sessions"])
    def create_session(request: SessionRequest | None = None) -> SessionResponse:
        """Create a new database session."""
        level = request.isolation_level if request is not None else None
        return SessionResponse(session_id=db.create_session(level))

    @app.delete("/session/{session_id}", tags=["Sessions"])
    def close_session(session_id: int) -> dict[str, str]:
        """Close a session, rolling back its open transaction."""
        db.close_session(session_id)
        return {"message": f"Session {session_id} closed"}

    @app.put("/session/{session_id}/autocommit", tags=["Sessions"])
    def set_autocommit(session_id: int, request: AutocommitRequest) -> dict[str, Any]:
        """Set autocommit mode for a session."""
        db.set_autocommit(request.enabled, session_id)
        return {"session_id": session_id, "autocommit": request.enabled}

    return app


def run_server(config: Config | None = None) -> None:
    """Run the REST API server (``reldb-server`` entry point).

    Args:
        config: Configuration; read from the environment if None.
    """
    import uvicorn

    config = config or get_config()
    observability = config.observability
    setup_logging(observability.log_level, observability.log_format)
    if observability.otel_endpoint:
        setup_tracing(observability.otel_service_name, observability.otel_endpoint)
    if observability.metrics_enabled:
        setup_metrics(observability.metrics_port)
    if config.server.workers > 1:
        # Engine state lives in this process; extra workers would not share it.
        logger.warning("workers_ignored", workers=config.server.workers)

    app = create_app(DatabaseEngine(config))
    logger.info("server_starting", host=config.server.host, port=config.server.port)
    try:
        uvicorn.run(app, host=config.server.host, port=config.server.port)
    finally:
        shutdown_tracing()
