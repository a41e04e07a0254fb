"""Database Engine - unified entry point for the query engine.

The engine owns sessions and transaction boundaries. It parses statement
text, binds parameters, opens or attaches a transaction, runs the statement
behind a savepoint and commits in autocommit mode.

Usage:
    from reldb.application import DatabaseEngine

    with DatabaseEngine() as db:
        db.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
        db.execute("INSERT INTO users VALUES (?, ?)", [1, "Alice"])
        rows = db.execute("SELECT * FROM users").rows

Error propagation:
    - Every failed statement is undone back to its savepoint.
    - Retryable errors (serialization failures, deadlocks) and trigger
      failures abort the whole transaction.
    - In autocommit mode the statement's transaction is aborted.
    - In an explicit transaction the transaction stays usable, except after
      an abort: then every statement fails with TransactionAborted until
      ROLLBACK (or COMMIT, which reports the abort).
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from reldb.adapters.inbound.sql_parser import (
    SQLParser,
    Statement,
    StatementType,
    TransactionStatement,
)
from reldb.application.executor import ExecutionResult, StatementExecutor, bind_parameters
from reldb.domain.errors import (
    ConstraintViolation,
    DatabaseError,
    DeadlockDetected,
    LockTimeout,
    NestedTransaction,
    NoActiveTransaction,
    SerializationFailure,
    SQLSyntaxError,
    TransactionAborted,
    TransactionStateError,
    TriggerFailed,
)
from reldb.domain.services.catalog import Catalog
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.services.recovery_service import RecoveryService
from reldb.domain.services.storage_engine import StorageEngine
from reldb.domain.services.transaction_manager import MVCCTransactionManager
from reldb.domain.services.trigger_registry import Trigger, TriggerRegistry
from reldb.domain.value_objects import IsolationLevel
from reldb.infrastructure.config import Config, get_config
from reldb.infrastructure.container import Container, build_container
from reldb.infrastructure.logging import get_logger, session_context
from reldb.infrastructure.metrics import MetricsRegistry
from reldb.infrastructure.tracing import statement_span, trace_span
from reldb.ports.inbound.transaction_manager import Transaction
from reldb.ports.outbound.commit_log import CommitLog

logger = get_logger(__name__, component="engine")

_CONSTRAINT_TYPES = {
    "NotNullViolation": "not_null",
    "UniqueViolation": "unique",
    "CheckViolation": "check",
    "ForeignKeyViolation": "foreign_key",
}


@dataclass
class SessionState:
    """State for a database session (connection).

    Attributes:
        session_id: Session identifier
        current_transaction: Attached transaction, explicit or implicit
        autocommit: Whether statements outside BEGIN commit on their own
        isolation_level: Level of transactions the session begins (None =
            engine default)
        next_isolation: One-shot level from SET TRANSACTION outside a
            transaction
    """

    session_id: int
    current_transaction: Transaction | None = None
    autocommit: bool = True
    isolation_level: IsolationLevel | None = None
    next_isolation: IsolationLevel | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


def _isolation(level: IsolationLevel | str | None) -> IsolationLevel | None:
    if level is None or isinstance(level, IsolationLevel):
        return level
    return IsolationLevel.from_sql(level)


class DatabaseEngine:
    """Main database engine that orchestrates all components.

    Components come from a DI container (see build_container). On start the
    commit log is replayed into the empty engine.

    Thread Safety:
        Multiple threads can share a DatabaseEngine instance. Each thread
        should use its own session; statements of one session are serialized.
    """

    def __init__(self, config: Config | None = None, container: Container | None = None) -> None:
        """Initialize the database engine.

        Args:
            config: Engine configuration. Defaults to the container's, else
                to the environment (get_config()).
            container: Wired components. Built from config on start if None.
        """
        if config is None:
            config = container.resolve(Config) if container is not None else get_config()
        self._config = config
        self._container = container

        # Components (resolved on start)
        self._metrics: MetricsRegistry | None = None
        self._commit_log: CommitLog | None = None
        self._catalog: Catalog | None = None
        self._locks: LockManager | None = None
        self._storage: StorageEngine | None = None
        self._txn_manager: MVCCTransactionManager | None = None
        self._triggers: TriggerRegistry | None = None
        self._parser: SQLParser | None = None
        self._executor: StatementExecutor | None = None

        # Session management
        self._lock = threading.Lock()
        self._next_session_id = 1
        self._sessions: dict[int, SessionState] = {}
        self._default_session: SessionState | None = None

        # Storage counters already exported to metrics
        self._exported_scans = 0
        self._exported_lookups = 0

        self._started = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def is_started(self) -> bool:
        """Check if the engine is started."""
        return self._started

    @property
    def metrics(self) -> MetricsRegistry:
        self._require_started()
        assert self._metrics is not None
        return self._metrics

    @property
    def default_session_id(self) -> int:
        self._require_started()
        assert self._default_session is not None
        return self._default_session.session_id

    # Lifecycle

    def start(self) -> None:
        """Start the engine: wire components and replay the commit log.

        Raises:
            RuntimeError: If already started.
            RecoveryError: If the commit log cannot be replayed.
        """
        if self._started:
            raise RuntimeError("Database already started")

        if self._container is None:
            self._container = build_container(self._config)
        container = self._container

        self._metrics = container.resolve(MetricsRegistry)
        self._commit_log = container.resolve(CommitLog)
        self._catalog = container.resolve(Catalog)
        self._locks = container.resolve(LockManager)
        self._storage = container.resolve(StorageEngine)
        self._txn_manager = container.resolve(MVCCTransactionManager)
        self._triggers = container.resolve(TriggerRegistry)
        self._parser = container.resolve(SQLParser)
        self._executor = StatementExecutor(
            self._catalog,
            self._storage,
            self._locks,
            self._triggers,
            self._parser,
            max_recursion_depth=self._config.query.max_recursion_depth,
        )

        stats = RecoveryService(
            self._commit_log,
            self._catalog,
            self._storage,
            self._txn_manager,
            self._parser.parse_expression,
        ).recover()
        self._metrics.recovery_duration_seconds.set(stats.duration_ms / 1000)
        self._metrics.recovery_records_replayed.inc(stats.records_replayed)

        from reldb import __version__

        self._metrics.info.info({
            "version": __version__,
            "dialect": self._config.query.dialect,
            "default_isolation": self._txn_manager.default_isolation.sql_name,
        })

        self._default_session = self._new_session()
        self._started = True
        logger.info(
            "engine_started",
            records_replayed=stats.records_replayed,
            tables=stats.tables_recovered,
            commit_log=type(self._commit_log).__name__,
        )

    def stop(self) -> None:
        """Stop the engine, aborting every open transaction."""
        if not self._started:
            return

        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            txn = session.current_transaction
            session.current_transaction = None
            if txn is not None:
                self._abort(txn)

        assert self._commit_log is not None
        self._commit_log.close()
        self._default_session = None
        self._started = False
        logger.info("engine_stopped")

    def __enter__(self) -> DatabaseEngine:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # Sessions

    def create_session(self, isolation_level: IsolationLevel | str | None = None) -> int:
        """Create a new session.

        Args:
            isolation_level: Level of the transactions the session begins.

        Returns:
            Session ID for use with execute().
        """
        self._require_started()
        return self._new_session(_isolation(isolation_level)).session_id

    def close_session(self, session_id: int) -> None:
        """Close a session, rolling back its open transaction.

        Raises:
            KeyError: If the session does not exist.
        """
        self._require_started()
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        with session.lock:
            txn = session.current_transaction
            session.current_transaction = None
            if txn is not None:
                self._abort(txn)
        if session is self._default_session:
            self._default_session = self._new_session()

    def set_autocommit(self, enabled: bool, session_id: int | None = None) -> None:
        """Set autocommit mode for a session.

        With autocommit off, the first statement begins a transaction that
        stays open until COMMIT or ROLLBACK.

        Raises:
            TransactionStateError: Inside a transaction.
        """
        session = self._get_session(session_id)
        with session.lock:
            if session.current_transaction is not None:
                raise TransactionStateError("cannot change autocommit inside a transaction")
            session.autocommit = enabled

    def get_autocommit(self, session_id: int | None = None) -> bool:
        return self._get_session(session_id).autocommit

    def in_transaction(self, session_id: int | None = None) -> bool:
        return self._get_session(session_id).current_transaction is not None

    def _new_session(self, isolation_level: IsolationLevel | None = None) -> SessionState:
        with self._lock:
            session = SessionState(self._next_session_id, isolation_level=isolation_level)
            self._next_session_id += 1
            self._sessions[session.session_id] = session
        logger.debug("session_created", session_id=session.session_id)
        return session

    def _get_session(self, session_id: int | None) -> SessionState:
        self._require_started()
        if session_id is None:
            assert self._default_session is not None
            return self._default_session
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Database not started")

    # Statements

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] | None = None,
        session_id: int | None = None,
    ) -> ExecutionResult:
        """Execute one SQL statement.

        Args:
            sql: Statement text
            params: Sequence for ``?`` markers, mapping for ``:name`` markers
            session_id: Session to run in (default session if None)

        Raises:
            DatabaseError: On any statement failure
        """
        session = self._get_session(session_id)
        assert self._parser is not None
        statement = self._parse(self._parser.parse, sql)
        with session.lock, session_context(session.session_id):
            return self._dispatch(session, statement, params)

    def execute_many(
        self,
        sql: str,
        seq_of_params: Iterable[Sequence[Any] | Mapping[str, Any]],
        session_id: int | None = None,
    ) -> ExecutionResult:
        """Execute one statement once per parameter set, atomically.

        Outside an explicit transaction the batch runs in a transaction of
        its own; inside one, a failure undoes the whole batch.

        Returns:
            The summed affected-row count.
        """
        session = self._get_session(session_id)
        assert self._parser is not None and self._txn_manager is not None
        statement = self._parse(self._parser.parse, sql)
        if isinstance(statement, TransactionStatement):
            raise SQLSyntaxError("execute_many does not accept transaction control")

        with session.lock, session_context(session.session_id):
            explicit = session.current_transaction is not None
            if not explicit:
                self._begin_session_transaction(session, None)
            txn = session.current_transaction
            assert txn is not None
            self._check_usable(txn)
            savepoint = self._txn_manager.savepoint(txn)

            total = 0
            try:
                for params in seq_of_params:
                    result = self._execute_statement(
                        session, statement, bind_parameters(statement, params)
                    )
                    total += result.affected_rows
            except DatabaseError:
                if not explicit:
                    session.current_transaction = None
                    self._abort(txn)
                elif txn.is_active():
                    self._txn_manager.rollback_to(txn, savepoint)
                raise

            if not explicit:
                session.current_transaction = None
                self._commit(txn)

        return ExecutionResult(
            affected_rows=total,
            message=f"OK: {total} row(s) affected",
            statement_type=statement.statement_type,
        )

    def execute_script(self, sql: str, session_id: int | None = None) -> list[ExecutionResult]:
        """Execute semicolon-separated statements in order.

        Execution stops at the first failure, which propagates; earlier
        statements keep their effects.
        """
        session = self._get_session(session_id)
        assert self._parser is not None
        statements = self._parse(self._parser.parse_script, sql)
        with session.lock, session_context(session.session_id):
            return [self._dispatch(session, statement, None) for statement in statements]

    def _parse(self, parse: Callable[[str], Any], sql: str) -> Any:
        try:
            return parse(sql)
        except DatabaseError as e:
            self._record_failure(e)
            self.metrics.statements_total.labels("unknown", "error").inc()
            raise

    def _dispatch(
        self,
        session: SessionState,
        statement: Statement,
        params: Sequence[Any] | Mapping[str, Any] | None,
    ) -> ExecutionResult:
        if isinstance(statement, TransactionStatement):
            return self._transaction_control(session, statement)
        try:
            bound = bind_parameters(statement, params)
        except DatabaseError:
            self.metrics.statements_total.labels(statement.statement_type.value, "error").inc()
            raise
        return self._execute_statement(session, statement, bound)

    def _execute_statement(
        self, session: SessionState, statement: Statement, params: dict[str, Any]
    ) -> ExecutionResult:
        assert self._txn_manager is not None and self._executor is not None
        label = statement.statement_type.value
        started = time.perf_counter()
        status = "error"
        try:
            txn = session.current_transaction
            autocommit = txn is None and session.autocommit
            if txn is None:
                txn = self._begin_session_transaction(session, None)
                if autocommit:
                    session.current_transaction = None
            self._check_usable(txn)

            snapshot = self._txn_manager.begin_statement(txn)
            savepoint = self._txn_manager.savepoint(txn)
            with statement_span(label, session.session_id, int(txn.txn_id)):
                try:
                    result = self._executor.execute(statement, txn, snapshot, params)
                except DatabaseError as e:
                    self._statement_failed(session, txn, savepoint, e, autocommit)
                    raise
                except Exception:
                    logger.exception("statement_crashed", statement_type=label, txn_id=txn.txn_id)
                    self._abort(txn)
                    raise

            if autocommit:
                self._commit(txn)
            status = "success"
            return result
        finally:
            self.metrics.statements_total.labels(label, status).inc()
            self.metrics.statement_latency_seconds.labels(label).observe(
                time.perf_counter() - started
            )
            self._export_storage_counters()

    def _statement_failed(
        self,
        session: SessionState,
        txn: Transaction,
        savepoint: Any,
        error: DatabaseError,
        autocommit: bool,
    ) -> None:
        assert self._txn_manager is not None
        self._record_failure(error)
        logger.warning(
            "statement_failed",
            kind=error.kind.name,
            error=type(error).__name__,
            message=error.message,
            session_id=session.session_id,
            txn_id=txn.txn_id,
        )
        if autocommit or error.retryable or isinstance(error, TriggerFailed):
            self._abort(txn)
        elif txn.is_active():
            self._txn_manager.rollback_to(txn, savepoint)

    @staticmethod
    def _check_usable(txn: Transaction) -> None:
        if not txn.is_active():
            raise TransactionAborted(
                "current transaction is aborted, commands ignored until end of transaction block",
                txn_id=txn.txn_id,
            )

    # Transactions

    def begin(
        self,
        session_id: int | None = None,
        isolation_level: IsolationLevel | str | None = None,
    ) -> None:
        """Begin an explicit transaction in a session.

        Raises:
            NestedTransaction: If the session already has a transaction.
        """
        session = self._get_session(session_id)
        with session.lock:
            self._begin_explicit(session, _isolation(isolation_level))

    def commit(self, session_id: int | None = None) -> None:
        """Commit the session's transaction.

        Raises:
            NoActiveTransaction: If there is none.
            TransactionAborted: If it was aborted by an earlier failure.
        """
        session = self._get_session(session_id)
        with session.lock:
            self._commit_session(session)

    def rollback(self, session_id: int | None = None) -> None:
        """Roll back the session's transaction.

        Raises:
            NoActiveTransaction: If there is none.
        """
        session = self._get_session(session_id)
        with session.lock:
            self._rollback_session(session)

    def _transaction_control(
        self, session: SessionState, statement: TransactionStatement
    ) -> ExecutionResult:
        kind = statement.statement_type
        try:
            if kind == StatementType.BEGIN:
                self._begin_explicit(session, statement.isolation)
                message = "OK: Transaction started"
            elif kind == StatementType.COMMIT:
                self._commit_session(session)
                message = "OK: Transaction committed"
            elif kind == StatementType.ROLLBACK:
                self._rollback_session(session)
                message = "OK: Transaction rolled back"
            else:
                self._set_isolation(session, statement.isolation)
                message = "OK: Isolation level set"
        except DatabaseError:
            self.metrics.statements_total.labels(kind.value, "error").inc()
            raise
        self.metrics.statements_total.labels(kind.value, "success").inc()
        return ExecutionResult(message=message, statement_type=kind)

    def _begin_explicit(self, session: SessionState, isolation: IsolationLevel | None) -> Transaction:
        if session.current_transaction is not None:
            raise NestedTransaction(
                "there is already a transaction in progress",
                txn_id=session.current_transaction.txn_id,
            )
        return self._begin_session_transaction(session, isolation)

    def _begin_session_transaction(
        self, session: SessionState, isolation: IsolationLevel | None
    ) -> Transaction:
        """Begin a transaction and attach it to the session."""
        assert self._txn_manager is not None
        level = isolation or session.next_isolation or session.isolation_level
        session.next_isolation = None
        txn = self._txn_manager.begin(level)
        session.current_transaction = txn
        self.metrics.transactions_active.inc()
        return txn

    def _commit_session(self, session: SessionState) -> None:
        txn = session.current_transaction
        if txn is None:
            raise NoActiveTransaction("there is no transaction in progress")
        session.current_transaction = None
        if not txn.is_active():
            raise TransactionAborted(
                "transaction was aborted and has been rolled back", txn_id=txn.txn_id
            )
        self._commit(txn)

    def _rollback_session(self, session: SessionState) -> None:
        txn = session.current_transaction
        if txn is None:
            raise NoActiveTransaction("there is no transaction in progress")
        session.current_transaction = None
        self._abort(txn)

    def _set_isolation(self, session: SessionState, level: IsolationLevel | None) -> None:
        if level is None:
            raise SQLSyntaxError("SET TRANSACTION requires an isolation level")
        txn = session.current_transaction
        if txn is None:
            session.next_isolation = level
            return
        if txn.snapshot is not None:
            raise TransactionStateError(
                "SET TRANSACTION ISOLATION LEVEL must be called before any query",
                txn_id=txn.txn_id,
            )
        txn.isolation_level = level

    def _commit(self, txn: Transaction) -> None:
        assert self._txn_manager is not None
        writes = bool(txn.write_set) or txn.catalog_dirty
        with trace_span("reldb.commit", {"txn_id": int(txn.txn_id)}):
            try:
                self._txn_manager.commit(txn)
            except DatabaseError as e:
                self._record_failure(e)
                self._finished(committed=False)
                logger.warning(
                    "commit_failed", kind=e.kind.name, message=e.message, txn_id=txn.txn_id
                )
                raise
        self._finished(committed=True)
        if writes:
            self.metrics.commit_log_records_total.inc()

    def _abort(self, txn: Transaction) -> None:
        if txn.is_terminal():
            return
        assert self._txn_manager is not None
        self._txn_manager.abort(txn)
        self._finished(committed=False)

    def _finished(self, committed: bool) -> None:
        metrics = self.metrics
        metrics.transactions_active.dec()
        metrics.transactions_total.labels("committed" if committed else "aborted").inc()

    def _record_failure(self, error: DatabaseError) -> None:
        metrics = self.metrics
        if isinstance(error, ConstraintViolation):
            metrics.constraint_violations_total.labels(
                _CONSTRAINT_TYPES.get(type(error).__name__, "other")
            ).inc()
        elif isinstance(error, SerializationFailure):
            metrics.serialization_failures_total.inc()
        elif isinstance(error, DeadlockDetected):
            metrics.deadlocks_total.inc()
        elif isinstance(error, LockTimeout):
            metrics.lock_timeouts_total.inc()

    def _export_storage_counters(self) -> None:
        assert self._storage is not None
        stats = self._storage.get_stats()
        with self._lock:
            scans = stats.rows_scanned - self._exported_scans
            lookups = stats.index_lookups - self._exported_lookups
            self._exported_scans = stats.rows_scanned
            self._exported_lookups = stats.index_lookups
        if scans > 0:
            self.metrics.rows_scanned_total.inc(scans)
        if lookups > 0:
            self.metrics.index_lookups_total.inc(lookups)

    # Triggers

    def register_trigger(
        self,
        table: str,
        event: str,
        timing: str,
        callback: Callable[..., Any],
        name: str | None = None,
    ) -> Trigger:
        """Register a row trigger keyed by (table, event, timing).

        The callback receives a TriggerContext. BEFORE INSERT/UPDATE
        callbacks may return replacement values for the new row. Any
        exception aborts the writing transaction.
        """
        self._require_started()
        assert self._triggers is not None
        return self._triggers.register(table, event, timing, callback, name)

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        self._require_started()
        assert (
            self._txn_manager is not None
            and self._storage is not None
            and self._locks is not None
            and self._triggers is not None
            and self._commit_log is not None
            and self._catalog is not None
        )
        catalog = self._catalog.current()
        with self._lock:
            sessions = len(self._sessions)
        return {
            "sessions": sessions,
            "catalog": {
                "version": catalog.version,
                "tables": len(catalog.tables),
                "views": len(catalog.views),
                "indexes": len(catalog.indexes),
            },
            "transactions": asdict(self._txn_manager.get_stats()),
            "storage": asdict(self._storage.get_stats()),
            "locks": asdict(self._locks.get_stats()),
            "triggers_fired": self._triggers.fired_total,
            "commit_log_records": self._commit_log.record_count(),
        }
