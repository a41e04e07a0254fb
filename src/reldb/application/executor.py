"""Statement executor.

Runs one parsed statement inside a transaction the caller owns. Queries are
planned into an operator pipeline (see planner) and pulled to completion;
writes and DDL go through the storage engine and the catalog.

Write statements run in two phases: the target rows are collected through
the statement's snapshot first, then each row is locked and changed. A row
changed by a concurrent transaction in between is re-read (READ COMMITTED)
and its predicate re-checked, or the write fails with SerializationFailure
(REPEATABLE READ and SERIALIZABLE, raised by the storage engine).

Transaction control, savepoints and autocommit belong to the engine.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from sqlglot import exp

from reldb.adapters.inbound.sql_parser import (
    POSITIONAL_PREFIX,
    AlterTableStatement,
    CreateIndexStatement,
    CreateTableStatement,
    CreateViewStatement,
    DeleteStatement,
    DropStatement,
    InsertStatement,
    QueryStatement,
    SQLParser,
    Statement,
    StatementType,
    TransactionStatement,
    UpdateStatement,
)
from reldb.application.evaluator import (
    EvaluationContext,
    ExpressionCompiler,
    Field,
    Scope,
)
from reldb.application.planner import QueryPlan, QueryPlanner
from reldb.domain.entities import Column, RowVersion, Snapshot, TableSchema
from reldb.domain.errors import (
    ArithmeticFailure,
    ColumnNotFound,
    NotNullViolation,
    ParameterError,
    SQLSyntaxError,
    TypeMismatch,
    TypeNarrowing,
)
from reldb.domain.services.catalog import (
    AddColumn,
    AddConstraint,
    AlterColumnType,
    Catalog,
    DDLResult,
    DropColumn,
    SetColumnNullable,
    TableChange,
)
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.services.storage_engine import StorageEngine, table_resource
from reldb.domain.services.trigger_registry import (
    TriggerContext,
    TriggerEvent,
    TriggerRegistry,
    TriggerTiming,
)
from reldb.domain.value_objects import TEXT, ColumnType, LockMode, infer_type
from reldb.domain.entities.schema import CheckConstraint, ForeignKey
from reldb.infrastructure.logging import get_logger
from reldb.ports.inbound.transaction_manager import Transaction

logger = get_logger(__name__, component="executor")


@dataclass
class Row:
    """A row of data returned by the executor.

    Rows can be accessed by column name or index.
    """

    columns: list[str]
    values: list[Any]

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return self.values[key]
        try:
            idx = self.columns.index(key)
            return self.values[idx]
        except ValueError as e:
            raise KeyError(f"Column '{key}' not found") from e

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def as_dict(self) -> dict[str, Any]:
        return dict(zip(self.columns, self.values))

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        pairs = ", ".join(f"{c}={v!r}" for c, v in zip(self.columns, self.values))
        return f"Row({pairs})"


@dataclass
class ExecutionResult:
    """Result of one statement.

    Attributes:
        rows: Result rows of a query, in order
        columns: Result column names
        column_types: SQL type names of the result columns
        affected_rows: Rows written by INSERT/UPDATE/DELETE
        message: Status message of DDL and transaction control
        statement_type: Kind of statement that produced the result
    """

    rows: list[Row] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    column_types: list[str] = field(default_factory=list)
    affected_rows: int = 0
    message: str = ""
    statement_type: StatementType | None = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def scalar(self) -> Any:
        """First column of the first row, or None for an empty result."""
        return self.rows[0][0] if self.rows else None

    def tuples(self) -> list[tuple]:
        return [tuple(r.values) for r in self.rows]


def bind_parameters(
    statement: Statement, params: Sequence[Any] | Mapping[str, Any] | None
) -> dict[str, Any]:
    """Map a statement's placeholders to the supplied values.

    Positional ``?`` markers take a sequence, named ``:name`` markers a
    mapping.

    Raises:
        ParameterError: Missing, surplus or wrongly shaped parameters
    """
    names = statement.parameters
    if not names:
        if params:
            raise ParameterError("statement has no parameter markers")
        return {}

    if names[0].startswith(POSITIONAL_PREFIX):
        if params is None or isinstance(params, (Mapping, str, bytes)):
            raise ParameterError(
                f"statement expects {len(names)} positional parameter(s) as a sequence"
            )
        values = list(params)
        if len(values) != len(names):
            raise ParameterError(
                f"statement expects {len(names)} parameter(s), {len(values)} given"
            )
        return {name: _parameter_value(v) for name, v in zip(names, values)}

    if not isinstance(params, Mapping):
        raise ParameterError("named parameters require a mapping")
    for name in names:
        if name not in params:
            raise ParameterError(f"no value supplied for parameter :{name}", parameter=name)
    return {name: _parameter_value(params[name]) for name in names}


def _parameter_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(repr(value))
    return value


def _is_default_marker(node: exp.Expression) -> bool:
    if isinstance(node, exp.Var):
        return node.name.upper() == "DEFAULT"
    return isinstance(node, exp.Column) and not node.table and node.name.upper() == "DEFAULT"


class StatementExecutor:
    """Executes statements against catalog and storage.

    One executor serves every session; per-statement state lives in the
    compiler and planner created for each statement.
    """

    def __init__(
        self,
        catalog: Catalog,
        storage: StorageEngine,
        lock_manager: LockManager,
        triggers: TriggerRegistry,
        parser: SQLParser,
        max_recursion_depth: int = 1000,
    ) -> None:
        self._catalog = catalog
        self._storage = storage
        self._locks = lock_manager
        self._triggers = triggers
        self._parser = parser
        self._max_recursion_depth = max_recursion_depth

    def execute(
        self,
        statement: Statement,
        txn: Transaction,
        snapshot: Snapshot,
        params: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute a non-transaction-control statement in txn.

        Raises:
            DatabaseError: Any statement failure; undoing partial effects is
                the caller's job (savepoint)
        """
        if isinstance(statement, TransactionStatement):
            raise SQLSyntaxError(
                f"{statement.statement_type.value.upper()} cannot run inside a statement"
            )
        context = EvaluationContext(params=dict(params or {}), now=datetime.datetime.now())
        compiler = ExpressionCompiler(context)
        planner = QueryPlanner(
            self._catalog,
            self._storage,
            txn,
            snapshot,
            compiler,
            self._parser,
            self._max_recursion_depth,
        )

        if isinstance(statement, QueryStatement):
            return self._query(planner, statement.query)
        if isinstance(statement, InsertStatement):
            return self._insert(txn, snapshot, planner, statement)
        if isinstance(statement, UpdateStatement):
            return self._update(txn, snapshot, planner, statement)
        if isinstance(statement, DeleteStatement):
            return self._delete(txn, snapshot, planner, statement)
        if isinstance(statement, CreateTableStatement):
            return self._create_table(txn, planner, statement)
        if isinstance(statement, AlterTableStatement):
            return self._alter_table(txn, planner, statement)
        if isinstance(statement, DropStatement):
            return self._drop(txn, statement)
        if isinstance(statement, CreateIndexStatement):
            return self._create_index(txn, statement)
        if isinstance(statement, CreateViewStatement):
            return self._create_view(txn, planner, statement)
        raise SQLSyntaxError(f"unsupported statement: {type(statement).__name__}")

    # Queries

    def _query(self, planner: QueryPlanner, query: exp.Expression) -> ExecutionResult:
        plan = planner.plan_query(query)
        values = list(plan.operator.execute(()))
        columns = plan.columns
        return ExecutionResult(
            rows=[Row(columns, list(v)) for v in values],
            columns=columns,
            column_types=self._result_types(plan, values),
            statement_type=StatementType.SELECT,
        )

    @staticmethod
    def _column_types(plan: QueryPlan, rows: list[tuple]) -> list[ColumnType]:
        """Static plan types, falling back to the first non-NULL value."""
        types = []
        for i, column_type in enumerate(plan.types):
            if column_type is None:
                column_type = next(
                    (infer_type(r[i]) for r in rows if r[i] is not None), None
                ) or TEXT
            types.append(column_type)
        return types

    def _result_types(self, plan: QueryPlan, rows: list[tuple]) -> list[str]:
        return [str(t) for t in self._column_types(plan, rows)]

    # INSERT

    def _insert(
        self,
        txn: Transaction,
        snapshot: Snapshot,
        planner: QueryPlanner,
        statement: InsertStatement,
    ) -> ExecutionResult:
        schema = self._writable_table(txn, statement.table)
        columns = list(statement.columns) if statement.columns is not None else schema.column_names
        seen: set[str] = set()
        for name in columns:
            if not schema.has_column(name):
                raise ColumnNotFound(
                    f'column "{name}" of relation "{schema.name}" does not exist',
                    table=schema.name,
                    column=name,
                )
            if name in seen:
                raise SQLSyntaxError(f'column "{name}" specified more than once')
            seen.add(name)

        rows = self._insert_rows(planner, statement.source, len(columns))
        execute = self._trigger_executor(txn, snapshot)
        count = 0
        for row in rows:
            values = {
                name: value for name, value in zip(columns, row) if value is not _DEFAULT
            }
            values = self._fire(
                schema.name, TriggerEvent.INSERT, TriggerTiming.BEFORE, txn, None, values, execute
            )
            version = self._storage.insert(txn, schema, values)
            self._fire(
                schema.name, TriggerEvent.INSERT, TriggerTiming.AFTER, txn, None,
                dict(version.values), execute,
            )
            count += 1

        logger.debug("rows_inserted", table=schema.name, count=count, txn_id=txn.txn_id)
        return ExecutionResult(
            affected_rows=count,
            message=f"OK: {count} row(s) inserted",
            statement_type=StatementType.INSERT,
        )

    def _insert_rows(
        self, planner: QueryPlanner, source: exp.Expression, width: int
    ) -> list[tuple]:
        """Materialize the rows to insert before any write."""
        if isinstance(source, exp.Values) and not source.args.get("order") and not source.args.get("limit"):
            scope = Scope([])
            rows = []
            for item in source.expressions:
                expressions = list(item.expressions) if isinstance(item, exp.Tuple) else [item]
                self._check_width(len(expressions), width)
                rows.append(tuple(
                    _DEFAULT if _is_default_marker(e) else planner.compiler.compile(e, scope)((), ())
                    for e in expressions
                ))
            return rows

        plan = planner.plan_query(source)
        self._check_width(len(plan.fields), width)
        return list(plan.operator.execute(()))

    @staticmethod
    def _check_width(given: int, width: int) -> None:
        if given > width:
            raise SQLSyntaxError("INSERT has more expressions than target columns")
        if given < width:
            raise SQLSyntaxError("INSERT has more target columns than expressions")

    # UPDATE and DELETE

    def _targets(
        self,
        txn: Transaction,
        snapshot: Snapshot,
        planner: QueryPlanner,
        schema: TableSchema,
        alias: str | None,
        where: exp.Expression | None,
    ) -> tuple[list[RowVersion], Callable[[RowVersion], bool], Scope]:
        """Phase one: the versions the statement's snapshot selects."""
        qualifier = alias or schema.name
        scope = Scope([Field(c.name, qualifier, c.type) for c in schema.columns])
        names = schema.column_names

        if where is None:
            def matches(version: RowVersion) -> bool:
                return True
        else:
            predicate = planner.compiler.compile_predicate(where, scope)

            def matches(version: RowVersion) -> bool:
                values = version.values
                return predicate(tuple(values.get(c) for c in names), ())

        return list(self._storage.scan(txn, schema, snapshot, matches)), matches, scope

    def _update(
        self,
        txn: Transaction,
        snapshot: Snapshot,
        planner: QueryPlanner,
        statement: UpdateStatement,
    ) -> ExecutionResult:
        schema = self._writable_table(txn, statement.table)
        targets, matches, scope = self._targets(
            txn, snapshot, planner, schema, statement.alias, statement.where
        )

        assignments: list[tuple[str, Callable[..., Any]]] = []
        assigned: set[str] = set()
        for name, expression in statement.assignments:
            if not schema.has_column(name):
                raise ColumnNotFound(
                    f'column "{name}" of relation "{schema.name}" does not exist',
                    table=schema.name,
                    column=name,
                )
            if name in assigned:
                raise SQLSyntaxError(f'multiple assignments to same column "{name}"')
            assigned.add(name)
            if _is_default_marker(expression):
                assignments.append((name, self._default_of(planner, schema, schema.column(name))))
            else:
                assignments.append((name, planner.compiler.compile(expression, scope)))

        names = schema.column_names
        execute = self._trigger_executor(txn, snapshot)
        count = 0
        for version in targets:
            head = self._storage.lock_row(txn, schema, version)
            if head is None or (head is not version and not matches(head)):
                continue
            row = tuple(head.values.get(c) for c in names)
            new = dict(head.values)
            for name, compiled in assignments:
                new[name] = compiled(row, ())
            new = self._fire(
                schema.name, TriggerEvent.UPDATE, TriggerTiming.BEFORE, txn,
                dict(head.values), new, execute,
            )
            changes = {
                name: value
                for name, value in new.items()
                if name in assigned or value != head.values.get(name)
            }
            updated = self._storage.update(txn, schema, head, changes)
            self._fire(
                schema.name, TriggerEvent.UPDATE, TriggerTiming.AFTER, txn,
                dict(head.values), dict(updated.values), execute,
            )
            count += 1

        logger.debug("rows_updated", table=schema.name, count=count, txn_id=txn.txn_id)
        return ExecutionResult(
            affected_rows=count,
            message=f"OK: {count} row(s) updated",
            statement_type=StatementType.UPDATE,
        )

    def _default_of(
        self, planner: QueryPlanner, schema: TableSchema, column: Column
    ) -> Callable[..., Any]:
        """Per-row producer of a column's default value."""
        if column.default is not None:
            compiled = planner.compiler.compile(column.default, Scope([]))
            return lambda row, outer: compiled((), ())
        if column.auto_increment:
            return lambda row, outer: self._storage.next_sequence_value(schema, column.name)
        return lambda row, outer: None

    def _delete(
        self,
        txn: Transaction,
        snapshot: Snapshot,
        planner: QueryPlanner,
        statement: DeleteStatement,
    ) -> ExecutionResult:
        schema = self._writable_table(txn, statement.table)
        targets, matches, _ = self._targets(
            txn, snapshot, planner, schema, statement.alias, statement.where
        )
        execute = self._trigger_executor(txn, snapshot)
        count = 0
        for version in targets:
            head = self._storage.lock_row(txn, schema, version)
            if head is None or (head is not version and not matches(head)):
                continue
            old = dict(head.values)
            self._fire(schema.name, TriggerEvent.DELETE, TriggerTiming.BEFORE, txn, old, None, execute)
            self._storage.delete(txn, schema, head)
            self._fire(schema.name, TriggerEvent.DELETE, TriggerTiming.AFTER, txn, old, None, execute)
            count += 1

        logger.debug("rows_deleted", table=schema.name, count=count, txn_id=txn.txn_id)
        return ExecutionResult(
            affected_rows=count,
            message=f"OK: {count} row(s) deleted",
            statement_type=StatementType.DELETE,
        )

    def _writable_table(self, txn: Transaction, name: str) -> TableSchema:
        if self._catalog.get_view(txn, name) is not None:
            raise SQLSyntaxError(f'cannot change view "{name}"')
        return self._catalog.get_table(txn, name)

    # Triggers

    def _fire(
        self,
        table: str,
        event: TriggerEvent,
        timing: TriggerTiming,
        txn: Transaction,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
        execute: Callable[..., ExecutionResult],
    ) -> dict[str, Any] | None:
        if not self._triggers.has_triggers(table, event):
            return new
        context = TriggerContext(
            table=table,
            event=event,
            timing=timing,
            txn_id=txn.txn_id,
            old=old,
            new=new,
            execute=execute,
        )
        return self._triggers.fire(context)

    def _trigger_executor(
        self, txn: Transaction, snapshot: Snapshot
    ) -> Callable[..., ExecutionResult]:
        """Run SQL from a trigger callback inside the writing transaction."""

        def execute(sql: str, params: Sequence[Any] | Mapping[str, Any] | None = None) -> ExecutionResult:
            statement = self._parser.parse(sql)
            if isinstance(statement, TransactionStatement):
                raise SQLSyntaxError("transaction control is not allowed in triggers")
            return self.execute(statement, txn, snapshot, bind_parameters(statement, params))

        return execute

    # DDL

    def _lock_exclusive(self, txn: Transaction, table: str) -> None:
        self._locks.acquire(txn.txn_id, table_resource(table), LockMode.EXCLUSIVE)

    def _apply_indexes(self, txn: Transaction, result: DDLResult) -> None:
        state = self._catalog.state_of(txn)
        for definition in result.dropped_indexes:
            self._storage.drop_index(txn, definition)
        for definition in result.added_indexes:
            schema = state.table(definition.table)
            assert schema is not None
            self._storage.build_index(txn, definition, schema)

    def _create_table(
        self, txn: Transaction, planner: QueryPlanner, statement: CreateTableStatement
    ) -> ExecutionResult:
        schema = statement.schema
        rows: list[tuple] = []
        if statement.query is not None:
            plan = planner.plan_query(statement.query)
            rows = list(plan.operator.execute(()))
            if len(set(plan.columns)) != len(plan.columns):
                raise SQLSyntaxError(f'query for table "{schema.name}" has duplicate column names')
            columns = tuple(
                Column(f.name, t) for f, t in zip(plan.fields, self._column_types(plan, rows))
            )
            schema = TableSchema(name=schema.name, columns=columns)

        self._lock_exclusive(txn, schema.name)
        result = self._catalog.define_table(txn, schema, statement.if_not_exists)
        if result is None:
            return ExecutionResult(
                message=f"OK: Table '{schema.name}' already exists",
                statement_type=StatementType.CREATE_TABLE,
            )
        created = result.schema
        assert created is not None
        self._storage.create_table(txn, created)
        self._apply_indexes(txn, result)

        for row in rows:
            self._storage.insert(txn, created, dict(zip(created.column_names, row)))

        logger.info("table_created", table=created.name, txn_id=txn.txn_id)
        return ExecutionResult(
            affected_rows=len(rows),
            message=f"OK: Table '{created.name}' created",
            statement_type=StatementType.CREATE_TABLE,
        )

    def _alter_table(
        self, txn: Transaction, planner: QueryPlanner, statement: AlterTableStatement
    ) -> ExecutionResult:
        name = statement.table
        if self._catalog.state_of(txn).table(name) is None and statement.if_exists:
            return ExecutionResult(
                message=f"OK: Table '{name}' does not exist",
                statement_type=StatementType.ALTER_TABLE,
            )
        self._lock_exclusive(txn, name)
        for change in statement.changes:
            before = self._catalog.get_table(txn, name)
            result = self._catalog.alter_table(txn, name, change)
            after = result.schema
            assert after is not None
            self._migrate_rows(txn, planner, before, after, change)
            self._apply_indexes(txn, result)

        logger.info("table_altered", table=name, changes=len(statement.changes), txn_id=txn.txn_id)
        return ExecutionResult(
            message=f"OK: Table '{name}' altered",
            statement_type=StatementType.ALTER_TABLE,
        )

    def _migrate_rows(
        self,
        txn: Transaction,
        planner: QueryPlanner,
        before: TableSchema,
        after: TableSchema,
        change: TableChange,
    ) -> None:
        """Bring existing rows in line with an ALTER TABLE change."""
        storage = self._storage

        if isinstance(change, AddColumn):
            if before.has_column(change.column.name):
                return
            column = after.column(change.column.name)
            default = self._default_of(planner, after, column)

            def add(values: dict[str, Any]) -> dict[str, Any]:
                value = default((), ())
                if value is None and not column.nullable:
                    raise NotNullViolation(
                        f'column "{column.name}" of relation "{after.name}" contains null values',
                        constraint=column.name,
                        table=after.name,
                    )
                values[column.name] = column.type.coerce(value)
                return values

            storage.rewrite_rows(txn, after, add)

        elif isinstance(change, DropColumn):
            if not before.has_column(change.name):
                return

            def drop(values: dict[str, Any]) -> dict[str, Any]:
                values.pop(change.name, None)
                return values

            storage.rewrite_rows(txn, after, drop)

        elif isinstance(change, AlterColumnType):
            column = after.column(change.name)

            def convert(values: dict[str, Any]) -> dict[str, Any]:
                try:
                    values[column.name] = column.type.coerce(values.get(column.name), lossless=True)
                except (TypeMismatch, ArithmeticFailure) as e:
                    raise TypeNarrowing(
                        f'column "{column.name}" cannot be cast to type {column.type}: {e.message}',
                        table=after.name,
                        column=column.name,
                    ) from e
                return values

            storage.rewrite_rows(txn, after, convert)

        elif isinstance(change, SetColumnNullable) and not change.nullable:
            for version in storage.live_rows(txn, after):
                if version.values.get(change.name) is None:
                    raise NotNullViolation(
                        f'column "{change.name}" of relation "{after.name}" contains null values',
                        constraint=change.name,
                        table=after.name,
                    )

        elif isinstance(change, AddConstraint):
            constraint = change.constraint
            if isinstance(constraint, CheckConstraint):
                check = next(c for c in after.checks if c.sql == constraint.sql)
                for version in storage.live_rows(txn, after):
                    storage.check_constraint(after, check, version.values)
            elif isinstance(constraint, ForeignKey):
                state = self._catalog.state_of(txn)
                fk = next(
                    f for f in after.foreign_keys
                    if f.columns == constraint.columns and f.ref_table == constraint.ref_table
                )
                for version in storage.live_rows(txn, after):
                    storage.check_foreign_key(txn, state, after, fk, version.values)

    def _drop(self, txn: Transaction, statement: DropStatement) -> ExecutionResult:
        kind = statement.statement_type
        dropped = 0
        for name in statement.names:
            if kind == StatementType.DROP_TABLE:
                if self._catalog.get_view(txn, name) is not None:
                    raise SQLSyntaxError(f'"{name}" is not a table; use DROP VIEW')
                self._lock_exclusive(txn, name)
                result = self._catalog.drop_table(txn, name, statement.cascade, statement.if_exists)
                if result is None:
                    continue
                assert result.schema is not None
                self._storage.drop_table(txn, result.schema)
                self._apply_indexes(txn, result)
                txn.on_commit(lambda table=name: self._triggers.drop_table(table))
            elif kind == StatementType.DROP_VIEW:
                if not self._catalog.drop_view(txn, name, statement.if_exists):
                    continue
            else:
                state = self._catalog.state_of(txn)
                definition = state.indexes.get(name)
                if definition is not None:
                    self._lock_exclusive(txn, definition.table)
                definition = self._catalog.drop_index(txn, name, statement.if_exists)
                if definition is None:
                    continue
                self._storage.drop_index(txn, definition)
            dropped += 1

        noun = kind.value.split("_", 1)[1]
        logger.info(f"{noun}_dropped", names=list(statement.names), dropped=dropped, txn_id=txn.txn_id)
        return ExecutionResult(
            message=f"OK: {dropped} {noun}(s) dropped",
            statement_type=kind,
        )

    def _create_index(self, txn: Transaction, statement: CreateIndexStatement) -> ExecutionResult:
        index = statement.index
        self._lock_exclusive(txn, index.table)
        if not self._catalog.define_index(txn, index, statement.if_not_exists):
            return ExecutionResult(
                message=f"OK: Index '{index.name}' already exists",
                statement_type=StatementType.CREATE_INDEX,
            )
        schema = self._catalog.get_table(txn, index.table)
        self._storage.build_index(txn, index, schema)
        logger.info("index_created", index=index.name, table=index.table, txn_id=txn.txn_id)
        return ExecutionResult(
            message=f"OK: Index '{index.name}' created",
            statement_type=StatementType.CREATE_INDEX,
        )

    def _create_view(
        self, txn: Transaction, planner: QueryPlanner, statement: CreateViewStatement
    ) -> ExecutionResult:
        view = statement.view
        # Resolve the body now so a broken view is rejected at definition time.
        plan = planner.plan_query(statement.query)
        if len(view.column_names) > len(plan.fields):
            raise SQLSyntaxError("CREATE VIEW specifies more column names than columns")
        names = list(view.column_names) + plan.columns[len(view.column_names):]
        if len(set(names)) != len(names):
            raise SQLSyntaxError(f'view "{view.name}" has duplicate column names')
        self._catalog.define_view(txn, view, statement.or_replace)
        logger.info("view_created", view=view.name, txn_id=txn.txn_id)
        return ExecutionResult(
            message=f"OK: View '{view.name}' created",
            statement_type=StatementType.CREATE_VIEW,
        )


class _DefaultMarker:
    def __repr__(self) -> str:
        return "DEFAULT"


_DEFAULT = _DefaultMarker()
