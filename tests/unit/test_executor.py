"""Unit tests for the statement executor."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable

import pytest

from reldb.adapters.inbound import SQLParser, StatementType
from reldb.application import ExecutionResult, Row, StatementExecutor, bind_parameters
from reldb.domain.errors import (
    ColumnNotFound,
    NotNullViolation,
    ParameterError,
    SQLSyntaxError,
    TableNotFound,
)
from reldb.domain.services import (
    Catalog,
    LockManager,
    MVCCTransactionManager,
    StorageEngine,
    TriggerRegistry,
)
from reldb.infrastructure.container import Container

pytestmark = pytest.mark.unit

parser = SQLParser()


class TestRow:
    """Tests for result rows."""

    def test_access_by_name_and_index(self) -> None:
        """Rows read values by column name or position."""
        row = Row(["id", "name"], [1, "ann"])

        assert row["name"] == "ann"
        assert row[0] == 1
        assert row.get("missing", "x") == "x"
        assert row.as_dict() == {"id": 1, "name": "ann"}
        assert len(row) == 2
        assert repr(row) == "Row(id=1, name='ann')"

    def test_unknown_column(self) -> None:
        """Unknown names raise KeyError."""
        with pytest.raises(KeyError):
            Row(["id"], [1])["name"]


class TestExecutionResult:
    """Tests for statement results."""

    def test_scalar_and_tuples(self) -> None:
        """scalar() reads the first cell; tuples() flattens the rows."""
        result = ExecutionResult(
            rows=[Row(["n"], [3]), Row(["n"], [4])], columns=["n"]
        )
        assert result.scalar() == 3
        assert result.tuples() == [(3,), (4,)]
        assert result.row_count == 2
        assert ExecutionResult().scalar() is None


class TestBindParameters:
    """Tests for mapping parameter values to placeholders."""

    def test_positional(self) -> None:
        """Sequences bind in order; floats become decimals."""
        statement = parser.parse("SELECT * FROM t WHERE a = ? AND b = ?")
        assert bind_parameters(statement, [1, 2.5]) == {
            "__p1": 1,
            "__p2": Decimal("2.5"),
        }

    def test_positional_count_mismatch(self) -> None:
        """Too few or too many values are rejected."""
        statement = parser.parse("SELECT * FROM t WHERE a = ?")
        with pytest.raises(ParameterError):
            bind_parameters(statement, [])
        with pytest.raises(ParameterError):
            bind_parameters(statement, [1, 2])
        with pytest.raises(ParameterError):
            bind_parameters(statement, {"a": 1})

    def test_named(self) -> None:
        """Mappings bind by name; extra keys are ignored."""
        statement = parser.parse("SELECT * FROM t WHERE a = :a")
        assert bind_parameters(statement, {"a": "x", "unused": 1}) == {"a": "x"}
        with pytest.raises(ParameterError):
            bind_parameters(statement, {"b": 1})

    def test_values_without_markers(self) -> None:
        """Supplying values to a statement without markers is an error."""
        statement = parser.parse("SELECT 1")
        assert bind_parameters(statement, None) == {}
        with pytest.raises(ParameterError):
            bind_parameters(statement, [1])


@pytest.fixture
def executor(container: Container) -> StatementExecutor:
    return StatementExecutor(
        container.resolve(Catalog),
        container.resolve(StorageEngine),
        container.resolve(LockManager),
        container.resolve(TriggerRegistry),
        parser,
    )


@pytest.fixture
def run(container: Container, executor: StatementExecutor) -> Callable[..., ExecutionResult]:
    """Run one statement in its own committed transaction."""
    tm = container.resolve(MVCCTransactionManager)

    def run_statement(sql: str, params: Any = None) -> ExecutionResult:
        statement = parser.parse(sql)
        txn = tm.begin()
        try:
            snapshot = tm.begin_statement(txn)
            result = executor.execute(statement, txn, snapshot, bind_parameters(statement, params))
        except Exception:
            tm.abort(txn)
            raise
        tm.commit(txn)
        return result

    return run_statement


class TestStatementExecutor:
    """Tests for running statements through the executor."""

    def test_create_insert_select(self, run: Callable[..., ExecutionResult]) -> None:
        """Rows written by one statement are read by the next."""
        created = run("CREATE TABLE users (id SERIAL PRIMARY KEY, name TEXT NOT NULL, score DECIMAL(5, 1))")
        assert created.message == "OK: Table 'users' created"
        assert created.statement_type == StatementType.CREATE_TABLE

        inserted = run("INSERT INTO users (name, score) VALUES ('ann', 9.5), ('bob', ?)", [7])
        assert inserted.affected_rows == 2
        assert inserted.message == "OK: 2 row(s) inserted"

        result = run("SELECT id, name, score FROM users ORDER BY id")
        assert result.columns == ["id", "name", "score"]
        assert result.column_types == ["INTEGER", "TEXT", "DECIMAL(5,1)"]
        assert result.tuples() == [(1, "ann", Decimal("9.5")), (2, "bob", Decimal("7.0"))]

    def test_update_and_delete(self, run: Callable[..., ExecutionResult]) -> None:
        """UPDATE and DELETE report the rows they changed."""
        run("CREATE TABLE t (k INTEGER, v INTEGER)")
        run("INSERT INTO t VALUES (1, 10), (2, 20), (3, 30)")

        assert run("UPDATE t SET v = v + 1 WHERE k >= 2").affected_rows == 2
        assert run("DELETE FROM t WHERE v > 30").affected_rows == 1
        assert run("SELECT k, v FROM t ORDER BY k").tuples() == [(1, 10), (2, 21)]

    def test_insert_default_keyword(self, run: Callable[..., ExecutionResult]) -> None:
        """DEFAULT in VALUES takes the column default."""
        run("CREATE TABLE t (k INTEGER, status TEXT DEFAULT 'new')")
        run("INSERT INTO t VALUES (1, DEFAULT)")
        assert run("SELECT status FROM t").scalar() == "new"

    def test_insert_errors(self, run: Callable[..., ExecutionResult]) -> None:
        """Unknown columns, repeated columns and NULLs in NOT NULL columns fail."""
        run("CREATE TABLE t (k INTEGER NOT NULL)")
        with pytest.raises(ColumnNotFound):
            run("INSERT INTO t (nope) VALUES (1)")
        with pytest.raises(SQLSyntaxError):
            run("INSERT INTO t (k, k) VALUES (1, 2)")
        with pytest.raises(NotNullViolation):
            run("INSERT INTO t VALUES (NULL)")
        assert run("SELECT COUNT(*) FROM t").scalar() == 0

    def test_create_if_not_exists(self, run: Callable[..., ExecutionResult]) -> None:
        """An existing table is reported, not replaced."""
        run("CREATE TABLE t (k INTEGER)")
        result = run("CREATE TABLE IF NOT EXISTS t (other TEXT)")
        assert result.message == "OK: Table 't' already exists"

    def test_create_table_as(self, run: Callable[..., ExecutionResult]) -> None:
        """CTAS copies the query result and its column types."""
        run("CREATE TABLE src (k INTEGER, name TEXT)")
        run("INSERT INTO src VALUES (1, 'a'), (2, 'b')")

        created = run("CREATE TABLE dst AS SELECT k * 10 AS k10, name FROM src")
        assert created.affected_rows == 2
        result = run("SELECT * FROM dst ORDER BY k10")
        assert result.columns == ["k10", "name"]
        assert result.tuples() == [(10, "a"), (20, "b")]

    def test_drop_messages(self, run: Callable[..., ExecutionResult]) -> None:
        """DROP counts what it removed; IF EXISTS skips missing names."""
        run("CREATE TABLE a (k INTEGER)")
        assert run("DROP TABLE IF EXISTS a, b").message == "OK: 1 table(s) dropped"
        with pytest.raises(TableNotFound):
            run("SELECT * FROM a")

    def test_drop_table_on_view(self, run: Callable[..., ExecutionResult]) -> None:
        """DROP TABLE refuses views."""
        run("CREATE TABLE t (k INTEGER)")
        run("CREATE VIEW v AS SELECT k FROM t")
        with pytest.raises(SQLSyntaxError):
            run("DROP TABLE v")

    def test_transaction_control_rejected(
        self, container: Container, executor: StatementExecutor
    ) -> None:
        """COMMIT is the engine's job, not the executor's."""
        tm = container.resolve(MVCCTransactionManager)
        txn = tm.begin()
        with pytest.raises(SQLSyntaxError):
            executor.execute(parser.parse("COMMIT"), txn, tm.begin_statement(txn))
        tm.abort(txn)
