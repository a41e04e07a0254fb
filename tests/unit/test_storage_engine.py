"""Unit tests for the versioned storage engine and its constraint checks."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from reldb.adapters.inbound.sql_parser import SQLParser
from reldb.adapters.outbound import InMemoryCommitLog
from reldb.application.evaluator import RowExpressionEvaluator
from reldb.domain.entities import (
    CheckConstraint,
    Column,
    ForeignKey,
    IndexDefinition,
    ReferentialAction,
    TableSchema,
    UniqueConstraint,
)
from reldb.domain.errors import (
    CheckViolation,
    ColumnNotFound,
    ForeignKeyViolation,
    NotNullViolation,
    SerializationFailure,
    UniqueViolation,
)
from reldb.domain.services import (
    BTreeIndexManager,
    Catalog,
    LockManager,
    MVCCTransactionManager,
    StorageEngine,
)
from reldb.domain.value_objects import INTEGER, TEXT, IsolationLevel
from reldb.ports.inbound.transaction_manager import Transaction

pytestmark = pytest.mark.unit

parser = SQLParser()


@dataclass
class Stack:
    catalog: Catalog
    storage: StorageEngine
    tm: MVCCTransactionManager

    def begin(self, isolation: IsolationLevel | None = None) -> Transaction:
        txn = self.tm.begin(isolation)
        self.tm.begin_statement(txn)
        return txn

    def create(self, schema: TableSchema) -> TableSchema:
        txn = self.begin()
        result = self.catalog.define_table(txn, schema)
        self.storage.create_table(txn, result.schema)
        for index in result.added_indexes:
            self.storage.build_index(txn, index, result.schema)
        self.tm.commit(txn)
        return result.schema

    def table(self, txn: Transaction, name: str) -> TableSchema:
        return self.catalog.get_table(txn, name)

    def rows(self, txn: Transaction, name: str) -> list[dict]:
        schema = self.table(txn, name)
        snapshot = self.tm.begin_statement(txn)
        return [v.values for v in self.storage.scan(txn, schema, snapshot)]


@pytest.fixture
def stack() -> Stack:
    catalog = Catalog()
    lock_manager = LockManager(timeout_ms=200)
    storage = StorageEngine(BTreeIndexManager(max_keys=4), lock_manager, RowExpressionEvaluator())
    tm = MVCCTransactionManager(catalog, storage, lock_manager, InMemoryCommitLog())
    return Stack(catalog, storage, tm)


def items_schema() -> TableSchema:
    return TableSchema(
        name="items",
        columns=(
            Column("id", INTEGER, auto_increment=True),
            Column("name", TEXT, nullable=False),
            Column(
                "status",
                TEXT,
                default_sql="'new'",
                default=parser.parse_expression("'new'"),
            ),
            Column("qty", INTEGER),
        ),
        primary_key=UniqueConstraint("", ("id",), primary=True),
        unique_constraints=(UniqueConstraint("", ("name",)),),
        checks=(
            CheckConstraint("", "qty > 0", parser.parse_expression("qty > 0"), frozenset({"qty"})),
        ),
    )


class TestInsert:
    """Tests for inserting rows."""

    def test_defaults_and_sequence(self, stack: Stack) -> None:
        """Missing columns take their default; auto-increment fills ids."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")

        first = stack.storage.insert(txn, schema, {"name": "a", "qty": 1})
        second = stack.storage.insert(txn, schema, {"name": "b"})

        assert first.values == {"id": 1, "name": "a", "status": "new", "qty": 1}
        assert second.values["id"] == 2
        assert second.values["qty"] is None

    def test_explicit_id_advances_sequence(self, stack: Stack) -> None:
        """An explicit id moves the sequence past it."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")

        stack.storage.insert(txn, schema, {"id": 10, "name": "a"})
        row = stack.storage.insert(txn, schema, {"name": "b"})
        assert row.values["id"] == 11

    def test_unknown_column(self, stack: Stack) -> None:
        """Values for undefined columns are rejected."""
        stack.create(items_schema())
        txn = stack.begin()
        with pytest.raises(ColumnNotFound):
            stack.storage.insert(txn, stack.table(txn, "items"), {"name": "a", "color": "red"})

    def test_not_null(self, stack: Stack) -> None:
        """NOT NULL columns reject missing values."""
        stack.create(items_schema())
        txn = stack.begin()
        with pytest.raises(NotNullViolation) as exc_info:
            stack.storage.insert(txn, stack.table(txn, "items"), {"qty": 1})
        assert exc_info.value.constraint == "items_name_not_null"

    def test_check_false_fails_null_passes(self, stack: Stack) -> None:
        """CHECK rejects FALSE but accepts NULL."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")

        with pytest.raises(CheckViolation):
            stack.storage.insert(txn, schema, {"name": "a", "qty": 0})
        stack.storage.insert(txn, schema, {"name": "b", "qty": None})

    def test_unique(self, stack: Stack) -> None:
        """Duplicate keys are rejected; the name of the constraint is reported."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        stack.storage.insert(txn, schema, {"name": "a"})

        with pytest.raises(UniqueViolation) as exc_info:
            stack.storage.insert(txn, schema, {"name": "a"})
        assert exc_info.value.constraint == "items_name_key"

    def test_unique_key_reusable_after_delete(self, stack: Stack) -> None:
        """Deleting a row frees its key within the same transaction."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        row = stack.storage.insert(txn, schema, {"name": "a"})
        stack.storage.delete(txn, schema, stack.storage.lock_row(txn, schema, row))

        stack.storage.insert(txn, schema, {"name": "a"})
        assert [r["name"] for r in stack.rows(txn, "items")] == ["a"]


class TestVisibility:
    """Tests for MVCC visibility through commit and rollback."""

    def test_uncommitted_insert_is_private(self, stack: Stack) -> None:
        """Other transactions see a row only after commit."""
        stack.create(items_schema())
        writer = stack.begin()
        stack.storage.insert(writer, stack.table(writer, "items"), {"name": "a"})

        reader = stack.begin()
        assert stack.rows(reader, "items") == []
        assert len(stack.rows(writer, "items")) == 1

        stack.tm.commit(writer)
        assert len(stack.rows(reader, "items")) == 1

    def test_rollback_removes_rows_but_not_sequence(self, stack: Stack) -> None:
        """Aborted inserts vanish; consumed sequence values are not reused."""
        stack.create(items_schema())
        txn = stack.begin()
        stack.storage.insert(txn, stack.table(txn, "items"), {"name": "a"})
        stack.tm.abort(txn)

        txn = stack.begin()
        assert stack.rows(txn, "items") == []
        row = stack.storage.insert(txn, stack.table(txn, "items"), {"name": "b"})
        assert row.values["id"] == 2

    def test_old_snapshot_sees_old_version(self, stack: Stack) -> None:
        """A pinned snapshot keeps reading the version it started with."""
        stack.create(items_schema())
        setup = stack.begin()
        stack.storage.insert(setup, stack.table(setup, "items"), {"name": "a", "qty": 1})
        stack.tm.commit(setup)

        reader = stack.begin(IsolationLevel.REPEATABLE_READ)
        assert stack.rows(reader, "items")[0]["qty"] == 1

        writer = stack.begin()
        schema = stack.table(writer, "items")
        version = next(stack.storage.scan(writer, schema, writer.snapshot))
        stack.storage.update(writer, schema, stack.storage.lock_row(writer, schema, version), {"qty": 5})
        stack.tm.commit(writer)

        assert stack.rows(reader, "items")[0]["qty"] == 1
        assert stack.rows(stack.begin(), "items")[0]["qty"] == 5

    def test_lock_row_conflict_under_repeatable_read(self, stack: Stack) -> None:
        """Updating a row changed since the snapshot is a serialization failure."""
        stack.create(items_schema())
        setup = stack.begin()
        stack.storage.insert(setup, stack.table(setup, "items"), {"name": "a", "qty": 1})
        stack.tm.commit(setup)

        reader = stack.begin(IsolationLevel.REPEATABLE_READ)
        schema = stack.table(reader, "items")
        stale = next(stack.storage.scan(reader, schema, reader.snapshot))

        writer = stack.begin()
        head = stack.storage.lock_row(writer, schema, stale)
        stack.storage.update(writer, schema, head, {"qty": 2})
        stack.tm.commit(writer)

        with pytest.raises(SerializationFailure):
            stack.storage.lock_row(reader, schema, stale)

    def test_lock_row_follows_head_under_read_committed(self, stack: Stack) -> None:
        """READ COMMITTED writers continue on the newest version."""
        stack.create(items_schema())
        setup = stack.begin()
        stack.storage.insert(setup, stack.table(setup, "items"), {"name": "a", "qty": 1})
        stack.tm.commit(setup)

        reader = stack.begin()
        schema = stack.table(reader, "items")
        stale = next(stack.storage.scan(reader, schema, reader.snapshot))

        writer = stack.begin()
        stack.storage.update(writer, schema, stack.storage.lock_row(writer, schema, stale), {"qty": 2})
        stack.tm.commit(writer)

        head = stack.storage.lock_row(reader, schema, stale)
        assert head is not stale
        assert head.values["qty"] == 2


class TestIndexes:
    """Tests for secondary indexes."""

    def test_index_lookup_and_range(self, stack: Stack) -> None:
        """Lookups and range scans return only visible matching rows."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        for i in range(1, 8):
            stack.storage.insert(txn, schema, {"name": f"n{i}", "qty": i})
        stack.storage.build_index(txn, IndexDefinition("items_qty", "items", ("qty",)), schema)

        found = list(stack.storage.index_lookup(txn, schema, "items_qty", (3,), txn.snapshot))
        assert [v.values["name"] for v in found] == ["n3"]

        ranged = stack.storage.index_range(txn, schema, "items_qty", txn.snapshot, low=(5,))
        assert [v.values["qty"] for v in ranged] == [5, 6, 7]

    def test_unique_index_build_finds_duplicates(self, stack: Stack) -> None:
        """Building a unique index over duplicate keys fails."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        stack.storage.insert(txn, schema, {"name": "a", "qty": 1})
        stack.storage.insert(txn, schema, {"name": "b", "qty": 1})

        with pytest.raises(UniqueViolation):
            stack.storage.build_index(
                txn, IndexDefinition("qty_key", "items", ("qty",), unique=True), schema
            )

    def test_aborted_index_build_is_dropped(self, stack: Stack) -> None:
        """An index built by an aborted transaction disappears."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        stack.storage.build_index(txn, IndexDefinition("items_qty", "items", ("qty",)), schema)
        stack.tm.abort(txn)

        assert stack.storage.get_index("items_qty") is None


class TestForeignKeys:
    """Tests for referential integrity and actions."""

    @pytest.fixture
    def library(self, stack: Stack) -> Stack:
        stack.create(
            TableSchema(
                "authors",
                (Column("id", INTEGER), Column("name", TEXT)),
                primary_key=UniqueConstraint("", ("id",), primary=True),
            )
        )
        stack.create(
            TableSchema(
                "books",
                (Column("id", INTEGER), Column("author_id", INTEGER)),
                primary_key=UniqueConstraint("", ("id",), primary=True),
                foreign_keys=(
                    ForeignKey(
                        "", ("author_id",), "authors", (), on_delete=ReferentialAction.CASCADE
                    ),
                ),
            )
        )
        txn = stack.begin()
        stack.storage.insert(txn, stack.table(txn, "authors"), {"id": 1, "name": "Ann"})
        stack.storage.insert(txn, stack.table(txn, "books"), {"id": 10, "author_id": 1})
        stack.storage.insert(txn, stack.table(txn, "books"), {"id": 11, "author_id": None})
        stack.tm.commit(txn)
        return stack

    def test_missing_parent(self, library: Stack) -> None:
        """A child must reference an existing parent."""
        txn = library.begin()
        with pytest.raises(ForeignKeyViolation) as exc_info:
            library.storage.insert(txn, library.table(txn, "books"), {"id": 12, "author_id": 9})
        assert exc_info.value.constraint == "books_author_id_fkey"

    def test_delete_cascades(self, library: Stack) -> None:
        """ON DELETE CASCADE removes dependent rows in the same transaction."""
        txn = library.begin()
        authors = library.table(txn, "authors")
        ann = next(library.storage.scan(txn, authors, txn.snapshot))
        library.storage.delete(txn, authors, library.storage.lock_row(txn, authors, ann))

        assert [r["id"] for r in library.rows(txn, "books")] == [11]

    def test_update_referenced_key_without_action(self, library: Stack) -> None:
        """Changing a referenced key under NO ACTION fails."""
        txn = library.begin()
        authors = library.table(txn, "authors")
        ann = next(library.storage.scan(txn, authors, txn.snapshot))
        with pytest.raises(ForeignKeyViolation):
            library.storage.update(
                txn, authors, library.storage.lock_row(txn, authors, ann), {"id": 2}
            )


class TestStats:
    """Tests for storage statistics."""

    def test_counts(self, stack: Stack) -> None:
        """Stats count tables, logical rows and versions."""
        stack.create(items_schema())
        txn = stack.begin()
        schema = stack.table(txn, "items")
        row = stack.storage.insert(txn, schema, {"name": "a", "qty": 1})
        stack.storage.update(txn, schema, row, {"qty": 2})

        stats = stack.storage.get_stats()
        assert stats.num_tables == 1
        assert stats.num_rows == 1
        assert stats.num_versions == 2
