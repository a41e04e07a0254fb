"""Unit tests for the transactional catalog."""

from __future__ import annotations

import pytest

from reldb.domain.entities import (
    CheckConstraint,
    Column,
    ForeignKey,
    IndexDefinition,
    TableSchema,
    UniqueConstraint,
    ViewDefinition,
)
from reldb.domain.errors import (
    ColumnExists,
    ColumnNotFound,
    ConstraintNotFound,
    ConstraintViolation,
    DuplicateName,
    ForeignKeyReferenced,
    IndexNotFound,
    InvalidConstraint,
    SerializationFailure,
    TableNotFound,
)
from reldb.domain.services import Catalog
from reldb.domain.services.catalog import (
    AddColumn,
    AddConstraint,
    DropColumn,
    DropConstraint,
    SetColumnNullable,
)
from reldb.domain.value_objects import INTEGER, TEXT, TransactionId
from reldb.ports.inbound.transaction_manager import Transaction

pytestmark = pytest.mark.unit


def authors_schema() -> TableSchema:
    return TableSchema(
        name="authors",
        columns=(Column("id", INTEGER), Column("name", TEXT, nullable=False)),
        primary_key=UniqueConstraint("", ("id",), primary=True),
    )


def books_schema() -> TableSchema:
    return TableSchema(
        name="books",
        columns=(
            Column("id", INTEGER),
            Column("author_id", INTEGER),
            Column("title", TEXT),
        ),
        primary_key=UniqueConstraint("", ("id",), primary=True),
        foreign_keys=(ForeignKey("", ("author_id",), "authors", ()),),
    )


@pytest.fixture
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture
def txn() -> Transaction:
    return Transaction(TransactionId(1))


def commit(catalog: Catalog, txn: Transaction) -> None:
    catalog.check_publishable(txn)
    catalog.publish(txn)


class TestDefineTable:
    """Tests for CREATE TABLE validation."""

    def test_assigns_id_and_pkey(self, catalog: Catalog, txn: Transaction) -> None:
        """The table gets an id and a named primary key backed by an index."""
        result = catalog.define_table(txn, authors_schema())

        assert result is not None
        schema = result.schema
        assert schema.table_id > 0
        assert schema.primary_key.name == "authors_pkey"
        assert not schema.column("id").nullable
        assert [i.name for i in result.added_indexes] == ["authors_pkey"]
        assert result.added_indexes[0].unique

    def test_working_state_is_private(self, catalog: Catalog, txn: Transaction) -> None:
        """Uncommitted DDL is invisible to the committed catalog."""
        catalog.define_table(txn, authors_schema())

        assert catalog.current().table("authors") is None
        assert catalog.state_of(txn).table("authors") is not None
        assert txn.catalog_dirty

    def test_publish(self, catalog: Catalog, txn: Transaction) -> None:
        """Publishing bumps the version."""
        catalog.define_table(txn, authors_schema())
        commit(catalog, txn)

        state = catalog.current()
        assert state.version == 1
        assert "authors" in state.tables

    def test_duplicate_table(self, catalog: Catalog, txn: Transaction) -> None:
        """Names are unique; IF NOT EXISTS turns the clash into a no-op."""
        catalog.define_table(txn, authors_schema())
        with pytest.raises(DuplicateName):
            catalog.define_table(txn, authors_schema())
        assert catalog.define_table(txn, authors_schema(), if_not_exists=True) is None

    def test_duplicate_column(self, catalog: Catalog, txn: Transaction) -> None:
        """A column may appear only once."""
        schema = TableSchema("t", (Column("a", INTEGER), Column("a", TEXT)))
        with pytest.raises(DuplicateName):
            catalog.define_table(txn, schema)

    def test_foreign_key_defaults_to_parent_pkey(self, catalog: Catalog, txn: Transaction) -> None:
        """An FK without columns references the parent's primary key."""
        catalog.define_table(txn, authors_schema())
        result = catalog.define_table(txn, books_schema())

        fk = result.schema.foreign_keys[0]
        assert fk.ref_columns == ("id",)
        assert fk.name == "books_author_id_fkey"

    def test_foreign_key_to_missing_table(self, catalog: Catalog, txn: Transaction) -> None:
        """The referenced table must exist."""
        with pytest.raises(InvalidConstraint):
            catalog.define_table(txn, books_schema())

    def test_foreign_key_needs_unique_target(self, catalog: Catalog, txn: Transaction) -> None:
        """Referenced columns must be a key."""
        catalog.define_table(txn, authors_schema())
        schema = TableSchema(
            "notes",
            (Column("author_name", TEXT),),
            foreign_keys=(ForeignKey("", ("author_name",), "authors", ("name",)),),
        )
        with pytest.raises(InvalidConstraint):
            catalog.define_table(txn, schema)

    def test_self_reference(self, catalog: Catalog, txn: Transaction) -> None:
        """A table may reference its own primary key."""
        schema = TableSchema(
            "employees",
            (Column("id", INTEGER), Column("manager_id", INTEGER)),
            primary_key=UniqueConstraint("", ("id",), primary=True),
            foreign_keys=(ForeignKey("", ("manager_id",), "employees", ()),),
        )
        result = catalog.define_table(txn, schema)
        assert result.schema.foreign_keys[0].ref_table == "employees"

    def test_check_references_unknown_column(self, catalog: Catalog, txn: Transaction) -> None:
        """CHECK columns must exist."""
        schema = TableSchema(
            "t",
            (Column("a", INTEGER),),
            checks=(CheckConstraint("", "b > 0", None, frozenset({"b"})),),
        )
        with pytest.raises(InvalidConstraint):
            catalog.define_table(txn, schema)


class TestDropTable:
    """Tests for DROP TABLE."""

    def test_missing(self, catalog: Catalog, txn: Transaction) -> None:
        """Dropping an unknown table fails unless IF EXISTS."""
        with pytest.raises(TableNotFound):
            catalog.drop_table(txn, "nope")
        assert catalog.drop_table(txn, "nope", if_exists=True) is None

    def test_referenced_table_needs_cascade(self, catalog: Catalog, txn: Transaction) -> None:
        """A referenced parent cannot be dropped without CASCADE."""
        catalog.define_table(txn, authors_schema())
        catalog.define_table(txn, books_schema())

        with pytest.raises(ForeignKeyReferenced):
            catalog.drop_table(txn, "authors")

        result = catalog.drop_table(txn, "authors", cascade=True)
        assert [t.name for t in result.changed_tables] == ["books"]
        assert catalog.state_of(txn).table("books").foreign_keys == ()
        assert [i.name for i in result.dropped_indexes] == ["authors_pkey"]


class TestAlterTable:
    """Tests for ALTER TABLE metadata changes."""

    @pytest.fixture
    def populated(self, catalog: Catalog, txn: Transaction) -> Catalog:
        catalog.define_table(txn, authors_schema())
        catalog.define_table(txn, books_schema())
        return catalog

    def test_add_column(self, populated: Catalog, txn: Transaction) -> None:
        """New columns are appended."""
        result = populated.alter_table(txn, "authors", AddColumn(Column("born", INTEGER)))
        assert result.schema.column_names == ["id", "name", "born"]

    def test_add_existing_column(self, populated: Catalog, txn: Transaction) -> None:
        """Adding an existing column fails unless IF NOT EXISTS."""
        with pytest.raises(ColumnExists):
            populated.alter_table(txn, "authors", AddColumn(Column("name", TEXT)))
        result = populated.alter_table(
            txn, "authors", AddColumn(Column("name", TEXT), if_not_exists=True)
        )
        assert result.schema.column_names == ["id", "name"]

    def test_drop_constrained_column(self, populated: Catalog, txn: Transaction) -> None:
        """Columns backing constraints need CASCADE."""
        with pytest.raises(ConstraintViolation):
            populated.alter_table(txn, "books", DropColumn("author_id"))

        result = populated.alter_table(txn, "books", DropColumn("author_id", cascade=True))
        assert result.schema.foreign_keys == ()
        assert "author_id" not in result.schema.column_names

    def test_drop_missing_column(self, populated: Catalog, txn: Transaction) -> None:
        """Unknown columns raise ColumnNotFound."""
        with pytest.raises(ColumnNotFound):
            populated.alter_table(txn, "books", DropColumn("nope"))

    def test_primary_key_column_stays_not_null(self, populated: Catalog, txn: Transaction) -> None:
        """DROP NOT NULL is refused on a primary key column."""
        with pytest.raises(InvalidConstraint):
            populated.alter_table(txn, "authors", SetColumnNullable("id", True))

    def test_add_unique_constraint(self, populated: Catalog, txn: Transaction) -> None:
        """ADD UNIQUE creates a backing index named after the constraint."""
        result = populated.alter_table(
            txn, "authors", AddConstraint(UniqueConstraint("", ("name",)))
        )
        assert [i.name for i in result.added_indexes] == ["authors_name_key"]

    def test_drop_referenced_key(self, populated: Catalog, txn: Transaction) -> None:
        """A primary key referenced by a foreign key needs CASCADE."""
        with pytest.raises(ForeignKeyReferenced):
            populated.alter_table(txn, "authors", DropConstraint("authors_pkey"))

        result = populated.alter_table(
            txn, "authors", DropConstraint("authors_pkey", cascade=True)
        )
        assert result.schema.primary_key is None
        assert populated.state_of(txn).table("books").foreign_keys == ()

    def test_drop_unknown_constraint(self, populated: Catalog, txn: Transaction) -> None:
        """Unknown constraints raise unless IF EXISTS."""
        with pytest.raises(ConstraintNotFound):
            populated.alter_table(txn, "authors", DropConstraint("nope"))
        populated.alter_table(txn, "authors", DropConstraint("nope", if_exists=True))


class TestViewsAndIndexes:
    """Tests for view and index definitions."""

    def test_view_name_clash(self, catalog: Catalog, txn: Transaction) -> None:
        """Views share the relation namespace with tables."""
        catalog.define_table(txn, authors_schema())
        with pytest.raises(DuplicateName):
            catalog.define_view(txn, ViewDefinition("authors", "SELECT 1"))

    def test_replace_view(self, catalog: Catalog, txn: Transaction) -> None:
        """OR REPLACE overwrites an existing view."""
        catalog.define_view(txn, ViewDefinition("v", "SELECT 1"))
        catalog.define_view(txn, ViewDefinition("v", "SELECT 2"), or_replace=True)
        assert catalog.get_view(txn, "v").sql == "SELECT 2"
        assert catalog.drop_view(txn, "v") is True
        assert catalog.drop_view(txn, "v", if_exists=True) is False

    def test_index_lifecycle(self, catalog: Catalog, txn: Transaction) -> None:
        """Indexes can be defined on existing columns and dropped."""
        catalog.define_table(txn, authors_schema())
        index = IndexDefinition("idx_name", "authors", ("name",))

        assert catalog.define_index(txn, index) is True
        assert catalog.define_index(txn, index, if_not_exists=True) is False
        assert catalog.drop_index(txn, "idx_name") == index
        with pytest.raises(IndexNotFound):
            catalog.drop_index(txn, "idx_name")

    def test_index_on_unknown_column(self, catalog: Catalog, txn: Transaction) -> None:
        """Index columns must exist."""
        catalog.define_table(txn, authors_schema())
        with pytest.raises(ColumnNotFound):
            catalog.define_index(txn, IndexDefinition("i", "authors", ("nope",)))

    def test_constraint_index_cannot_be_dropped(self, catalog: Catalog, txn: Transaction) -> None:
        """Key-backing indexes go away only with their constraint."""
        catalog.define_table(txn, authors_schema())
        with pytest.raises(InvalidConstraint):
            catalog.drop_index(txn, "authors_pkey")


class TestConcurrentDDL:
    """Tests for first-committer-wins publication."""

    def test_second_publisher_fails(self, catalog: Catalog) -> None:
        """A transaction whose base state is stale cannot publish."""
        first = Transaction(TransactionId(1))
        second = Transaction(TransactionId(2))
        catalog.define_table(first, authors_schema())
        catalog.define_table(second, TableSchema("other", (Column("x", INTEGER),)))

        commit(catalog, first)
        with pytest.raises(SerializationFailure):
            catalog.check_publishable(second)

    def test_restore_sets_next_table_id(self, catalog: Catalog, txn: Transaction) -> None:
        """After restore, new tables get fresh ids."""
        catalog.define_table(txn, authors_schema())
        commit(catalog, txn)
        state = catalog.current()

        restored = Catalog()
        restored.restore(state)
        assert restored.allocate_table_id() > state.table("authors").table_id
