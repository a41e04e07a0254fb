"""Catalog: transactional schema metadata.

The catalog owns the committed CatalogState and validates every DDL
change. DDL never touches the committed state directly: each operation
reads the calling transaction's working state, derives a new immutable
state and stores it back on the transaction. The transaction manager
publishes the working state at commit (first committer wins).

Data-dependent checks (existing NULLs before SET NOT NULL, lossless type
conversion, duplicates before ADD UNIQUE) are not done here; the catalog
only knows metadata. The statement executor runs them against storage.

Naming follows PostgreSQL: ``<table>_pkey``, ``<table>_<cols>_key``,
``<table>_<cols>_fkey`` and ``<table>_<col>_check``. Key constraints are
backed by a unique index with the constraint's name.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Union

from reldb.domain.entities import (
    CatalogState,
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
from reldb.domain.value_objects import ColumnType, TableId
from reldb.ports.inbound.transaction_manager import Transaction


# ALTER TABLE changes


@dataclass(frozen=True)
class AddColumn:
    column: Column
    if_not_exists: bool = False


@dataclass(frozen=True)
class DropColumn:
    name: str
    if_exists: bool = False
    cascade: bool = False


@dataclass(frozen=True)
class AlterColumnType:
    name: str
    type: ColumnType


@dataclass(frozen=True)
class SetColumnNullable:
    name: str
    nullable: bool


@dataclass(frozen=True)
class SetColumnDefault:
    """SET DEFAULT (default_sql given) or DROP DEFAULT (both None)."""

    name: str
    default_sql: str | None = None
    default: object = None


@dataclass(frozen=True)
class AddConstraint:
    constraint: Union[UniqueConstraint, CheckConstraint, ForeignKey]


@dataclass(frozen=True)
class DropConstraint:
    name: str
    if_exists: bool = False
    cascade: bool = False


TableChange = Union[
    AddColumn,
    DropColumn,
    AlterColumnType,
    SetColumnNullable,
    SetColumnDefault,
    AddConstraint,
    DropConstraint,
]


@dataclass
class DDLResult:
    """Metadata outcome of a DDL step.

    Attributes:
        schema: The new (or dropped) table schema
        added_indexes: Index definitions the storage layer must build
        dropped_indexes: Index definitions the storage layer must drop
        changed_tables: Other tables whose schema changed (CASCADE)
    """

    schema: TableSchema | None = None
    added_indexes: tuple[IndexDefinition, ...] = ()
    dropped_indexes: tuple[IndexDefinition, ...] = ()
    changed_tables: tuple[TableSchema, ...] = ()


class Catalog:
    """Committed schema plus DDL validation.

    Thread Safety:
        The committed state is replaced atomically under a lock. Working
        states belong to a single transaction and are not shared.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = CatalogState()
        self._next_table_id = 1

    # Committed state

    def current(self) -> CatalogState:
        """The newest committed catalog state."""
        with self._lock:
            return self._state

    def check_publishable(self, txn: Transaction) -> None:
        """Raise if another transaction published DDL after txn's base state."""
        with self._lock:
            if txn.catalog_dirty and self._state.version != txn.catalog_base:
                raise SerializationFailure(
                    "could not serialize access due to concurrent schema change",
                    txn_id=txn.txn_id,
                )

    def publish(self, txn: Transaction) -> CatalogState:
        """Install txn's working state as the committed state.

        The caller (the transaction manager's commit path) must have called
        check_publishable under the same commit mutex.
        """
        assert txn.catalog is not None
        with self._lock:
            self._state = replace(txn.catalog, version=self._state.version + 1)
            return self._state

    def restore(self, state: CatalogState) -> None:
        """Replace the committed state during recovery."""
        with self._lock:
            self._state = state
            ids = [t.table_id for t in state.tables.values()]
            self._next_table_id = max(ids, default=0) + 1

    def allocate_table_id(self) -> TableId:
        with self._lock:
            table_id = TableId(self._next_table_id)
            self._next_table_id += 1
            return table_id

    # Lookup

    def state_of(self, txn: Transaction) -> CatalogState:
        """The catalog state txn's current statement reads."""
        if txn.catalog is None:
            return self.current()
        return txn.catalog

    def get_table(self, txn: Transaction, name: str) -> TableSchema:
        """Resolve a table by name.

        Raises:
            TableNotFound: If no such table is visible to txn
        """
        schema = self.state_of(txn).table(name)
        if schema is None:
            raise TableNotFound(f'relation "{name}" does not exist', table=name)
        return schema

    def get_view(self, txn: Transaction, name: str) -> ViewDefinition | None:
        return self.state_of(txn).views.get(name)

    # Tables

    def define_table(
        self, txn: Transaction, schema: TableSchema, if_not_exists: bool = False
    ) -> DDLResult | None:
        """Validate and add a new table to txn's working catalog.

        Returns:
            The result with the assigned table id and the key indexes to
            build, or None if the table exists and if_not_exists is set.

        Raises:
            DuplicateName: If a table or view of that name exists
            InvalidConstraint: If a constraint refers to missing tables or columns
        """
        state = self.state_of(txn)
        if state.has_relation(schema.name):
            if if_not_exists and schema.name in state.tables:
                return None
            raise DuplicateName(f'relation "{schema.name}" already exists')

        seen: set[str] = set()
        for column in schema.columns:
            if column.name in seen:
                raise DuplicateName(
                    f'column "{column.name}" specified more than once'
                )
            seen.add(column.name)

        table = replace(
            schema,
            table_id=self.allocate_table_id(),
            primary_key=None,
            unique_constraints=(),
            checks=(),
            foreign_keys=(),
        )
        added: list[IndexDefinition] = []
        constraints: list = []
        if schema.primary_key is not None:
            constraints.append(schema.primary_key)
        constraints.extend(schema.unique_constraints)
        constraints.extend(schema.checks)
        constraints.extend(schema.foreign_keys)

        # The table must be visible to its own self-referencing foreign keys.
        working = state.with_table(table)
        for constraint in constraints:
            table, working, index = self._add_constraint(working, table, constraint)
            if index is not None:
                added.append(index)

        self._store(txn, working)
        return DDLResult(schema=table, added_indexes=tuple(added))

    def drop_table(
        self, txn: Transaction, name: str, cascade: bool = False, if_exists: bool = False
    ) -> DDLResult | None:
        """Remove a table, its indexes and (with cascade) referencing foreign keys.

        Raises:
            TableNotFound: If the table does not exist and if_exists is not set
            ForeignKeyReferenced: If another table references it without cascade
        """
        state = self.state_of(txn)
        schema = state.table(name)
        if schema is None:
            if if_exists:
                return None
            raise TableNotFound(f'table "{name}" does not exist', table=name)

        referencing = [(t, fk) for t, fk in state.referencing(name) if t.name != name]
        if referencing and not cascade:
            other, fk = referencing[0]
            raise ForeignKeyReferenced(
                f'cannot drop table {name} because constraint {fk.name} on table '
                f"{other.name} depends on it",
                table=name,
            )

        changed = []
        working = state
        for other_name in {t.name for t, _ in referencing}:
            other = working.table(other_name)
            assert other is not None
            other = replace(
                other,
                foreign_keys=tuple(fk for fk in other.foreign_keys if fk.ref_table != name),
            )
            working = working.with_table(other)
            changed.append(other)

        dropped = tuple(state.indexes_of(name))
        working = working.without_table(name)
        self._store(txn, working)
        return DDLResult(schema=schema, dropped_indexes=dropped, changed_tables=tuple(changed))

    def alter_table(self, txn: Transaction, name: str, change: TableChange) -> DDLResult:
        """Apply one ALTER TABLE change to txn's working catalog.

        Raises:
            TableNotFound: If the table does not exist
            ColumnExists: ADD COLUMN of an existing column
            ColumnNotFound: Change to a missing column
            ConstraintViolation: DROP COLUMN of a column backing a constraint
            InvalidConstraint: Invalid constraint definition
            ConstraintNotFound: DROP CONSTRAINT of a missing constraint
        """
        state = self.state_of(txn)
        schema = self.get_table(txn, name)

        if isinstance(change, AddColumn):
            return self._add_column(txn, state, schema, change)
        if isinstance(change, DropColumn):
            return self._drop_column(txn, state, schema, change)
        if isinstance(change, AlterColumnType):
            column = self._column(schema, change.name)
            updated = schema.replace_column(replace(column, type=change.type))
            self._store(txn, state.with_table(updated))
            return DDLResult(schema=updated)
        if isinstance(change, SetColumnNullable):
            column = self._column(schema, change.name)
            if change.nullable and schema.primary_key and column.name in schema.primary_key.columns:
                raise InvalidConstraint(f'column "{column.name}" is in a primary key')
            updated = schema.replace_column(replace(column, nullable=change.nullable))
            self._store(txn, state.with_table(updated))
            return DDLResult(schema=updated)
        if isinstance(change, SetColumnDefault):
            column = self._column(schema, change.name)
            updated = schema.replace_column(
                replace(column, default_sql=change.default_sql, default=change.default)
            )
            self._store(txn, state.with_table(updated))
            return DDLResult(schema=updated)
        if isinstance(change, AddConstraint):
            updated, working, index = self._add_constraint(state, schema, change.constraint)
            self._store(txn, working)
            return DDLResult(schema=updated, added_indexes=(index,) if index else ())
        if isinstance(change, DropConstraint):
            return self._drop_constraint(txn, state, schema, change)
        raise TypeError(f"unsupported table change: {change!r}")

    # Views

    def define_view(self, txn: Transaction, view: ViewDefinition, or_replace: bool = False) -> None:
        """Raises DuplicateName if a table (or, without or_replace, a view) has the name."""
        state = self.state_of(txn)
        if view.name in state.tables or (view.name in state.views and not or_replace):
            raise DuplicateName(f'relation "{view.name}" already exists')
        self._store(txn, state.with_view(view))

    def drop_view(self, txn: Transaction, name: str, if_exists: bool = False) -> bool:
        state = self.state_of(txn)
        if name not in state.views:
            if if_exists:
                return False
            raise TableNotFound(f'view "{name}" does not exist', table=name)
        self._store(txn, state.without_view(name))
        return True

    # Indexes

    def define_index(
        self, txn: Transaction, index: IndexDefinition, if_not_exists: bool = False
    ) -> bool:
        """Add an index definition; returns False if it exists and if_not_exists.

        Raises:
            TableNotFound, ColumnNotFound, DuplicateName
        """
        state = self.state_of(txn)
        schema = self.get_table(txn, index.table)
        if index.name in state.indexes or index.name in state.tables:
            if if_not_exists:
                return False
            raise DuplicateName(f'relation "{index.name}" already exists')
        for column in index.columns:
            self._column(schema, column)
        self._store(txn, state.with_index(index))
        return True

    def drop_index(
        self, txn: Transaction, name: str, if_exists: bool = False
    ) -> IndexDefinition | None:
        """Raises IndexNotFound, or InvalidConstraint for constraint indexes."""
        state = self.state_of(txn)
        index = state.indexes.get(name)
        if index is None:
            if if_exists:
                return None
            raise IndexNotFound(f'index "{name}" does not exist')
        if index.constraint is not None:
            raise InvalidConstraint(
                f'cannot drop index {name} because constraint {index.constraint} '
                f"on table {index.table} requires it"
            )
        self._store(txn, state.without_index(name))
        return index

    # Internals

    @staticmethod
    def _store(txn: Transaction, state: CatalogState) -> None:
        txn.catalog = state
        txn.catalog_dirty = True

    @staticmethod
    def _column(schema: TableSchema, name: str) -> Column:
        try:
            return schema.column(name)
        except KeyError:
            raise ColumnNotFound(
                f'column "{name}" of relation "{schema.name}" does not exist',
                table=schema.name,
                column=name,
            ) from None

    @staticmethod
    def _unique_name(schema: TableSchema, base: str, taken: set[str]) -> str:
        names = schema.constraint_names() | taken
        if base not in names:
            return base
        suffix = 1
        while f"{base}{suffix}" in names:
            suffix += 1
        return f"{base}{suffix}"

    def _add_constraint(
        self,
        state: CatalogState,
        schema: TableSchema,
        constraint: UniqueConstraint | CheckConstraint | ForeignKey,
    ) -> tuple[TableSchema, CatalogState, IndexDefinition | None]:
        """Validate a constraint and attach it to schema (named if unnamed)."""
        taken = set(state.indexes) | set(state.tables) | set(state.views)
        if constraint.name and constraint.name in schema.constraint_names():
            raise DuplicateName(
                f'constraint "{constraint.name}" for relation "{schema.name}" already exists'
            )

        index = None
        if isinstance(constraint, UniqueConstraint):
            for column in constraint.columns:
                self._column(schema, column)
            if len(set(constraint.columns)) != len(constraint.columns):
                raise InvalidConstraint("column appears twice in key constraint")
            if constraint.primary:
                if schema.primary_key is not None:
                    raise InvalidConstraint(
                        f'multiple primary keys for table "{schema.name}" are not allowed'
                    )
                name = constraint.name or self._unique_name(schema, f"{schema.name}_pkey", taken)
            else:
                base = f"{schema.name}_{'_'.join(constraint.columns)}_key"
                name = constraint.name or self._unique_name(schema, base, taken)
            if name in state.indexes or name in state.tables or name in state.views:
                raise DuplicateName(f'relation "{name}" already exists')
            constraint = replace(constraint, name=name)
            if constraint.primary:
                for column in constraint.columns:
                    schema = schema.replace_column(replace(schema.column(column), nullable=False))
                schema = replace(schema, primary_key=constraint)
            else:
                schema = replace(
                    schema, unique_constraints=schema.unique_constraints + (constraint,)
                )
            index = IndexDefinition(
                name=name,
                table=schema.name,
                columns=constraint.columns,
                unique=True,
                constraint=name,
            )
            state = state.with_index(index)

        elif isinstance(constraint, CheckConstraint):
            missing = sorted(c for c in constraint.columns if not schema.has_column(c))
            if missing:
                raise InvalidConstraint(
                    f'check constraint references undefined column "{missing[0]}"'
                )
            base = f"{schema.name}_{sorted(constraint.columns)[0]}_check" if constraint.columns else f"{schema.name}_check"
            name = constraint.name or self._unique_name(schema, base, taken)
            schema = replace(schema, checks=schema.checks + (replace(constraint, name=name),))

        elif isinstance(constraint, ForeignKey):
            constraint = self._validate_foreign_key(state, schema, constraint)
            base = f"{schema.name}_{'_'.join(constraint.columns)}_fkey"
            name = constraint.name or self._unique_name(schema, base, taken)
            schema = replace(
                schema, foreign_keys=schema.foreign_keys + (replace(constraint, name=name),)
            )
        else:
            raise TypeError(f"unsupported constraint: {constraint!r}")

        return schema, state.with_table(schema), index

    def _validate_foreign_key(
        self, state: CatalogState, schema: TableSchema, fk: ForeignKey
    ) -> ForeignKey:
        for column in fk.columns:
            if not schema.has_column(column):
                raise InvalidConstraint(
                    f'column "{column}" referenced in foreign key constraint does not exist'
                )
        parent = schema if fk.ref_table == schema.name else state.table(fk.ref_table)
        if parent is None:
            raise InvalidConstraint(f'referenced table "{fk.ref_table}" does not exist')

        ref_columns = fk.ref_columns
        if not ref_columns:
            if parent.primary_key is None:
                raise InvalidConstraint(
                    f'there is no primary key for referenced table "{parent.name}"'
                )
            ref_columns = parent.primary_key.columns
            fk = replace(fk, ref_columns=ref_columns)

        for column in ref_columns:
            if not parent.has_column(column):
                raise InvalidConstraint(
                    f'column "{column}" referenced in foreign key constraint does not exist'
                )
        if len(ref_columns) != len(fk.columns):
            raise InvalidConstraint(
                "number of referencing and referenced columns for foreign key disagree"
            )
        if not parent.has_key(ref_columns):
            raise InvalidConstraint(
                "there is no unique constraint matching given keys for referenced "
                f'table "{parent.name}"'
            )
        return fk

    def _add_column(
        self, txn: Transaction, state: CatalogState, schema: TableSchema, change: AddColumn
    ) -> DDLResult:
        if schema.has_column(change.column.name):
            if change.if_not_exists:
                return DDLResult(schema=schema)
            raise ColumnExists(
                f'column "{change.column.name}" of relation "{schema.name}" already exists',
                table=schema.name,
            )
        updated = replace(schema, columns=schema.columns + (change.column,))
        self._store(txn, state.with_table(updated))
        return DDLResult(schema=updated)

    def _drop_column(
        self, txn: Transaction, state: CatalogState, schema: TableSchema, change: DropColumn
    ) -> DDLResult:
        if not schema.has_column(change.name):
            if change.if_exists:
                return DDLResult(schema=schema)
            self._column(schema, change.name)

        column = change.name
        keys = [k for k in schema.key_constraints() if column in k.columns]
        checks = [c for c in schema.checks if column in c.columns]
        fks = [fk for fk in schema.foreign_keys if column in fk.columns]
        key_names = {k.name for k in keys}
        inbound = [(t, fk) for t, fk in state.referencing(schema.name) if column in fk.ref_columns]

        if (keys or checks or fks or inbound) and not change.cascade:
            blocking = (keys or checks or fks or [fk for _, fk in inbound])[0]
            raise ConstraintViolation(
                f'cannot drop column {column} of table {schema.name} because '
                f"constraint {blocking.name} depends on it",
                constraint=blocking.name,
                table=schema.name,
            )

        working = state
        changed = []
        for other_name in {t.name for t, _ in inbound if t.name != schema.name}:
            other = working.table(other_name)
            assert other is not None
            dropped_fks = {fk.name for t, fk in inbound if t.name == other_name}
            other = replace(
                other,
                foreign_keys=tuple(f for f in other.foreign_keys if f.name not in dropped_fks),
            )
            working = working.with_table(other)
            changed.append(other)

        self_inbound = {fk.name for t, fk in inbound if t.name == schema.name}
        updated = replace(
            schema,
            columns=tuple(c for c in schema.columns if c.name != column),
            primary_key=None if schema.primary_key and schema.primary_key.name in key_names else schema.primary_key,
            unique_constraints=tuple(u for u in schema.unique_constraints if u.name not in key_names),
            checks=tuple(c for c in schema.checks if column not in c.columns),
            foreign_keys=tuple(
                fk for fk in schema.foreign_keys
                if column not in fk.columns and fk.name not in self_inbound
            ),
        )
        dropped = tuple(
            idx for idx in state.indexes_of(schema.name)
            if column in idx.columns or idx.constraint in key_names
        )
        working = working.with_table(updated)
        for idx in dropped:
            working = working.without_index(idx.name)
        self._store(txn, working)
        return DDLResult(schema=updated, dropped_indexes=dropped, changed_tables=tuple(changed))

    def _drop_constraint(
        self, txn: Transaction, state: CatalogState, schema: TableSchema, change: DropConstraint
    ) -> DDLResult:
        name = change.name
        if name not in schema.constraint_names():
            if change.if_exists:
                return DDLResult(schema=schema)
            raise ConstraintNotFound(
                f'constraint "{name}" of relation "{schema.name}" does not exist',
                table=schema.name,
            )

        key = next((k for k in schema.key_constraints() if k.name == name), None)
        working = state
        changed = []
        dropped: tuple[IndexDefinition, ...] = ()
        if key is not None:
            inbound = [
                (t, fk) for t, fk in state.referencing(schema.name)
                if set(fk.ref_columns) == set(key.columns)
            ]
            if inbound and not change.cascade:
                other, fk = inbound[0]
                raise ForeignKeyReferenced(
                    f"cannot drop constraint {name} on table {schema.name} because "
                    f"constraint {fk.name} on table {other.name} depends on it",
                    table=schema.name,
                )
            for other_name in {t.name for t, _ in inbound if t.name != schema.name}:
                other = working.table(other_name)
                assert other is not None
                gone = {fk.name for t, fk in inbound if t.name == other_name}
                other = replace(
                    other, foreign_keys=tuple(f for f in other.foreign_keys if f.name not in gone)
                )
                working = working.with_table(other)
                changed.append(other)
            self_gone = {fk.name for t, fk in inbound if t.name == schema.name}
            schema = replace(
                schema,
                foreign_keys=tuple(f for f in schema.foreign_keys if f.name not in self_gone),
            )
            dropped = tuple(i for i in state.indexes_of(schema.name) if i.constraint == name)
            for idx in dropped:
                working = working.without_index(idx.name)

        updated = replace(
            schema,
            primary_key=None if key is not None and key.primary else schema.primary_key,
            unique_constraints=tuple(u for u in schema.unique_constraints if u.name != name),
            checks=tuple(c for c in schema.checks if c.name != name),
            foreign_keys=tuple(f for f in schema.foreign_keys if f.name != name),
        )
        self._store(txn, working.with_table(updated))
        return DDLResult(schema=updated, dropped_indexes=dropped, changed_tables=tuple(changed))
