"""Storage Engine: versioned row heaps, indexes and integrity constraints.

Each table has a heap mapping a stable row id to the row's versions, oldest
first. Writers never modify a version's values: an update closes the
current version and appends a new one under the same row id, a delete
closes the current version. Every version is entered into every physical
index of its table, so an old snapshot can still find the version it sees.

Writes require an intent-exclusive table lock and an exclusive row lock.
Once a writer holds the row lock, no other active transaction can have
uncommitted changes on that row, so the row's newest open version is its
head.

Constraint checks on write, in order:
    1. defaults and sequences
    2. type coercion
    3. NOT NULL
    4. CHECK (FALSE fails, NULL passes)
    5. UNIQUE (waits for concurrent writers of the same key)
    6. FOREIGN KEY (against the newest committed state plus own writes)

Deleting or re-keying a referenced row applies the foreign key's
referential action (NO ACTION/RESTRICT fail, CASCADE, SET NULL) to the
dependent rows inside the same transaction.

References:
    - Bernstein & Goodman, "Multiversion Concurrency Control" (1983)
    - PostgreSQL heap tuple and unique index documentation
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from reldb.domain.entities import (
    CatalogState,
    CheckConstraint,
    ForeignKey,
    IndexDefinition,
    IndexKey,
    ReferentialAction,
    RowVersion,
    Snapshot,
    TableSchema,
)
from reldb.domain.errors import (
    CheckViolation,
    ColumnNotFound,
    DuplicateName,
    ForeignKeyViolation,
    IndexNotFound,
    NotNullViolation,
    SerializationFailure,
    UniqueViolation,
)
from reldb.domain.services.btree_index import BTreeIndex, BTreeIndexManager
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.value_objects import (
    INVALID_TXN_ID,
    LockMode,
    RowId,
    RowLocator,
    TableId,
    TransactionId,
)
from reldb.ports.inbound.transaction_manager import Transaction, WriteKind, WriteRecord


ExpressionEvaluator = Callable[[Any, dict], Any]
"""Evaluates a parsed expression against a row's column values."""


def table_resource(name: str) -> tuple[str, str]:
    """Lock resource for a whole table."""
    return ("table", name)


def is_live(version: RowVersion, txn_id: TransactionId) -> bool:
    """Check if a version belongs to the newest committed state plus txn's writes.

    Uncommitted deletes by other transactions do not count, since they may
    still roll back.
    """
    if version.created_by != txn_id and version.created_ts is None:
        return False
    if version.deleted_by == INVALID_TXN_ID:
        return True
    if version.deleted_by == txn_id:
        return False
    return version.deleted_ts is None


class TableHeap:
    """Row versions of one table, keyed by row id."""

    def __init__(self, table_id: TableId) -> None:
        self.table_id = table_id
        self._lock = threading.Lock()
        self._rows: dict[RowId, list[RowVersion]] = {}

    def append(self, version: RowVersion) -> None:
        with self._lock:
            self._rows.setdefault(version.row_id, []).append(version)

    def remove(self, version: RowVersion) -> list[RowVersion]:
        """Remove one version; returns the row's remaining versions."""
        with self._lock:
            versions = self._rows.get(version.row_id, [])
            for i, candidate in enumerate(versions):
                if candidate is version:
                    del versions[i]
                    break
            if not versions:
                self._rows.pop(version.row_id, None)
            return list(versions)

    def versions(self, row_id: RowId) -> list[RowVersion]:
        with self._lock:
            return list(self._rows.get(row_id, ()))

    def row_ids(self) -> list[RowId]:
        with self._lock:
            return list(self._rows)

    def all_versions(self) -> list[RowVersion]:
        with self._lock:
            return [v for versions in self._rows.values() for v in versions]

    def max_row_id(self) -> int:
        with self._lock:
            return max(self._rows, default=0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


@dataclass
class StorageStats:
    """Statistics for storage monitoring."""

    num_tables: int
    num_rows: int
    num_versions: int
    rows_scanned: int
    index_lookups: int


class StorageEngine:
    """Transactional row storage with constraint enforcement.

    Thread Safety:
        Heaps and the heap registry have their own latches. Row writes are
        serialized per row by the lock manager.
    """

    def __init__(
        self,
        index_manager: BTreeIndexManager,
        lock_manager: LockManager,
        evaluate: ExpressionEvaluator | None = None,
    ) -> None:
        """Initialize the storage engine.

        Args:
            index_manager: Registry of physical B+Tree indexes.
            lock_manager: Lock manager for table and row locks.
            evaluate: Evaluator for defaults and CHECK predicates.
        """
        self._indexes = index_manager
        self._locks = lock_manager
        self._evaluate = evaluate

        self._lock = threading.Lock()
        self._heaps: dict[TableId, TableHeap] = {}
        self._next_row_id = 1
        self._sequences: dict[tuple[TableId, str], int] = {}

        self._rows_scanned = 0
        self._index_lookups = 0

    @property
    def index_manager(self) -> BTreeIndexManager:
        return self._indexes

    def set_evaluator(self, evaluate: ExpressionEvaluator) -> None:
        self._evaluate = evaluate

    # Heaps

    def create_heap(self, table_id: TableId) -> TableHeap:
        with self._lock:
            heap = self._heaps.get(table_id)
            if heap is None:
                heap = self._heaps[table_id] = TableHeap(table_id)
            return heap

    def drop_heap(self, table_id: TableId) -> None:
        with self._lock:
            self._heaps.pop(table_id, None)
            for key in [k for k in self._sequences if k[0] == table_id]:
                del self._sequences[key]
        for index in self._indexes.indexes_for(table_id):
            self._indexes.drop_index(index.name)

    def heap(self, table_id: TableId) -> TableHeap | None:
        with self._lock:
            return self._heaps.get(table_id)

    def table_ids(self) -> list[TableId]:
        with self._lock:
            return list(self._heaps)

    def create_table(self, txn: Transaction, schema: TableSchema) -> None:
        """Create the heap of a table defined by txn; removed if txn aborts."""
        self.create_heap(schema.table_id)
        txn.on_abort(lambda: self.drop_heap(schema.table_id))

    def drop_table(self, txn: Transaction, schema: TableSchema) -> None:
        """Drop a table's heap and indexes once txn commits."""
        txn.on_commit(lambda: self.drop_heap(schema.table_id))

    # Reads

    def scan(
        self,
        txn: Transaction,
        schema: TableSchema,
        snapshot: Snapshot,
        predicate: Callable[[RowVersion], bool] | None = None,
    ) -> Iterator[RowVersion]:
        """Lazily yield the versions of schema's rows visible to snapshot.

        The row id list is captured when iteration starts; each call
        returns a new, independent iterator.
        """
        txn.read_tables.add(schema.name)
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        for row_id in heap.row_ids():
            version = self._visible(heap, row_id, snapshot)
            if version is None:
                continue
            self._rows_scanned += 1
            if predicate is None or predicate(version):
                yield version

    def visible_version(
        self, schema: TableSchema, row_id: RowId, snapshot: Snapshot
    ) -> RowVersion | None:
        heap = self.heap(schema.table_id)
        return self._visible(heap, row_id, snapshot) if heap is not None else None

    def index_lookup(
        self,
        txn: Transaction,
        schema: TableSchema,
        index_name: str,
        values: tuple,
        snapshot: Snapshot,
    ) -> Iterator[RowVersion]:
        """Yield visible rows whose indexed columns start with ``values``.

        ``values`` may cover a prefix of the index columns.
        """
        index = self._require_index(index_name)
        txn.read_tables.add(schema.name)
        self._index_lookups += 1
        prefix = IndexKey(tuple(values))
        if len(prefix) == len(index.columns):
            candidates = sorted(index.search(prefix))
        else:
            candidates = self._row_ids_of(index.prefix_scan(prefix))
        yield from self._recheck(schema, index, candidates, snapshot, prefix)

    def index_range(
        self,
        txn: Transaction,
        schema: TableSchema,
        index_name: str,
        snapshot: Snapshot,
        low: tuple | None = None,
        high: tuple | None = None,
        include_low: bool = True,
        include_high: bool = True,
    ) -> Iterator[RowVersion]:
        """Yield visible rows with index keys in range, in key order."""
        index = self._require_index(index_name)
        txn.read_tables.add(schema.name)
        self._index_lookups += 1
        entries = index.range_scan(
            IndexKey(tuple(low)) if low is not None else None,
            IndexKey(tuple(high)) if high is not None else None,
            include_low,
            include_high,
        )
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        seen: set[RowId] = set()
        for key, row_ids in entries:
            for row_id in sorted(row_ids):
                if row_id in seen:
                    continue
                version = self._visible(heap, row_id, snapshot)
                if version is not None and version.index_keys.get(index.name) == key:
                    seen.add(row_id)
                    self._rows_scanned += 1
                    yield version

    def live_rows(self, txn: Transaction, schema: TableSchema) -> Iterator[RowVersion]:
        """Rows of the newest committed state plus txn's own writes."""
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        for row_id in heap.row_ids():
            for version in reversed(heap.versions(row_id)):
                if is_live(version, txn.txn_id):
                    yield version
                    break

    # Writes

    def prepare_insert(
        self, txn: Transaction, schema: TableSchema, values: dict[str, Any]
    ) -> dict[str, Any]:
        """Complete a new row: defaults, sequences and type coercion.

        Raises:
            ColumnNotFound: If values name an unknown column
        """
        for name in values:
            if not schema.has_column(name):
                raise ColumnNotFound(
                    f'column "{name}" of relation "{schema.name}" does not exist',
                    table=schema.name,
                    column=name,
                )

        row: dict[str, Any] = {}
        for column in schema.columns:
            if column.name in values:
                value = values[column.name]
            elif column.default is not None:
                value = self._evaluate_expression(column.default, {})
            else:
                value = None

            if column.auto_increment:
                if value is None:
                    value = self.next_sequence_value(schema, column.name)
                else:
                    self._advance_sequence(schema, column.name, value)
            row[column.name] = column.type.coerce(value)
        return row

    def insert(self, txn: Transaction, schema: TableSchema, values: dict[str, Any]) -> RowVersion:
        """Insert a new row.

        Returns:
            The new row version (visible to txn only until commit).

        Raises:
            ConstraintViolation: NOT NULL, CHECK, UNIQUE or FOREIGN KEY
            LockTimeout, DeadlockDetected: While waiting on a concurrent key
        """
        self._lock_table(txn, schema)
        row = self.prepare_insert(txn, schema, values)
        self._check_row(schema, row)

        row_id = self._allocate_row_id()
        self._locks.acquire(txn.txn_id, RowLocator(schema.table_id, row_id), LockMode.EXCLUSIVE)
        self._check_unique(txn, schema, row, row_id)
        self._check_foreign_keys(txn, schema, row)

        version = RowVersion(row_id=row_id, values=row, created_by=txn.txn_id)
        self._append(txn, schema, version)
        return version

    def lock_row(
        self, txn: Transaction, schema: TableSchema, version: RowVersion
    ) -> RowVersion | None:
        """Take the write lock on the row of a version txn has read.

        Returns:
            The version to modify. This is ``version`` itself when nobody
            changed the row meanwhile. Under READ COMMITTED it may be the
            row's newer head (the caller rechecks its predicate) or None if
            the row was deleted.

        Raises:
            SerializationFailure: Row changed concurrently under REPEATABLE
                READ or SERIALIZABLE
            LockTimeout, DeadlockDetected: While waiting for the row lock
        """
        self._lock_table(txn, schema)
        self._locks.acquire(
            txn.txn_id, RowLocator(schema.table_id, version.row_id), LockMode.EXCLUSIVE
        )
        heap = self.heap(schema.table_id)
        versions = heap.versions(version.row_id) if heap is not None else []
        head = next((v for v in reversed(versions) if v.deleted_by == INVALID_TXN_ID), None)

        if head is version:
            return version
        if version.deleted_by == txn.txn_id:
            return None
        if txn.isolation_level.pins_snapshot:
            raise SerializationFailure(
                "could not serialize access due to concurrent update",
                txn_id=txn.txn_id,
                table=schema.name,
            )
        return head

    def update(
        self,
        txn: Transaction,
        schema: TableSchema,
        version: RowVersion,
        changes: dict[str, Any],
        catalog: CatalogState | None = None,
    ) -> RowVersion:
        """Replace a locked row's head version with a changed copy.

        Args:
            txn: The writing transaction (must hold the row lock).
            schema: The table.
            version: The head version returned by lock_row.
            changes: Column values to change.
            catalog: Catalog state for referential actions (default: txn's).

        Raises:
            ConstraintViolation: NOT NULL, CHECK, UNIQUE or FOREIGN KEY
        """
        for name in changes:
            if not schema.has_column(name):
                raise ColumnNotFound(
                    f'column "{name}" of relation "{schema.name}" does not exist',
                    table=schema.name,
                    column=name,
                )
        row = {c.name: version.values.get(c.name) for c in schema.columns}
        for name, value in changes.items():
            column = schema.column(name)
            row[name] = column.type.coerce(value)
            if column.auto_increment and row[name] is not None:
                self._advance_sequence(schema, name, row[name])
        self._check_row(schema, row)

        changed_names = {c.name for c in schema.columns if row[c.name] != version.values.get(c.name)}
        self._check_unique(txn, schema, row, version.row_id, only_changed=changed_names)
        self._check_foreign_keys(txn, schema, row, only_columns=changed_names)

        version.mark_deleted(txn.txn_id)
        txn.record_write(WriteKind.DELETE, schema.table_id, version)
        new_version = RowVersion(row_id=version.row_id, values=row, created_by=txn.txn_id)
        self._append(txn, schema, new_version)

        state = catalog or txn.catalog
        if state is not None and changed_names:
            self._apply_update_actions(txn, state, schema, version.values, row, changed_names)
        return new_version

    def delete(
        self,
        txn: Transaction,
        schema: TableSchema,
        version: RowVersion,
        catalog: CatalogState | None = None,
    ) -> None:
        """Delete a locked row, applying ON DELETE actions to dependents.

        Raises:
            ForeignKeyViolation: Dependents exist under NO ACTION/RESTRICT
        """
        state = catalog or txn.catalog
        if state is not None:
            self._apply_delete_actions(txn, state, schema, version)
        version.mark_deleted(txn.txn_id)
        txn.record_write(WriteKind.DELETE, schema.table_id, version)
        txn.write_tables.add(schema.name)

    def rewrite_rows(
        self,
        txn: Transaction,
        schema: TableSchema,
        transform: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> int:
        """Replace every live row with a transformed copy (ALTER TABLE).

        The caller holds the exclusive table lock, so every live version is
        committed or txn's own.

        Returns:
            Number of rows rewritten.
        """
        count = 0
        for version in list(self.live_rows(txn, schema)):
            values = transform(dict(version.values))
            self._locks.acquire(
                txn.txn_id, RowLocator(schema.table_id, version.row_id), LockMode.EXCLUSIVE
            )
            version.mark_deleted(txn.txn_id)
            txn.record_write(WriteKind.DELETE, schema.table_id, version)
            self._append(
                txn,
                schema,
                RowVersion(row_id=version.row_id, values=values, created_by=txn.txn_id),
            )
            count += 1
        return count

    # Indexes

    def build_index(self, txn: Transaction, definition: IndexDefinition, schema: TableSchema) -> BTreeIndex:
        """Create and populate a physical index; dropped again if txn aborts.

        Raises:
            DuplicateName: If a physical index of that name still exists
            UniqueViolation: If a unique index finds duplicate live keys
        """
        try:
            index = self._indexes.create_index(
                definition.name, schema.table_id, definition.columns, definition.unique
            )
        except ValueError:
            raise DuplicateName(f'relation "{definition.name}" already exists') from None
        txn.on_abort(lambda: self._drop_physical_index(definition.name))

        heap = self.heap(schema.table_id)
        live_keys: dict[IndexKey, RowId] = {}
        for version in heap.all_versions() if heap is not None else []:
            key = index.key_for(version.values)
            index.insert(key, version.row_id)
            version.index_keys[index.name] = key
            if definition.unique and not key.has_null() and is_live(version, txn.txn_id):
                other = live_keys.setdefault(key, version.row_id)
                if other != version.row_id:
                    raise UniqueViolation(
                        f'could not create unique index "{definition.name}": '
                        f"key {self._describe_key(index, key)} is duplicated",
                        constraint=definition.constraint or definition.name,
                        table=schema.name,
                    )
        return index

    def drop_index(self, txn: Transaction, definition: IndexDefinition) -> None:
        """Drop a physical index once txn commits."""
        txn.on_commit(lambda: self._drop_physical_index(definition.name))

    def get_index(self, name: str) -> BTreeIndex | None:
        return self._indexes.get_index(name)

    def _drop_physical_index(self, name: str) -> None:
        index = self._indexes.get_index(name)
        if index is None:
            return
        self._indexes.drop_index(name)
        heap = self.heap(index.table_id)
        for version in heap.all_versions() if heap is not None else []:
            version.index_keys.pop(name, None)

    # Sequences

    def next_sequence_value(self, schema: TableSchema, column: str) -> int:
        """Next value of an auto-increment column; never rolled back."""
        key = (schema.table_id, column)
        with self._lock:
            if key not in self._sequences:
                self._sequences[key] = self._max_value(schema.table_id, column)
            self._sequences[key] += 1
            return self._sequences[key]

    def _advance_sequence(self, schema: TableSchema, column: str, value: Any) -> None:
        if not isinstance(value, int) or isinstance(value, bool):
            return
        key = (schema.table_id, column)
        with self._lock:
            current = self._sequences.get(key)
            if current is None:
                current = self._max_value(schema.table_id, column)
            self._sequences[key] = max(current, value)

    def _max_value(self, table_id: TableId, column: str) -> int:
        heap = self._heaps.get(table_id)
        values = [
            v.values.get(column)
            for v in (heap.all_versions() if heap is not None else [])
            if isinstance(v.values.get(column), int)
        ]
        return max(values, default=0)

    # Transaction support

    def undo(self, record: WriteRecord) -> None:
        """Revert one write-set entry (rollback, statement failure)."""
        if record.kind == WriteKind.DELETE:
            record.version.clear_deleted()
            return
        heap = self.heap(record.table_id)
        if heap is None:
            return
        remaining = heap.remove(record.version)
        for name, key in record.version.index_keys.items():
            if any(v.index_keys.get(name) == key for v in remaining):
                continue
            index = self._indexes.get_index(name)
            if index is not None:
                index.delete(key, record.version.row_id)

    def validate_commit(self, txn: Transaction, snapshot: Snapshot) -> None:
        """Re-check foreign keys of txn's writes against the newest committed state.

        Raises:
            ForeignKeyViolation: A written row lost its parent, or a removed
                parent key still has dependents
        """
        state = txn.catalog
        if state is None:
            return
        for record in list(txn.write_set):
            schema = state.table_by_id(record.table_id)
            if schema is None:
                continue
            version = record.version
            if record.kind == WriteKind.INSERT:
                if is_live(version, txn.txn_id) and schema.foreign_keys:
                    self._check_foreign_keys(txn, schema, version.values, catalog=state)
            else:
                for child, fk in state.referencing(schema.name):
                    key = tuple(version.values.get(c) for c in fk.ref_columns)
                    if any(v is None for v in key):
                        continue
                    if self._find_live(txn, state, schema, fk.ref_columns, key) is not None:
                        continue
                    if self._find_live(txn, state, child, fk.columns, key) is not None:
                        raise ForeignKeyViolation(
                            f'update or delete on table "{schema.name}" violates foreign key '
                            f'constraint "{fk.name}" on table "{child.name}"',
                            constraint=fk.name,
                            table=child.name,
                        )

    def restore_row(self, table_id: TableId, version: RowVersion) -> None:
        """Append an already committed version during recovery."""
        heap = self.create_heap(table_id)
        heap.append(version)
        with self._lock:
            self._next_row_id = max(self._next_row_id, version.row_id + 1)

    def restore_indexes(self, state: CatalogState) -> None:
        """Build the physical indexes of a recovered catalog."""
        for definition in state.indexes.values():
            schema = state.table(definition.table)
            if schema is None or self._indexes.get_index(definition.name) is not None:
                continue
            index = self._indexes.create_index(
                definition.name, schema.table_id, definition.columns, definition.unique
            )
            heap = self.heap(schema.table_id)
            for version in heap.all_versions() if heap is not None else []:
                key = index.key_for(version.values)
                index.insert(key, version.row_id)
                version.index_keys[index.name] = key

    def get_stats(self) -> StorageStats:
        with self._lock:
            heaps = list(self._heaps.values())
        return StorageStats(
            num_tables=len(heaps),
            num_rows=sum(len(h) for h in heaps),
            num_versions=sum(len(h.all_versions()) for h in heaps),
            rows_scanned=self._rows_scanned,
            index_lookups=self._index_lookups,
        )

    # Internals

    def _allocate_row_id(self) -> RowId:
        with self._lock:
            row_id = self._next_row_id
            self._next_row_id += 1
            return RowId(row_id)

    def _lock_table(self, txn: Transaction, schema: TableSchema) -> None:
        self._locks.acquire(txn.txn_id, table_resource(schema.name), LockMode.INTENT_EXCLUSIVE)

    def _require_index(self, name: str) -> BTreeIndex:
        index = self._indexes.get_index(name)
        if index is None:
            raise IndexNotFound(f'index "{name}" does not exist')
        return index

    @staticmethod
    def _visible(heap: TableHeap, row_id: RowId, snapshot: Snapshot) -> RowVersion | None:
        for version in reversed(heap.versions(row_id)):
            if version.is_visible_to(snapshot):
                return version
        return None

    @staticmethod
    def _row_ids_of(entries: list[tuple[IndexKey, set[RowId]]]) -> list[RowId]:
        ordered: list[RowId] = []
        seen: set[RowId] = set()
        for _, row_ids in entries:
            for row_id in sorted(row_ids):
                if row_id not in seen:
                    seen.add(row_id)
                    ordered.append(row_id)
        return ordered

    def _recheck(
        self,
        schema: TableSchema,
        index: BTreeIndex,
        candidates: list[RowId],
        snapshot: Snapshot,
        prefix: IndexKey,
    ) -> Iterator[RowVersion]:
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        for row_id in candidates:
            version = self._visible(heap, row_id, snapshot)
            if version is None:
                continue
            key = version.index_keys.get(index.name)
            if key is not None and key.starts_with(prefix):
                self._rows_scanned += 1
                yield version

    def _append(self, txn: Transaction, schema: TableSchema, version: RowVersion) -> None:
        heap = self.heap(schema.table_id)
        if heap is None:
            heap = self.create_heap(schema.table_id)
        for index in self._indexes.indexes_for(schema.table_id):
            key = index.key_for(version.values)
            index.insert(key, version.row_id)
            version.index_keys[index.name] = key
        heap.append(version)
        txn.record_write(WriteKind.INSERT, schema.table_id, version)
        txn.write_tables.add(schema.name)

    def _evaluate_expression(self, expression: Any, row: dict[str, Any]) -> Any:
        if self._evaluate is None:
            raise RuntimeError("storage engine has no expression evaluator")
        return self._evaluate(expression, row)

    def _check_row(self, schema: TableSchema, row: dict[str, Any]) -> None:
        for column in schema.columns:
            if not column.nullable and row.get(column.name) is None:
                raise NotNullViolation(
                    f'null value in column "{column.name}" of relation "{schema.name}" '
                    "violates not-null constraint",
                    constraint=f"{schema.name}_{column.name}_not_null",
                    table=schema.name,
                )
        for check in schema.checks:
            self.check_constraint(schema, check, row)

    def check_constraint(self, schema: TableSchema, check: CheckConstraint, row: dict[str, Any]) -> None:
        """Raise CheckViolation if the predicate is FALSE for row."""
        if self._evaluate_expression(check.expression, row) is False:
            raise CheckViolation(
                f'new row for relation "{schema.name}" violates check constraint "{check.name}"',
                constraint=check.name,
                table=schema.name,
            )

    @staticmethod
    def _describe_key(index: BTreeIndex, key: IndexKey) -> str:
        columns = ", ".join(index.columns)
        values = ", ".join("NULL" if v is None else str(v) for v in key.values)
        return f"({columns})=({values})"

    def _check_unique(
        self,
        txn: Transaction,
        schema: TableSchema,
        row: dict[str, Any],
        row_id: RowId,
        only_changed: set[str] | None = None,
    ) -> None:
        """Reject a key held by another live row, waiting on concurrent writers."""
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        for index in self._indexes.indexes_for(schema.table_id):
            if not index.is_unique:
                continue
            if only_changed is not None and not only_changed & set(index.columns):
                continue
            key = index.key_for(row)
            if key.has_null():
                continue
            while True:
                waiting_on = self._unique_conflict(txn, schema, heap, index, key, row_id)
                if waiting_on is None:
                    break
                # Block until the concurrent writer of this key finishes.
                self._locks.acquire(
                    txn.txn_id, RowLocator(schema.table_id, waiting_on), LockMode.EXCLUSIVE
                )

    def _unique_conflict(
        self,
        txn: Transaction,
        schema: TableSchema,
        heap: TableHeap,
        index: BTreeIndex,
        key: IndexKey,
        row_id: RowId,
    ) -> RowId | None:
        """Return a row id to wait on, None if the key is free; raise on conflict."""
        for other_id in sorted(index.search(key)):
            if other_id == row_id:
                continue
            for version in heap.versions(other_id):
                if version.index_keys.get(index.name) != key:
                    continue
                created_visible = version.created_by == txn.txn_id or version.created_ts is not None
                if not created_visible:
                    if version.deleted_by == version.created_by:
                        continue
                    return other_id
                if version.deleted_by == INVALID_TXN_ID:
                    raise UniqueViolation(
                        f'duplicate key value violates unique constraint "{index.name}": '
                        f"Key {self._describe_key(index, key)} already exists",
                        constraint=index.name,
                        table=schema.name,
                    )
                if version.deleted_by != txn.txn_id and version.deleted_ts is None:
                    return other_id
        return None

    def _parent_index(
        self, state: CatalogState, schema: TableSchema, columns: tuple[str, ...]
    ) -> tuple[BTreeIndex, tuple[int, ...]] | None:
        """An index whose leading columns are exactly ``columns`` (any order)."""
        wanted = set(columns)
        for definition in state.indexes_of(schema.name):
            if set(definition.columns[: len(columns)]) == wanted:
                index = self._indexes.get_index(definition.name)
                if index is not None:
                    order = tuple(columns.index(c) for c in definition.columns[: len(columns)])
                    return index, order
        return None

    def _find_live(
        self,
        txn: Transaction,
        state: CatalogState,
        schema: TableSchema,
        columns: tuple[str, ...],
        key: tuple,
        exclude: RowId | None = None,
    ) -> RowVersion | None:
        """First live row of schema whose ``columns`` equal ``key``."""
        return next(self._iter_live_matches(txn, state, schema, columns, key, exclude), None)

    def _iter_live_matches(
        self,
        txn: Transaction,
        state: CatalogState,
        schema: TableSchema,
        columns: tuple[str, ...],
        key: tuple,
        exclude: RowId | None = None,
    ) -> Iterator[RowVersion]:
        heap = self.heap(schema.table_id)
        if heap is None:
            return
        found = self._parent_index(state, schema, columns)
        if found is not None:
            index, order = found
            self._index_lookups += 1
            prefix = IndexKey(tuple(key[i] for i in order))
            row_ids = self._row_ids_of(index.prefix_scan(prefix))
        else:
            row_ids = heap.row_ids()
        for row_id in row_ids:
            if row_id == exclude:
                continue
            for version in reversed(heap.versions(row_id)):
                if is_live(version, txn.txn_id):
                    if tuple(version.values.get(c) for c in columns) == key:
                        yield version
                    break

    def _check_foreign_keys(
        self,
        txn: Transaction,
        schema: TableSchema,
        row: dict[str, Any],
        only_columns: set[str] | None = None,
        catalog: CatalogState | None = None,
    ) -> None:
        state = catalog or txn.catalog
        if state is None:
            return
        for fk in schema.foreign_keys:
            if fk.deferred and catalog is None:
                continue
            if only_columns is not None and not only_columns & set(fk.columns):
                continue
            self.check_foreign_key(txn, state, schema, fk, row)

    def check_foreign_key(
        self,
        txn: Transaction,
        state: CatalogState,
        schema: TableSchema,
        fk: ForeignKey,
        row: dict[str, Any],
    ) -> None:
        """Raise ForeignKeyViolation if row's non-NULL key has no parent row."""
        key = tuple(row.get(c) for c in fk.columns)
        if any(v is None for v in key):
            return
        parent = schema if fk.ref_table == schema.name else state.table(fk.ref_table)
        if parent is not None:
            if parent is schema and tuple(row.get(c) for c in fk.ref_columns) == key:
                return
            if self._find_live(txn, state, parent, fk.ref_columns, key) is not None:
                return
        values = ", ".join(str(v) for v in key)
        raise ForeignKeyViolation(
            f'insert or update on table "{schema.name}" violates foreign key constraint '
            f'"{fk.name}": Key ({", ".join(fk.columns)})=({values}) is not present in '
            f'table "{fk.ref_table}"',
            constraint=fk.name,
            table=schema.name,
        )

    def _dependents(
        self,
        txn: Transaction,
        state: CatalogState,
        child: TableSchema,
        fk: ForeignKey,
        key: tuple,
        exclude: RowId | None,
    ) -> list[RowVersion]:
        return list(self._iter_live_matches(txn, state, child, fk.columns, key, exclude))

    def _apply_delete_actions(
        self, txn: Transaction, state: CatalogState, schema: TableSchema, version: RowVersion
    ) -> None:
        for child, fk in state.referencing(schema.name):
            key = tuple(version.values.get(c) for c in fk.ref_columns)
            if any(v is None for v in key):
                continue
            exclude = version.row_id if child.name == schema.name else None
            dependents = self._dependents(txn, state, child, fk, key, exclude)
            if not dependents:
                continue
            if fk.on_delete == ReferentialAction.CASCADE:
                for dependent in dependents:
                    head = self.lock_row(txn, child, dependent)
                    if head is not None and head.deleted_by == INVALID_TXN_ID:
                        self.delete(txn, child, head, state)
            elif fk.on_delete == ReferentialAction.SET_NULL:
                for dependent in dependents:
                    head = self.lock_row(txn, child, dependent)
                    if head is not None:
                        self.update(txn, child, head, {c: None for c in fk.columns}, state)
            elif not fk.deferred:
                raise ForeignKeyViolation(
                    f'update or delete on table "{schema.name}" violates foreign key '
                    f'constraint "{fk.name}" on table "{child.name}"',
                    constraint=fk.name,
                    table=child.name,
                )

    def _apply_update_actions(
        self,
        txn: Transaction,
        state: CatalogState,
        schema: TableSchema,
        old: dict[str, Any],
        new: dict[str, Any],
        changed: set[str],
    ) -> None:
        for child, fk in state.referencing(schema.name):
            if not changed & set(fk.ref_columns):
                continue
            old_key = tuple(old.get(c) for c in fk.ref_columns)
            new_key = tuple(new.get(c) for c in fk.ref_columns)
            if old_key == new_key or any(v is None for v in old_key):
                continue
            dependents = self._dependents(txn, state, child, fk, old_key, None)
            if not dependents:
                continue
            if fk.on_update == ReferentialAction.CASCADE:
                patch = dict(zip(fk.columns, new_key))
            elif fk.on_update == ReferentialAction.SET_NULL:
                patch = {c: None for c in fk.columns}
            elif fk.deferred:
                continue
            else:
                raise ForeignKeyViolation(
                    f'update or delete on table "{schema.name}" violates foreign key '
                    f'constraint "{fk.name}" on table "{child.name}"',
                    constraint=fk.name,
                    table=child.name,
                )
            for dependent in dependents:
                head = self.lock_row(txn, child, dependent)
                if head is not None:
                    self.update(txn, child, head, patch, state)
