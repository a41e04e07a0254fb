"""Transaction Manager for MVCC and transaction lifecycle.

This module implements the transaction manager, which coordinates:
- Transaction lifecycle (begin, commit, abort)
- MVCC snapshots per isolation level
- Statement savepoints
- Commit-time validation and commit log durability

MVCC:
    Every committed transaction gets a commit timestamp. Its versions are
    stamped with that timestamp under the commit mutex, then the timestamp
    is published together with the catalog. A snapshot is just the newest
    published timestamp, so it sees all of a transaction's writes or none.

Commit order:
    1. Deferred constraints (foreign keys) against the newest committed state
    2. Serializable read/write validation
    3. Catalog and schema conflict validation
    4. Commit log append and sync (durability)
    5. Version stamping, then publication of timestamp and catalog
    6. Commit hooks and lock release

References:
    - Reed, "Naming and Synchronization" MIT PhD Thesis (1978)
    - Cahill et al., "Serializable Isolation for Snapshot Databases" (2008)
    - PostgreSQL MVCC documentation
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Dict

from reldb.domain.entities import Snapshot
from reldb.domain.errors import DatabaseError, SerializationFailure, TransactionAborted
from reldb.domain.services.catalog import Catalog
from reldb.domain.services.lock_manager import LockManager
from reldb.domain.value_objects import (
    INITIAL_TIMESTAMP,
    IsolationLevel,
    Timestamp,
    TransactionId,
    TransactionState,
)
from reldb.infrastructure.logging import get_logger
from reldb.ports.inbound.transaction_manager import (
    Savepoint,
    Transaction,
    TransactionStats,
    WriteKind,
)
from reldb.ports.outbound.commit_log import (
    CommitLog,
    CommitRecord,
    OperationKind,
    RowOperation,
)

if TYPE_CHECKING:
    from reldb.domain.services.storage_engine import StorageEngine


logger = get_logger(__name__, component="transaction_manager")


class MVCCTransactionManager:
    """MVCC-based transaction manager.

    Usage:
        txn_mgr = MVCCTransactionManager(catalog, storage, lock_manager, commit_log)
        txn = txn_mgr.begin(IsolationLevel.REPEATABLE_READ)
        txn_mgr.begin_statement(txn)
        ...
        txn_mgr.commit(txn)

    Thread Safety:
        All methods are thread-safe for concurrent transactions. Commits
        are serialized by a commit mutex; snapshots are taken under a
        separate state lock so readers never wait for a commit's log sync.
    """

    def __init__(
        self,
        catalog: Catalog,
        storage: StorageEngine,
        lock_manager: LockManager,
        commit_log: CommitLog | None = None,
        default_isolation: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> None:
        """Initialize the transaction manager.

        Args:
            catalog: Owner of the committed catalog state.
            storage: Storage engine (undo and deferred constraint checks).
            lock_manager: Lock manager whose locks are released at end.
            commit_log: Durable log of committed write-sets (None = not logged).
            default_isolation: Isolation level when BEGIN names none.
        """
        self._catalog = catalog
        self._storage = storage
        self._lock_manager = lock_manager
        self._commit_log = commit_log
        self._default_isolation = default_isolation

        self._lock = threading.Lock()
        self._commit_mutex = threading.Lock()
        self._next_txn_id = 1
        self._last_commit_ts = INITIAL_TIMESTAMP
        self._active_txns: Dict[TransactionId, Transaction] = {}
        # (commit_ts, tables written) of recent commits, for serializable validation
        self._recent_writes: list[tuple[Timestamp, frozenset[str]]] = []

        # Statistics
        self._committed_total = 0
        self._aborted_total = 0
        self._total_duration_ms = 0.0

    @property
    def default_isolation(self) -> IsolationLevel:
        return self._default_isolation

    @property
    def last_commit_ts(self) -> Timestamp:
        with self._lock:
            return self._last_commit_ts

    def restore(self, last_commit_ts: Timestamp, next_txn_id: int) -> None:
        """Resume counters after recovery."""
        with self._lock:
            self._last_commit_ts = last_commit_ts
            self._next_txn_id = max(self._next_txn_id, next_txn_id)

    def begin(self, isolation_level: IsolationLevel | None = None) -> Transaction:
        """Begin a new transaction.

        The snapshot is not taken here but at the transaction's first
        statement (see begin_statement).
        """
        with self._lock:
            txn_id = TransactionId(self._next_txn_id)
            self._next_txn_id += 1
            txn = Transaction(
                txn_id=txn_id,
                isolation_level=isolation_level or self._default_isolation,
                started_at=time.monotonic(),
            )
            self._active_txns[txn_id] = txn

        logger.debug("transaction_started", txn_id=txn_id, isolation=txn.isolation_level.sql_name)
        return txn

    def begin_statement(self, txn: Transaction) -> Snapshot:
        """Prepare the snapshot and catalog a statement of txn reads from.

        Raises:
            TransactionAborted: If the transaction is not active.
        """
        self._require_active(txn)
        if txn.isolation_level.pins_snapshot and txn.snapshot is not None:
            return txn.snapshot

        with self._lock:
            read_ts = self._last_commit_ts
            catalog = self._catalog.current()

        txn.snapshot = Snapshot(
            txn_id=txn.txn_id,
            read_ts=read_ts,
            dirty_reads=txn.isolation_level == IsolationLevel.READ_UNCOMMITTED,
        )
        if not txn.catalog_dirty:
            txn.catalog = catalog
            txn.catalog_base = catalog.version
        return txn.snapshot

    def latest_snapshot(self, txn: Transaction) -> Snapshot:
        """A snapshot of the newest committed state plus txn's own writes."""
        with self._lock:
            return Snapshot(txn_id=txn.txn_id, read_ts=self._last_commit_ts)

    def savepoint(self, txn: Transaction) -> Savepoint:
        return Savepoint(
            write_count=len(txn.write_set),
            catalog=txn.catalog,
            catalog_dirty=txn.catalog_dirty,
            commit_hooks=len(txn.commit_hooks),
            abort_hooks=len(txn.abort_hooks),
            read_tables=frozenset(txn.read_tables),
            write_tables=frozenset(txn.write_tables),
        )

    def rollback_to(self, txn: Transaction, savepoint: Savepoint) -> None:
        """Undo everything txn did after the savepoint.

        Locks taken since the savepoint are kept until the transaction ends.
        """
        self._undo(txn, savepoint.write_count, savepoint.abort_hooks)
        del txn.commit_hooks[savepoint.commit_hooks:]
        txn.catalog = savepoint.catalog
        txn.catalog_dirty = savepoint.catalog_dirty
        txn.read_tables = set(savepoint.read_tables)
        txn.write_tables = set(savepoint.write_tables)

    def commit(self, txn: Transaction) -> None:
        """Commit a transaction.

        Any validation failure aborts the transaction before the error
        propagates.

        Raises:
            TransactionAborted: If transaction is not active.
            ConstraintViolation: If a deferred constraint fails.
            SerializationFailure: On a serialization or schema conflict.
        """
        self._require_active(txn)

        try:
            with self._commit_mutex:
                latest = self.latest_snapshot(txn)
                if txn.write_set:
                    self._storage.validate_commit(txn, latest)
                self._validate_serializable(txn)
                self._catalog.check_publishable(txn)
                self._validate_schema_current(txn)

                writes = bool(txn.write_set) or txn.catalog_dirty
                commit_ts = Timestamp(latest.read_ts + 1) if writes else latest.read_ts
                if writes and self._commit_log is not None:
                    self._commit_log.append(self._commit_record(txn, commit_ts))

                if writes:
                    self._stamp(txn, commit_ts)
                with self._lock:
                    if txn.catalog_dirty:
                        self._catalog.publish(txn)
                    if writes:
                        self._last_commit_ts = commit_ts
                    if txn.write_tables:
                        self._recent_writes.append((commit_ts, frozenset(txn.write_tables)))
                    txn.state = TransactionState.COMMITTED
                    txn.commit_ts = commit_ts
                    self._finish(txn, committed=True)
        except (DatabaseError, OSError):
            self.abort(txn)
            raise

        for hook in txn.commit_hooks:
            hook()
        self._lock_manager.release_all(txn.txn_id)
        logger.debug(
            "transaction_committed",
            txn_id=txn.txn_id,
            commit_ts=txn.commit_ts,
            writes=len(txn.write_set),
            ddl=txn.catalog_dirty,
        )

    def abort(self, txn: Transaction) -> None:
        """Abort a transaction and undo its write-set.

        Aborting a finished transaction is a no-op, so abort always succeeds.
        """
        if txn.is_terminal():
            return

        self._undo(txn, 0, 0)
        txn.commit_hooks.clear()
        txn.state = TransactionState.ABORTED
        with self._lock:
            self._finish(txn, committed=False)
        self._lock_manager.release_all(txn.txn_id)
        logger.debug("transaction_aborted", txn_id=txn.txn_id)

    def get_transaction(self, txn_id: TransactionId) -> Transaction | None:
        with self._lock:
            return self._active_txns.get(txn_id)

    def get_active_transactions(self) -> list[TransactionId]:
        """Return IDs of all active transactions."""
        with self._lock:
            return list(self._active_txns.keys())

    def get_stats(self) -> TransactionStats:
        """Return transaction statistics for monitoring."""
        with self._lock:
            total = self._committed_total + self._aborted_total
            return TransactionStats(
                active_count=len(self._active_txns),
                committed_total=self._committed_total,
                aborted_total=self._aborted_total,
                avg_duration_ms=self._total_duration_ms / total if total else 0.0,
                last_commit_ts=self._last_commit_ts,
            )

    # Internals

    @staticmethod
    def _require_active(txn: Transaction) -> None:
        if not txn.is_active():
            raise TransactionAborted(
                f"transaction {txn.txn_id} is {txn.state.name.lower()}",
                txn_id=txn.txn_id,
            )

    def _undo(self, txn: Transaction, write_count: int, abort_hooks: int) -> None:
        while len(txn.write_set) > write_count:
            self._storage.undo(txn.write_set.pop())
        while len(txn.abort_hooks) > abort_hooks:
            txn.abort_hooks.pop()()

    def _finish(self, txn: Transaction, committed: bool) -> None:
        """Bookkeeping when txn ends; caller holds the state lock."""
        self._active_txns.pop(txn.txn_id, None)
        if committed:
            self._committed_total += 1
        else:
            self._aborted_total += 1
        self._total_duration_ms += (time.monotonic() - txn.started_at) * 1000

        # Writes older than every active snapshot can no longer conflict.
        horizon = min(
            (t.snapshot.read_ts for t in self._active_txns.values() if t.snapshot is not None),
            default=self._last_commit_ts,
        )
        self._recent_writes = [(ts, tables) for ts, tables in self._recent_writes if ts > horizon]

    def _validate_serializable(self, txn: Transaction) -> None:
        """Abort if a transaction committed after txn's snapshot wrote a table txn read."""
        if txn.isolation_level != IsolationLevel.SERIALIZABLE or txn.snapshot is None:
            return
        # Read-only transactions serialize before every later writer.
        if not txn.write_set and not txn.catalog_dirty:
            return
        with self._lock:
            recent = list(self._recent_writes)
        for commit_ts, tables in recent:
            if commit_ts > txn.snapshot.read_ts and tables & txn.read_tables:
                raise SerializationFailure(
                    "could not serialize access due to read/write dependencies "
                    f"among transactions (tables: {', '.join(sorted(tables & txn.read_tables))})",
                    txn_id=txn.txn_id,
                )

    def _validate_schema_current(self, txn: Transaction) -> None:
        """Abort if a table txn wrote was altered after txn resolved its schema."""
        if txn.catalog_dirty or txn.catalog is None:
            return
        committed = self._catalog.current()
        for name in txn.write_tables:
            if committed.table(name) is not txn.catalog.table(name):
                raise SerializationFailure(
                    f'could not serialize access: table "{name}" was altered concurrently',
                    txn_id=txn.txn_id,
                )

    @staticmethod
    def _stamp(txn: Transaction, commit_ts: Timestamp) -> None:
        for record in txn.write_set:
            if record.kind == WriteKind.INSERT:
                record.version.created_ts = commit_ts
            else:
                record.version.deleted_ts = commit_ts

    @staticmethod
    def _commit_record(txn: Transaction, commit_ts: Timestamp) -> CommitRecord:
        operations = []
        for record in txn.write_set:
            if record.kind == WriteKind.INSERT:
                operations.append(
                    RowOperation(
                        OperationKind.INSERT,
                        record.table_id,
                        record.version.row_id,
                        dict(record.version.values),
                    )
                )
            else:
                operations.append(
                    RowOperation(OperationKind.DELETE, record.table_id, record.version.row_id)
                )
        catalog = txn.catalog.to_dict() if txn.catalog_dirty and txn.catalog else None
        return CommitRecord(
            txn_id=txn.txn_id,
            commit_ts=commit_ts,
            operations=operations,
            catalog=catalog,
        )
