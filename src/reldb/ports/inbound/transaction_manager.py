"""Transaction Manager port for MVCC and transaction lifecycle.

This inbound port defines the contract for transaction management,
including begin/commit/abort operations, statement snapshots and
statement-level savepoints.

Key responsibilities:
- Manage transaction lifecycle (active -> committed | aborted)
- Provide MVCC snapshots per isolation level
- Validate deferred constraints and conflicts at commit
- Append committed write-sets to the commit log

References:
    - Reed, "Naming and Synchronization" (1978)
    - Berenson et al., "A Critique of ANSI SQL Isolation Levels" (1995)
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Protocol

from reldb.domain.entities import CatalogState, RowVersion, Snapshot
from reldb.domain.value_objects import (
    INITIAL_TIMESTAMP,
    IsolationLevel,
    TableId,
    Timestamp,
    TransactionId,
    TransactionState,
)


class WriteKind(Enum):
    """Kind of change recorded in a transaction's write-set."""

    INSERT = auto()
    """A new row version was appended."""

    DELETE = auto()
    """An existing row version was marked deleted."""


@dataclass(eq=False)
class WriteRecord:
    """One entry of a write-set: a version the transaction created or closed."""

    kind: WriteKind
    table_id: TableId
    version: RowVersion


@dataclass
class Savepoint:
    """Transaction state captured before a statement runs.

    Rolling back to a savepoint undoes the statement's writes and catalog
    edits, and runs the abort hooks registered since.
    """

    write_count: int
    catalog: CatalogState | None
    catalog_dirty: bool
    commit_hooks: int
    abort_hooks: int
    read_tables: frozenset[str]
    write_tables: frozenset[str]


@dataclass(eq=False)
class Transaction:
    """A database transaction.

    Transactions provide ACID guarantees:
    - Atomicity: the write-set is published at commit or undone entirely
    - Consistency: constraints are checked per statement and at commit
    - Isolation: snapshot visibility per isolation level
    - Durability: the commit log is flushed before commit returns

    Attributes:
        txn_id: Unique transaction identifier
        isolation_level: Isolation level chosen at BEGIN
        state: Lifecycle state
        snapshot: Current snapshot (pinned for REPEATABLE READ and above)
        catalog: Working catalog state
        catalog_base: Version of the committed catalog the working state derives from
        catalog_dirty: Whether this transaction changed the catalog
        write_set: Versions created and closed, in order
        read_tables: Tables read (for serializable validation)
        write_tables: Tables written
        commit_hooks: Callbacks run after a successful commit
        abort_hooks: Callbacks run, newest first, when changes are undone
        commit_ts: Commit timestamp once committed
    """

    txn_id: TransactionId
    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    state: TransactionState = TransactionState.ACTIVE
    snapshot: Snapshot | None = None
    catalog: CatalogState | None = None
    catalog_base: int = 0
    catalog_dirty: bool = False
    write_set: list[WriteRecord] = field(default_factory=list)
    read_tables: set[str] = field(default_factory=set)
    write_tables: set[str] = field(default_factory=set)
    commit_hooks: list[Callable[[], None]] = field(default_factory=list)
    abort_hooks: list[Callable[[], None]] = field(default_factory=list)
    commit_ts: Timestamp = INITIAL_TIMESTAMP
    started_at: float = 0.0

    def is_active(self) -> bool:
        """Return True if transaction can still perform operations."""
        return self.state.is_active()

    def is_terminal(self) -> bool:
        """Return True if transaction has ended."""
        return self.state.is_terminal()

    def record_write(self, kind: WriteKind, table_id: TableId, version: RowVersion) -> None:
        self.write_set.append(WriteRecord(kind, table_id, version))

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the transaction commits."""
        self.commit_hooks.append(callback)

    def on_abort(self, callback: Callable[[], None]) -> None:
        """Run callback if the change it guards is undone."""
        self.abort_hooks.append(callback)


@dataclass
class TransactionStats:
    """Statistics for transaction monitoring."""

    active_count: int
    committed_total: int
    aborted_total: int
    avg_duration_ms: float
    last_commit_ts: int


class TransactionManager(Protocol):
    """Protocol for transaction management.

    Isolation levels supported:
    - READ_UNCOMMITTED: newest non-aborted versions are visible
    - READ_COMMITTED: fresh snapshot per statement
    - REPEATABLE_READ: snapshot pinned at the first statement
    - SERIALIZABLE: pinned snapshot plus commit-time read/write validation

    Thread Safety:
        All methods must be thread-safe for concurrent transactions.
    """

    @abstractmethod
    def begin(self, isolation_level: IsolationLevel | None = None) -> Transaction:
        """Begin a new transaction."""
        ...

    @abstractmethod
    def begin_statement(self, txn: Transaction) -> Snapshot:
        """Prepare the snapshot and catalog a statement of txn reads from.

        READ COMMITTED refreshes both on every call; REPEATABLE READ and
        SERIALIZABLE pin them on the first call.
        """
        ...

    @abstractmethod
    def savepoint(self, txn: Transaction) -> Savepoint:
        """Capture the state to restore if the next statement fails."""
        ...

    @abstractmethod
    def rollback_to(self, txn: Transaction, savepoint: Savepoint) -> None:
        """Undo everything txn did after the savepoint."""
        ...

    @abstractmethod
    def commit(self, txn: Transaction) -> None:
        """Commit a transaction.

        After commit returns, the transaction's effects are durable and
        visible to every snapshot taken afterwards.

        Raises:
            ConstraintViolation: If deferred constraints fail (txn is aborted)
            SerializationFailure: On a serialization conflict (txn is aborted)
            TransactionAborted: If the transaction is not active
        """
        ...

    @abstractmethod
    def abort(self, txn: Transaction) -> None:
        """Abort a transaction and undo its write-set. Always succeeds."""
        ...

    @abstractmethod
    def latest_snapshot(self, txn: Transaction) -> Snapshot:
        """A snapshot of the newest committed state, seen by txn."""
        ...

    @abstractmethod
    def get_active_transactions(self) -> list[TransactionId]:
        """Return IDs of all active transactions."""
        ...

    @abstractmethod
    def get_stats(self) -> TransactionStats:
        """Return transaction statistics for monitoring."""
        ...
