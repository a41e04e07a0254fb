"""Commit Log port for durable transaction records.

This outbound port defines the contract for persisting committed
write-sets. The commit log is logical: each record describes one committed
transaction (its row operations and, when it ran DDL, the resulting
catalog). Uncommitted work is never logged, so recovery is a plain redo
of the log in order.

References:
    - Gray & Reuter, "Transaction Processing" (1993), ch. 9
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Protocol

from reldb.domain.value_objects import RowId, TableId, Timestamp, TransactionId


class SyncMode(Enum):
    """Commit log sync modes with different durability/performance tradeoffs.

    FSYNC: Full durability - flush and fsync before commit returns (safest)
    FLUSH: Flush to the OS; survives process crashes, not power loss
    NONE: No sync - rely on buffering (fastest, but unsafe)
    """

    FSYNC = "fsync"
    FLUSH = "flush"
    NONE = "none"


class OperationKind(Enum):
    """Logical row operation recorded at commit."""

    INSERT = "insert"
    DELETE = "delete"


@dataclass
class RowOperation:
    """One row change of a committed transaction.

    INSERT appends a version with ``values``; DELETE closes the row's
    current version.
    """

    kind: OperationKind
    table_id: TableId
    row_id: RowId
    values: dict[str, Any] | None = None


@dataclass
class CommitRecord:
    """Everything needed to redo one committed transaction."""

    txn_id: TransactionId
    commit_ts: Timestamp
    operations: list[RowOperation] = field(default_factory=list)
    catalog: dict[str, Any] | None = None


class CommitLog(Protocol):
    """Protocol for commit log persistence.

    Key guarantees:
    - Records are appended in commit timestamp order
    - append() returns only after the record is synced per sync_mode
    - read_all() yields every durable record in append order

    Thread Safety:
        Appends are serialized by the transaction manager's commit mutex;
        implementations still guard their own state.
    """

    @property
    @abstractmethod
    def sync_mode(self) -> SyncMode:
        """Return the current sync mode."""
        ...

    @abstractmethod
    def append(self, record: CommitRecord) -> None:
        """Append and sync a commit record.

        Raises:
            IOError: If the write fails or the log is closed.
        """
        ...

    @abstractmethod
    def read_all(self) -> Iterator[CommitRecord]:
        """Read all records in append order (used by recovery)."""
        ...

    @abstractmethod
    def record_count(self) -> int:
        """Number of records in the log."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the log and release resources."""
        ...
