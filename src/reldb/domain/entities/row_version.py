"""Row version entity with MVCC (Multi-Version Concurrency Control) metadata.

Rows are never modified in place. Every insert appends a version, every
update closes the current version and appends a new one with the same row
id, and every delete closes the current version. Readers select the version
their snapshot can see.

Terminology (PostgreSQL equivalent):
    - created_by / created_ts: xmin and its commit timestamp
    - deleted_by / deleted_ts: xmax and its commit timestamp

Commit timestamps are stamped onto the versions of a transaction's write-set
while the transaction manager holds its commit mutex, before the new commit
timestamp is published. A snapshot taken afterwards sees all of them; a
snapshot taken earlier sees none of them.

References:
    - Reed, D. "Naming and Synchronization in a Decentralized Computer System" (1978)
    - Bernstein & Goodman "Multiversion Concurrency Control" (1983)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reldb.domain.value_objects import (
    INVALID_TXN_ID,
    RowId,
    Timestamp,
    TransactionId,
)


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time view of the database for MVCC.

    A snapshot captures:
    - The transaction taking the snapshot (its own writes are always visible)
    - The newest published commit timestamp at snapshot time

    With ``dirty_reads`` set (READ UNCOMMITTED) the newest non-aborted
    version is visible regardless of commit status.
    """

    txn_id: TransactionId
    read_ts: Timestamp
    dirty_reads: bool = False

    def sees_commit(self, commit_ts: Timestamp | None) -> bool:
        """Check if a commit with this timestamp happened before the snapshot."""
        return commit_ts is not None and commit_ts <= self.read_ts


@dataclass(eq=False)
class RowVersion:
    """One version of a logical row.

    Attributes:
        row_id: Logical row identifier shared by every version of the row
        values: Column name to value mapping (missing columns read as NULL)
        created_by: Transaction that wrote this version
        created_ts: Commit timestamp of created_by, None while uncommitted
        deleted_by: Transaction that closed this version, or INVALID_TXN_ID
        deleted_ts: Commit timestamp of deleted_by, None while uncommitted

    Example:
        >>> v = RowVersion(RowId(1), {"id": 1}, created_by=TransactionId(7))
        >>> v.is_visible_to(Snapshot(TransactionId(7), Timestamp(0)))
        True
        >>> v.is_visible_to(Snapshot(TransactionId(8), Timestamp(0)))
        False
    """

    row_id: RowId
    values: dict[str, Any]
    created_by: TransactionId
    created_ts: Timestamp | None = None
    deleted_by: TransactionId = INVALID_TXN_ID
    deleted_ts: Timestamp | None = None
    index_keys: dict[str, tuple] = field(default_factory=dict)

    def is_deleted(self) -> bool:
        """Check if some transaction (committed or not) closed this version."""
        return self.deleted_by != INVALID_TXN_ID

    def is_committed(self) -> bool:
        return self.created_ts is not None

    def is_head(self) -> bool:
        """Check if this is the newest committed, not committed-deleted version."""
        return self.created_ts is not None and self.deleted_ts is None

    def mark_deleted(self, deleted_by: TransactionId) -> None:
        """Close this version on behalf of a transaction.

        The caller must hold the row's exclusive lock.
        """
        if self.is_deleted() and self.deleted_by != deleted_by:
            raise ValueError(
                f"row {self.row_id} version already deleted by txn {self.deleted_by}"
            )
        self.deleted_by = deleted_by

    def clear_deleted(self) -> None:
        """Undo a delete mark written by an aborted transaction."""
        self.deleted_by = INVALID_TXN_ID
        self.deleted_ts = None

    def get(self, column: str) -> Any:
        return self.values.get(column)

    def is_visible_to(self, snapshot: Snapshot) -> bool:
        """Check if this version is visible to the given snapshot.

        Rules:
        1. The version was created by the snapshot's own transaction, or by
           a transaction that committed before the snapshot was taken.
        2. The version was not deleted, or was deleted by a transaction
           other than the reader that committed after the snapshot.

        Under dirty reads, uncommitted creators and deleters count as
        committed. Versions of aborted transactions never reach this check
        because rollback removes them.

        Args:
            snapshot: The transaction snapshot to check visibility against

        Returns:
            True if the version is visible to the snapshot
        """
        if snapshot.dirty_reads:
            return not self.is_deleted()

        own_write = self.created_by == snapshot.txn_id
        if not own_write and not snapshot.sees_commit(self.created_ts):
            return False

        if not self.is_deleted():
            return True

        if self.deleted_by == snapshot.txn_id:
            return False

        return not snapshot.sees_commit(self.deleted_ts)

    def __repr__(self) -> str:
        return (
            f"RowVersion(row_id={self.row_id}, created_by={self.created_by}, "
            f"deleted_by={self.deleted_by}, values={self.values!r})"
        )
