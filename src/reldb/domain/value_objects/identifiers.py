"""Core identifiers and type-safe primitives for the query engine.

These value objects provide type-safe identifiers that are used throughout
the system to ensure correctness and prevent accidental misuse of raw integers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NewType


TableId = NewType("TableId", int)
"""Unique identifier for a table. Never reused, even after DROP TABLE."""

RowId = NewType("RowId", int)
"""Stable identifier for a logical row. All versions of a row share it."""

TransactionId = NewType("TransactionId", int)
"""Unique identifier for a transaction. Monotonically increasing."""

Timestamp = NewType("Timestamp", int)
"""Logical commit timestamp. Snapshots compare against it."""

# Special sentinel values
INVALID_TABLE_ID = TableId(0)
INVALID_TXN_ID = TransactionId(0)
INITIAL_TIMESTAMP = Timestamp(0)


@dataclass(frozen=True, slots=True)
class RowLocator:
    """Addresses one logical row across the whole database.

    Used as the lock-manager resource key for row locks and as the key of
    write-set entries.

    Attributes:
        table_id: The table owning the row
        row_id: The row within the table

    Example:
        >>> loc = RowLocator(TableId(3), RowId(42))
        >>> str(loc)
        '(3, 42)'
    """

    table_id: TableId
    row_id: RowId

    def __post_init__(self) -> None:
        """Validate the locator."""
        if self.row_id < 0:
            raise ValueError(f"row_id must be non-negative, got {self.row_id}")

    def __repr__(self) -> str:
        return f"ROW({self.table_id}:{self.row_id})"

    def __str__(self) -> str:
        return f"({self.table_id}, {self.row_id})"
