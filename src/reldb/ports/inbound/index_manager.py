"""Index Manager port for B+Tree index operations.

This inbound port defines the contract for index management,
providing key-based lookup and range scan operations to the storage
engine.

Key responsibilities:
- Create and drop physical indexes
- Provide point lookup, prefix and range scan operations
- Support concurrent access with a per-index latch

References:
    - Bayer & McCreight, "B+Trees" (1972)
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from reldb.domain.value_objects import RowId, TableId

if TYPE_CHECKING:
    from reldb.domain.entities.btree_node import IndexKey


@dataclass
class IndexMetadata:
    """Metadata for an index."""

    name: str
    table_id: TableId
    columns: tuple[str, ...]
    is_unique: bool
    height: int
    num_entries: int


@dataclass
class IndexStats:
    """Statistics for index monitoring."""

    num_indexes: int
    total_entries: int
    avg_height: float
    search_count: int
    insert_count: int
    delete_count: int


class Index(Protocol):
    """Protocol for a single index instance.

    Each index maps composite keys to the set of row ids whose versions
    carry that key, and keeps keys in sorted order for range scans.
    """

    name: str
    table_id: TableId
    columns: tuple[str, ...]
    is_unique: bool

    @property
    @abstractmethod
    def metadata(self) -> IndexMetadata:
        """Return index metadata."""
        ...

    @abstractmethod
    def key_for(self, values: dict) -> IndexKey:
        """Build the index key from a row's column values."""
        ...

    @abstractmethod
    def search(self, key: IndexKey) -> set[RowId]:
        """Return the row ids stored under key (empty set if none)."""
        ...

    @abstractmethod
    def insert(self, key: IndexKey, row_id: RowId) -> None:
        """Add a (key, row id) entry."""
        ...

    @abstractmethod
    def delete(self, key: IndexKey, row_id: RowId) -> bool:
        """Remove a (key, row id) entry.

        Returns:
            True if the entry existed.
        """
        ...

    @abstractmethod
    def range_scan(
        self,
        low: IndexKey | None = None,
        high: IndexKey | None = None,
        include_low: bool = True,
        include_high: bool = True,
    ) -> list[tuple[IndexKey, set[RowId]]]:
        """Collect entries with keys in the given range, in key order."""
        ...

    @abstractmethod
    def prefix_scan(self, prefix: IndexKey) -> list[tuple[IndexKey, set[RowId]]]:
        """Collect entries whose leading columns equal prefix."""
        ...


class IndexManager(Protocol):
    """Protocol for managing physical indexes.

    Thread Safety:
        All methods must be thread-safe.
    """

    @abstractmethod
    def create_index(
        self,
        name: str,
        table_id: TableId,
        columns: tuple[str, ...],
        is_unique: bool = False,
    ) -> Index:
        """Create a new, empty index.

        Raises:
            ValueError: If index name already exists.
        """
        ...

    @abstractmethod
    def get_index(self, name: str) -> Index | None:
        """Get an index by name, or None."""
        ...

    @abstractmethod
    def drop_index(self, name: str) -> bool:
        """Drop an index. Returns False if not found."""
        ...

    @abstractmethod
    def indexes_for(self, table_id: TableId) -> list[Index]:
        """All indexes of a table."""
        ...

    @abstractmethod
    def get_stats(self) -> IndexStats:
        """Return index manager statistics for monitoring."""
        ...
