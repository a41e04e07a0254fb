"""B+Tree Index implementation.

This module implements the B+Tree index used for primary keys, unique
constraints and CREATE INDEX. The tree maps composite keys to sets of row
ids. Because rows are multi-versioned, a row id may appear under several
keys (one per live version), and a unique key may map to several row ids
(a deleted version and its successor). Callers recheck every candidate
against the version visible to them; uniqueness is enforced by the storage
engine with that visibility information, not by the tree itself.

Key features:
    - O(log n) search, insert, delete
    - Range and prefix scans via linked leaf nodes
    - Composite keys with NULL-first ordering

References:
    - Bayer & McCreight, "B+Trees" (1972)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterator

from reldb.domain.entities.btree_node import (
    INVALID_NODE_ID,
    BTreeInternalNode,
    BTreeLeafNode,
    BTreeNode,
    IndexKey,
    NodeId,
)
from reldb.domain.value_objects import RowId, TableId
from reldb.ports.inbound.index_manager import IndexMetadata, IndexStats


# Maximum keys per node (fanout - 1)
DEFAULT_MAX_KEYS = 32


@dataclass
class BTreeIndex:
    """A B+Tree index over one or more columns of a table.

    Attributes:
        name: Index name.
        table_id: Table being indexed.
        columns: Indexed columns, in key order.
        is_unique: Whether the index backs a uniqueness guarantee.
        max_keys: Maximum keys per node (fanout - 1).
    """

    name: str
    table_id: TableId
    columns: tuple[str, ...]
    is_unique: bool = False
    max_keys: int = DEFAULT_MAX_KEYS

    def __post_init__(self) -> None:
        """Initialize the B+Tree with an empty root leaf node."""
        if self.max_keys < 3:
            raise ValueError(f"max_keys must be at least 3, got {self.max_keys}")
        self._lock = threading.RLock()
        self._next_node_id = 1
        self._nodes: dict[NodeId, BTreeNode] = {}
        self.root_id = NodeId(0)
        self._nodes[self.root_id] = BTreeLeafNode.new(self.root_id)

        # Statistics
        self._height = 1
        self._num_entries = 0
        self._search_count = 0
        self._insert_count = 0
        self._delete_count = 0

    @property
    def metadata(self) -> IndexMetadata:
        """Return index metadata."""
        return IndexMetadata(
            name=self.name,
            table_id=self.table_id,
            columns=self.columns,
            is_unique=self.is_unique,
            height=self._height,
            num_entries=self._num_entries,
        )

    def key_for(self, values: dict) -> IndexKey:
        """Build this index's key from a row's column values."""
        return IndexKey(tuple(values.get(c) for c in self.columns))

    def _allocate_node_id(self) -> NodeId:
        node_id = NodeId(self._next_node_id)
        self._next_node_id += 1
        return node_id

    def _find_leaf(self, key: IndexKey) -> BTreeLeafNode:
        """Traverse from root to the leaf that should contain key."""
        node = self._nodes[self.root_id]
        while not node.is_leaf:
            assert isinstance(node, BTreeInternalNode)
            node = self._nodes[node.find_child(key)]
        assert isinstance(node, BTreeLeafNode)
        return node

    def _leftmost_leaf(self) -> BTreeLeafNode:
        node = self._nodes[self.root_id]
        while not node.is_leaf:
            assert isinstance(node, BTreeInternalNode)
            node = self._nodes[node.children[0]]
        assert isinstance(node, BTreeLeafNode)
        return node

    def search(self, key: IndexKey) -> set[RowId]:
        """Return a copy of the row ids stored under key."""
        with self._lock:
            self._search_count += 1
            found = self._find_leaf(key).search(key)
            return set(found) if found else set()

    def insert(self, key: IndexKey, row_id: RowId) -> None:
        """Add a (key, row id) entry. Re-adding an existing entry is a no-op."""
        with self._lock:
            self._insert_count += 1
            leaf = self._find_leaf(key)
            existing = leaf.search(key)
            if existing is not None and row_id in existing:
                return
            leaf.insert(key, row_id)
            self._num_entries += 1
            if leaf.num_keys > self.max_keys:
                self._split_leaf(leaf)

    def delete(self, key: IndexKey, row_id: RowId) -> bool:
        """Remove a (key, row id) entry.

        Underflowing nodes are not merged; empty leaves stay linked and
        are skipped by scans.

        Returns:
            True if the entry existed.
        """
        with self._lock:
            self._delete_count += 1
            if self._find_leaf(key).delete(key, row_id):
                self._num_entries -= 1
                return True
            return False

    def _split_leaf(self, leaf: BTreeLeafNode) -> None:
        """Move the upper half of an overfull leaf into a new right sibling."""
        new_leaf = BTreeLeafNode.new(self._allocate_node_id())

        mid = len(leaf.keys) // 2
        new_leaf.keys = leaf.keys[mid:]
        new_leaf.values = leaf.values[mid:]
        leaf.keys = leaf.keys[:mid]
        leaf.values = leaf.values[:mid]

        new_leaf.header.next_id = leaf.header.next_id
        new_leaf.header.prev_id = leaf.node_id
        leaf.header.next_id = new_leaf.node_id
        if new_leaf.header.next_id != INVALID_NODE_ID:
            self._nodes[new_leaf.header.next_id].header.prev_id = new_leaf.node_id

        self._nodes[new_leaf.node_id] = new_leaf
        self._insert_into_parent(leaf, new_leaf.keys[0], new_leaf)

    def _insert_into_parent(
        self,
        left_child: BTreeNode,
        key: IndexKey,
        right_child: BTreeNode,
    ) -> None:
        """Insert a separator key into the parent of two split children."""
        parent_id = left_child.header.parent_id

        if parent_id == INVALID_NODE_ID:
            new_root = BTreeInternalNode.new(self._allocate_node_id())
            new_root.insert_child(key, left_child.node_id, right_child.node_id)
            left_child.header.parent_id = new_root.node_id
            right_child.header.parent_id = new_root.node_id
            self._nodes[new_root.node_id] = new_root
            self.root_id = new_root.node_id
            self._height += 1
            return

        parent = self._nodes[parent_id]
        assert isinstance(parent, BTreeInternalNode)
        parent.insert_child(key, left_child.node_id, right_child.node_id)
        right_child.header.parent_id = parent_id

        if parent.num_keys > self.max_keys:
            self._split_internal(parent)

    def _split_internal(self, node: BTreeInternalNode) -> None:
        """Split an overfull internal node; the middle key moves up."""
        new_node = BTreeInternalNode.new(self._allocate_node_id())

        mid = len(node.keys) // 2
        separator = node.keys[mid]

        new_node.keys = node.keys[mid + 1:]
        new_node.children = node.children[mid + 1:]
        node.keys = node.keys[:mid]
        node.children = node.children[: mid + 1]

        for child_id in new_node.children:
            self._nodes[child_id].header.parent_id = new_node.node_id

        self._nodes[new_node.node_id] = new_node
        self._insert_into_parent(node, separator, new_node)

    def _iter_from(self, leaf: BTreeLeafNode | None) -> Iterator[tuple[IndexKey, set[RowId]]]:
        while leaf is not None:
            for key, ids in zip(list(leaf.keys), list(leaf.values)):
                yield key, set(ids)
            if leaf.header.next_id == INVALID_NODE_ID:
                return
            next_node = self._nodes[leaf.header.next_id]
            assert isinstance(next_node, BTreeLeafNode)
            leaf = next_node

    def range_scan(
        self,
        low: IndexKey | None = None,
        high: IndexKey | None = None,
        include_low: bool = True,
        include_high: bool = True,
    ) -> list[tuple[IndexKey, set[RowId]]]:
        """Collect the entries whose key lies in [low, high].

        Bounds may be key prefixes; a prefix bound compares on the leading
        columns only. The result is materialized under the index latch so
        callers never observe a half-split node.

        Args:
            low: Lower bound (None for unbounded).
            high: Upper bound (None for unbounded).
            include_low: Include keys equal to the low bound.
            include_high: Include keys equal to the high bound.

        Returns:
            (key, row ids) tuples in key order.
        """
        with self._lock:
            self._search_count += 1
            start = self._find_leaf(low) if low is not None else self._leftmost_leaf()
            result = []
            for key, ids in self._iter_from(start):
                if low is not None:
                    head = IndexKey(key.values[: len(low)])
                    if head < low or (not include_low and head == low):
                        continue
                if high is not None:
                    head = IndexKey(key.values[: len(high)])
                    if high < head or (not include_high and head == high):
                        break
                result.append((key, ids))
            return result

    def prefix_scan(self, prefix: IndexKey) -> list[tuple[IndexKey, set[RowId]]]:
        """Collect the entries whose leading columns equal prefix."""
        return self.range_scan(prefix, prefix)

    def scan_all(self) -> list[tuple[IndexKey, set[RowId]]]:
        """Collect all entries in key order."""
        return self.range_scan()

    def __len__(self) -> int:
        return self._num_entries


class BTreeIndexManager:
    """Registry of the physical B+Tree indexes.

    Physical indexes exist independently of catalog visibility: an index
    created by an uncommitted transaction is maintained by every writer
    from the moment it is built, and is removed only when the creating
    transaction aborts or a dropping transaction commits.

    Thread Safety:
        All methods are thread-safe.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS) -> None:
        self._lock = threading.Lock()
        self._max_keys = max_keys
        self._indexes: dict[str, BTreeIndex] = {}

    def create_index(
        self,
        name: str,
        table_id: TableId,
        columns: tuple[str, ...],
        is_unique: bool = False,
    ) -> BTreeIndex:
        """Create a new, empty B+Tree index.

        Raises:
            ValueError: If an index with this name already exists.
        """
        with self._lock:
            if name in self._indexes:
                raise ValueError(f"Index '{name}' already exists")
            index = BTreeIndex(
                name=name,
                table_id=table_id,
                columns=tuple(columns),
                is_unique=is_unique,
                max_keys=self._max_keys,
            )
            self._indexes[name] = index
            return index

    def get_index(self, name: str) -> BTreeIndex | None:
        with self._lock:
            return self._indexes.get(name)

    def drop_index(self, name: str) -> bool:
        """Drop an index. Returns False if it did not exist."""
        with self._lock:
            return self._indexes.pop(name, None) is not None

    def indexes_for(self, table_id: TableId) -> list[BTreeIndex]:
        """All physical indexes of a table."""
        with self._lock:
            return [idx for idx in self._indexes.values() if idx.table_id == table_id]

    def list_indexes(self, table_id: TableId | None = None) -> list[IndexMetadata]:
        with self._lock:
            indexes = list(self._indexes.values())
        if table_id is not None:
            indexes = [idx for idx in indexes if idx.table_id == table_id]
        return [idx.metadata for idx in indexes]

    def get_stats(self) -> IndexStats:
        """Return index statistics for monitoring."""
        with self._lock:
            indexes = list(self._indexes.values())
        heights = [idx._height for idx in indexes]
        return IndexStats(
            num_indexes=len(indexes),
            total_entries=sum(idx._num_entries for idx in indexes),
            avg_height=sum(heights) / len(heights) if heights else 0.0,
            search_count=sum(idx._search_count for idx in indexes),
            insert_count=sum(idx._insert_count for idx in indexes),
            delete_count=sum(idx._delete_count for idx in indexes),
        )
