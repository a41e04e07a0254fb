"""B+Tree node structures for index implementation.

This module defines the node structures for B+Tree indexes. Indexes are
secondary structures over the row heap: each entry maps a composite key to
the set of row ids whose versions carried that key.

Key properties:
    - All entries stored in leaf nodes
    - Internal nodes only contain separator keys and child pointers
    - Leaf nodes are linked for efficient range scans
    - Keys order NULL before every non-NULL value, column by column

References:
    - Bayer & McCreight, "B+Trees" (1972)
    - Comer, "The Ubiquitous B-Tree" (1979)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from functools import total_ordering
from typing import Any, NewType

from reldb.domain.value_objects import RowId


NodeId = NewType("NodeId", int)
"""Identifier of a node inside one index."""

INVALID_NODE_ID = NodeId(-1)


class NodeType(IntEnum):
    """Type of B+Tree node."""

    INTERNAL = 0
    LEAF = 1


@total_ordering
@dataclass(frozen=True)
class IndexKey:
    """A composite key value in an index.

    Keys compare column by column; NULL sorts before any value. Within a
    column, values are of one type family after column coercion, so plain
    Python comparison is well defined.

    Example:
        >>> IndexKey((None,)) < IndexKey((0,))
        True
        >>> IndexKey((1, "b")) > IndexKey((1, "a"))
        True
    """

    values: tuple[Any, ...]

    def _sort_key(self) -> tuple:
        return tuple((v is not None, v) if v is not None else (False, 0) for v in self.values)

    def __lt__(self, other: IndexKey) -> bool:
        return self._sort_key() < other._sort_key()

    def has_null(self) -> bool:
        return any(v is None for v in self.values)

    def starts_with(self, prefix: IndexKey) -> bool:
        return self.values[: len(prefix.values)] == prefix.values

    def __len__(self) -> int:
        return len(self.values)

    def __repr__(self) -> str:
        return f"IndexKey{self.values!r}"


@dataclass
class BTreeNodeHeader:
    """Header for a B+Tree node.

    Attributes:
        node_type: Whether this is an internal or leaf node.
        parent_id: Parent node (INVALID_NODE_ID for root).
        next_id: For leaf nodes, the next sibling (INVALID_NODE_ID if last).
        prev_id: For leaf nodes, the previous sibling (INVALID_NODE_ID if first).
    """

    node_type: NodeType
    parent_id: NodeId = INVALID_NODE_ID
    next_id: NodeId = INVALID_NODE_ID
    prev_id: NodeId = INVALID_NODE_ID


@dataclass
class BTreeLeafNode:
    """A leaf node in a B+Tree.

    Leaf nodes store keys with the set of row ids sharing each key. Leaf
    nodes are linked together for efficient range scans.

    Attributes:
        node_id: The id of this node.
        header: Node header with sibling and parent links.
        keys: Sorted keys stored in this node.
        values: Row id sets corresponding to keys.
    """

    node_id: NodeId
    header: BTreeNodeHeader
    keys: list[IndexKey] = field(default_factory=list)
    values: list[set[RowId]] = field(default_factory=list)

    @classmethod
    def new(cls, node_id: NodeId) -> BTreeLeafNode:
        """Create a new empty leaf node."""
        return cls(node_id=node_id, header=BTreeNodeHeader(node_type=NodeType.LEAF))

    @property
    def is_leaf(self) -> bool:
        return True

    @property
    def num_keys(self) -> int:
        return len(self.keys)

    def _position(self, key: IndexKey) -> int:
        """Binary search for the first slot whose key is >= key."""
        low, high = 0, len(self.keys)
        while low < high:
            mid = (low + high) // 2
            if self.keys[mid] < key:
                low = mid + 1
            else:
                high = mid
        return low

    def search(self, key: IndexKey) -> set[RowId] | None:
        """Return the row ids stored under key, or None if absent."""
        pos = self._position(key)
        if pos < len(self.keys) and self.keys[pos] == key:
            return self.values[pos]
        return None

    def insert(self, key: IndexKey, row_id: RowId) -> bool:
        """Add a row id under key, keeping keys sorted.

        Returns:
            True if a new key slot was created, False if the key existed.
        """
        pos = self._position(key)
        if pos < len(self.keys) and self.keys[pos] == key:
            self.values[pos].add(row_id)
            return False
        self.keys.insert(pos, key)
        self.values.insert(pos, {row_id})
        return True

    def delete(self, key: IndexKey, row_id: RowId) -> bool:
        """Remove a row id from key; drops the key when no ids remain.

        Returns:
            True if the row id was present.
        """
        pos = self._position(key)
        if pos >= len(self.keys) or self.keys[pos] != key:
            return False
        ids = self.values[pos]
        if row_id not in ids:
            return False
        ids.discard(row_id)
        if not ids:
            self.keys.pop(pos)
            self.values.pop(pos)
        return True


@dataclass
class BTreeInternalNode:
    """An internal node in a B+Tree.

    A node with N keys has N+1 children. Keys act as separators: all keys
    in children[i] are less than keys[i], and all keys in children[i+1] are
    >= keys[i].
    """

    node_id: NodeId
    header: BTreeNodeHeader
    keys: list[IndexKey] = field(default_factory=list)
    children: list[NodeId] = field(default_factory=list)

    @classmethod
    def new(cls, node_id: NodeId) -> BTreeInternalNode:
        """Create a new empty internal node."""
        return cls(node_id=node_id, header=BTreeNodeHeader(node_type=NodeType.INTERNAL))

    @property
    def is_leaf(self) -> bool:
        return False

    @property
    def num_keys(self) -> int:
        return len(self.keys)

    def find_child(self, key: IndexKey) -> NodeId:
        """Find the child that should contain the key."""
        for i, k in enumerate(self.keys):
            if key < k:
                return self.children[i]
        return self.children[-1]

    def insert_child(self, key: IndexKey, left_child: NodeId, right_child: NodeId) -> None:
        """Insert a new separator key after a child split.

        Args:
            key: The separator key (minimum key in right_child).
            left_child: The existing child node.
            right_child: The new child node (from split).
        """
        if not self.children:
            self.children = [left_child, right_child]
            self.keys = [key]
            return

        pos = self.children.index(left_child)
        self.keys.insert(pos, key)
        self.children.insert(pos + 1, right_child)


BTreeNode = BTreeLeafNode | BTreeInternalNode
