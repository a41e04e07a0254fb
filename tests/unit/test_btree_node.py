"""Unit tests for B+Tree keys and nodes."""

from __future__ import annotations

import pytest

from reldb.domain.entities import BTreeInternalNode, BTreeLeafNode, IndexKey, NodeType
from reldb.domain.entities.btree_node import NodeId
from reldb.domain.value_objects import RowId

pytestmark = pytest.mark.unit


class TestIndexKey:
    """Tests for composite key ordering."""

    def test_null_sorts_first(self) -> None:
        """NULL is smaller than any value of the column."""
        assert IndexKey((None,)) < IndexKey((-(10 ** 9),))
        assert IndexKey((None,)) < IndexKey(("",))

    def test_column_by_column(self) -> None:
        """Later columns break ties of earlier ones."""
        assert IndexKey((1, "b")) > IndexKey((1, "a"))
        assert IndexKey((1, "z")) < IndexKey((2, "a"))

    def test_null_in_second_column(self) -> None:
        """NULL-first ordering applies per column."""
        assert IndexKey((1, None)) < IndexKey((1, "a"))

    def test_equality_and_null_detection(self) -> None:
        """Equal tuples are equal keys; has_null spots NULL components."""
        assert IndexKey((1, None)) == IndexKey((1, None))
        assert IndexKey((1, None)).has_null()
        assert not IndexKey((1, 2)).has_null()

    def test_starts_with(self) -> None:
        """A key starts with each of its prefixes."""
        key = IndexKey((1, "x", 3))
        assert key.starts_with(IndexKey((1, "x")))
        assert not key.starts_with(IndexKey((2,)))

    def test_sorting(self) -> None:
        """sorted() uses the key order."""
        keys = [IndexKey((3,)), IndexKey((None,)), IndexKey((1,))]
        assert [k.values[0] for k in sorted(keys)] == [None, 1, 3]


class TestBTreeLeafNode:
    """Tests for leaf nodes."""

    @pytest.fixture
    def leaf(self) -> BTreeLeafNode:
        return BTreeLeafNode.new(NodeId(0))

    def test_new_leaf(self, leaf: BTreeLeafNode) -> None:
        """A new leaf is empty and typed LEAF."""
        assert leaf.is_leaf
        assert leaf.num_keys == 0
        assert leaf.header.node_type == NodeType.LEAF

    def test_insert_keeps_keys_sorted(self, leaf: BTreeLeafNode) -> None:
        """Keys stay sorted whatever the insertion order."""
        for value in (5, 1, 3):
            leaf.insert(IndexKey((value,)), RowId(value))
        assert [k.values[0] for k in leaf.keys] == [1, 3, 5]

    def test_duplicate_keys_share_a_slot(self, leaf: BTreeLeafNode) -> None:
        """Row ids with the same key are grouped in one set."""
        assert leaf.insert(IndexKey(("a",)), RowId(1)) is True
        assert leaf.insert(IndexKey(("a",)), RowId(2)) is False
        assert leaf.search(IndexKey(("a",))) == {RowId(1), RowId(2)}
        assert leaf.num_keys == 1

    def test_search_missing(self, leaf: BTreeLeafNode) -> None:
        """Searching an absent key returns None."""
        leaf.insert(IndexKey((1,)), RowId(1))
        assert leaf.search(IndexKey((2,))) is None

    def test_delete_drops_empty_slot(self, leaf: BTreeLeafNode) -> None:
        """The key disappears with its last row id."""
        key = IndexKey((1,))
        leaf.insert(key, RowId(1))
        leaf.insert(key, RowId(2))

        assert leaf.delete(key, RowId(1)) is True
        assert leaf.search(key) == {RowId(2)}
        assert leaf.delete(key, RowId(2)) is True
        assert leaf.num_keys == 0

    def test_delete_missing(self, leaf: BTreeLeafNode) -> None:
        """Deleting an absent entry reports False."""
        leaf.insert(IndexKey((1,)), RowId(1))
        assert leaf.delete(IndexKey((1,)), RowId(9)) is False
        assert leaf.delete(IndexKey((2,)), RowId(1)) is False


class TestBTreeInternalNode:
    """Tests for internal nodes."""

    def test_find_child_by_separator(self) -> None:
        """Keys below a separator go left, keys at or above go right."""
        node = BTreeInternalNode.new(NodeId(9))
        node.insert_child(IndexKey((10,)), NodeId(1), NodeId(2))
        node.insert_child(IndexKey((20,)), NodeId(2), NodeId(3))

        assert not node.is_leaf
        assert node.find_child(IndexKey((5,))) == NodeId(1)
        assert node.find_child(IndexKey((10,))) == NodeId(2)
        assert node.find_child(IndexKey((25,))) == NodeId(3)
        assert node.num_keys == 2
