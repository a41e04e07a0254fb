"""Unit tests for the B+Tree index and the index manager."""

from __future__ import annotations

import random
import threading

import pytest

from reldb.domain.entities import IndexKey
from reldb.domain.services import BTreeIndex, BTreeIndexManager
from reldb.domain.value_objects import RowId, TableId

pytestmark = pytest.mark.unit


def key(*values) -> IndexKey:
    return IndexKey(tuple(values))


class TestBTreeIndexBasic:
    """Basic insert/search/delete tests."""

    @pytest.fixture
    def index(self) -> BTreeIndex:
        """Small nodes so a handful of keys forces splits."""
        return BTreeIndex(name="idx", table_id=TableId(1), columns=("a",), max_keys=3)

    def test_empty_index(self, index: BTreeIndex) -> None:
        """A new index is empty."""
        assert len(index) == 0
        assert index.search(key(1)) == set()
        assert index.scan_all() == []

    def test_rejects_tiny_fanout(self) -> None:
        """max_keys below 3 cannot split sensibly."""
        with pytest.raises(ValueError):
            BTreeIndex(name="bad", table_id=TableId(1), columns=("a",), max_keys=2)

    def test_insert_and_search(self, index: BTreeIndex) -> None:
        """Inserted entries are found by key."""
        index.insert(key(7), RowId(70))
        assert index.search(key(7)) == {RowId(70)}
        assert len(index) == 1

    def test_reinsert_is_noop(self, index: BTreeIndex) -> None:
        """Re-adding an existing entry does not double count it."""
        index.insert(key(7), RowId(70))
        index.insert(key(7), RowId(70))
        assert len(index) == 1

    def test_search_returns_copy(self, index: BTreeIndex) -> None:
        """Mutating a search result does not touch the index."""
        index.insert(key(1), RowId(1))
        index.search(key(1)).add(RowId(99))
        assert index.search(key(1)) == {RowId(1)}

    def test_delete(self, index: BTreeIndex) -> None:
        """Deleted entries are gone; deleting twice reports False."""
        index.insert(key(1), RowId(1))
        assert index.delete(key(1), RowId(1)) is True
        assert index.delete(key(1), RowId(1)) is False
        assert len(index) == 0

    def test_many_inserts_split_and_stay_sorted(self, index: BTreeIndex) -> None:
        """Random insertion order still yields a sorted scan."""
        values = list(range(200))
        random.Random(7).shuffle(values)
        for v in values:
            index.insert(key(v), RowId(v))

        scanned = [k.values[0] for k, _ in index.scan_all()]
        assert scanned == list(range(200))
        assert index.metadata.height > 1
        for v in (0, 99, 199):
            assert index.search(key(v)) == {RowId(v)}

    def test_deletes_after_splits(self, index: BTreeIndex) -> None:
        """Entries can be deleted from any leaf after splits."""
        for v in range(50):
            index.insert(key(v), RowId(v))
        for v in range(0, 50, 2):
            assert index.delete(key(v), RowId(v))

        assert [k.values[0] for k, _ in index.scan_all()] == list(range(1, 50, 2))

    def test_null_keys_sort_first(self, index: BTreeIndex) -> None:
        """NULL keys are stored and scanned before all values."""
        index.insert(key(5), RowId(1))
        index.insert(key(None), RowId(2))
        assert index.scan_all()[0] == (key(None), {RowId(2)})

    def test_key_for_row(self, index: BTreeIndex) -> None:
        """key_for picks the indexed columns from a row mapping."""
        assert index.key_for({"a": 3, "b": "x"}) == key(3)
        assert index.key_for({"b": "x"}) == key(None)


class TestBTreeIndexRange:
    """Range and prefix scan tests."""

    @pytest.fixture
    def index(self) -> BTreeIndex:
        index = BTreeIndex(name="idx", table_id=TableId(1), columns=("a",), max_keys=4)
        for v in range(1, 21):
            index.insert(key(v), RowId(v))
        return index

    def test_closed_range(self, index: BTreeIndex) -> None:
        """Both bounds included by default."""
        assert [k.values[0] for k, _ in index.range_scan(key(5), key(8))] == [5, 6, 7, 8]

    def test_open_range(self, index: BTreeIndex) -> None:
        """Exclusive bounds drop the boundary keys."""
        result = index.range_scan(key(5), key(8), include_low=False, include_high=False)
        assert [k.values[0] for k, _ in result] == [6, 7]

    def test_unbounded_sides(self, index: BTreeIndex) -> None:
        """None means unbounded on that side."""
        assert [k.values[0] for k, _ in index.range_scan(high=key(3))] == [1, 2, 3]
        assert [k.values[0] for k, _ in index.range_scan(low=key(19))] == [19, 20]

    def test_empty_range(self, index: BTreeIndex) -> None:
        """A range past the last key is empty."""
        assert index.range_scan(key(50), key(60)) == []


class TestCompositeIndex:
    """Tests for multi-column keys."""

    def test_prefix_scan(self) -> None:
        """A prefix bound matches every key with those leading values."""
        index = BTreeIndex(name="c", table_id=TableId(1), columns=("a", "b"), max_keys=3)
        rows = [(1, "x"), (2, "a"), (2, "b"), (2, None), (3, "a")]
        for i, (a, b) in enumerate(rows):
            index.insert(key(a, b), RowId(i))

        found = [k.values for k, _ in index.prefix_scan(key(2))]
        assert found == [(2, None), (2, "a"), (2, "b")]


class TestBTreeIndexConcurrency:
    """Concurrent writers must not corrupt the tree."""

    @pytest.mark.slow
    def test_concurrent_inserts(self) -> None:
        """Entries from several threads all land in order."""
        index = BTreeIndex(name="idx", table_id=TableId(1), columns=("a",), max_keys=4)

        def worker(start: int) -> None:
            for v in range(start, 1000, 4):
                index.insert(key(v), RowId(v))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(index) == 1000
        assert [k.values[0] for k, _ in index.scan_all()] == list(range(1000))


class TestBTreeIndexManager:
    """Tests for the physical index registry."""

    @pytest.fixture
    def manager(self) -> BTreeIndexManager:
        return BTreeIndexManager(max_keys=8)

    def test_create_and_get(self, manager: BTreeIndexManager) -> None:
        """Created indexes are retrievable by name."""
        index = manager.create_index("pk", TableId(1), ("id",), is_unique=True)
        assert manager.get_index("pk") is index
        assert index.is_unique

    def test_duplicate_name(self, manager: BTreeIndexManager) -> None:
        """Index names are unique."""
        manager.create_index("pk", TableId(1), ("id",))
        with pytest.raises(ValueError):
            manager.create_index("pk", TableId(2), ("id",))

    def test_indexes_for_table(self, manager: BTreeIndexManager) -> None:
        """indexes_for filters by table."""
        manager.create_index("a", TableId(1), ("x",))
        manager.create_index("b", TableId(2), ("x",))
        assert [i.name for i in manager.indexes_for(TableId(1))] == ["a"]
        assert [m.name for m in manager.list_indexes(TableId(2))] == ["b"]

    def test_drop(self, manager: BTreeIndexManager) -> None:
        """Dropping removes the index; dropping again reports False."""
        manager.create_index("a", TableId(1), ("x",))
        assert manager.drop_index("a") is True
        assert manager.drop_index("a") is False
        assert manager.get_index("a") is None

    def test_stats(self, manager: BTreeIndexManager) -> None:
        """Stats aggregate entries across indexes."""
        a = manager.create_index("a", TableId(1), ("x",))
        b = manager.create_index("b", TableId(1), ("y",))
        a.insert(key(1), RowId(1))
        b.insert(key(1), RowId(1))
        b.insert(key(2), RowId(2))

        stats = manager.get_stats()
        assert stats.num_indexes == 2
        assert stats.total_entries == 3
        assert stats.insert_count == 3
