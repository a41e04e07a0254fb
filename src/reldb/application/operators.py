"""Query operators using the Volcano iterator model.

Each operator is an iterator with open(), next() and close(). Operators
pull rows from their children on demand; rows are plain tuples whose
layout is described by the planner's fields.

Operators are built once per statement and may be opened many times: a
correlated subquery reopens its plan for every outer row, passing the
enclosing rows as ``outer``.

References:
    - Graefe, "Volcano" (1994)
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

from reldb.application.aggregates import AggregateCall
from reldb.application.evaluator import (
    Compiled,
    SortKey,
    compare_sort_values,
    compare_values,
    sort_rows,
)
from reldb.domain.entities import Snapshot, TableSchema
from reldb.domain.errors import (
    ArithmeticFailure,
    RecursionLimitExceeded,
    SQLSyntaxError,
    TypeMismatch,
)
from reldb.domain.services.storage_engine import StorageEngine
from reldb.ports.inbound.transaction_manager import Transaction

Row = tuple
Outer = Sequence[Sequence[Any]]


class Operator(ABC):
    """Base class for executor operators (Volcano model)."""

    @abstractmethod
    def open(self, outer: Outer = ()) -> None:
        """Initialize the operator for the given enclosing rows."""

    @abstractmethod
    def next(self) -> Row | None:
        """Return the next row or None if exhausted."""

    @abstractmethod
    def close(self) -> None:
        """Release per-execution state."""

    def execute(self, outer: Outer = ()) -> Iterator[Row]:
        """Open, drain and close the operator."""
        self.open(outer)
        try:
            while True:
                row = self.next()
                if row is None:
                    return
                yield row
        finally:
            self.close()

    def __iter__(self) -> Iterator[Row]:
        return self.execute()


class GeneratorOperator(Operator):
    """Operator whose rows come from a generator method."""

    def __init__(self) -> None:
        self._rows_iter: Iterator[Row] | None = None

    @abstractmethod
    def rows(self, outer: Outer) -> Iterator[Row]:
        """Produce the operator's rows."""

    def open(self, outer: Outer = ()) -> None:
        self.close()
        self._rows_iter = self.rows(outer)

    def next(self) -> Row | None:
        if self._rows_iter is None:
            return None
        return next(self._rows_iter, None)

    def close(self) -> None:
        if self._rows_iter is not None:
            rows, self._rows_iter = self._rows_iter, None
            close = getattr(rows, "close", None)
            if close is not None:
                close()


# Sources


class SingleRowOperator(GeneratorOperator):
    """One empty row: the input of SELECT without FROM."""

    def rows(self, outer: Outer) -> Iterator[Row]:
        yield ()


class SeqScanOperator(GeneratorOperator):
    """Sequential scan of a table's rows visible to the statement snapshot."""

    def __init__(
        self,
        storage: StorageEngine,
        txn: Transaction,
        snapshot: Snapshot,
        schema: TableSchema,
    ) -> None:
        super().__init__()
        self.storage = storage
        self.txn = txn
        self.snapshot = snapshot
        self.schema = schema
        self.columns = schema.column_names

    def rows(self, outer: Outer) -> Iterator[Row]:
        columns = self.columns
        for version in self.storage.scan(self.txn, self.schema, self.snapshot):
            values = version.values
            yield tuple(values.get(c) for c in columns)


class IndexScanOperator(SeqScanOperator):
    """Equality lookup on the leading columns of an index.

    Probe values are converted to the column types; a value that does not
    convert losslessly falls back to a full scan, and the Filter above
    re-checks the predicate either way.
    """

    def __init__(
        self,
        storage: StorageEngine,
        txn: Transaction,
        snapshot: Snapshot,
        schema: TableSchema,
        index_name: str,
        probes: Sequence[Compiled],
    ) -> None:
        super().__init__(storage, txn, snapshot, schema)
        self.index_name = index_name
        self.probes = list(probes)
        index = storage.get_index(index_name)
        names = index.columns if index is not None else ()
        self.types = [schema.column(name).type for name in names[: len(self.probes)]]

    def rows(self, outer: Outer) -> Iterator[Row]:
        values = []
        for probe, column_type in zip(self.probes, self.types):
            value = probe((), outer)
            if value is None:
                return
            try:
                values.append(column_type.coerce(value, lossless=True))
            except (TypeMismatch, ArithmeticFailure):
                yield from super().rows(outer)
                return
        columns = self.columns
        for version in self.storage.index_lookup(
            self.txn, self.schema, self.index_name, tuple(values), self.snapshot
        ):
            yield tuple(version.values.get(c) for c in columns)


class ValuesOperator(GeneratorOperator):
    """Literal rows of a VALUES list."""

    def __init__(self, rows: Sequence[Sequence[Compiled]]) -> None:
        super().__init__()
        self.value_rows = [list(r) for r in rows]

    def rows(self, outer: Outer) -> Iterator[Row]:
        for expressions in self.value_rows:
            yield tuple(e((), outer) for e in expressions)


# Row-at-a-time


class FilterOperator(GeneratorOperator):
    """Keep rows for which the predicate is TRUE."""

    def __init__(self, child: Operator, predicate: Callable[..., bool]) -> None:
        super().__init__()
        self.child = child
        self.predicate = predicate

    def rows(self, outer: Outer) -> Iterator[Row]:
        predicate = self.predicate
        for row in self.child.execute(outer):
            if predicate(row, outer):
                yield row


class ProjectOperator(GeneratorOperator):
    """Evaluate the output expressions of each row."""

    def __init__(self, child: Operator, expressions: Sequence[Compiled]) -> None:
        super().__init__()
        self.child = child
        self.expressions = list(expressions)

    def rows(self, outer: Outer) -> Iterator[Row]:
        expressions = self.expressions
        for row in self.child.execute(outer):
            yield tuple(e(row, outer) for e in expressions)


class TrimOperator(GeneratorOperator):
    """Drop trailing helper columns (ORDER BY keys outside the select list)."""

    def __init__(self, child: Operator, width: int) -> None:
        super().__init__()
        self.child = child
        self.width = width

    def rows(self, outer: Outer) -> Iterator[Row]:
        width = self.width
        for row in self.child.execute(outer):
            yield row[:width]


# Joins


class JoinKind(Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"
    CROSS = "cross"


class NestedLoopJoinOperator(GeneratorOperator):
    """Nested-loop join; the inner side is materialized once per open."""

    def __init__(
        self,
        left: Operator,
        right: Operator,
        kind: JoinKind,
        condition: Callable[..., bool] | None,
        left_width: int,
        right_width: int,
    ) -> None:
        super().__init__()
        self.left = left
        self.right = right
        self.kind = kind
        self.condition = condition
        self.left_width = left_width
        self.right_width = right_width

    def rows(self, outer: Outer) -> Iterator[Row]:
        kind = self.kind
        condition = self.condition
        right_rows = list(self.right.execute(outer))
        track_right = kind in (JoinKind.RIGHT, JoinKind.FULL)
        matched = [False] * len(right_rows) if track_right else None
        right_nulls = (None,) * self.right_width

        for left_row in self.left.execute(outer):
            found = False
            for i, right_row in enumerate(right_rows):
                combined = left_row + right_row
                if condition is None or condition(combined, outer):
                    found = True
                    if matched is not None:
                        matched[i] = True
                    yield combined
            if not found and kind in (JoinKind.LEFT, JoinKind.FULL):
                yield left_row + right_nulls

        if matched is not None:
            left_nulls = (None,) * self.left_width
            for i, right_row in enumerate(right_rows):
                if not matched[i]:
                    yield left_nulls + right_row


class IndexNestedLoopJoinOperator(GeneratorOperator):
    """INNER or LEFT join probing an index of the inner table per outer row."""

    def __init__(
        self,
        left: Operator,
        storage: StorageEngine,
        txn: Transaction,
        snapshot: Snapshot,
        schema: TableSchema,
        index_name: str,
        probe: Compiled,
        kind: JoinKind,
        condition: Callable[..., bool] | None,
    ) -> None:
        super().__init__()
        self.left = left
        self.storage = storage
        self.txn = txn
        self.snapshot = snapshot
        self.schema = schema
        self.index_name = index_name
        self.probe = probe
        self.kind = kind
        self.condition = condition
        self.columns = schema.column_names
        index = storage.get_index(index_name)
        self.probe_type = schema.column(index.columns[0]).type if index is not None else None

    def _candidates(self, value: Any) -> Iterator[Any]:
        if value is None:
            return iter(())
        try:
            key = self.probe_type.coerce(value, lossless=True)
        except (TypeMismatch, ArithmeticFailure):
            return self.storage.scan(self.txn, self.schema, self.snapshot)
        return self.storage.index_lookup(
            self.txn, self.schema, self.index_name, (key,), self.snapshot
        )

    def rows(self, outer: Outer) -> Iterator[Row]:
        columns = self.columns
        condition = self.condition
        right_nulls = (None,) * len(columns)
        for left_row in self.left.execute(outer):
            found = False
            for version in self._candidates(self.probe(left_row, outer)):
                combined = left_row + tuple(version.values.get(c) for c in columns)
                if condition is None or condition(combined, outer):
                    found = True
                    yield combined
            if not found and self.kind == JoinKind.LEFT:
                yield left_row + right_nulls


# Aggregation


class HashAggregateOperator(GeneratorOperator):
    """GROUP BY: output rows are the group key values followed by aggregates.

    Groups are emitted in order of first appearance. Without grouping keys
    exactly one row is produced, even for empty input.
    """

    def __init__(
        self,
        child: Operator,
        keys: Sequence[Compiled],
        aggregates: Sequence[AggregateCall],
    ) -> None:
        super().__init__()
        self.child = child
        self.keys = list(keys)
        self.aggregates = list(aggregates)

    def rows(self, outer: Outer) -> Iterator[Row]:
        keys = self.keys
        groups: dict[tuple, list] = {}
        for row in self.child.execute(outer):
            key = tuple(k(row, outer) for k in keys)
            states = groups.get(key)
            if states is None:
                states = groups[key] = [call.start() for call in self.aggregates]
            for state in states:
                state.step(row, outer)

        if not groups and not keys:
            yield tuple(call.start().result() for call in self.aggregates)
            return
        for key, states in groups.items():
            yield key + tuple(state.result() for state in states)


# Windows


@dataclass
class FrameBound:
    """One end of a window frame: UNBOUNDED, CURRENT ROW or an offset."""

    kind: str  # "unbounded", "current", "offset"
    preceding: bool = True
    offset: Compiled | None = None


@dataclass
class WindowFrame:
    mode: str = "range"  # rows, range, groups
    start: FrameBound = field(default_factory=lambda: FrameBound("unbounded", preceding=True))
    end: FrameBound = field(default_factory=lambda: FrameBound("current"))


@dataclass
class WindowCall:
    """A compiled window function call.

    Attributes:
        function: row_number, rank, dense_rank, ntile, percent_rank,
            cume_dist, lead, lag, first_value, last_value, nth_value or
            "aggregate"
        arguments: Compiled arguments, evaluated against the input row
        partition: PARTITION BY expressions
        order: ORDER BY keys
        frame: Frame clause (default RANGE UNBOUNDED PRECEDING .. CURRENT ROW)
        aggregate: Aggregate call for aggregates used as window functions
    """

    function: str
    arguments: list[Compiled] = field(default_factory=list)
    partition: list[Compiled] = field(default_factory=list)
    order: list[SortKey] = field(default_factory=list)
    frame: WindowFrame = field(default_factory=WindowFrame)
    aggregate: AggregateCall | None = None


class _Partition:
    """A sorted partition with its peer groups."""

    def __init__(self, rows: list[Row], sort_values: list[tuple], keys: Sequence[SortKey]) -> None:
        self.rows = rows
        self.sort_values = sort_values
        self.group_of: list[int] = []
        self.group_bounds: list[tuple[int, int]] = []
        start = 0
        for i in range(len(rows)):
            if i > 0 and compare_sort_values(sort_values[i - 1], sort_values[i], keys) != 0:
                self.group_bounds.append((start, i - 1))
                start = i
            self.group_of.append(len(self.group_bounds))
        if rows:
            self.group_bounds.append((start, len(rows) - 1))

    def __len__(self) -> int:
        return len(self.rows)


class WindowOperator(GeneratorOperator):
    """Append one column per window call to every input row.

    Each partition is sorted stably by the call's ORDER BY. Output follows
    the partition order of the last call.
    """

    def __init__(self, child: Operator, calls: Sequence[WindowCall]) -> None:
        super().__init__()
        self.child = child
        self.calls = list(calls)

    def rows(self, outer: Outer) -> Iterator[Row]:
        rows = list(self.child.execute(outer))
        results: list[list[Any]] = [[None] * len(self.calls) for _ in rows]
        order: list[int] = list(range(len(rows)))

        for c, call in enumerate(self.calls):
            partitions: dict[tuple, list[int]] = {}
            for i, row in enumerate(rows):
                key = tuple(p(row, outer) for p in call.partition)
                partitions.setdefault(key, []).append(i)

            order = []
            for indices in partitions.values():
                indices = sort_rows(indices, call.order, outer, row_of=lambda i: rows[i])
                sort_values = [
                    tuple(k.expression(rows[i], outer) for k in call.order) for i in indices
                ]
                partition = _Partition([rows[i] for i in indices], sort_values, call.order)
                values = self._evaluate(call, partition, outer)
                for i, value in zip(indices, values):
                    results[i][c] = value
                order.extend(indices)

        for i in order:
            yield rows[i] + tuple(results[i])

    def _evaluate(self, call: WindowCall, part: _Partition, outer: Outer) -> list[Any]:
        n = len(part)
        name = call.function
        if name == "row_number":
            return list(range(1, n + 1))
        if name == "rank":
            return [part.group_bounds[part.group_of[i]][0] + 1 for i in range(n)]
        if name == "dense_rank":
            return [part.group_of[i] + 1 for i in range(n)]
        if name == "percent_rank":
            if n <= 1:
                return [Decimal(0)] * n
            return [
                Decimal(part.group_bounds[part.group_of[i]][0]) / Decimal(n - 1)
                for i in range(n)
            ]
        if name == "cume_dist":
            return [
                Decimal(part.group_bounds[part.group_of[i]][1] + 1) / Decimal(n)
                for i in range(n)
            ]
        if name == "ntile":
            return self._ntile(call, part, outer)
        if name in ("lead", "lag"):
            return self._shift(call, part, outer, forward=name == "lead")

        values = []
        for i in range(n):
            start, end = self._frame(call, part, i, outer)
            values.append(self._frame_value(call, part, i, start, end, outer))
        return values

    @staticmethod
    def _ntile(call: WindowCall, part: _Partition, outer: Outer) -> list[Any]:
        n = len(part)
        if not n:
            return []
        buckets = call.arguments[0](part.rows[0], outer)
        if buckets is None:
            return [None] * n
        if isinstance(buckets, bool) or not isinstance(buckets, int) or buckets <= 0:
            raise ArithmeticFailure("argument of ntile must be greater than zero")
        size, extra = divmod(n, buckets)
        values = []
        for i in range(n):
            if i < extra * (size + 1):
                values.append(i // (size + 1) + 1)
            else:
                values.append(extra + (i - extra * (size + 1)) // size + 1)
        return values

    @staticmethod
    def _shift(call: WindowCall, part: _Partition, outer: Outer, forward: bool) -> list[Any]:
        value_of = call.arguments[0]
        offset_of = call.arguments[1] if len(call.arguments) > 1 else None
        default_of = call.arguments[2] if len(call.arguments) > 2 else None
        values = []
        for i, row in enumerate(part.rows):
            offset = offset_of(row, outer) if offset_of is not None else 1
            if offset is None:
                values.append(None)
                continue
            target = i + offset if forward else i - offset
            if 0 <= target < len(part):
                values.append(value_of(part.rows[target], outer))
            else:
                values.append(default_of(row, outer) if default_of is not None else None)
        return values

    def _frame(self, call: WindowCall, part: _Partition, i: int, outer: Outer) -> tuple[int, int]:
        frame = call.frame
        start = self._bound(frame, frame.start, part, i, outer, is_start=True)
        end = self._bound(frame, frame.end, part, i, outer, is_start=False)
        return max(start, 0), min(end, len(part) - 1)

    def _bound(
        self,
        frame: WindowFrame,
        bound: FrameBound,
        part: _Partition,
        i: int,
        outer: Outer,
        is_start: bool,
    ) -> int:
        n = len(part)
        if bound.kind == "unbounded":
            return 0 if bound.preceding else n - 1

        group = part.group_of[i]
        if bound.kind == "current":
            if frame.mode == "rows":
                return i
            first, last = part.group_bounds[group]
            return first if is_start else last

        offset = bound.offset(part.rows[i], outer)
        if offset is None or (not isinstance(offset, bool) and offset < 0):
            raise ArithmeticFailure("frame offset must not be null or negative")
        if frame.mode == "rows":
            return i - offset if bound.preceding else i + offset
        if frame.mode == "groups":
            target = group - offset if bound.preceding else group + offset
            if target < 0:
                return -1 if not is_start else 0
            if target >= len(part.group_bounds):
                return n if is_start else n - 1
            first, last = part.group_bounds[target]
            return first if is_start else last
        return self._range_bound(part, i, offset, bound.preceding, is_start)

    @staticmethod
    def _range_bound(
        part: _Partition, i: int, offset: Any, preceding: bool, is_start: bool
    ) -> int:
        if len(part.sort_values[i]) != 1:
            raise SQLSyntaxError("RANGE with offset requires exactly one ORDER BY column")
        current = part.sort_values[i][0]
        if current is None:
            first, last = part.group_bounds[part.group_of[i]]
            return first if is_start else last
        if isinstance(current, int) and isinstance(offset, int):
            limit = current - offset if preceding else current + offset
        else:
            limit = (
                Decimal(current) - Decimal(offset)
                if preceding
                else Decimal(current) + Decimal(offset)
            )

        # Sort order may be descending: "preceding" moves toward the start.
        keys_desc = len(part.rows) > 1 and any(
            part.sort_values[j][0] is not None
            and part.sort_values[j + 1][0] is not None
            and compare_values(part.sort_values[j][0], part.sort_values[j + 1][0]) > 0
            for j in range(len(part.rows) - 1)
        )
        if keys_desc:
            limit = current + offset if preceding else current - offset

        def inside(value: Any) -> bool:
            if value is None:
                return False
            order = compare_values(value, limit)
            if is_start:
                return order <= 0 if keys_desc else order >= 0
            return order >= 0 if keys_desc else order <= 0

        indices = [j for j in range(len(part.rows)) if inside(part.sort_values[j][0])]
        if not indices:
            return len(part.rows) if is_start else -1
        return indices[0] if is_start else indices[-1]

    @staticmethod
    def _frame_value(
        call: WindowCall, part: _Partition, i: int, start: int, end: int, outer: Outer
    ) -> Any:
        name = call.function
        if name == "aggregate":
            state = call.aggregate.start()
            for j in range(start, end + 1):
                state.step(part.rows[j], outer)
            return state.result()
        if start > end:
            return None
        value_of = call.arguments[0]
        if name == "first_value":
            return value_of(part.rows[start], outer)
        if name == "last_value":
            return value_of(part.rows[end], outer)
        if name == "nth_value":
            nth = call.arguments[1](part.rows[i], outer)
            if nth is None:
                return None
            if nth <= 0:
                raise ArithmeticFailure("argument of nth_value must be greater than zero")
            target = start + nth - 1
            return value_of(part.rows[target], outer) if target <= end else None
        raise SQLSyntaxError(f"window function {name} is not supported")


# Ordering and pagination


class SortOperator(GeneratorOperator):
    """Stable sort by ORDER BY keys."""

    def __init__(self, child: Operator, keys: Sequence[SortKey]) -> None:
        super().__init__()
        self.child = child
        self.keys = list(keys)

    def rows(self, outer: Outer) -> Iterator[Row]:
        yield from sort_rows(list(self.child.execute(outer)), self.keys, outer)


class LimitOperator(GeneratorOperator):
    """LIMIT/OFFSET; an offset past the end yields nothing."""

    def __init__(self, child: Operator, limit: Compiled | None, offset: Compiled | None) -> None:
        super().__init__()
        self.child = child
        self.limit = limit
        self.offset = offset

    @staticmethod
    def _count(fn: Compiled | None, outer: Outer, clause: str) -> int | None:
        if fn is None:
            return None
        value = fn((), outer)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
            raise TypeMismatch(f"argument of {clause} must be an integer, got {value!r}")
        if value < 0:
            raise SQLSyntaxError(f"{clause} must not be negative")
        return int(value)

    def rows(self, outer: Outer) -> Iterator[Row]:
        limit = self._count(self.limit, outer, "LIMIT")
        offset = self._count(self.offset, outer, "OFFSET") or 0
        stop = offset + limit if limit is not None else None
        yield from itertools.islice(self.child.execute(outer), offset, stop)


class DistinctOperator(GeneratorOperator):
    """Eliminate duplicate rows, keeping first occurrences."""

    def __init__(self, child: Operator) -> None:
        super().__init__()
        self.child = child

    def rows(self, outer: Outer) -> Iterator[Row]:
        seen: set[Row] = set()
        for row in self.child.execute(outer):
            if row not in seen:
                seen.add(row)
                yield row


class SetOperationKind(Enum):
    UNION = "union"
    INTERSECT = "intersect"
    EXCEPT = "except"


class SetOperationOperator(GeneratorOperator):
    """UNION, INTERSECT and EXCEPT with set or multiset (ALL) semantics."""

    def __init__(
        self,
        kind: SetOperationKind,
        left: Operator,
        right: Operator,
        all_rows: bool,
    ) -> None:
        super().__init__()
        self.kind = kind
        self.left = left
        self.right = right
        self.all_rows = all_rows

    def rows(self, outer: Outer) -> Iterator[Row]:
        if self.kind == SetOperationKind.UNION:
            combined = itertools.chain(self.left.execute(outer), self.right.execute(outer))
            if self.all_rows:
                yield from combined
                return
            seen: set[Row] = set()
            for row in combined:
                if row not in seen:
                    seen.add(row)
                    yield row
            return

        right = Counter(self.right.execute(outer))
        emitted: set[Row] = set()
        for row in self.left.execute(outer):
            if self.kind == SetOperationKind.INTERSECT:
                if right[row] <= 0:
                    continue
                if self.all_rows:
                    right[row] -= 1
                elif row in emitted:
                    continue
            else:
                if self.all_rows:
                    if right[row] > 0:
                        right[row] -= 1
                        continue
                elif row in right or row in emitted:
                    continue
            emitted.add(row)
            yield row


# Common table expressions


class CTEBinding:
    """Rows of a WITH query, materialized on first use per execution."""

    def __init__(self, name: str, producer: Operator | None = None) -> None:
        self.name = name
        self.producer = producer
        self.materialized: list[Row] | None = None

    def rows(self, outer: Outer) -> list[Row]:
        if self.materialized is None:
            if self.producer is None:
                raise SQLSyntaxError(f'recursive reference to query "{self.name}" is not allowed here')
            self.materialized = list(self.producer.execute(outer))
        return self.materialized

    def reset(self) -> None:
        if self.producer is not None:
            self.materialized = None


class CTEScanOperator(GeneratorOperator):
    def __init__(self, binding: CTEBinding) -> None:
        super().__init__()
        self.binding = binding

    def rows(self, outer: Outer) -> Iterator[Row]:
        yield from self.binding.rows(outer)


class WithOperator(GeneratorOperator):
    """Scope of a WITH clause: bindings are recomputed on every open."""

    def __init__(self, bindings: Sequence[CTEBinding], child: Operator) -> None:
        super().__init__()
        self.bindings = list(bindings)
        self.child = child

    def rows(self, outer: Outer) -> Iterator[Row]:
        for binding in self.bindings:
            binding.reset()
        yield from self.child.execute(outer)


class RecursiveUnionOperator(GeneratorOperator):
    """Fixed-point evaluation of ``anchor UNION [ALL] recursive``.

    The recursive term reads the previous iteration's new rows through the
    working binding. Iteration stops when a step adds no rows.
    """

    def __init__(
        self,
        name: str,
        anchor: Operator,
        recursive: Operator,
        working: CTEBinding,
        all_rows: bool,
        max_iterations: int,
    ) -> None:
        super().__init__()
        self.name = name
        self.anchor = anchor
        self.recursive = recursive
        self.working = working
        self.all_rows = all_rows
        self.max_iterations = max_iterations

    def rows(self, outer: Outer) -> Iterator[Row]:
        seen: set[Row] = set()
        result: list[Row] = []
        for row in self.anchor.execute(outer):
            if not self.all_rows:
                if row in seen:
                    continue
                seen.add(row)
            result.append(row)

        new_rows = list(result)
        iterations = 0
        while new_rows:
            self.working.materialized = new_rows
            produced: list[Row] = []
            for row in self.recursive.execute(outer):
                if not self.all_rows:
                    if row in seen:
                        continue
                    seen.add(row)
                produced.append(row)
            if produced:
                iterations += 1
                if iterations > self.max_iterations:
                    raise RecursionLimitExceeded(
                        f'recursive query "{self.name}" exceeded {self.max_iterations} iterations',
                        limit=self.max_iterations,
                    )
            result.extend(produced)
            new_rows = produced
        self.working.materialized = None
        yield from result
