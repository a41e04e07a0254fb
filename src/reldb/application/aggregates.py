"""Aggregate functions.

An AggregateCall is the compiled form of one aggregate expression
(``SUM(DISTINCT price)``, ``STRING_AGG(name, ', ' ORDER BY name)``). Each
group, or each window frame, runs a fresh AggregateState over its rows.

All aggregates except COUNT(*) ignore NULL inputs; over zero non-NULL
inputs COUNT yields 0 and every other aggregate yields NULL.
"""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Sequence

from sqlglot import exp

from reldb.application.evaluator import (
    Compiled,
    SortKey,
    compare_sort_values,
    compare_values,
)
from reldb.domain.errors import SQLSyntaxError, TypeMismatch
from reldb.domain.value_objects import DECIMAL, INTEGER, TEXT, ColumnType, TypeKind

if TYPE_CHECKING:
    from reldb.application.evaluator import ExpressionCompiler, Scope


class Accumulator(ABC):
    """Running state of one aggregate over one group."""

    @abstractmethod
    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        """Fold a non-NULL input value."""

    @abstractmethod
    def result(self) -> Any:
        """Final value."""


class CountAccumulator(Accumulator):
    def __init__(self) -> None:
        self.count = 0

    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        self.count += 1

    def result(self) -> int:
        return self.count


class SumAccumulator(Accumulator):
    def __init__(self) -> None:
        self.total: Any = None

    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, Decimal, float)):
            raise TypeMismatch(f"function sum({type(value).__name__}) does not exist")
        if isinstance(value, float):
            value = Decimal(str(value))
        self.total = value if self.total is None else self.total + value

    def result(self) -> Any:
        return self.total


class AvgAccumulator(SumAccumulator):
    def __init__(self) -> None:
        super().__init__()
        self.count = 0

    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        super().add(value)
        self.count += 1

    def result(self) -> Decimal | None:
        if not self.count:
            return None
        return Decimal(self.total) / self.count


class ExtremeAccumulator(Accumulator):
    """MIN or MAX."""

    def __init__(self, pick_greater: bool) -> None:
        self.pick_greater = pick_greater
        self.best: Any = None

    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        if self.best is None:
            self.best = value
            return
        order = compare_values(value, self.best)
        if (order > 0) if self.pick_greater else (order < 0):
            self.best = value

    def result(self) -> Any:
        return self.best


class StringAggAccumulator(Accumulator):
    def __init__(self, order: Sequence[SortKey]) -> None:
        self.order = tuple(order)
        self.items: list[tuple[tuple, str, str]] = []

    def add(self, value: Any, sort_values: tuple = (), separator: Any = None) -> None:
        sep = "" if separator is None else TEXT.coerce(separator)
        self.items.append((sort_values, TEXT.coerce(value), sep))

    def result(self) -> str | None:
        if not self.items:
            return None
        items = self.items
        if self.order:
            items = sorted(
                items,
                key=functools.cmp_to_key(
                    lambda a, b: compare_sort_values(a[0], b[0], self.order)
                ),
            )
        parts = [items[0][1]]
        for _, text, sep in items[1:]:
            parts.append(sep)
            parts.append(text)
        return "".join(parts)


@dataclass
class AggregateCall:
    """A compiled aggregate expression.

    Attributes:
        function: count, count_star, sum, avg, min, max or string_agg
        argument: Compiled argument (None for COUNT(*))
        distinct: Fold each distinct input once
        separator: STRING_AGG delimiter
        order: STRING_AGG ORDER BY keys
        type: Static result type, when known
    """

    function: str
    argument: Compiled | None = None
    distinct: bool = False
    separator: Compiled | None = None
    order: tuple[SortKey, ...] = ()
    type: ColumnType | None = None

    def start(self) -> AggregateState:
        return AggregateState(self)

    def new_accumulator(self) -> Accumulator:
        if self.function in ("count", "count_star"):
            return CountAccumulator()
        if self.function == "sum":
            return SumAccumulator()
        if self.function == "avg":
            return AvgAccumulator()
        if self.function in ("min", "max"):
            return ExtremeAccumulator(pick_greater=self.function == "max")
        return StringAggAccumulator(self.order)


class AggregateState:
    """One aggregate over one group or frame."""

    __slots__ = ("call", "accumulator", "seen")

    def __init__(self, call: AggregateCall) -> None:
        self.call = call
        self.accumulator = call.new_accumulator()
        self.seen: set | None = set() if call.distinct else None

    def step(self, row: Sequence[Any], outer: Sequence[Sequence[Any]]) -> None:
        call = self.call
        if call.argument is None:
            self.accumulator.add(1)
            return
        value = call.argument(row, outer)
        if value is None:
            return
        if self.seen is not None:
            if value in self.seen:
                return
            self.seen.add(value)
        sort_values = tuple(key.expression(row, outer) for key in call.order)
        separator = call.separator(row, outer) if call.separator is not None else None
        self.accumulator.add(value, sort_values, separator)

    def result(self) -> Any:
        return self.accumulator.result()


_SIMPLE = {
    exp.Sum: "sum",
    exp.Avg: "avg",
    exp.Min: "min",
    exp.Max: "max",
}


def is_aggregate(node: exp.Expression) -> bool:
    return isinstance(node, (exp.Count, exp.GroupConcat, *_SIMPLE))


def _unwrap_distinct(node: exp.Expression | None) -> tuple[exp.Expression | None, bool]:
    if isinstance(node, exp.Distinct):
        if node.args.get("on") is not None or len(node.expressions) != 1:
            raise SQLSyntaxError("aggregate DISTINCT takes exactly one argument")
        return node.expressions[0], True
    return node, False


def compile_aggregate(
    node: exp.Expression,
    compiler: ExpressionCompiler,
    scope: Scope,
    type_of: Any = None,
) -> AggregateCall:
    """Compile an aggregate call; its arguments are evaluated in ``scope``.

    Args:
        node: The aggregate expression
        compiler: Statement compiler
        scope: Scope of the rows being aggregated
        type_of: Optional callable inferring an argument's static type

    Raises:
        SQLSyntaxError: Unsupported aggregate
    """
    infer = type_of or (lambda _node: None)

    if isinstance(node, exp.Count):
        target = node.this
        if target is None or isinstance(target, exp.Star):
            return AggregateCall("count_star", type=INTEGER)
        if node.expressions:
            raise SQLSyntaxError("count() takes exactly one argument")
        target, distinct = _unwrap_distinct(target)
        return AggregateCall(
            "count", compiler.compile(target, scope), distinct=distinct, type=INTEGER
        )

    if isinstance(node, exp.GroupConcat):
        target = node.this
        order: tuple[SortKey, ...] = ()
        if isinstance(target, exp.Order):
            order = tuple(
                SortKey(
                    compiler.compile(o.this, scope),
                    descending=bool(o.args.get("desc")),
                    nulls_first=bool(o.args.get("nulls_first")),
                )
                for o in target.expressions
            )
            target = target.this
        target, distinct = _unwrap_distinct(target)
        separator = node.args.get("separator")
        return AggregateCall(
            "string_agg",
            compiler.compile(target, scope),
            distinct=distinct,
            separator=compiler.compile(separator, scope) if separator is not None else None,
            order=order,
            type=TEXT,
        )

    function = _SIMPLE.get(type(node))
    if function is None:
        raise SQLSyntaxError(f"aggregate function {node.sql_name()} is not supported")
    target, distinct = _unwrap_distinct(node.this)
    if target is None:
        raise SQLSyntaxError(f"{function}() requires an argument")
    argument_type = infer(target)
    if function == "avg":
        result_type: ColumnType | None = DECIMAL
    elif function == "sum" and argument_type is not None:
        result_type = INTEGER if argument_type.kind == TypeKind.INTEGER else DECIMAL
    else:
        result_type = argument_type
    return AggregateCall(
        function, compiler.compile(target, scope), distinct=distinct, type=result_type
    )
