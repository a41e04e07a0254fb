"""Expression compilation.

Expressions arrive as sqlglot trees. The compiler turns each tree into a
Python closure once per statement; operators then call the closure for
every row. A compiled expression has the signature ``fn(row, outer)``:

    row    the values of the current scope, in field order
    outer  the rows of enclosing queries, innermost first

so a correlated column reference at depth ``d`` reads ``outer[d - 1]``.

Grouped and windowed scopes carry *substitutions*: an expression whose
canonical key matches a GROUP BY expression, an aggregate call or a window
call is compiled to a read of the slot that operator produced.

NULL handling follows SQL three-valued logic throughout: comparisons with
NULL yield None (UNKNOWN), AND/OR/NOT use the Kleene truth tables and
WHERE/HAVING/ON keep a row only when the predicate is True.
"""

from __future__ import annotations

import datetime
import functools
import re
import threading
from dataclasses import dataclass, field
from decimal import (
    ROUND_CEILING,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Decimal,
    DecimalException,
)
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

from sqlglot import exp

from reldb.adapters.inbound.sql_parser import column_type_from_sql
from reldb.domain.errors import (
    ArithmeticFailure,
    CardinalityViolation,
    CatalogError,
    ColumnNotFound,
    DivisionByZero,
    GroupingError,
    NumericOverflow,
    ParameterError,
    SQLSyntaxError,
    TypeMismatch,
)
from reldb.domain.value_objects import TEXT, TIMESTAMP, ColumnType, TypeKind, align_for_comparison
from reldb.domain.value_objects.data_types import INTEGER_MAX, INTEGER_MIN

if TYPE_CHECKING:
    from reldb.application.planner import QueryPlan, QueryPlanner


Compiled = Callable[[Sequence[Any], Sequence[Sequence[Any]]], Any]


# Scopes


@dataclass
class Field:
    """One column of an operator's output row.

    Attributes:
        name: Column name used for resolution and result headers
        qualifier: Table name or alias that qualifies the column
        type: Static type, when known at plan time
        hidden: Excluded from unqualified lookup and ``*`` expansion
    """

    name: str
    qualifier: str | None = None
    type: ColumnType | None = None
    hidden: bool = False


class Correlation:
    """Shared marker of one query level.

    Set when any expression of the level reads a row of an enclosing query;
    derived tables and CTE bodies share the marker of the query around them.
    """

    __slots__ = ("correlated",)

    def __init__(self) -> None:
        self.correlated = False


class Scope:
    """Name-resolution scope for expressions over an operator's rows."""

    def __init__(
        self,
        fields: Iterable[Field],
        parent: Scope | None = None,
        owner: Correlation | None = None,
        ctes: Any = None,
    ) -> None:
        self.fields = list(fields)
        self.parent = parent
        self.owner = owner if owner is not None else Correlation()
        self.ctes = ctes
        self.source: Scope | None = None
        self.substitutions: dict[str, int] = {}

    @property
    def grouped(self) -> bool:
        return self.source is not None

    @property
    def key_scope(self) -> Scope:
        """Scope that substitution keys are computed against."""
        return self.source if self.source is not None else self

    def derive(
        self,
        fields: Iterable[Field],
        substitutions: Mapping[str, int] | None = None,
        source: Scope | None = None,
    ) -> Scope:
        """A scope at the same query level over a different row layout."""
        scope = Scope(fields, self.parent, self.owner, self.ctes)
        scope.source = source
        scope.substitutions = dict(substitutions or {})
        return scope

    def lookup(self, name: str, qualifier: str | None) -> int | None:
        """Index of the field a column reference names, or None.

        Raises:
            CatalogError: If the reference is ambiguous
        """
        matches = [
            i
            for i, f in enumerate(self.fields)
            if f.name == name
            and (f.qualifier == qualifier if qualifier is not None else not f.hidden)
        ]
        if len(matches) > 1:
            raise CatalogError(f'column reference "{name}" is ambiguous', column=name)
        return matches[0] if matches else None

    def qualifiers(self) -> set[str]:
        return {f.qualifier for f in self.fields if f.qualifier is not None}


class RowScope(Scope):
    """Scope over a ``{column: value}`` mapping (defaults and CHECKs)."""

    def __init__(self) -> None:
        super().__init__([])


@dataclass
class EvaluationContext:
    """Per-statement inputs to evaluation.

    Attributes:
        params: Bound parameter values by placeholder name
        now: Statement timestamp for CURRENT_DATE/CURRENT_TIMESTAMP;
            None reads the clock at every evaluation
    """

    params: Mapping[str, Any] = field(default_factory=dict)
    now: datetime.datetime | None = None


# Value helpers


def compare_values(left: Any, right: Any) -> int:
    """Three-way comparison of two non-NULL values.

    Raises:
        TypeMismatch: If the values cannot be compared
    """
    left, right = align_for_comparison(left, right)
    try:
        return (left > right) - (left < right)
    except TypeError:
        raise TypeMismatch(
            f"cannot compare {type(left).__name__} with {type(right).__name__}"
        ) from None


def values_equal(left: Any, right: Any) -> bool | None:
    if left is None or right is None:
        return None
    return compare_values(left, right) == 0


def truth(value: Any) -> bool | None:
    """Interpret a predicate result; only booleans and NULL are allowed."""
    if value is None or isinstance(value, bool):
        return value
    raise TypeMismatch(f"argument of a condition must be type boolean, not {value!r}")


def membership(value: Any, candidates: Iterable[Any]) -> bool | None:
    """SQL ``value IN (candidates)`` with NULL semantics."""
    unknown = False
    empty = True
    for candidate in candidates:
        empty = False
        if value is None or candidate is None:
            unknown = True
            continue
        if compare_values(value, candidate) == 0:
            return True
    if empty:
        return False
    return None if unknown else False


def check_integer(value: int) -> int:
    if not INTEGER_MIN <= value <= INTEGER_MAX:
        raise NumericOverflow("integer out of range")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, Decimal, float)) and not isinstance(value, bool)


def _decimal(value: Any) -> Decimal:
    if isinstance(value, float):
        return Decimal(str(value))
    return value if isinstance(value, Decimal) else Decimal(value)


def _text(value: Any) -> str:
    return TEXT.coerce(value)


def _require_text(value: Any, function: str) -> str:
    if not isinstance(value, str):
        raise TypeMismatch(f"function {function}() requires a text argument, got {value!r}")
    return value


def _type_name(value: Any) -> str:
    return type(value).__name__


@functools.lru_cache(maxsize=256)
def like_pattern(pattern: str, escape: str | None, ignore_case: bool) -> re.Pattern:
    """Translate a LIKE pattern to a compiled regular expression."""
    escape = "\\" if escape is None else escape
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if escape and char == escape and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile("".join(parts), flags)


# Arithmetic


def _arithmetic(symbol: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if isinstance(left, datetime.date) or isinstance(right, datetime.date):
        return _date_arithmetic(symbol, left, right)
    if not _is_number(left) or not _is_number(right):
        raise TypeMismatch(
            f"operator does not exist: {_type_name(left)} {symbol} {_type_name(right)}"
        )

    if isinstance(left, int) and isinstance(right, int):
        if symbol == "+":
            return check_integer(left + right)
        if symbol == "-":
            return check_integer(left - right)
        if symbol == "*":
            return check_integer(left * right)
        if right == 0:
            raise DivisionByZero("division by zero")
        if symbol == "/":
            quotient = abs(left) // abs(right)
            return check_integer(-quotient if (left < 0) != (right < 0) else quotient)
        remainder = abs(left) % abs(right)
        return -remainder if left < 0 else remainder

    a, b = _decimal(left), _decimal(right)
    try:
        if symbol == "+":
            return a + b
        if symbol == "-":
            return a - b
        if symbol == "*":
            return a * b
        if b == 0:
            raise DivisionByZero("division by zero")
        if symbol == "/":
            return a / b
        return a % b
    except DecimalException as e:
        raise ArithmeticFailure(f"numeric error in {a} {symbol} {b}: {e!r}") from e


def _date_arithmetic(symbol: str, left: Any, right: Any) -> Any:
    left_ts = isinstance(left, datetime.datetime)
    right_ts = isinstance(right, datetime.datetime)
    left_date = isinstance(left, datetime.date) and not left_ts
    right_date = isinstance(right, datetime.date) and not right_ts

    if symbol == "+" and left_date and isinstance(right, int) and not isinstance(right, bool):
        return left + datetime.timedelta(days=right)
    if symbol == "+" and right_date and isinstance(left, int) and not isinstance(left, bool):
        return right + datetime.timedelta(days=left)
    if symbol == "-" and left_date and isinstance(right, int) and not isinstance(right, bool):
        return left - datetime.timedelta(days=right)
    if symbol == "-" and left_date and right_date:
        return (left - right).days
    raise TypeMismatch(
        f"operator does not exist: {_type_name(left)} {symbol} {_type_name(right)}"
    )


def _power(base: Any, exponent: Any) -> Any:
    if base is None or exponent is None:
        return None
    if not _is_number(base) or not _is_number(exponent):
        raise TypeMismatch(f"function power({_type_name(base)}, {_type_name(exponent)}) does not exist")
    if isinstance(base, int) and isinstance(exponent, int) and exponent >= 0:
        return check_integer(base ** exponent)
    try:
        return _decimal(base) ** _decimal(exponent)
    except ZeroDivisionError:
        raise DivisionByZero("zero raised to a negative power is undefined") from None
    except DecimalException as e:
        raise ArithmeticFailure(f"cannot compute power({base}, {exponent})") from e


def _round(value: Any, places: Any) -> Any:
    if value is None or places is None:
        return None
    if not _is_number(value):
        raise TypeMismatch(f"function round({_type_name(value)}) does not exist")
    places = int(places)
    if isinstance(value, int) and places >= 0:
        return value
    number = _decimal(value)
    if places >= 0:
        return number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    unit = Decimal(1).scaleb(-places)
    rounded = (number / unit).quantize(Decimal(1), rounding=ROUND_HALF_UP) * unit
    return int(rounded) if isinstance(value, int) else Decimal(int(rounded))


def _integral(value: Any, rounding: str, function: str) -> Any:
    if value is None:
        return None
    if not _is_number(value):
        raise TypeMismatch(f"function {function}({_type_name(value)}) does not exist")
    if isinstance(value, int):
        return value
    return _decimal(value).to_integral_value(rounding=rounding)


def _sqrt(value: Any) -> Any:
    if value is None:
        return None
    if not _is_number(value):
        raise TypeMismatch(f"function sqrt({_type_name(value)}) does not exist")
    if value < 0:
        raise ArithmeticFailure("cannot take square root of a negative number")
    return _decimal(value).sqrt()


def _substring(text: Any, start: Any, length: Any) -> Any:
    if text is None or start is None:
        return None
    text = _require_text(text, "substring")
    start = int(start)
    if length is None:
        return text[max(start, 1) - 1:]
    length = int(length)
    if length < 0:
        raise ArithmeticFailure("negative substring length not allowed")
    end = start + length
    begin = max(start, 1)
    if end <= begin:
        return ""
    return text[begin - 1:end - 1]


def _extract(unit: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = TIMESTAMP.coerce(value)
    if not isinstance(value, datetime.date):
        raise TypeMismatch(f"cannot extract {unit} from {_type_name(value)}")
    stamp = (
        value
        if isinstance(value, datetime.datetime)
        else datetime.datetime.combine(value, datetime.time(0))
    )
    if unit == "YEAR":
        return stamp.year
    if unit == "MONTH":
        return stamp.month
    if unit == "DAY":
        return stamp.day
    if unit == "HOUR":
        return stamp.hour
    if unit == "MINUTE":
        return stamp.minute
    if unit == "SECOND":
        if stamp.microsecond:
            return Decimal(stamp.second) + Decimal(stamp.microsecond).scaleb(-6)
        return stamp.second
    if unit == "QUARTER":
        return (stamp.month - 1) // 3 + 1
    if unit == "DOW":
        return (stamp.weekday() + 1) % 7
    if unit == "ISODOW":
        return stamp.isoweekday()
    if unit == "DOY":
        return stamp.timetuple().tm_yday
    if unit == "WEEK":
        return stamp.isocalendar()[1]
    if unit == "EPOCH":
        delta = stamp - datetime.datetime(1970, 1, 1)
        return Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds).scaleb(-6)
    raise SQLSyntaxError(f"unit {unit!r} is not supported by EXTRACT")


def _extreme(values: list[Any], pick_greater: bool) -> Any:
    best = None
    for value in values:
        if value is None:
            continue
        if best is None:
            best = value
            continue
        order = compare_values(value, best)
        if (order > 0) if pick_greater else (order < 0):
            best = value
    return best


def _literal_number(text: str) -> int | Decimal:
    if text.isdigit():
        value = int(text)
        if value <= INTEGER_MAX:
            return value
    return Decimal(text)


# Sorting


@dataclass
class SortKey:
    """One ORDER BY key.

    Attributes:
        expression: Compiled key expression
        descending: DESC ordering
        nulls_first: Whether NULLs sort before all values
    """

    expression: Compiled
    descending: bool = False
    nulls_first: bool = False


def compare_sort_values(left: Sequence[Any], right: Sequence[Any], keys: Sequence[SortKey]) -> int:
    for a, b, key in zip(left, right, keys):
        if a is None or b is None:
            if a is None and b is None:
                continue
            result = -1 if a is None else 1
            return result if key.nulls_first else -result
        order = compare_values(a, b)
        if order:
            return -order if key.descending else order
    return 0


def sort_rows(
    rows: list[Any],
    keys: Sequence[SortKey],
    outer: Sequence[Sequence[Any]] = (),
    row_of: Callable[[Any], Sequence[Any]] = lambda r: r,
) -> list[Any]:
    """Stable sort of rows by compiled keys."""
    decorated = [
        (tuple(key.expression(row_of(r), outer) for key in keys), r) for r in rows
    ]
    decorated.sort(
        key=functools.cmp_to_key(lambda a, b: compare_sort_values(a[0], b[0], keys))
    )
    return [r for _, r in decorated]


def hashable_row(values: Sequence[Any]) -> tuple:
    """Hash key of a row for grouping and duplicate elimination.

    Decimal and int compare and hash equal in Python, so 1 and 1.0 share a
    group as in SQL.
    """
    return tuple(values)


# Keys


def _locate(scope: Scope, node: exp.Column) -> tuple[int, int]:
    depth = 0
    current: Scope | None = scope
    while current is not None:
        index = current.key_scope.lookup(node.name, node.table or None)
        if index is not None:
            return depth, index
        current = current.parent
        depth += 1
    raise ColumnNotFound(f'column "{node.sql()}" does not exist', column=node.name)


def expression_key(node: exp.Expression, scope: Scope) -> str:
    """Canonical text of an expression with column references resolved.

    Two expressions that reference the same fields through different
    spellings (``o.id`` vs ``id``) get the same key.
    """

    def mark(n: exp.Expression) -> exp.Expression:
        if isinstance(n, exp.Column) and not isinstance(n.this, exp.Star):
            depth, index = _locate(scope, n)
            return exp.var(f"__c{depth}_{index}")
        if isinstance(n, exp.Query):
            return n.copy()
        if isinstance(n, exp.Paren):
            return n.this.transform(mark)
        return n

    return node.transform(mark).sql()


def column_key(index: int) -> str:
    return f"__c0_{index}"


# Compiler


_COMPARISONS: dict[type, Callable[[int], bool]] = {
    exp.EQ: lambda c: c == 0,
    exp.NEQ: lambda c: c != 0,
    exp.GT: lambda c: c > 0,
    exp.GTE: lambda c: c >= 0,
    exp.LT: lambda c: c < 0,
    exp.LTE: lambda c: c <= 0,
}

_ARITHMETIC: dict[type, str] = {
    exp.Add: "+",
    exp.Sub: "-",
    exp.Mul: "*",
    exp.Div: "/",
    exp.Mod: "%",
}

_WINDOW_ONLY = (
    exp.RowNumber,
    exp.Rank,
    exp.DenseRank,
    exp.Ntile,
    exp.PercentRank,
    exp.CumeDist,
    exp.Lead,
    exp.Lag,
    exp.FirstValue,
    exp.LastValue,
    exp.NthValue,
)


def _constant(value: Any) -> Compiled:
    return lambda row, outer: value


def _slot(depth: int, index: int) -> Compiled:
    if depth == 0:
        return lambda row, outer: row[index]
    level = depth - 1
    return lambda row, outer: outer[level][index]


class ExpressionCompiler:
    """Compiles sqlglot expressions to closures for one statement.

    Example:
        >>> compiler = ExpressionCompiler(EvaluationContext())
        >>> scope = Scope([Field("x")])
        >>> fn = compiler.compile(sqlglot.parse_one("x * 2 + 1"), scope)
        >>> fn((20,), ())
        41
    """

    def __init__(
        self,
        context: EvaluationContext,
        planner: QueryPlanner | None = None,
    ) -> None:
        self._context = context
        self._planner = planner

    @property
    def context(self) -> EvaluationContext:
        return self._context

    def bind_planner(self, planner: QueryPlanner) -> None:
        self._planner = planner

    def compile(self, node: exp.Expression, scope: Scope) -> Compiled:
        """Compile an expression against a scope.

        Raises:
            ColumnNotFound: Unknown column reference
            GroupingError: Ungrouped column or misplaced aggregate
            SQLSyntaxError: Unsupported expression or function
            ParameterError: Placeholder without a bound value
        """
        if scope.substitutions and not isinstance(
            node, (exp.Literal, exp.Null, exp.Boolean, exp.Placeholder, exp.Column)
        ):
            slot = scope.substitutions.get(expression_key(node, scope.key_scope))
            if slot is not None:
                return _slot(0, slot)

        for cls in type(node).__mro__:
            handler = _HANDLERS.get(cls)
            if handler is not None:
                return handler(self, node, scope)

        if isinstance(node, exp.Window) or isinstance(node, _WINDOW_ONLY):
            raise SQLSyntaxError(
                f"window function {node.sql()} is not allowed here"
                if isinstance(node, exp.Window)
                else f"window function {node.sql()} requires an OVER clause"
            )
        if isinstance(node, exp.AggFunc):
            raise GroupingError(f"aggregate function {node.sql()} is not allowed here")
        if isinstance(node, exp.Anonymous):
            raise SQLSyntaxError(f"function {node.name}() does not exist")
        if isinstance(node, exp.Func):
            raise SQLSyntaxError(f"function {node.sql_name()} is not supported")
        raise SQLSyntaxError(f"unsupported expression: {node.sql()}")

    def compile_predicate(self, node: exp.Expression, scope: Scope) -> Callable[..., bool]:
        """Compile a WHERE/ON/HAVING condition; only TRUE keeps a row."""
        fn = self.compile(node, scope)
        return lambda row, outer: truth(fn(row, outer)) is True

    # Leaves

    def _column(self, node: exp.Column, scope: Scope) -> Compiled:
        if isinstance(node.this, exp.Star):
            raise SQLSyntaxError(f"{node.sql()} is not allowed here")
        name = node.name
        qualifier = node.table or None
        if isinstance(scope, RowScope):
            return lambda row, outer: row.get(name)

        depth = 0
        current: Scope | None = scope
        while current is not None:
            index = self._resolve(current, name, qualifier)
            if index is not None:
                break
            current = current.parent
            depth += 1
        else:
            if qualifier is not None and not self._qualifier_known(scope, qualifier):
                raise ColumnNotFound(
                    f'missing FROM-clause entry for table "{qualifier}"', column=name
                )
            raise ColumnNotFound(f'column "{node.sql()}" does not exist', column=name)

        level: Scope | None = scope
        for _ in range(depth):
            level.owner.correlated = True
            level = level.parent
        return _slot(depth, index)

    @staticmethod
    def _qualifier_known(scope: Scope, qualifier: str) -> bool:
        current: Scope | None = scope
        while current is not None:
            if qualifier in current.key_scope.qualifiers():
                return True
            current = current.parent
        return False

    @staticmethod
    def _resolve(scope: Scope, name: str, qualifier: str | None) -> int | None:
        if not scope.substitutions and not scope.grouped:
            return scope.lookup(name, qualifier)
        index = scope.key_scope.lookup(name, qualifier)
        if index is None:
            return None
        slot = scope.substitutions.get(column_key(index))
        if slot is not None:
            return slot
        if scope.grouped:
            display = f"{qualifier}.{name}" if qualifier else name
            raise GroupingError(
                f'column "{display}" must appear in the GROUP BY clause '
                "or be used in an aggregate function",
                column=name,
            )
        return index

    def _literal(self, node: exp.Literal, scope: Scope) -> Compiled:
        if node.is_string:
            return _constant(node.this)
        return _constant(_literal_number(node.this))

    def _null(self, node: exp.Null, scope: Scope) -> Compiled:
        return _constant(None)

    def _boolean(self, node: exp.Boolean, scope: Scope) -> Compiled:
        return _constant(bool(node.this))

    def _placeholder(self, node: exp.Placeholder, scope: Scope) -> Compiled:
        name = node.name
        if name not in self._context.params:
            raise ParameterError(f"no value supplied for parameter {name!r}", parameter=name)
        return _constant(self._context.params[name])

    def _paren(self, node: exp.Paren, scope: Scope) -> Compiled:
        return self.compile(node.this, scope)

    def _alias(self, node: exp.Alias, scope: Scope) -> Compiled:
        return self.compile(node.this, scope)

    # Operators

    def _comparison(self, node: exp.Binary, scope: Scope) -> Compiled:
        test = _COMPARISONS[type(node)]
        right_node = node.expression
        if isinstance(right_node, (exp.Any, exp.All)):
            return self._quantified(node, scope, test)
        left = self.compile(node.this, scope)
        right = self.compile(right_node, scope)

        def compare(row, outer):
            a = left(row, outer)
            if a is None:
                return None
            b = right(row, outer)
            if b is None:
                return None
            return test(compare_values(a, b))

        return compare

    def _null_safe(self, node: exp.Binary, scope: Scope) -> Compiled:
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)
        distinct = isinstance(node, exp.NullSafeNEQ)

        def compare(row, outer):
            a, b = left(row, outer), right(row, outer)
            if a is None or b is None:
                same = a is None and b is None
            else:
                same = compare_values(a, b) == 0
            return not same if distinct else same

        return compare

    def _and(self, node: exp.And, scope: Scope) -> Compiled:
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)

        def conjunction(row, outer):
            a = truth(left(row, outer))
            if a is False:
                return False
            b = truth(right(row, outer))
            if b is False:
                return False
            return None if a is None or b is None else True

        return conjunction

    def _or(self, node: exp.Or, scope: Scope) -> Compiled:
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)

        def disjunction(row, outer):
            a = truth(left(row, outer))
            if a is True:
                return True
            b = truth(right(row, outer))
            if b is True:
                return True
            return None if a is None or b is None else False

        return disjunction

    def _not(self, node: exp.Not, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)

        def negation(row, outer):
            value = truth(inner(row, outer))
            return None if value is None else not value

        return negation

    def _is(self, node: exp.Is, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)
        negate = bool(node.args.get("negate"))
        target = node.expression
        if isinstance(target, exp.Null):
            return lambda row, outer: (inner(row, outer) is None) != negate
        if isinstance(target, exp.Boolean):
            expected = bool(target.this)

            def is_boolean(row, outer):
                value = truth(inner(row, outer))
                return (value is expected) != negate

            return is_boolean
        raise SQLSyntaxError(f"unsupported IS predicate: {node.sql()}")

    def _between(self, node: exp.Between, scope: Scope) -> Compiled:
        value = self.compile(node.this, scope)
        low = self.compile(node.args["low"], scope)
        high = self.compile(node.args["high"], scope)

        def between(row, outer):
            v = value(row, outer)
            lo, hi = low(row, outer), high(row, outer)
            above = None if v is None or lo is None else compare_values(v, lo) >= 0
            below = None if v is None or hi is None else compare_values(v, hi) <= 0
            if above is False or below is False:
                return False
            return None if above is None or below is None else True

        return between

    def _like(self, node: exp.Like | exp.ILike, scope: Scope, escape: str | None = None) -> Compiled:
        value = self.compile(node.this, scope)
        pattern = self.compile(node.expression, scope)
        negate = bool(node.args.get("negate"))
        ignore_case = isinstance(node, exp.ILike)
        function = "ilike" if ignore_case else "like"

        def like(row, outer):
            v, p = value(row, outer), pattern(row, outer)
            if v is None or p is None:
                return None
            matched = like_pattern(_require_text(p, function), escape, ignore_case).fullmatch(
                _require_text(v, function)
            )
            return (matched is not None) != negate

        return like

    def _escape(self, node: exp.Escape, scope: Scope) -> Compiled:
        like = node.this
        escape = node.expression
        if not isinstance(like, (exp.Like, exp.ILike)) or not isinstance(escape, exp.Literal):
            raise SQLSyntaxError(f"unsupported ESCAPE clause: {node.sql()}")
        if len(escape.this) > 1:
            raise SQLSyntaxError("invalid escape string: must be empty or one character")
        return self._like(like, scope, escape.this)

    def _in(self, node: exp.In, scope: Scope) -> Compiled:
        value = self.compile(node.this, scope)
        query = node.args.get("query")
        if query is not None:
            values_of = self._subquery_values(query, scope)

            def in_subquery(row, outer):
                return membership(value(row, outer), values_of(row, outer))

            return in_subquery
        if node.args.get("unnest") or node.args.get("field"):
            raise SQLSyntaxError(f"unsupported IN predicate: {node.sql()}")
        candidates = [self.compile(e, scope) for e in node.expressions]

        def in_list(row, outer):
            v = value(row, outer)
            return membership(v, (c(row, outer) for c in candidates))

        return in_list

    def _quantified(
        self, node: exp.Binary, scope: Scope, test: Callable[[int], bool]
    ) -> Compiled:
        left = self.compile(node.this, scope)
        quantifier = node.expression
        values_of = self._subquery_values(quantifier.this, scope)
        every = isinstance(quantifier, exp.All)

        def quantified(row, outer):
            v = left(row, outer)
            unknown = False
            for candidate in values_of(row, outer):
                if v is None or candidate is None:
                    unknown = True
                    continue
                result = test(compare_values(v, candidate))
                if every and not result:
                    return False
                if not every and result:
                    return True
            if unknown:
                return None
            return every

        return quantified

    def _arithmetic(self, node: exp.Binary, scope: Scope) -> Compiled:
        symbol = _ARITHMETIC[type(node)]
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)
        return lambda row, outer: _arithmetic(symbol, left(row, outer), right(row, outer))

    def _neg(self, node: exp.Neg, scope: Scope) -> Compiled:
        inner_node = node.this
        if isinstance(inner_node, exp.Literal) and not inner_node.is_string:
            number = _literal_number(inner_node.this)
            return _constant(-number)
        inner = self.compile(inner_node, scope)

        def negate(row, outer):
            value = inner(row, outer)
            if value is None:
                return None
            if not _is_number(value):
                raise TypeMismatch(f"operator does not exist: - {_type_name(value)}")
            return check_integer(-value) if isinstance(value, int) else -value

        return negate

    def _concat_operator(self, node: exp.DPipe, scope: Scope) -> Compiled:
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)

        def concat(row, outer):
            a, b = left(row, outer), right(row, outer)
            if a is None or b is None:
                return None
            return _text(a) + _text(b)

        return concat

    def _case(self, node: exp.Case, scope: Scope) -> Compiled:
        operand = self.compile(node.this, scope) if node.this is not None else None
        branches = [
            (self.compile(branch.this, scope), self.compile(branch.args["true"], scope))
            for branch in node.args.get("ifs") or []
        ]
        default_node = node.args.get("default")
        default = self.compile(default_node, scope) if default_node is not None else _constant(None)

        def case(row, outer):
            subject = operand(row, outer) if operand is not None else None
            for condition, result in branches:
                if operand is not None:
                    matched = values_equal(subject, condition(row, outer)) is True
                else:
                    matched = truth(condition(row, outer)) is True
                if matched:
                    return result(row, outer)
            return default(row, outer)

        return case

    def _cast(self, node: exp.Cast, scope: Scope) -> Compiled:
        target, _ = column_type_from_sql(node.to)
        inner = self.compile(node.this, scope)
        if target.kind == TypeKind.TEXT and target.length is not None:
            length = target.length
            return lambda row, outer: (
                None if (v := inner(row, outer)) is None else _text(v)[:length]
            )
        return lambda row, outer: target.coerce(inner(row, outer))

    # Functions

    def _unary_function(self, node: exp.Func, scope: Scope, apply: Callable[[Any], Any]) -> Compiled:
        inner = self.compile(node.this, scope)

        def call(row, outer):
            value = inner(row, outer)
            return None if value is None else apply(value)

        return call

    def _upper(self, node: exp.Upper, scope: Scope) -> Compiled:
        return self._unary_function(node, scope, lambda v: _require_text(v, "upper").upper())

    def _lower(self, node: exp.Lower, scope: Scope) -> Compiled:
        return self._unary_function(node, scope, lambda v: _require_text(v, "lower").lower())

    def _length(self, node: exp.Length, scope: Scope) -> Compiled:
        return self._unary_function(node, scope, lambda v: len(_require_text(v, "length")))

    def _abs(self, node: exp.Abs, scope: Scope) -> Compiled:
        def absolute(value):
            if not _is_number(value):
                raise TypeMismatch(f"function abs({_type_name(value)}) does not exist")
            return abs(value)

        return self._unary_function(node, scope, absolute)

    def _floor(self, node: exp.Floor, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)
        return lambda row, outer: _integral(inner(row, outer), ROUND_FLOOR, "floor")

    def _ceil(self, node: exp.Ceil, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)
        return lambda row, outer: _integral(inner(row, outer), ROUND_CEILING, "ceil")

    def _round_function(self, node: exp.Round, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)
        decimals_node = node.args.get("decimals")
        decimals = self.compile(decimals_node, scope) if decimals_node is not None else _constant(0)
        return lambda row, outer: _round(inner(row, outer), decimals(row, outer))

    def _sqrt_function(self, node: exp.Sqrt, scope: Scope) -> Compiled:
        inner = self.compile(node.this, scope)
        return lambda row, outer: _sqrt(inner(row, outer))

    def _pow(self, node: exp.Pow, scope: Scope) -> Compiled:
        base = self.compile(node.this, scope)
        exponent = self.compile(node.expression, scope)
        return lambda row, outer: _power(base(row, outer), exponent(row, outer))

    def _substring_function(self, node: exp.Substring, scope: Scope) -> Compiled:
        text = self.compile(node.this, scope)
        start_node = node.args.get("start")
        length_node = node.args.get("length")
        start = self.compile(start_node, scope) if start_node is not None else _constant(1)
        length = self.compile(length_node, scope) if length_node is not None else None
        return lambda row, outer: _substring(
            text(row, outer),
            start(row, outer),
            length(row, outer) if length is not None else None,
        )

    def _trim(self, node: exp.Trim, scope: Scope) -> Compiled:
        text = self.compile(node.this, scope)
        chars_node = node.expression
        chars = self.compile(chars_node, scope) if chars_node is not None else _constant(" ")
        position = str(node.args.get("position") or "BOTH").upper()

        def trim(row, outer):
            value, characters = text(row, outer), chars(row, outer)
            if value is None or characters is None:
                return None
            value = _require_text(value, "trim")
            if position == "LEADING":
                return value.lstrip(characters)
            if position == "TRAILING":
                return value.rstrip(characters)
            return value.strip(characters)

        return trim

    def _replace(self, node: exp.Replace, scope: Scope) -> Compiled:
        text = self.compile(node.this, scope)
        search = self.compile(node.expression, scope)
        replacement_node = node.args.get("replacement")
        replacement = (
            self.compile(replacement_node, scope) if replacement_node is not None else _constant("")
        )

        def replace(row, outer):
            values = (text(row, outer), search(row, outer), replacement(row, outer))
            if any(v is None for v in values):
                return None
            value, old, new = (_require_text(v, "replace") for v in values)
            return value.replace(old, new) if old else value

        return replace

    def _concat(self, node: exp.Concat, scope: Scope) -> Compiled:
        if isinstance(node, exp.ConcatWs):
            raise SQLSyntaxError("function concat_ws is not supported")
        parts = [self.compile(e, scope) for e in node.expressions]
        return lambda row, outer: "".join(
            _text(v) for v in (p(row, outer) for p in parts) if v is not None
        )

    def _coalesce(self, node: exp.Coalesce, scope: Scope) -> Compiled:
        options = [self.compile(e, scope) for e in [node.this, *node.expressions]]

        def coalesce(row, outer):
            for option in options:
                value = option(row, outer)
                if value is not None:
                    return value
            return None

        return coalesce

    def _nullif(self, node: exp.Nullif, scope: Scope) -> Compiled:
        left = self.compile(node.this, scope)
        right = self.compile(node.expression, scope)

        def nullif(row, outer):
            value = left(row, outer)
            return None if values_equal(value, right(row, outer)) is True else value

        return nullif

    def _greatest(self, node: exp.Greatest | exp.Least, scope: Scope) -> Compiled:
        options = [self.compile(e, scope) for e in [node.this, *node.expressions]]
        pick_greater = isinstance(node, exp.Greatest)
        return lambda row, outer: _extreme([o(row, outer) for o in options], pick_greater)

    def _extract_function(self, node: exp.Extract, scope: Scope) -> Compiled:
        unit = node.this.name.upper()
        inner = self.compile(node.expression, scope)
        return lambda row, outer: _extract(unit, inner(row, outer))

    def _current_date(self, node: exp.CurrentDate, scope: Scope) -> Compiled:
        now = self._context.now
        if now is not None:
            return _constant(now.date())
        return lambda row, outer: datetime.date.today()

    def _current_timestamp(self, node: exp.CurrentTimestamp, scope: Scope) -> Compiled:
        now = self._context.now
        if now is not None:
            return _constant(now)
        return lambda row, outer: datetime.datetime.now()

    # Subqueries

    def _plan(self, node: exp.Expression, scope: Scope) -> QueryPlan:
        if self._planner is None or isinstance(scope, RowScope):
            raise SQLSyntaxError("cannot use subquery here")
        query = node.this if isinstance(node, exp.Subquery) else node
        if not isinstance(query, exp.Query):
            raise SQLSyntaxError(f"expected a subquery: {node.sql()}")
        return self._planner.plan_subquery(query, scope)

    def _subquery_values(self, node: exp.Expression, scope: Scope) -> Callable[..., list[Any]]:
        plan = self._plan(node, scope)
        if len(plan.fields) != 1:
            raise CardinalityViolation("subquery has too many columns")
        correlated = plan.owner.correlated
        cache: list[list[Any]] = []

        def values_of(row, outer):
            if cache:
                return cache[0]
            values = [r[0] for r in plan.operator.execute((row, *outer))]
            if not correlated:
                cache.append(values)
            return values

        return values_of

    def _scalar_subquery(self, node: exp.Subquery, scope: Scope) -> Compiled:
        plan = self._plan(node, scope)
        if len(plan.fields) != 1:
            raise CardinalityViolation("subquery must return only one column")
        correlated = plan.owner.correlated
        cache: list[Any] = []

        def scalar(row, outer):
            if cache:
                return cache[0]
            rows = plan.operator.execute((row, *outer))
            try:
                first = next(rows, None)
                if first is not None and next(rows, None) is not None:
                    raise CardinalityViolation(
                        "more than one row returned by a subquery used as an expression"
                    )
            finally:
                rows.close()
            value = first[0] if first is not None else None
            if not correlated:
                cache.append(value)
            return value

        return scalar

    def _exists(self, node: exp.Exists, scope: Scope) -> Compiled:
        plan = self._plan(node.this, scope)
        correlated = plan.owner.correlated
        cache: list[bool] = []

        def exists(row, outer):
            if cache:
                return cache[0]
            rows = plan.operator.execute((row, *outer))
            try:
                found = next(rows, None) is not None
            finally:
                rows.close()
            if not correlated:
                cache.append(found)
            return found

        return exists

    def _query(self, node: exp.Query, scope: Scope) -> Compiled:
        return self._scalar_subquery(node, scope)


_HANDLERS: dict[type, Callable[[ExpressionCompiler, Any, Scope], Compiled]] = {
    exp.Column: ExpressionCompiler._column,
    exp.Literal: ExpressionCompiler._literal,
    exp.Null: ExpressionCompiler._null,
    exp.Boolean: ExpressionCompiler._boolean,
    exp.Placeholder: ExpressionCompiler._placeholder,
    exp.Paren: ExpressionCompiler._paren,
    exp.Alias: ExpressionCompiler._alias,
    exp.EQ: ExpressionCompiler._comparison,
    exp.NEQ: ExpressionCompiler._comparison,
    exp.GT: ExpressionCompiler._comparison,
    exp.GTE: ExpressionCompiler._comparison,
    exp.LT: ExpressionCompiler._comparison,
    exp.LTE: ExpressionCompiler._comparison,
    exp.NullSafeEQ: ExpressionCompiler._null_safe,
    exp.NullSafeNEQ: ExpressionCompiler._null_safe,
    exp.And: ExpressionCompiler._and,
    exp.Or: ExpressionCompiler._or,
    exp.Not: ExpressionCompiler._not,
    exp.Is: ExpressionCompiler._is,
    exp.Between: ExpressionCompiler._between,
    exp.Like: ExpressionCompiler._like,
    exp.ILike: ExpressionCompiler._like,
    exp.Escape: ExpressionCompiler._escape,
    exp.In: ExpressionCompiler._in,
    exp.Add: ExpressionCompiler._arithmetic,
    exp.Sub: ExpressionCompiler._arithmetic,
    exp.Mul: ExpressionCompiler._arithmetic,
    exp.Div: ExpressionCompiler._arithmetic,
    exp.Mod: ExpressionCompiler._arithmetic,
    exp.Neg: ExpressionCompiler._neg,
    exp.DPipe: ExpressionCompiler._concat_operator,
    exp.Case: ExpressionCompiler._case,
    exp.Cast: ExpressionCompiler._cast,
    exp.Upper: ExpressionCompiler._upper,
    exp.Lower: ExpressionCompiler._lower,
    exp.Length: ExpressionCompiler._length,
    exp.Abs: ExpressionCompiler._abs,
    exp.Floor: ExpressionCompiler._floor,
    exp.Ceil: ExpressionCompiler._ceil,
    exp.Round: ExpressionCompiler._round_function,
    exp.Sqrt: ExpressionCompiler._sqrt_function,
    exp.Pow: ExpressionCompiler._pow,
    exp.Substring: ExpressionCompiler._substring_function,
    exp.Trim: ExpressionCompiler._trim,
    exp.Replace: ExpressionCompiler._replace,
    exp.Concat: ExpressionCompiler._concat,
    exp.Coalesce: ExpressionCompiler._coalesce,
    exp.Nullif: ExpressionCompiler._nullif,
    exp.Greatest: ExpressionCompiler._greatest,
    exp.Least: ExpressionCompiler._greatest,
    exp.Extract: ExpressionCompiler._extract_function,
    exp.CurrentDate: ExpressionCompiler._current_date,
    exp.CurrentTimestamp: ExpressionCompiler._current_timestamp,
    exp.Subquery: ExpressionCompiler._scalar_subquery,
    exp.Exists: ExpressionCompiler._exists,
    exp.Select: ExpressionCompiler._query,
}


class RowExpressionEvaluator:
    """Evaluates stored expressions (defaults, CHECKs) against a row mapping.

    Compiled closures are cached per expression object. Installed into the
    storage engine at wiring time.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cache: dict[int, tuple[exp.Expression, Compiled]] = {}
        self._compiler = ExpressionCompiler(EvaluationContext())

    def __call__(self, expression: exp.Expression, row: dict[str, Any]) -> Any:
        with self._lock:
            entry = self._cache.get(id(expression))
        if entry is None or entry[0] is not expression:
            entry = (expression, self._compiler.compile(expression, RowScope()))
            with self._lock:
                self._cache[id(expression)] = entry
        return entry[1](row, ())
