"""Scalar column types and value coercion.

Every stored value is a plain Python object of the type's domain:

    INTEGER    -> int
    DECIMAL    -> decimal.Decimal (quantized to the declared scale)
    TEXT       -> str (VARCHAR(n) enforces a maximum length)
    DATE       -> datetime.date
    TIMESTAMP  -> datetime.datetime
    BOOLEAN    -> bool

NULL is represented by None for every type.

Assignment coercion (INSERT, UPDATE, defaults) is permissive in the same way
as PostgreSQL's assignment casts: numeric strings and ISO date strings are
accepted, decimals are rounded half-up to the column scale. Lossless mode,
used by ALTER COLUMN TYPE, rejects any conversion that would change a value.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum, auto
from typing import Any

from reldb.domain.errors import NumericOverflow, TypeMismatch


INTEGER_MIN = -(2 ** 63)
INTEGER_MAX = 2 ** 63 - 1

_TRUE_STRINGS = {"true", "t", "yes", "y", "on", "1"}
_FALSE_STRINGS = {"false", "f", "no", "n", "off", "0"}


class TypeKind(Enum):
    """Scalar type families supported by the engine."""

    INTEGER = auto()
    DECIMAL = auto()
    TEXT = auto()
    DATE = auto()
    TIMESTAMP = auto()
    BOOLEAN = auto()

    @property
    def is_numeric(self) -> bool:
        return self in (TypeKind.INTEGER, TypeKind.DECIMAL)


@dataclass(frozen=True, slots=True)
class ColumnType:
    """A column's declared type.

    Attributes:
        kind: Type family
        precision: Total significant digits for DECIMAL (None = unbounded)
        scale: Digits after the decimal point for DECIMAL
        length: Maximum character length for VARCHAR (None = TEXT)
    """

    kind: TypeKind
    precision: int | None = None
    scale: int | None = None
    length: int | None = None

    def __post_init__(self) -> None:
        if self.precision is not None and self.precision <= 0:
            raise ValueError(f"precision must be positive, got {self.precision}")
        if self.scale is not None and self.scale < 0:
            raise ValueError(f"scale must be non-negative, got {self.scale}")
        if (
            self.precision is not None
            and self.scale is not None
            and self.scale > self.precision
        ):
            raise ValueError(f"scale {self.scale} exceeds precision {self.precision}")
        if self.length is not None and self.length <= 0:
            raise ValueError(f"length must be positive, got {self.length}")

    def __str__(self) -> str:
        if self.kind == TypeKind.DECIMAL and self.precision is not None:
            return f"DECIMAL({self.precision},{self.scale or 0})"
        if self.kind == TypeKind.TEXT and self.length is not None:
            return f"VARCHAR({self.length})"
        return self.kind.name

    def coerce(self, value: Any, lossless: bool = False) -> Any:
        """Convert a value to this type's domain.

        Args:
            value: The value to convert (None passes through)
            lossless: Reject conversions that would change the value

        Returns:
            The converted value

        Raises:
            TypeMismatch: If the value cannot be represented in this type
            NumericOverflow: If a number exceeds the declared precision
        """
        if value is None:
            return None
        converter = _CONVERTERS[self.kind]
        return converter(self, value, lossless)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.name,
            "precision": self.precision,
            "scale": self.scale,
            "length": self.length,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnType:
        return cls(
            kind=TypeKind[data["kind"]],
            precision=data.get("precision"),
            scale=data.get("scale"),
            length=data.get("length"),
        )


INTEGER = ColumnType(TypeKind.INTEGER)
DECIMAL = ColumnType(TypeKind.DECIMAL)
TEXT = ColumnType(TypeKind.TEXT)
DATE = ColumnType(TypeKind.DATE)
TIMESTAMP = ColumnType(TypeKind.TIMESTAMP)
BOOLEAN = ColumnType(TypeKind.BOOLEAN)


def _mismatch(column_type: ColumnType, value: Any) -> TypeMismatch:
    return TypeMismatch(
        f"cannot convert {type(value).__name__} value {value!r} to {column_type}"
    )


def _to_integer(column_type: ColumnType, value: Any, lossless: bool) -> int:
    if isinstance(value, bool):
        raise _mismatch(column_type, value)
    if isinstance(value, int):
        result = value
    elif isinstance(value, (Decimal, float)):
        number = Decimal(str(value)) if isinstance(value, float) else value
        if not number.is_finite():
            raise _mismatch(column_type, value)
        integral = number.to_integral_value(rounding=ROUND_HALF_UP)
        if lossless and integral != number:
            raise _mismatch(column_type, value)
        result = int(integral)
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError:
            raise _mismatch(column_type, value) from None
    else:
        raise _mismatch(column_type, value)
    if not INTEGER_MIN <= result <= INTEGER_MAX:
        raise NumericOverflow(f"integer out of range: {result}")
    return result


def _to_decimal(column_type: ColumnType, value: Any, lossless: bool) -> Decimal:
    if isinstance(value, bool):
        raise _mismatch(column_type, value)
    try:
        if isinstance(value, Decimal):
            number = value
        elif isinstance(value, int):
            number = Decimal(value)
        elif isinstance(value, float):
            number = Decimal(str(value))
        elif isinstance(value, str):
            number = Decimal(value.strip())
        else:
            raise _mismatch(column_type, value)
    except InvalidOperation:
        raise _mismatch(column_type, value) from None
    if not number.is_finite():
        raise _mismatch(column_type, value)

    if column_type.scale is not None or column_type.precision is not None:
        scale = column_type.scale or 0
        quantized = number.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
        if lossless and quantized != number:
            raise _mismatch(column_type, value)
        number = quantized
        if column_type.precision is not None:
            integer_digits = len(str(abs(int(number)))) if int(number) != 0 else 0
            if integer_digits > column_type.precision - scale:
                raise NumericOverflow(
                    f"numeric field overflow: {value} does not fit {column_type}"
                )
    return number


def _to_text(column_type: ColumnType, value: Any, lossless: bool) -> str:
    if isinstance(value, str):
        text = value
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, datetime.datetime):
        text = value.isoformat(sep=" ")
    elif isinstance(value, (int, Decimal, float, datetime.date)):
        text = str(value)
    else:
        raise _mismatch(column_type, value)
    if column_type.length is not None and len(text) > column_type.length:
        raise TypeMismatch(f"value too long for type {column_type}: {text!r}")
    return text


def _to_date(column_type: ColumnType, value: Any, lossless: bool) -> datetime.date:
    if isinstance(value, datetime.datetime):
        if lossless and value.time() != datetime.time(0):
            raise _mismatch(column_type, value)
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError:
            raise _mismatch(column_type, value) from None
    raise _mismatch(column_type, value)


def _to_timestamp(column_type: ColumnType, value: Any, lossless: bool) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time(0))
    if isinstance(value, str):
        try:
            return datetime.datetime.fromisoformat(value.strip())
        except ValueError:
            raise _mismatch(column_type, value) from None
    raise _mismatch(column_type, value)


def _to_boolean(column_type: ColumnType, value: Any, lossless: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise _mismatch(column_type, value)


_CONVERTERS = {
    TypeKind.INTEGER: _to_integer,
    TypeKind.DECIMAL: _to_decimal,
    TypeKind.TEXT: _to_text,
    TypeKind.DATE: _to_date,
    TypeKind.TIMESTAMP: _to_timestamp,
    TypeKind.BOOLEAN: _to_boolean,
}


def infer_type(value: Any) -> ColumnType | None:
    """Infer the column type of a runtime value, or None for NULL."""
    if value is None:
        return None
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, (Decimal, float)):
        return DECIMAL
    if isinstance(value, datetime.datetime):
        return TIMESTAMP
    if isinstance(value, datetime.date):
        return DATE
    if isinstance(value, str):
        return TEXT
    raise TypeMismatch(f"unsupported value type: {type(value).__name__}")


def type_family(value: Any) -> str:
    """Comparison family of a non-NULL value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, Decimal, float)):
        return "numeric"
    if isinstance(value, (datetime.date, datetime.datetime)):
        return "temporal"
    if isinstance(value, str):
        return "text"
    raise TypeMismatch(f"unsupported value type: {type(value).__name__}")


def align_for_comparison(left: Any, right: Any) -> tuple[Any, Any]:
    """Make two non-NULL values directly comparable.

    String literals compared with dates or timestamps are parsed; dates
    compared with timestamps are promoted to midnight.

    Raises:
        TypeMismatch: If the values belong to incompatible families
    """
    left_family = type_family(left)
    right_family = type_family(right)

    if left_family == "temporal" and right_family == "text":
        right = _parse_temporal_like(left, right)
        right_family = "temporal"
    elif left_family == "text" and right_family == "temporal":
        left = _parse_temporal_like(right, left)
        left_family = "temporal"

    if left_family != right_family:
        raise TypeMismatch(
            f"cannot compare {type(left).__name__} {left!r} "
            f"with {type(right).__name__} {right!r}"
        )

    if left_family == "temporal":
        left_is_ts = isinstance(left, datetime.datetime)
        right_is_ts = isinstance(right, datetime.datetime)
        if left_is_ts and not right_is_ts:
            right = datetime.datetime.combine(right, datetime.time(0))
        elif right_is_ts and not left_is_ts:
            left = datetime.datetime.combine(left, datetime.time(0))
    return left, right


def _parse_temporal_like(reference: Any, text: str) -> Any:
    target = TIMESTAMP if isinstance(reference, datetime.datetime) else DATE
    try:
        return target.coerce(text)
    except TypeMismatch:
        return TIMESTAMP.coerce(text)
