"""Schema entities: tables, columns, constraints, indexes and views.

All schema entities are immutable. The catalog evolves by replacing whole
entities (copy-on-write), so a transaction holding an older catalog state
keeps a consistent view while another transaction alters a table.

Check predicates and column defaults carry both their SQL text and the
parsed expression. The text is what gets persisted; the parsed form is
rebuilt with an injected parser when a catalog is restored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from reldb.domain.value_objects import INVALID_TABLE_ID, ColumnType, TableId


ExpressionParser = Callable[[str], Any]
"""Turns expression SQL text back into an evaluable expression."""


class ReferentialAction(Enum):
    """Action taken on dependent rows when a referenced key changes."""

    NO_ACTION = "NO ACTION"
    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"

    @classmethod
    def from_sql(cls, text: str | None) -> ReferentialAction:
        if not text:
            return cls.NO_ACTION
        normalized = " ".join(text.upper().split())
        for action in cls:
            if action.value == normalized:
                return action
        raise ValueError(f"Unsupported referential action: {text!r}")


@dataclass(frozen=True)
class Column:
    """A column definition.

    Attributes:
        name: Column name (lower case)
        type: Declared scalar type
        nullable: Whether NULL is allowed
        default_sql: SQL text of the default expression, if any
        default: Parsed default expression, if any
        auto_increment: Whether values come from the table's sequence
    """

    name: str
    type: ColumnType
    nullable: bool = True
    default_sql: str | None = None
    default: Any = field(default=None, compare=False)
    auto_increment: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.to_dict(),
            "nullable": self.nullable,
            "default_sql": self.default_sql,
            "auto_increment": self.auto_increment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], parse: ExpressionParser) -> Column:
        default_sql = data.get("default_sql")
        return cls(
            name=data["name"],
            type=ColumnType.from_dict(data["type"]),
            nullable=data.get("nullable", True),
            default_sql=default_sql,
            default=parse(default_sql) if default_sql else None,
            auto_increment=data.get("auto_increment", False),
        )


@dataclass(frozen=True)
class UniqueConstraint:
    """PRIMARY KEY or UNIQUE constraint over one or more columns."""

    name: str
    columns: tuple[str, ...]
    primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "columns": list(self.columns), "primary": self.primary}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UniqueConstraint:
        return cls(data["name"], tuple(data["columns"]), data.get("primary", False))


@dataclass(frozen=True)
class CheckConstraint:
    """CHECK predicate; a row passes when it evaluates to TRUE or NULL."""

    name: str
    sql: str
    expression: Any = field(compare=False)
    columns: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "sql": self.sql, "columns": sorted(self.columns)}

    @classmethod
    def from_dict(cls, data: dict[str, Any], parse: ExpressionParser) -> CheckConstraint:
        return cls(
            name=data["name"],
            sql=data["sql"],
            expression=parse(data["sql"]),
            columns=frozenset(data.get("columns", ())),
        )


@dataclass(frozen=True)
class ForeignKey:
    """Local columns referencing a primary or unique key of another table.

    Attributes:
        name: Constraint name
        columns: Local (referencing) columns
        ref_table: Referenced table name
        ref_columns: Referenced columns, same arity as columns
        on_delete: Action when a referenced row is deleted
        on_update: Action when a referenced key is changed
        deferred: Checked only at commit instead of per statement
    """

    name: str
    columns: tuple[str, ...]
    ref_table: str
    ref_columns: tuple[str, ...]
    on_delete: ReferentialAction = ReferentialAction.NO_ACTION
    on_update: ReferentialAction = ReferentialAction.NO_ACTION
    deferred: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "ref_table": self.ref_table,
            "ref_columns": list(self.ref_columns),
            "on_delete": self.on_delete.value,
            "on_update": self.on_update.value,
            "deferred": self.deferred,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForeignKey:
        return cls(
            name=data["name"],
            columns=tuple(data["columns"]),
            ref_table=data["ref_table"],
            ref_columns=tuple(data["ref_columns"]),
            on_delete=ReferentialAction(data.get("on_delete", "NO ACTION")),
            on_update=ReferentialAction(data.get("on_update", "NO ACTION")),
            deferred=data.get("deferred", False),
        )


@dataclass(frozen=True)
class TableSchema:
    """A table definition.

    Attributes:
        name: Table name (lower case)
        columns: Ordered column definitions
        primary_key: Primary key constraint, if any
        unique_constraints: UNIQUE constraints (primary key excluded)
        checks: CHECK constraints
        foreign_keys: Outgoing foreign keys
        table_id: Storage identifier assigned by the catalog
    """

    name: str
    columns: tuple[Column, ...]
    primary_key: UniqueConstraint | None = None
    unique_constraints: tuple[UniqueConstraint, ...] = ()
    checks: tuple[CheckConstraint, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    table_id: TableId = INVALID_TABLE_ID

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def has_column(self, name: str) -> bool:
        return any(c.name == name for c in self.columns)

    def column(self, name: str) -> Column:
        """Get a column by name.

        Raises:
            KeyError: If the column does not exist
        """
        for c in self.columns:
            if c.name == name:
                return c
        raise KeyError(name)

    def key_constraints(self) -> list[UniqueConstraint]:
        """Primary key (first) and unique constraints."""
        keys = [self.primary_key] if self.primary_key is not None else []
        return keys + list(self.unique_constraints)

    def constraint_names(self) -> set[str]:
        names = {c.name for c in self.key_constraints()}
        names.update(c.name for c in self.checks)
        names.update(fk.name for fk in self.foreign_keys)
        return names

    def has_key(self, columns: tuple[str, ...]) -> bool:
        """Check if the column set is covered by a primary or unique key."""
        wanted = set(columns)
        return any(set(k.columns) == wanted for k in self.key_constraints())

    def replace_column(self, column: Column) -> TableSchema:
        return replace(
            self,
            columns=tuple(column if c.name == column.name else c for c in self.columns),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "table_id": self.table_id,
            "columns": [c.to_dict() for c in self.columns],
            "primary_key": self.primary_key.to_dict() if self.primary_key else None,
            "unique_constraints": [u.to_dict() for u in self.unique_constraints],
            "checks": [c.to_dict() for c in self.checks],
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], parse: ExpressionParser) -> TableSchema:
        primary = data.get("primary_key")
        return cls(
            name=data["name"],
            table_id=TableId(data["table_id"]),
            columns=tuple(Column.from_dict(c, parse) for c in data["columns"]),
            primary_key=UniqueConstraint.from_dict(primary) if primary else None,
            unique_constraints=tuple(
                UniqueConstraint.from_dict(u) for u in data.get("unique_constraints", [])
            ),
            checks=tuple(CheckConstraint.from_dict(c, parse) for c in data.get("checks", [])),
            foreign_keys=tuple(ForeignKey.from_dict(f) for f in data.get("foreign_keys", [])),
        )


@dataclass(frozen=True)
class IndexDefinition:
    """A B+tree index over table columns.

    Indexes backing a primary or unique constraint carry the constraint
    name in ``constraint`` and are dropped together with it.
    """

    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False
    constraint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "table": self.table,
            "columns": list(self.columns),
            "unique": self.unique,
            "constraint": self.constraint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDefinition:
        return cls(
            name=data["name"],
            table=data["table"],
            columns=tuple(data["columns"]),
            unique=data.get("unique", False),
            constraint=data.get("constraint"),
        )


@dataclass(frozen=True)
class ViewDefinition:
    """A stored, non-materialized query.

    The query text is re-parsed and re-resolved against the catalog on
    every reference.
    """

    name: str
    sql: str
    column_names: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "sql": self.sql, "column_names": list(self.column_names)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ViewDefinition:
        return cls(data["name"], data["sql"], tuple(data.get("column_names", ())))
