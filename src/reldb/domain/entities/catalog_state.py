"""Immutable catalog snapshot.

A CatalogState is one version of the full schema: tables, views and index
definitions. States are never mutated; every DDL step derives a new state
from the previous one. The committed state is published by the transaction
manager at commit, and each transaction reads from (and edits) its own
working state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from reldb.domain.entities.schema import (
    ExpressionParser,
    ForeignKey,
    IndexDefinition,
    TableSchema,
    ViewDefinition,
)
from reldb.domain.value_objects import TableId


@dataclass(frozen=True)
class CatalogState:
    """A versioned, immutable schema snapshot.

    Attributes:
        version: Number of DDL commits that produced this state
        tables: Table name to schema
        views: View name to definition
        indexes: Index name to definition
    """

    version: int = 0
    tables: dict[str, TableSchema] = field(default_factory=dict)
    views: dict[str, ViewDefinition] = field(default_factory=dict)
    indexes: dict[str, IndexDefinition] = field(default_factory=dict)

    def table(self, name: str) -> TableSchema | None:
        return self.tables.get(name)

    def table_by_id(self, table_id: TableId) -> TableSchema | None:
        for schema in self.tables.values():
            if schema.table_id == table_id:
                return schema
        return None

    def has_relation(self, name: str) -> bool:
        """Check if a table or view with this name exists."""
        return name in self.tables or name in self.views

    def indexes_of(self, table: str) -> list[IndexDefinition]:
        return [idx for idx in self.indexes.values() if idx.table == table]

    def referencing(self, table: str) -> list[tuple[TableSchema, ForeignKey]]:
        """Foreign keys in other tables (or self) that reference ``table``."""
        refs = []
        for schema in self.tables.values():
            for fk in schema.foreign_keys:
                if fk.ref_table == table:
                    refs.append((schema, fk))
        return refs

    def with_table(self, schema: TableSchema) -> CatalogState:
        tables = dict(self.tables)
        tables[schema.name] = schema
        return replace(self, tables=tables)

    def without_table(self, name: str) -> CatalogState:
        tables = dict(self.tables)
        tables.pop(name, None)
        indexes = {k: v for k, v in self.indexes.items() if v.table != name}
        return replace(self, tables=tables, indexes=indexes)

    def with_view(self, view: ViewDefinition) -> CatalogState:
        views = dict(self.views)
        views[view.name] = view
        return replace(self, views=views)

    def without_view(self, name: str) -> CatalogState:
        views = dict(self.views)
        views.pop(name, None)
        return replace(self, views=views)

    def with_index(self, index: IndexDefinition) -> CatalogState:
        indexes = dict(self.indexes)
        indexes[index.name] = index
        return replace(self, indexes=indexes)

    def without_index(self, name: str) -> CatalogState:
        indexes = dict(self.indexes)
        indexes.pop(name, None)
        return replace(self, indexes=indexes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "tables": [t.to_dict() for t in self.tables.values()],
            "views": [v.to_dict() for v in self.views.values()],
            "indexes": [i.to_dict() for i in self.indexes.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], parse: ExpressionParser) -> CatalogState:
        tables = [TableSchema.from_dict(t, parse) for t in data.get("tables", [])]
        views = [ViewDefinition.from_dict(v) for v in data.get("views", [])]
        indexes = [IndexDefinition.from_dict(i) for i in data.get("indexes", [])]
        return cls(
            version=data.get("version", 0),
            tables={t.name: t for t in tables},
            views={v.name: v for v in views},
            indexes={i.name: i for i in indexes},
        )
