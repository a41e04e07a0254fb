"""Domain entities for the database engine.

Entities are objects with identity that have a lifecycle. Unlike value objects,
two entities with the same attributes may not be equal if they have different
identities.

Exports:
    Row Versions:
        - RowVersion: One version of a logical row with MVCC metadata
        - Snapshot: Point-in-time view for MVCC visibility

    Schema:
        - Column, TableSchema: Table definitions
        - UniqueConstraint, CheckConstraint, ForeignKey: Integrity constraints
        - ReferentialAction: ON DELETE / ON UPDATE policies
        - IndexDefinition, ViewDefinition: Secondary catalog objects
        - CatalogState: Immutable, versioned schema snapshot

    B+Tree Nodes:
        - IndexKey: Composite, NULL-first ordered index key
        - BTreeNodeHeader: Node header with metadata
        - BTreeLeafNode: Leaf node storing key to row id sets
        - BTreeInternalNode: Internal node with separator keys
        - NodeType: Enum for node types
"""

from reldb.domain.entities.btree_node import (
    BTreeInternalNode,
    BTreeLeafNode,
    BTreeNodeHeader,
    IndexKey,
    NodeType,
)
from reldb.domain.entities.catalog_state import CatalogState
from reldb.domain.entities.row_version import RowVersion, Snapshot
from reldb.domain.entities.schema import (
    CheckConstraint,
    Column,
    ExpressionParser,
    ForeignKey,
    IndexDefinition,
    ReferentialAction,
    TableSchema,
    UniqueConstraint,
    ViewDefinition,
)

__all__ = [
    # Row versions
    "RowVersion",
    "Snapshot",
    # Schema
    "Column",
    "TableSchema",
    "UniqueConstraint",
    "CheckConstraint",
    "ForeignKey",
    "ReferentialAction",
    "IndexDefinition",
    "ViewDefinition",
    "ExpressionParser",
    "CatalogState",
    # B+Tree Nodes
    "IndexKey",
    "BTreeNodeHeader",
    "BTreeLeafNode",
    "BTreeInternalNode",
    "NodeType",
]
