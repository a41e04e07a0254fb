"""Inbound adapters for the query engine.

Inbound adapters handle incoming requests and convert them to
engine operations.

Exports:
    SQL Parser:
        - SQLParser: Turns SQL text into typed statement objects
        - StatementType: Kind of a parsed statement

The REST API lives in ``reldb.adapters.inbound.rest_api`` and is imported
from there (it depends on the application layer).
"""

from reldb.adapters.inbound.sql_parser import (
    AlterTableStatement,
    CreateIndexStatement,
    CreateTableStatement,
    CreateViewStatement,
    DeleteStatement,
    DropStatement,
    InsertStatement,
    QueryStatement,
    SQLParser,
    Statement,
    StatementType,
    TransactionStatement,
    UpdateStatement,
)

__all__ = [
    "SQLParser",
    "Statement",
    "StatementType",
    # Statements
    "TransactionStatement",
    "QueryStatement",
    "InsertStatement",
    "UpdateStatement",
    "DeleteStatement",
    "CreateTableStatement",
    "AlterTableStatement",
    "DropStatement",
    "CreateIndexStatement",
    "CreateViewStatement",
]
