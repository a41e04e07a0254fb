"""SQL Parser using sqlglot.

This module turns statement text into the statement objects the executor
runs. Tokenizing and parsing use sqlglot's PostgreSQL dialect.

Query expressions (SELECT, set operations, VALUES, WITH) stay sqlglot
expression trees; the planner compiles them against the catalog. DDL is
converted here into schema entities and ALTER TABLE changes. Transaction
control comes from sqlglot's ``Transaction``, ``Commit``, ``Rollback`` and
``Set`` nodes; only START TRANSACTION, which sqlglot has no grammar for,
is recognized from its tokens.

Identifiers are folded to lower case unless quoted.

Parameters:
    Positional ``?`` markers are renamed ``:__p1``, ``:__p2``, ... in
    textual order, using the positions of sqlglot's PLACEHOLDER tokens, so
    every parameter reaches the planner as a named ``exp.Placeholder``.
    Named parameters are written ``:name``.

Supported statements:
    - SELECT (joins, grouping, windows, subqueries, WITH [RECURSIVE],
      UNION/INTERSECT/EXCEPT)
    - INSERT ... VALUES | SELECT, UPDATE, DELETE
    - CREATE/ALTER/DROP TABLE, CREATE/DROP INDEX, CREATE/DROP VIEW
    - BEGIN, START TRANSACTION, COMMIT, ROLLBACK, SET TRANSACTION

References:
    - sqlglot documentation: https://sqlglot.com/
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Iterable, Union

from sqlglot import exp
from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import ParseError, TokenError
from sqlglot.optimizer.normalize_identifiers import normalize_identifiers
from sqlglot.parser import Parser
from sqlglot.tokens import Token, TokenType

from reldb.domain.entities import (
    CheckConstraint,
    Column,
    ForeignKey,
    IndexDefinition,
    ReferentialAction,
    TableSchema,
    UniqueConstraint,
    ViewDefinition,
)
from reldb.domain.errors import InvalidConstraint, ParameterError, SQLSyntaxError
from reldb.domain.services.catalog import (
    AddColumn,
    AddConstraint,
    AlterColumnType,
    DropColumn,
    DropConstraint,
    SetColumnDefault,
    SetColumnNullable,
    TableChange,
)
from reldb.domain.value_objects import ColumnType, IsolationLevel, TypeKind


POSITIONAL_PREFIX = "__p"

_ISOLATION_OPTIONS = (
    ("LEVEL", "READ", "UNCOMMITTED"),
    ("LEVEL", "READ", "COMMITTED"),
    ("LEVEL", "REPEATABLE", "READ"),
    ("LEVEL", "SERIALIZABLE"),
)

_INTEGER_TYPES = {"INT", "BIGINT", "SMALLINT", "TINYINT", "MEDIUMINT", "UINT", "UBIGINT"}
_SERIAL_TYPES = {"SERIAL", "BIGSERIAL", "SMALLSERIAL"}
_DECIMAL_TYPES = {"DECIMAL", "DOUBLE", "FLOAT", "MONEY", "BIGDECIMAL", "UDECIMAL"}
_TEXT_TYPES = {"TEXT", "VARCHAR", "CHAR", "NVARCHAR", "NCHAR", "BPCHAR", "NAME"}
_TIMESTAMP_TYPES = {"TIMESTAMP", "TIMESTAMPTZ", "TIMESTAMPLTZ", "TIMESTAMPNTZ", "DATETIME"}


@functools.lru_cache(maxsize=None)
def _statement_parser(base: type[Parser]) -> type[Parser]:
    """A dialect's parser extended with the statement forms reldb accepts."""

    class StatementParser(base):  # type: ignore[valid-type,misc]
        # ALTER TABLE ... ADD CHECK (...) without CONSTRAINT name
        ADD_CONSTRAINT_KEYWORDS = {*base.ADD_CONSTRAINT_KEYWORDS, "CHECK"}
        # SET TRANSACTION ISOLATION LEVEL, all four levels
        TRANSACTION_CHARACTERISTICS = {
            **base.TRANSACTION_CHARACTERISTICS,
            "ISOLATION": _ISOLATION_OPTIONS,
        }

    return StatementParser


class StatementType(Enum):
    """Types of SQL statements."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    CREATE_TABLE = "create_table"
    ALTER_TABLE = "alter_table"
    DROP_TABLE = "drop_table"
    CREATE_INDEX = "create_index"
    DROP_INDEX = "drop_index"
    CREATE_VIEW = "create_view"
    DROP_VIEW = "drop_view"
    BEGIN = "begin"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    SET_TRANSACTION = "set_transaction"

    @property
    def is_transaction_control(self) -> bool:
        return self in (
            StatementType.BEGIN,
            StatementType.COMMIT,
            StatementType.ROLLBACK,
            StatementType.SET_TRANSACTION,
        )

    @property
    def is_write(self) -> bool:
        return self in (StatementType.INSERT, StatementType.UPDATE, StatementType.DELETE)


@dataclass
class TransactionStatement:
    """BEGIN / COMMIT / ROLLBACK / SET TRANSACTION."""

    statement_type: StatementType
    isolation: IsolationLevel | None = None
    parameters: tuple[str, ...] = ()


@dataclass
class QueryStatement:
    """A query returning rows; ``query`` is a sqlglot expression."""

    query: exp.Expression
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.SELECT


@dataclass
class InsertStatement:
    """INSERT INTO table [(columns)] VALUES ... | query.

    Attributes:
        table: Target table
        columns: Explicit column list, or None for all columns in order
        source: ``exp.Values`` or a query expression
    """

    table: str
    columns: tuple[str, ...] | None
    source: exp.Expression
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.INSERT


@dataclass
class UpdateStatement:
    table: str
    alias: str | None
    assignments: tuple[tuple[str, exp.Expression], ...]
    where: exp.Expression | None = None
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.UPDATE


@dataclass
class DeleteStatement:
    table: str
    alias: str | None
    where: exp.Expression | None = None
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.DELETE


@dataclass
class CreateTableStatement:
    """CREATE TABLE; ``query`` is set for CREATE TABLE ... AS query."""

    schema: TableSchema
    if_not_exists: bool = False
    query: exp.Expression | None = None
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.CREATE_TABLE


@dataclass
class AlterTableStatement:
    table: str
    changes: tuple[TableChange, ...]
    if_exists: bool = False
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.ALTER_TABLE


@dataclass
class DropStatement:
    """DROP TABLE | VIEW | INDEX."""

    statement_type: StatementType
    names: tuple[str, ...]
    if_exists: bool = False
    cascade: bool = False
    parameters: tuple[str, ...] = ()


@dataclass
class CreateIndexStatement:
    index: IndexDefinition
    if_not_exists: bool = False
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.CREATE_INDEX


@dataclass
class CreateViewStatement:
    view: ViewDefinition
    query: exp.Expression
    or_replace: bool = False
    parameters: tuple[str, ...] = ()
    statement_type: ClassVar[StatementType] = StatementType.CREATE_VIEW


Statement = Union[
    TransactionStatement,
    QueryStatement,
    InsertStatement,
    UpdateStatement,
    DeleteStatement,
    CreateTableStatement,
    AlterTableStatement,
    DropStatement,
    CreateIndexStatement,
    CreateViewStatement,
]


# Tokens


def _syntax_error(error: ParseError | TokenError) -> SQLSyntaxError:
    message = str(error).splitlines()[0] if str(error) else type(error).__name__
    return SQLSyntaxError(f"syntax error: {message}")


def _source(sql: str, tokens: list[Token]) -> str:
    """Text from the first token through the last, comments at the edges dropped."""
    return sql[tokens[0].start:tokens[-1].end + 1]


def _isolation_from_modes(modes: Iterable[str]) -> IsolationLevel | None:
    """Read ``ISOLATION LEVEL ...`` transaction modes; the last one wins."""
    level = None
    for mode in modes:
        words = mode.upper().split()
        if words[:2] != ["ISOLATION", "LEVEL"]:
            raise SQLSyntaxError(f"unsupported transaction mode: {mode}")
        try:
            level = IsolationLevel.from_sql(" ".join(words[2:]))
        except ValueError as e:
            raise SQLSyntaxError(str(e)) from None
    return level


def _start_transaction(tokens: list[Token]) -> TransactionStatement | None:
    """START TRANSACTION [mode [, ...]], which sqlglot parses as an expression."""
    lead = tokens[:2]
    if [t.token_type for t in lead] != [TokenType.VAR, TokenType.VAR] or [
        t.text.upper() for t in lead
    ] != ["START", "TRANSACTION"]:
        return None

    modes: list[list[str]] = [[]]
    for token in tokens[2:]:
        if token.token_type == TokenType.COMMA:
            modes.append([])
        else:
            modes[-1].append(token.text)
    if len(tokens) > 2 and not all(modes):
        raise SQLSyntaxError("invalid transaction mode list")
    return TransactionStatement(
        StatementType.BEGIN, _isolation_from_modes(" ".join(m) for m in modes if m)
    )


def positional_name(position: int) -> str:
    """Placeholder name of the 1-based positional parameter."""
    return f"{POSITIONAL_PREFIX}{position}"


# Types


def column_type_from_sql(dtype: exp.DataType) -> tuple[ColumnType, bool]:
    """Map a sqlglot data type to a column type.

    Returns:
        The column type and whether it is a SERIAL (sequence-backed) type.

    Raises:
        SQLSyntaxError: If the type is not supported.
    """
    type_name = dtype.this.name if isinstance(dtype.this, Enum) else str(dtype.this).upper()
    params = []
    for param in dtype.expressions:
        try:
            params.append(int(param.name))
        except ValueError:
            raise SQLSyntaxError(f"invalid type modifier in {dtype.sql()}") from None

    try:
        if type_name in _INTEGER_TYPES:
            return ColumnType(TypeKind.INTEGER), False
        if type_name in _SERIAL_TYPES:
            return ColumnType(TypeKind.INTEGER), True
        if type_name in _DECIMAL_TYPES:
            if type_name == "DECIMAL" and params:
                scale = params[1] if len(params) > 1 else 0
                return ColumnType(TypeKind.DECIMAL, precision=params[0], scale=scale), False
            return ColumnType(TypeKind.DECIMAL), False
        if type_name in _TEXT_TYPES:
            if params and type_name != "TEXT":
                return ColumnType(TypeKind.TEXT, length=params[0]), False
            return ColumnType(TypeKind.TEXT), False
        if type_name == "DATE":
            return ColumnType(TypeKind.DATE), False
        if type_name in _TIMESTAMP_TYPES:
            return ColumnType(TypeKind.TIMESTAMP), False
        if type_name == "BOOLEAN":
            return ColumnType(TypeKind.BOOLEAN), False
    except ValueError as e:
        raise SQLSyntaxError(f"invalid type {dtype.sql()}: {e}") from e
    raise SQLSyntaxError(f"type {dtype.sql(dialect='postgres')} is not supported")


def _name(node: exp.Expression | str | None) -> str:
    """Plain name of an identifier-like node (Identifier, Column, Ordered, Table)."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, exp.Ordered):
        return _name(node.this)
    return node.name


class SQLParser:
    """SQL parser using sqlglot.

    Parses statement text and produces statement objects for the
    executor.

    Example:
        >>> parser = SQLParser()
        >>> stmt = parser.parse("SELECT id, name FROM users WHERE age > ?")
        >>> stmt.statement_type, stmt.parameters
        (<StatementType.SELECT: 'select'>, ('__p1',))
    """

    def __init__(self, dialect: str = "postgres") -> None:
        """Initialize the parser.

        Args:
            dialect: SQL dialect to use for parsing (default: postgres).

        Raises:
            ValueError: If sqlglot does not know the dialect.
        """
        self._dialect = dialect
        self._sqlglot_dialect = Dialect.get_or_raise(dialect)
        self._parser_class = _statement_parser(self._sqlglot_dialect.parser_class)

    @property
    def dialect(self) -> str:
        return self._dialect

    def parse(self, sql: str) -> Statement:
        """Parse exactly one SQL statement.

        Raises:
            SQLSyntaxError: If the SQL is invalid, unsupported, empty or
                holds more than one statement.
        """
        statements = self._split(sql)
        if not statements:
            raise SQLSyntaxError("empty statement")
        if len(statements) > 1:
            raise SQLSyntaxError(
                "multiple statements are not allowed here; use execute_script"
            )
        return self._parse_statement(sql, statements[0])

    def parse_script(self, sql: str) -> list[Statement]:
        """Parse a semicolon-separated script."""
        return [self._parse_statement(sql, tokens) for tokens in self._split(sql)]

    def split_script(self, sql: str) -> list[str]:
        """Statement texts of a script, split at top-level semicolons.

        Empty statements and comments around each statement are dropped.
        """
        return [_source(sql, tokens) for tokens in self._split(sql)]

    def parse_expression(self, sql: str) -> exp.Expression:
        """Parse a scalar expression (column defaults, CHECK predicates)."""
        tree = self._parse_tree(sql)
        if isinstance(tree, (exp.Query, exp.DDL, exp.DML, exp.Command)):
            raise SQLSyntaxError(f"expected an expression: {sql!r}")
        return tree

    def parse_query(self, sql: str) -> exp.Expression:
        """Parse a query (view bodies)."""
        tree = self._parse_tree(sql)
        if not self._is_query(tree):
            raise SQLSyntaxError(f"expected a query: {sql!r}")
        return tree

    # Tokens

    def _tokenize(self, sql: str) -> list[Token]:
        try:
            return self._sqlglot_dialect.tokenize(sql)
        except TokenError as e:
            raise _syntax_error(e) from e

    def _split(self, sql: str) -> list[list[Token]]:
        statements: list[list[Token]] = [[]]
        for token in self._tokenize(sql):
            if token.token_type == TokenType.SEMICOLON:
                statements.append([])
            else:
                statements[-1].append(token)
        return [tokens for tokens in statements if tokens]

    @staticmethod
    def _number_placeholders(sql: str, tokens: list[Token]) -> tuple[str, int]:
        """Statement text with ``?`` markers renamed ``:__p1``, ``:__p2``, ...

        Returns:
            The text and the number of positional markers.
        """
        pieces = []
        position = tokens[0].start
        count = 0
        for token in tokens:
            if token.token_type == TokenType.PLACEHOLDER and token.text == "?":
                count += 1
                pieces.append(sql[position:token.start])
                pieces.append(f":{positional_name(count)}")
                position = token.end + 1
        pieces.append(sql[position:tokens[-1].end + 1])
        return "".join(pieces), count

    # Statements

    def _parse_statement(self, sql: str, tokens: list[Token]) -> Statement:
        start = _start_transaction(tokens)
        if start is not None:
            return start

        text, positional = self._number_placeholders(sql, tokens)
        tree = self._parse_tree(text)
        parameters = self._parameters(tree, positional)
        statement = self._convert_statement(tree)
        if parameters:
            if statement.statement_type not in (
                StatementType.SELECT,
                StatementType.INSERT,
                StatementType.UPDATE,
                StatementType.DELETE,
            ):
                raise ParameterError(
                    f"parameters are not allowed in {statement.statement_type.value} statements"
                )
            statement.parameters = parameters
        return statement

    def _parse_tree(self, text: str) -> exp.Expression:
        tokens = self._tokenize(text)
        parser = self._parser_class(dialect=self._sqlglot_dialect)
        try:
            trees = [tree for tree in parser.parse(tokens, text) if tree is not None]
        except ParseError as e:
            raise _syntax_error(e) from e
        if not trees:
            raise SQLSyntaxError("empty statement")
        if len(trees) > 1:
            raise SQLSyntaxError("expected a single statement")
        # $$...$$ is an ordinary string literal
        tree = trees[0].transform(
            lambda node: exp.Literal.string(node.this) if isinstance(node, exp.RawString) else node
        )
        return normalize_identifiers(tree, dialect=self._dialect)

    @staticmethod
    def _parameters(tree: exp.Expression, positional: int) -> tuple[str, ...]:
        named: list[str] = []
        for placeholder in tree.find_all(exp.Placeholder):
            name = placeholder.name
            if not name:
                raise SQLSyntaxError("unsupported parameter marker")
            if not name.startswith(POSITIONAL_PREFIX) and name not in named:
                named.append(name)
        if named and positional:
            raise ParameterError("cannot mix positional and named parameters")
        if positional:
            return tuple(positional_name(i) for i in range(1, positional + 1))
        return tuple(named)

    @staticmethod
    def _is_query(tree: exp.Expression) -> bool:
        return isinstance(tree, (exp.Select, exp.SetOperation, exp.Values, exp.Subquery))

    def _convert_statement(self, tree: exp.Expression) -> Statement:
        """Convert a sqlglot expression to a statement."""
        if self._is_query(tree):
            return QueryStatement(query=tree)
        elif isinstance(tree, exp.Insert):
            return self._convert_insert(tree)
        elif isinstance(tree, exp.Update):
            return self._convert_update(tree)
        elif isinstance(tree, exp.Delete):
            return self._convert_delete(tree)
        elif isinstance(tree, exp.Create):
            return self._convert_create(tree)
        elif isinstance(tree, exp.Drop):
            return self._convert_drop(tree)
        elif isinstance(tree, exp.Alter):
            return self._convert_alter(tree)
        elif isinstance(tree, exp.Transaction):
            return self._convert_transaction(tree)
        elif isinstance(tree, exp.Commit):
            if tree.args.get("chain"):
                raise SQLSyntaxError("COMMIT AND CHAIN is not supported")
            return TransactionStatement(StatementType.COMMIT)
        elif isinstance(tree, exp.Rollback):
            if tree.args.get("savepoint"):
                raise SQLSyntaxError("savepoints are not supported")
            return TransactionStatement(StatementType.ROLLBACK)
        elif isinstance(tree, exp.Set):
            return self._convert_set(tree)
        else:
            raise SQLSyntaxError(f"unsupported statement: {tree.sql(dialect=self._dialect)[:80]}")

    # Transaction control

    def _convert_transaction(self, tree: exp.Transaction) -> TransactionStatement:
        kind = tree.args.get("this")
        if kind:
            raise SQLSyntaxError(f"BEGIN {kind} is not supported")
        return TransactionStatement(
            StatementType.BEGIN, _isolation_from_modes(tree.args.get("modes") or [])
        )

    def _convert_set(self, tree: exp.Set) -> TransactionStatement:
        items = tree.expressions
        if (
            len(items) != 1
            or not isinstance(items[0], exp.SetItem)
            or (items[0].args.get("kind") or "").upper() != "TRANSACTION"
        ):
            raise SQLSyntaxError(
                f"unsupported statement: {tree.sql(dialect=self._dialect)[:80]}"
            )
        return TransactionStatement(
            StatementType.SET_TRANSACTION,
            _isolation_from_modes(_name(mode) for mode in items[0].expressions),
        )

    # DML

    def _reject(self, tree: exp.Expression, *args: str) -> None:
        for arg in args:
            if tree.args.get(arg):
                clause = arg.rstrip("_").upper()
                raise SQLSyntaxError(
                    f"{clause} is not supported in {type(tree).__name__.upper()} statements"
                )

    def _convert_insert(self, tree: exp.Insert) -> InsertStatement:
        self._reject(tree, "returning", "conflict", "with_", "where", "overwrite")
        target = tree.this
        columns = None
        if isinstance(target, exp.Schema):
            columns = tuple(_name(c) for c in target.expressions)
            target = target.this
        if not isinstance(target, exp.Table):
            raise SQLSyntaxError("INSERT requires a table name")
        source = tree.expression
        if source is None:
            raise SQLSyntaxError("INSERT requires VALUES or a query")
        if isinstance(source, exp.Subquery):
            source = source.this
        return InsertStatement(table=target.name, columns=columns, source=source)

    def _convert_update(self, tree: exp.Update) -> UpdateStatement:
        self._reject(tree, "returning", "from_", "with_", "order", "limit")
        table = tree.this
        if not isinstance(table, exp.Table):
            raise SQLSyntaxError("UPDATE requires a table name")
        assignments = []
        for assignment in tree.expressions:
            if not isinstance(assignment, exp.EQ) or not isinstance(assignment.this, exp.Column):
                raise SQLSyntaxError(f"invalid assignment: {assignment.sql()}")
            assignments.append((assignment.this.name, assignment.expression))
        where = tree.args.get("where")
        return UpdateStatement(
            table=table.name,
            alias=table.alias or None,
            assignments=tuple(assignments),
            where=where.this if where is not None else None,
        )

    def _convert_delete(self, tree: exp.Delete) -> DeleteStatement:
        self._reject(tree, "returning", "using", "with_", "order", "limit", "tables")
        table = tree.this
        if not isinstance(table, exp.Table):
            raise SQLSyntaxError("DELETE requires a table name")
        where = tree.args.get("where")
        return DeleteStatement(
            table=table.name,
            alias=table.alias or None,
            where=where.this if where is not None else None,
        )

    # DDL

    def _convert_create(self, tree: exp.Create) -> Statement:
        kind = (tree.args.get("kind") or "").upper()
        if kind == "TABLE":
            return self._convert_create_table(tree)
        if kind == "INDEX":
            return self._convert_create_index(tree)
        if kind == "VIEW":
            return self._convert_create_view(tree)
        raise SQLSyntaxError(f"CREATE {kind} is not supported")

    def _convert_create_table(self, tree: exp.Create) -> CreateTableStatement:
        target = tree.this
        query = tree.expression
        if query is not None:
            if isinstance(query, exp.Subquery):
                query = query.this
            if not self._is_query(query):
                raise SQLSyntaxError("CREATE TABLE ... AS requires a query")
        if isinstance(target, exp.Table):
            if query is None:
                raise SQLSyntaxError("CREATE TABLE requires a column list")
            schema = TableSchema(name=target.name, columns=())
        elif isinstance(target, exp.Schema) and isinstance(target.this, exp.Table):
            schema = self._table_schema(target.this.name, target.expressions)
        else:
            raise SQLSyntaxError("CREATE TABLE requires a table name")
        return CreateTableStatement(
            schema=schema, if_not_exists=bool(tree.args.get("exists")), query=query
        )

    def _table_schema(self, table: str, definitions: list[exp.Expression]) -> TableSchema:
        columns: list[Column] = []
        constraints: list[UniqueConstraint | CheckConstraint | ForeignKey] = []
        for definition in definitions:
            if isinstance(definition, exp.ColumnDef):
                column, column_constraints = self._column(definition)
                columns.append(column)
                constraints.extend(column_constraints)
            else:
                constraints.extend(self._table_constraints(definition))

        primary = [c for c in constraints if isinstance(c, UniqueConstraint) and c.primary]
        if len(primary) > 1:
            raise InvalidConstraint(f'multiple primary keys for table "{table}" are not allowed')
        return TableSchema(
            name=table,
            columns=tuple(columns),
            primary_key=primary[0] if primary else None,
            unique_constraints=tuple(
                c for c in constraints if isinstance(c, UniqueConstraint) and not c.primary
            ),
            checks=tuple(c for c in constraints if isinstance(c, CheckConstraint)),
            foreign_keys=tuple(c for c in constraints if isinstance(c, ForeignKey)),
        )

    def _column(
        self, definition: exp.ColumnDef
    ) -> tuple[Column, list[UniqueConstraint | CheckConstraint | ForeignKey]]:
        """Build a column and the constraints declared inline with it."""
        name = definition.name
        if definition.kind is None:
            raise SQLSyntaxError(f'column "{name}" has no type')
        column_type, serial = column_type_from_sql(definition.kind)
        nullable = not serial
        auto_increment = serial
        default = None
        constraints: list[UniqueConstraint | CheckConstraint | ForeignKey] = []

        for column_constraint in definition.constraints:
            kind = column_constraint.args.get("kind")
            constraint_name = _name(column_constraint.this)
            if isinstance(kind, exp.NotNullColumnConstraint):
                nullable = bool(kind.args.get("allow_null"))
            elif isinstance(kind, exp.PrimaryKeyColumnConstraint):
                constraints.append(UniqueConstraint(constraint_name, (name,), primary=True))
                nullable = False
            elif isinstance(kind, exp.UniqueColumnConstraint):
                constraints.append(UniqueConstraint(constraint_name, (name,)))
            elif isinstance(kind, exp.DefaultColumnConstraint):
                default = kind.this
            elif isinstance(kind, exp.CheckColumnConstraint):
                constraints.append(self._check(constraint_name, kind.this))
            elif isinstance(kind, exp.Reference):
                constraints.append(self._foreign_key(constraint_name, (name,), kind))
            elif isinstance(
                kind,
                (exp.AutoIncrementColumnConstraint, exp.GeneratedAsIdentityColumnConstraint),
            ):
                auto_increment = True
                nullable = False
            else:
                raise SQLSyntaxError(
                    f'unsupported constraint on column "{name}": {column_constraint.sql()}'
                )

        if auto_increment and column_type.kind != TypeKind.INTEGER:
            raise SQLSyntaxError(f'auto-increment column "{name}" must be an integer')
        return (
            Column(
                name=name,
                type=column_type,
                nullable=nullable,
                default_sql=default.sql(dialect=self._dialect) if default is not None else None,
                default=default,
                auto_increment=auto_increment,
            ),
            constraints,
        )

    def _table_constraints(
        self, node: exp.Expression, name: str = ""
    ) -> list[UniqueConstraint | CheckConstraint | ForeignKey]:
        if isinstance(node, exp.Constraint):
            constraint_name = _name(node.this)
            result = []
            for kind in node.expressions:
                result.extend(self._table_constraints(kind, constraint_name))
            return result
        if isinstance(node, exp.PrimaryKey):
            return [UniqueConstraint(name, tuple(_name(c) for c in node.expressions), primary=True)]
        if isinstance(node, exp.UniqueColumnConstraint):
            schema = node.this
            if not isinstance(schema, exp.Schema) or not schema.expressions:
                raise SQLSyntaxError("UNIQUE constraint requires a column list")
            return [UniqueConstraint(name, tuple(_name(c) for c in schema.expressions))]
        if isinstance(node, exp.CheckColumnConstraint):
            return [self._check(name, node.this)]
        if isinstance(node, exp.ForeignKey):
            columns = tuple(_name(c) for c in node.expressions)
            reference = node.args.get("reference")
            if reference is None:
                raise SQLSyntaxError("FOREIGN KEY requires REFERENCES")
            return [
                self._foreign_key(
                    name,
                    columns,
                    reference,
                    on_delete=node.args.get("delete"),
                    on_update=node.args.get("update"),
                    options=node.args.get("options") or [],
                )
            ]
        raise SQLSyntaxError(f"unsupported table constraint: {node.sql(dialect=self._dialect)}")

    def _check(self, name: str, predicate: exp.Expression) -> CheckConstraint:
        if isinstance(predicate, exp.Paren):
            predicate = predicate.this
        if any(predicate.find_all(exp.Placeholder)):
            raise ParameterError("parameters are not allowed in CHECK constraints")
        return CheckConstraint(
            name=name,
            sql=predicate.sql(dialect=self._dialect),
            expression=predicate,
            columns=frozenset(c.name for c in predicate.find_all(exp.Column)),
        )

    def _foreign_key(
        self,
        name: str,
        columns: tuple[str, ...],
        reference: exp.Reference,
        on_delete: str | None = None,
        on_update: str | None = None,
        options: list | None = None,
    ) -> ForeignKey:
        target = reference.this
        ref_columns: tuple[str, ...] = ()
        if isinstance(target, exp.Schema):
            ref_columns = tuple(_name(c) for c in target.expressions)
            target = target.this
        if not isinstance(target, exp.Table):
            raise SQLSyntaxError("REFERENCES requires a table name")

        deferred = False
        for option in list(reference.args.get("options") or []) + list(options or []):
            text = " ".join(_name(option).upper().split())
            if text.startswith("ON DELETE "):
                on_delete = text[len("ON DELETE "):]
            elif text.startswith("ON UPDATE "):
                on_update = text[len("ON UPDATE "):]
            elif text == "INITIALLY DEFERRED":
                deferred = True

        try:
            return ForeignKey(
                name=name,
                columns=columns,
                ref_table=target.name,
                ref_columns=ref_columns,
                on_delete=ReferentialAction.from_sql(on_delete),
                on_update=ReferentialAction.from_sql(on_update),
                deferred=deferred,
            )
        except ValueError as e:
            raise SQLSyntaxError(str(e)) from e

    def _convert_create_index(self, tree: exp.Create) -> CreateIndexStatement:
        index = tree.this
        if not isinstance(index, exp.Index):
            raise SQLSyntaxError("CREATE INDEX requires ON table (columns)")
        table = index.args.get("table")
        params = index.args.get("params")
        columns = params.args.get("columns") if params is not None else None
        if not isinstance(table, exp.Table) or not columns:
            raise SQLSyntaxError("CREATE INDEX requires ON table (columns)")
        names = []
        for column in columns:
            target = column.this if isinstance(column, exp.Ordered) else column
            if not isinstance(target, (exp.Column, exp.Identifier)):
                raise SQLSyntaxError("expression indexes are not supported")
            names.append(target.name)
        name = _name(index.this) or f"{table.name}_{'_'.join(names)}_idx"
        return CreateIndexStatement(
            index=IndexDefinition(
                name=name,
                table=table.name,
                columns=tuple(names),
                unique=bool(tree.args.get("unique")),
            ),
            if_not_exists=bool(tree.args.get("exists")),
        )

    def _convert_create_view(self, tree: exp.Create) -> CreateViewStatement:
        target = tree.this
        column_names: tuple[str, ...] = ()
        if isinstance(target, exp.Schema):
            column_names = tuple(_name(c) for c in target.expressions)
            target = target.this
        query = tree.expression
        if isinstance(query, exp.Subquery):
            query = query.this
        if not isinstance(target, exp.Table) or query is None or not self._is_query(query):
            raise SQLSyntaxError("CREATE VIEW requires a name and AS query")
        if any(query.find_all(exp.Placeholder)):
            raise ParameterError("parameters are not allowed in view definitions")
        return CreateViewStatement(
            view=ViewDefinition(
                name=target.name,
                sql=query.sql(dialect=self._dialect),
                column_names=column_names,
            ),
            query=query,
            or_replace=bool(tree.args.get("replace")),
        )

    def _convert_drop(self, tree: exp.Drop) -> DropStatement:
        kind = (tree.args.get("kind") or "").upper()
        types = {
            "TABLE": StatementType.DROP_TABLE,
            "VIEW": StatementType.DROP_VIEW,
            "INDEX": StatementType.DROP_INDEX,
        }
        if kind not in types:
            raise SQLSyntaxError(f"DROP {kind} is not supported")
        targets = tree.args.get("tables") or tree.args.get("this")
        if targets is None:
            raise SQLSyntaxError(f"DROP {kind} requires a name")
        if not isinstance(targets, list):
            targets = [targets]
        return DropStatement(
            statement_type=types[kind],
            names=tuple(_name(t) for t in targets),
            if_exists=bool(tree.args.get("exists")),
            cascade=bool(tree.args.get("cascade")),
        )

    def _convert_alter(self, tree: exp.Alter) -> AlterTableStatement:
        if tree.kind != "TABLE":
            raise SQLSyntaxError(f"ALTER {tree.kind} is not supported")
        table = tree.this
        if not isinstance(table, exp.Table):
            raise SQLSyntaxError("ALTER TABLE requires a table name")
        changes: list[TableChange] = []
        for action in tree.args.get("actions") or []:
            changes.extend(self._table_changes(action))
        if not changes:
            raise SQLSyntaxError("ALTER TABLE requires an action")
        return AlterTableStatement(
            table=table.name,
            changes=tuple(changes),
            if_exists=bool(tree.args.get("exists")),
        )

    def _table_changes(self, action: exp.Expression) -> list[TableChange]:
        if isinstance(action, exp.ColumnDef):
            column, constraints = self._column(action)
            changes: list[TableChange] = [
                AddColumn(column, if_not_exists=bool(action.args.get("exists")))
            ]
            changes.extend(AddConstraint(c) for c in constraints)
            return changes

        if isinstance(action, exp.AddConstraint):
            return [
                AddConstraint(c)
                for node in action.expressions
                for c in self._table_constraints(node)
            ]

        if isinstance(action, exp.Drop):
            kind = (action.args.get("kind") or "").upper()
            target = action.args.get("tables") or action.args.get("this")
            if isinstance(target, list):
                target = target[0] if target else None
            if kind in ("COLUMN", "") and target is not None:
                return [
                    DropColumn(
                        _name(target),
                        if_exists=bool(action.args.get("exists")),
                        cascade=bool(action.args.get("cascade")),
                    )
                ]
            if kind == "CONSTRAINT" and target is not None:
                return [
                    DropConstraint(
                        _name(target),
                        if_exists=bool(action.args.get("exists")),
                        cascade=bool(action.args.get("cascade")),
                    )
                ]

        if isinstance(action, exp.AlterColumn):
            name = _name(action.this)
            dtype = action.args.get("dtype")
            if dtype is not None:
                column_type, serial = column_type_from_sql(dtype)
                if serial:
                    raise SQLSyntaxError("cannot change a column to a serial type")
                return [AlterColumnType(name, column_type)]
            default = action.args.get("default")
            if default is not None:
                return [SetColumnDefault(name, default.sql(dialect=self._dialect), default)]
            allow_null = action.args.get("allow_null")
            if allow_null is not None:
                return [SetColumnNullable(name, nullable=bool(allow_null))]
            if action.args.get("drop"):
                return [SetColumnDefault(name)]

        raise SQLSyntaxError(
            f"unsupported ALTER TABLE action: {action.sql(dialect=self._dialect)}"
        )
