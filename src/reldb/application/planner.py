"""Query planner: sqlglot query trees to operator pipelines.

A SELECT is planned in clause order:

    WITH -> FROM/JOIN -> WHERE -> GROUP BY/aggregates -> HAVING
         -> windows -> select list -> DISTINCT -> ORDER BY -> LIMIT/OFFSET

Names resolve against scopes (see evaluator). A relation name resolves to
a common table expression first, then a view, then a table. Views are
re-parsed and planned on every reference.

Index use is deliberately simple:
    - a single-table WHERE with ``column = <value>`` on the leading column
      of an index becomes an index scan;
    - an INNER or LEFT join whose ON clause equates the leading column of
      an index on the inner table with an expression over the outer side
      becomes an index nested-loop join.
The full predicate is always re-checked on top.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from sqlglot import exp

from reldb.adapters.inbound.sql_parser import SQLParser, column_type_from_sql
from reldb.application.aggregates import AggregateCall, compile_aggregate, is_aggregate
from reldb.application.evaluator import (
    Compiled,
    Correlation,
    ExpressionCompiler,
    Field,
    Scope,
    SortKey,
    column_key,
    expression_key,
    values_equal,
)
from reldb.application.operators import (
    CTEBinding,
    CTEScanOperator,
    DistinctOperator,
    FilterOperator,
    FrameBound,
    HashAggregateOperator,
    IndexNestedLoopJoinOperator,
    IndexScanOperator,
    JoinKind,
    LimitOperator,
    NestedLoopJoinOperator,
    Operator,
    ProjectOperator,
    RecursiveUnionOperator,
    SeqScanOperator,
    SetOperationKind,
    SetOperationOperator,
    SingleRowOperator,
    SortOperator,
    TrimOperator,
    ValuesOperator,
    WindowCall,
    WindowFrame,
    WindowOperator,
    WithOperator,
)
from reldb.domain.entities import Snapshot, TableSchema
from reldb.domain.errors import (
    CatalogError,
    ColumnNotFound,
    GroupingError,
    SQLSyntaxError,
    TableNotFound,
)
from reldb.domain.services.catalog import Catalog
from reldb.domain.services.storage_engine import StorageEngine
from reldb.domain.value_objects import (
    BOOLEAN,
    DATE,
    DECIMAL,
    INTEGER,
    TEXT,
    TIMESTAMP,
    ColumnType,
    TypeKind,
)
from reldb.ports.inbound.transaction_manager import Transaction


@dataclass
class QueryPlan:
    """A planned query: its root operator and output row layout."""

    operator: Operator
    fields: list[Field]
    owner: Correlation = field(default_factory=Correlation)

    @property
    def columns(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def types(self) -> list[ColumnType | None]:
        return [f.type for f in self.fields]


@dataclass
class Relation:
    """One FROM item while joins are planned."""

    operator: Operator
    fields: list[Field]
    schema: TableSchema | None = None


@dataclass
class CTEDefinition:
    binding: CTEBinding
    fields: list[Field]


_RANKING = {
    exp.RowNumber: "row_number",
    exp.Rank: "rank",
    exp.DenseRank: "dense_rank",
    exp.Ntile: "ntile",
    exp.PercentRank: "percent_rank",
    exp.CumeDist: "cume_dist",
}

_VALUE_FUNCTIONS = {
    exp.Lead: "lead",
    exp.Lag: "lag",
    exp.FirstValue: "first_value",
    exp.LastValue: "last_value",
    exp.NthValue: "nth_value",
}

_OUTPUT_NAMES = {
    exp.GroupConcat: "string_agg",
    exp.Pow: "power",
    exp.Case: "case",
    exp.Exists: "exists",
}

_TEXT_FUNCTIONS = (
    exp.DPipe,
    exp.Upper,
    exp.Lower,
    exp.Substring,
    exp.Trim,
    exp.Replace,
    exp.Concat,
    exp.GroupConcat,
)

_BOOLEAN_NODES = (
    exp.Predicate,
    exp.Connector,
    exp.Not,
    exp.Exists,
    exp.Boolean,
)

_UNSUPPORTED_SELECT_ARGS = {
    "laterals": "LATERAL",
    "windows": "WINDOW clause",
    "qualify": "QUALIFY",
    "locks": "FOR UPDATE",
    "into": "SELECT INTO",
    "sample": "TABLESAMPLE",
    "connect": "CONNECT BY",
    "pivots": "PIVOT",
}


def _is_integer_literal(node: exp.Expression) -> bool:
    return isinstance(node, exp.Literal) and not node.is_string and node.this.isdigit()


def _unalias(node: exp.Expression) -> exp.Expression:
    return node.this if isinstance(node, exp.Alias) else node


def _has_star(node: exp.Expression) -> bool:
    return isinstance(node, exp.Star) or (
        isinstance(node, exp.Column) and isinstance(node.this, exp.Star)
    )


def output_name(node: exp.Expression) -> str:
    """Result column name of a select-list item."""
    if isinstance(node, exp.Alias):
        return node.alias
    if isinstance(node, exp.Column):
        return node.name
    if isinstance(node, (exp.Paren, exp.Window)):
        return output_name(node.this)
    if isinstance(node, exp.Cast):
        inner = node.this
        return inner.name if isinstance(inner, exp.Column) else "?column?"
    if isinstance(node, exp.Subquery):
        query = node.this
        if isinstance(query, exp.Select) and len(query.expressions) == 1:
            return output_name(query.expressions[0])
        return "?column?"
    for cls, name in _OUTPUT_NAMES.items():
        if isinstance(node, cls):
            return name
    if isinstance(node, exp.Anonymous):
        return node.name.lower()
    if isinstance(node, exp.Func):
        return node.sql_name().lower()
    return "?column?"


def collect_calls(
    node: exp.Expression,
    aggregates: list[exp.Expression],
    windows: list[exp.Window],
) -> None:
    """Find aggregate and window calls, not descending into subqueries."""
    if isinstance(node, exp.Query):
        return
    if isinstance(node, exp.Filter):
        raise SQLSyntaxError("aggregate FILTER clauses are not supported")
    if isinstance(node, exp.Window):
        windows.append(node)
        function = node.this
        for child in function.iter_expressions():
            collect_calls(child, aggregates, windows)
        for child in node.args.get("partition_by") or []:
            collect_calls(child, aggregates, windows)
        order = node.args.get("order")
        if order is not None:
            collect_calls(order, aggregates, windows)
        return
    if is_aggregate(node):
        aggregates.append(node)
        return
    for child in node.iter_expressions():
        collect_calls(child, aggregates, windows)


class QueryPlanner:
    """Plans the queries of one statement.

    A planner is bound to the statement's transaction and snapshot, and to
    the compiler that holds the statement's parameters.
    """

    def __init__(
        self,
        catalog: Catalog,
        storage: StorageEngine,
        txn: Transaction,
        snapshot: Snapshot,
        compiler: ExpressionCompiler,
        parser: SQLParser,
        max_recursion_depth: int = 1000,
    ) -> None:
        self._catalog = catalog
        self._storage = storage
        self._txn = txn
        self._snapshot = snapshot
        self._compiler = compiler
        self._parser = parser
        self._max_recursion_depth = max_recursion_depth
        self._views_in_progress: list[str] = []
        compiler.bind_planner(self)

    @property
    def compiler(self) -> ExpressionCompiler:
        return self._compiler

    # Entry points

    def plan_query(
        self,
        node: exp.Expression,
        parent: Scope | None = None,
        ctes: dict[str, CTEDefinition] | None = None,
        owner: Correlation | None = None,
    ) -> QueryPlan:
        """Plan a query expression (SELECT, set operation, VALUES)."""
        owner = owner if owner is not None else Correlation()
        ctes = dict(ctes or {})

        bindings: list[CTEBinding] = []
        with_ = node.args.get("with_")
        if with_ is not None:
            bindings = self._plan_with(with_, parent, ctes, owner)

        if isinstance(node, exp.Subquery):
            plan = self.plan_query(node.this, parent, ctes, owner)
            plan = self._apply_modifiers(plan, node, parent, ctes, owner)
        elif isinstance(node, exp.Select):
            plan = self._plan_select(node, parent, ctes, owner)
        elif isinstance(node, exp.SetOperation):
            plan = self._plan_set_operation(node, parent, ctes, owner)
        elif isinstance(node, exp.Values):
            plan = self._plan_values(node, parent, ctes, owner)
            plan = self._apply_modifiers(plan, node, parent, ctes, owner)
        else:
            raise SQLSyntaxError(f"expected a query: {node.sql()}")

        if bindings:
            plan.operator = WithOperator(bindings, plan.operator)
        return plan

    def plan_subquery(self, query: exp.Expression, scope: Scope) -> QueryPlan:
        """Plan a subquery used in an expression; ``scope`` is its outer scope."""
        return self.plan_query(query, parent=scope, ctes=scope.ctes, owner=Correlation())

    # WITH

    def _plan_with(
        self,
        with_: exp.With,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> list[CTEBinding]:
        if with_.args.get("search") or with_.args.get("cycle"):
            raise SQLSyntaxError("SEARCH and CYCLE clauses are not supported")
        bindings = []
        for cte in with_.expressions:
            name = cte.alias
            if name in ctes and any(b.name == name for b in bindings):
                raise SQLSyntaxError(f'WITH query name "{name}" specified more than once')
            body = cte.this
            column_names = [c.name for c in cte.args["alias"].columns]

            if with_.recursive and self._references(body, name):
                definition = self._plan_recursive(name, body, column_names, parent, ctes, owner)
            else:
                plan = self.plan_query(body, parent, ctes, owner)
                fields = _rename(plan.fields, column_names, None, name)
                definition = CTEDefinition(CTEBinding(name, plan.operator), fields)
            ctes[name] = definition
            bindings.append(definition.binding)
        return bindings

    @staticmethod
    def _references(body: exp.Expression, name: str) -> bool:
        return any(
            table.name == name and not table.args.get("db")
            for table in body.find_all(exp.Table)
        )

    def _plan_recursive(
        self,
        name: str,
        body: exp.Expression,
        column_names: list[str],
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> CTEDefinition:
        if not isinstance(body, exp.Union):
            raise SQLSyntaxError(
                f'recursive query "{name}" does not have the form '
                "non-recursive-term UNION [ALL] recursive-term"
            )
        if any(body.args.get(arg) for arg in ("order", "limit", "offset")):
            raise SQLSyntaxError(f'ORDER BY/LIMIT in a recursive query "{name}" is not supported')
        if self._references(body.this, name):
            raise SQLSyntaxError(
                f'recursive reference to query "{name}" must not appear within its non-recursive term'
            )

        anchor = self.plan_query(body.this, parent, ctes, owner)
        fields = _rename(anchor.fields, column_names, None, name)

        working = CTEBinding(name)
        recursive_ctes = {**ctes, name: CTEDefinition(working, fields)}
        recursive = self.plan_query(body.expression, parent, recursive_ctes, owner)
        if len(recursive.fields) != len(fields):
            raise SQLSyntaxError(
                f'recursive query "{name}": each UNION query must have the same number of columns'
            )
        for f, r in zip(fields, recursive.fields):
            if f.type is None:
                f.type = r.type

        producer = RecursiveUnionOperator(
            name,
            anchor.operator,
            recursive.operator,
            working,
            all_rows=not body.args.get("distinct"),
            max_iterations=self._max_recursion_depth,
        )
        return CTEDefinition(CTEBinding(name, producer), fields)

    # SELECT

    def _plan_select(
        self,
        node: exp.Select,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> QueryPlan:
        for arg, clause in _UNSUPPORTED_SELECT_ARGS.items():
            if node.args.get(arg):
                raise SQLSyntaxError(f"{clause} is not supported")
        compiler = self._compiler

        # FROM and joins
        from_ = node.args.get("from_")
        joins = node.args.get("joins") or []
        if from_ is None:
            if joins:
                raise SQLSyntaxError("JOIN requires a FROM clause")
            relation = Relation(SingleRowOperator(), [])
        else:
            relation = self._plan_from_item(from_.this, parent, ctes, owner)
            for join in joins:
                relation = self._plan_join(relation, join, parent, ctes, owner)

        scope = Scope(relation.fields, parent, owner, ctes)
        operator = relation.operator

        # WHERE
        where = node.args.get("where")
        if where is not None:
            if relation.schema is not None and not joins:
                operator = self._index_scan(relation, where.this, scope, parent, ctes, owner) or operator
            operator = FilterOperator(operator, compiler.compile_predicate(where.this, scope))

        # Aggregation
        select_items = list(node.expressions)
        if not select_items:
            raise SQLSyntaxError("SELECT requires at least one output expression")
        having = node.args.get("having")
        order = node.args.get("order")
        group = node.args.get("group")

        aggregates: list[exp.Expression] = []
        windows: list[exp.Window] = []
        for item in select_items:
            if not _has_star(item):
                collect_calls(item, aggregates, windows)
        if having is not None:
            having_windows: list[exp.Window] = []
            collect_calls(having.this, aggregates, having_windows)
            if having_windows:
                raise SQLSyntaxError("window functions are not allowed in HAVING")
        if order is not None:
            for ordered in order.expressions:
                collect_calls(ordered.this, aggregates, windows)

        current = scope
        if aggregates or group is not None or having is not None:
            operator, current = self._plan_grouping(
                operator, scope, group, aggregates, select_items
            )
            if having is not None:
                operator = FilterOperator(operator, compiler.compile_predicate(having.this, current))

        # Windows
        if windows:
            operator, current = self._plan_windows(operator, current, windows)

        # Select list
        outputs: list[Compiled] = []
        out_fields: list[Field] = []
        item_keys: list[str | None] = []
        for item in select_items:
            if _has_star(item):
                for index in self._star_indexes(item, scope):
                    outputs.append(self._field_reader(current, index))
                    source = scope.fields[index]
                    out_fields.append(Field(source.name, None, source.type))
                    item_keys.append(column_key(index))
                continue
            outputs.append(compiler.compile(item, current))
            out_fields.append(Field(output_name(item), None, self.infer_type(item, current)))
            item_keys.append(self._key(_unalias(item), current))

        visible = len(outputs)
        distinct = node.args.get("distinct")
        if distinct is not None and distinct.args.get("on") is not None:
            raise SQLSyntaxError("SELECT DISTINCT ON is not supported")

        # ORDER BY keys: output positions, output names or expressions
        sort_keys: list[SortKey] = []
        if order is not None:
            for ordered in order.expressions:
                index = self._output_index(ordered.this, out_fields[:visible], item_keys, current)
                if index is None:
                    if distinct is not None:
                        raise SQLSyntaxError(
                            "for SELECT DISTINCT, ORDER BY expressions must appear in select list"
                        )
                    outputs.append(compiler.compile(ordered.this, current))
                    out_fields.append(
                        Field("?column?", None, self.infer_type(ordered.this, current), hidden=True)
                    )
                    index = len(outputs) - 1
                sort_keys.append(_sort_key(index, ordered))

        operator = ProjectOperator(operator, outputs)
        if distinct is not None:
            operator = DistinctOperator(operator)
        if sort_keys:
            operator = SortOperator(operator, sort_keys)
        operator = self._limit(operator, node, parent, ctes, owner)
        if len(outputs) > visible:
            operator = TrimOperator(operator, visible)
        return QueryPlan(operator, out_fields[:visible], owner)

    def _output_index(
        self,
        node: exp.Expression,
        fields: list[Field],
        item_keys: list[str | None],
        scope: Scope,
    ) -> int | None:
        if _is_integer_literal(node):
            position = int(node.this)
            if not 1 <= position <= len(fields):
                raise SQLSyntaxError(f"ORDER BY position {position} is not in select list")
            return position - 1
        if isinstance(node, exp.Column) and not node.table and not isinstance(node.this, exp.Star):
            matches = [i for i, f in enumerate(fields) if f.name == node.name]
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                keys = {item_keys[i] for i in matches}
                if len(keys) > 1:
                    raise SQLSyntaxError(f'ORDER BY "{node.name}" is ambiguous')
                return matches[0]
        key = self._key(node, scope)
        if key is not None and key in item_keys:
            return item_keys.index(key)
        return None

    @staticmethod
    def _key(node: exp.Expression, scope: Scope) -> str | None:
        try:
            return expression_key(node, scope.key_scope)
        except CatalogError:
            return None

    def _star_indexes(self, item: exp.Expression, scope: Scope) -> list[int]:
        if isinstance(item, exp.Star):
            if not scope.fields:
                raise SQLSyntaxError("SELECT * with no tables specified is not valid")
            return [i for i, f in enumerate(scope.fields) if not f.hidden]
        qualifier = item.table
        indexes = [i for i, f in enumerate(scope.fields) if f.qualifier == qualifier]
        if not indexes:
            raise ColumnNotFound(f'missing FROM-clause entry for table "{qualifier}"')
        return indexes

    @staticmethod
    def _field_reader(scope: Scope, index: int) -> Compiled:
        """Read a FROM field through a grouped or windowed scope."""
        if scope.grouped:
            slot = scope.substitutions.get(column_key(index))
            if slot is None:
                source = scope.key_scope.fields[index]
                raise GroupingError(
                    f'column "{source.name}" must appear in the GROUP BY clause '
                    "or be used in an aggregate function",
                    column=source.name,
                )
            index = slot
        return lambda row, outer: row[index]

    # FROM items and joins

    def _plan_from_item(
        self,
        item: exp.Expression,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Relation:
        alias_node = item.args.get("alias")
        column_aliases = [c.name for c in alias_node.columns] if isinstance(alias_node, exp.TableAlias) else []

        if isinstance(item, exp.Table):
            if item.args.get("joins"):
                raise SQLSyntaxError("parenthesized joins are not supported")
            if not isinstance(item.this, exp.Identifier):
                raise SQLSyntaxError(f"unsupported FROM item: {item.sql()}")
            return self._plan_relation(item, column_aliases, parent, ctes, owner)

        if isinstance(item, (exp.Subquery, exp.Values)):
            alias = item.alias or None
            if isinstance(item, exp.Subquery):
                plan = self.plan_query(item.this, parent, ctes, owner)
                plan = self._apply_modifiers(plan, item, parent, ctes, owner)
            else:
                plan = self._plan_values(item, parent, ctes, owner)
            return Relation(plan.operator, _rename(plan.fields, column_aliases, alias, alias or "subquery"))

        raise SQLSyntaxError(f"unsupported FROM item: {item.sql()}")

    def _plan_relation(
        self,
        table: exp.Table,
        column_aliases: list[str],
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Relation:
        name = table.name
        alias = table.alias or name
        schema_name = table.text("db")
        if schema_name and schema_name != "public":
            raise TableNotFound(f'relation "{schema_name}.{name}" does not exist', table=name)

        if not schema_name and name in ctes:
            definition = ctes[name]
            fields = _rename(definition.fields, column_aliases, alias, name)
            return Relation(CTEScanOperator(definition.binding), fields)

        view = self._catalog.get_view(self._txn, name)
        if view is not None:
            if name in self._views_in_progress:
                raise SQLSyntaxError(f'infinite recursion detected in rules for relation "{name}"')
            self._views_in_progress.append(name)
            try:
                plan = self.plan_query(self._parser.parse_query(view.sql))
            finally:
                self._views_in_progress.pop()
            names = list(view.column_names) or []
            return Relation(plan.operator, _rename(plan.fields, column_aliases or names, alias, name))

        schema = self._catalog.get_table(self._txn, name)
        fields = [Field(c.name, alias, c.type) for c in schema.columns]
        fields = _rename(fields, column_aliases, alias, name)
        operator = SeqScanOperator(self._storage, self._txn, self._snapshot, schema)
        return Relation(operator, fields, schema)

    def _plan_join(
        self,
        left: Relation,
        join: exp.Join,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Relation:
        if join.method == "NATURAL":
            raise SQLSyntaxError("NATURAL JOIN is not supported")
        if join.kind in ("SEMI", "ANTI", "LATERAL") or join.args.get("match_condition"):
            raise SQLSyntaxError(f"{join.kind} JOIN is not supported")

        right = self._plan_from_item(join.this, parent, ctes, owner)
        on = join.args.get("on")
        using = join.args.get("using") or []

        side = join.side
        if side in ("LEFT", "RIGHT", "FULL"):
            kind = JoinKind[side]
        elif join.kind == "CROSS" or (on is None and not using):
            kind = JoinKind.CROSS
        else:
            kind = JoinKind.INNER
        if kind == JoinKind.CROSS and (on is not None or using):
            raise SQLSyntaxError("CROSS JOIN cannot have a join condition")
        if kind != JoinKind.CROSS and on is None and not using:
            raise SQLSyntaxError(f"{side or 'INNER'} JOIN requires an ON or USING clause")

        left_fields = list(left.fields)
        right_fields = list(right.fields)
        left_width = len(left_fields)
        fields = left_fields + right_fields
        scope = Scope(fields, parent, owner, ctes)

        condition: Callable[..., bool] | None = None
        if using:
            condition = self._using_condition(fields, left_width, using, kind)
        elif on is not None:
            condition = self._compiler.compile_predicate(on, scope)
            if right.schema is not None and kind in (JoinKind.INNER, JoinKind.LEFT):
                indexed = self._index_join(left, right, on, scope, condition, kind, parent, ctes, owner)
                if indexed is not None:
                    return Relation(indexed, fields)

        operator = NestedLoopJoinOperator(
            left.operator, right.operator, kind, condition, left_width, len(right_fields)
        )
        return Relation(operator, fields)

    @staticmethod
    def _using_condition(
        fields: list[Field],
        left_width: int,
        using: list[exp.Expression],
        kind: JoinKind,
    ) -> Callable[..., bool]:
        """Equality over the USING columns; the duplicate copy is hidden."""
        left_scope = Scope(fields[:left_width])
        right_scope = Scope(fields[left_width:])
        pairs: list[tuple[int, int]] = []
        for identifier in using:
            name = identifier.name
            li = left_scope.lookup(name, None)
            ri = right_scope.lookup(name, None)
            if li is None or ri is None:
                raise ColumnNotFound(
                    f'column "{name}" specified in USING clause does not exist in '
                    f"{'left' if li is None else 'right'} table",
                    column=name,
                )
            ri += left_width
            pairs.append((li, ri))
            hidden = li if kind == JoinKind.RIGHT else ri
            fields[hidden] = _hidden_copy(fields[hidden])

        def condition(row, outer):
            return all(values_equal(row[li], row[ri]) is True for li, ri in pairs)

        return condition

    def _index_join(
        self,
        left: Relation,
        right: Relation,
        on: exp.Expression,
        scope: Scope,
        condition: Callable[..., bool] | None,
        kind: JoinKind,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Operator | None:
        schema = right.schema
        assert schema is not None
        left_width = len(left.fields)
        left_scope = Scope(left.fields, parent, owner, ctes)

        for conjunct in _conjuncts(on):
            if not isinstance(conjunct, exp.EQ):
                continue
            for column, other in ((conjunct.this, conjunct.expression), (conjunct.expression, conjunct.this)):
                if not isinstance(column, exp.Column) or isinstance(column.this, exp.Star):
                    continue
                try:
                    index = scope.lookup(column.name, column.table or None)
                except CatalogError:
                    continue
                if index is None or index < left_width:
                    continue
                if not self._over_scope(other, left_scope, right.fields):
                    continue
                index_name = self._leading_index(schema, schema.columns[index - left_width].name)
                if index_name is None:
                    continue
                probe = self._compiler.compile(other, left_scope)
                return IndexNestedLoopJoinOperator(
                    left.operator,
                    self._storage,
                    self._txn,
                    self._snapshot,
                    schema,
                    index_name,
                    probe,
                    kind,
                    condition,
                )
        return None

    @staticmethod
    def _over_scope(node: exp.Expression, scope: Scope, excluded: list[Field]) -> bool:
        """Check that node only reads columns resolvable in scope (or its parents)."""
        if any(isinstance(n, exp.Query) for n in node.walk()):
            return False
        excluded_qualifiers = {f.qualifier for f in excluded if f.qualifier}
        excluded_names = {f.name for f in excluded if not f.hidden}
        for column in node.find_all(exp.Column):
            if column.table in excluded_qualifiers if column.table else column.name in excluded_names:
                return False
            current: Scope | None = scope
            found = False
            while current is not None and not found:
                try:
                    found = current.lookup(column.name, column.table or None) is not None
                except CatalogError:
                    return False
                current = current.parent
            if not found:
                return False
        return True

    def _leading_index(self, schema: TableSchema, column: str) -> str | None:
        state = self._catalog.state_of(self._txn)
        for definition in state.indexes_of(schema.name):
            if definition.columns[0] == column and self._storage.get_index(definition.name) is not None:
                return definition.name
        return None

    def _index_scan(
        self,
        relation: Relation,
        predicate: exp.Expression,
        scope: Scope,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Operator | None:
        schema = relation.schema
        assert schema is not None
        outer_scope = Scope([], parent, owner, ctes)
        for conjunct in _conjuncts(predicate):
            if not isinstance(conjunct, exp.EQ):
                continue
            for column, other in ((conjunct.this, conjunct.expression), (conjunct.expression, conjunct.this)):
                if not isinstance(column, exp.Column) or isinstance(column.this, exp.Star):
                    continue
                try:
                    index = scope.lookup(column.name, column.table or None)
                except CatalogError:
                    continue
                if index is None or not self._over_scope(other, outer_scope, relation.fields):
                    continue
                index_name = self._leading_index(schema, schema.columns[index].name)
                if index_name is None:
                    continue
                probe = self._compiler.compile(other, outer_scope)
                return IndexScanOperator(
                    self._storage, self._txn, self._snapshot, schema, index_name, [probe]
                )
        return None

    # Grouping

    def _plan_grouping(
        self,
        operator: Operator,
        scope: Scope,
        group: exp.Group | None,
        aggregates: list[exp.Expression],
        select_items: list[exp.Expression],
    ) -> tuple[Operator, Scope]:
        compiler = self._compiler
        key_nodes: list[exp.Expression] = []
        if group is not None:
            if any(group.args.get(arg) for arg in ("grouping_sets", "cube", "rollup", "totals")):
                raise SQLSyntaxError("GROUPING SETS, CUBE and ROLLUP are not supported")
            for node in group.expressions:
                key_nodes.append(self._group_key(node, scope, select_items))

        substitutions: dict[str, int] = {}
        keys: list[Compiled] = []
        fields: list[Field] = []
        for node in key_nodes:
            key = expression_key(node, scope)
            if key in substitutions:
                continue
            nested: list[exp.Expression] = []
            collect_calls(node, nested, [])
            if nested:
                raise GroupingError("aggregate functions are not allowed in GROUP BY")
            substitutions[key] = len(fields)
            keys.append(compiler.compile(node, scope))
            if isinstance(node, exp.Column):
                index = scope.lookup(node.name, node.table or None)
                source = scope.fields[index] if index is not None else Field(node.name)
                fields.append(Field(source.name, source.qualifier, source.type, hidden=True))
            else:
                fields.append(Field(output_name(node), None, self.infer_type(node, scope), hidden=True))

        calls: list[AggregateCall] = []
        for node in aggregates:
            key = expression_key(node, scope)
            if key in substitutions:
                continue
            call = compile_aggregate(node, compiler, scope, lambda n: self.infer_type(n, scope))
            substitutions[key] = len(fields)
            calls.append(call)
            fields.append(Field(output_name(node), None, call.type, hidden=True))

        grouped = scope.derive(fields, substitutions, source=scope)
        return HashAggregateOperator(operator, keys, calls), grouped

    @staticmethod
    def _group_key(
        node: exp.Expression, scope: Scope, select_items: list[exp.Expression]
    ) -> exp.Expression:
        if _is_integer_literal(node):
            position = int(node.this)
            if not 1 <= position <= len(select_items):
                raise SQLSyntaxError(f"GROUP BY position {position} is not in select list")
            item = select_items[position - 1]
            if _has_star(item):
                raise SQLSyntaxError("GROUP BY position refers to *")
            return _unalias(item)
        if isinstance(node, exp.Column) and not node.table and scope.lookup(node.name, None) is None:
            for item in select_items:
                if isinstance(item, exp.Alias) and item.alias == node.name:
                    return item.this
        return node

    # Windows

    def _plan_windows(
        self, operator: Operator, scope: Scope, windows: list[exp.Window]
    ) -> tuple[Operator, Scope]:
        substitutions = dict(scope.substitutions)
        fields = list(scope.fields)
        calls: list[WindowCall] = []
        for window in windows:
            key = expression_key(window, scope.key_scope)
            if key in substitutions:
                continue
            call, result_type = self._window_call(window, scope)
            substitutions[key] = len(fields)
            calls.append(call)
            fields.append(Field(output_name(window), None, result_type, hidden=True))

        windowed = scope.derive(fields, substitutions, source=scope.source)
        return WindowOperator(operator, calls), windowed

    def _window_call(self, window: exp.Window, scope: Scope) -> tuple[WindowCall, ColumnType | None]:
        if window.args.get("alias") is not None:
            raise SQLSyntaxError("named windows are not supported")
        compiler = self._compiler
        function = window.this
        if isinstance(function, (exp.IgnoreNulls, exp.RespectNulls)):
            raise SQLSyntaxError("IGNORE/RESPECT NULLS is not supported")

        partition = [compiler.compile(p, scope) for p in window.args.get("partition_by") or []]
        order_node = window.args.get("order")
        order = [
            SortKey(
                compiler.compile(o.this, scope),
                descending=bool(o.args.get("desc")),
                nulls_first=bool(o.args.get("nulls_first")),
            )
            for o in (order_node.expressions if order_node is not None else [])
        ]
        frame = self._frame(window.args.get("spec"), scope)
        call = WindowCall(function="", partition=partition, order=order, frame=frame)

        for cls, name in _RANKING.items():
            if isinstance(function, cls):
                call.function = name
                if name == "ntile":
                    argument = function.this
                    if argument is None:
                        raise SQLSyntaxError("ntile() requires an argument")
                    call.arguments = [compiler.compile(argument, scope)]
                result = DECIMAL if name in ("percent_rank", "cume_dist") else INTEGER
                return call, result

        for cls, name in _VALUE_FUNCTIONS.items():
            if isinstance(function, cls):
                call.function = name
                arguments = [function.this]
                if name in ("lead", "lag"):
                    arguments += [function.args.get("offset"), function.args.get("default")]
                elif name == "nth_value":
                    arguments.append(function.args.get("offset"))
                    if arguments[-1] is None:
                        raise SQLSyntaxError("nth_value() requires two arguments")
                while arguments and arguments[-1] is None:
                    arguments.pop()
                call.arguments = [compiler.compile(a, scope) for a in arguments]
                return call, self.infer_type(function.this, scope)

        if is_aggregate(function):
            call.function = "aggregate"
            call.aggregate = compile_aggregate(
                function, compiler, scope, lambda n: self.infer_type(n, scope)
            )
            return call, call.aggregate.type

        raise SQLSyntaxError(f"function {output_name(function)}() is not a window function")

    def _frame(self, spec: exp.WindowSpec | None, scope: Scope) -> WindowFrame:
        if spec is None:
            return WindowFrame()
        if spec.args.get("exclude"):
            raise SQLSyntaxError("frame EXCLUDE is not supported")
        mode = str(spec.args.get("kind") or "RANGE").lower()
        start = self._frame_bound(spec.args.get("start"), spec.args.get("start_side"), scope)
        end_value = spec.args.get("end")
        end = (
            self._frame_bound(end_value, spec.args.get("end_side"), scope)
            if end_value is not None
            else FrameBound("current")
        )
        if start.kind == "unbounded" and not start.preceding:
            raise SQLSyntaxError("frame start cannot be UNBOUNDED FOLLOWING")
        if end.kind == "unbounded" and end.preceding:
            raise SQLSyntaxError("frame end cannot be UNBOUNDED PRECEDING")
        return WindowFrame(mode=mode, start=start, end=end)

    def _frame_bound(self, value: Any, side: Any, scope: Scope) -> FrameBound:
        preceding = str(side or "PRECEDING").upper() == "PRECEDING"
        text = value.upper() if isinstance(value, str) else None
        if text == "UNBOUNDED":
            return FrameBound("unbounded", preceding=preceding)
        if text == "CURRENT ROW":
            return FrameBound("current")
        if not isinstance(value, exp.Expression):
            raise SQLSyntaxError(f"invalid window frame bound: {value!r}")
        return FrameBound("offset", preceding=preceding, offset=self._compiler.compile(value, scope))

    # Set operations and VALUES

    def _plan_set_operation(
        self,
        node: exp.SetOperation,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> QueryPlan:
        if node.args.get("by_name") or node.args.get("side") or node.args.get("on"):
            raise SQLSyntaxError("this form of set operation is not supported")
        left = self.plan_query(node.this, parent, ctes, owner)
        right = self.plan_query(node.expression, parent, ctes, owner)
        if isinstance(node, exp.Union):
            kind = SetOperationKind.UNION
        elif isinstance(node, exp.Intersect):
            kind = SetOperationKind.INTERSECT
        else:
            kind = SetOperationKind.EXCEPT
        if len(left.fields) != len(right.fields):
            raise SQLSyntaxError(
                f"each {kind.name} query must have the same number of columns"
            )
        fields = [
            Field(l.name, None, l.type if l.type is not None else r.type)
            for l, r in zip(left.fields, right.fields)
        ]
        operator = SetOperationOperator(
            kind, left.operator, right.operator, all_rows=not node.args.get("distinct")
        )
        plan = QueryPlan(operator, fields, owner)
        return self._apply_modifiers(plan, node, parent, ctes, owner)

    def _plan_values(
        self,
        node: exp.Values,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> QueryPlan:
        scope = Scope([], parent, owner, ctes)
        rows: list[list[Compiled]] = []
        types: list[ColumnType | None] = []
        width = None
        for row in node.expressions:
            items = list(row.expressions) if isinstance(row, exp.Tuple) else [row]
            if width is None:
                width = len(items)
                types = [None] * width
            elif len(items) != width:
                raise SQLSyntaxError("VALUES lists must all be the same length")
            rows.append([self._compiler.compile(item, scope) for item in items])
            for i, item in enumerate(items):
                types[i] = _unify(types[i], self.infer_type(item, scope))
        fields = [Field(f"column{i + 1}", None, t) for i, t in enumerate(types)]
        return QueryPlan(ValuesOperator(rows), fields, owner)

    def _apply_modifiers(
        self,
        plan: QueryPlan,
        node: exp.Expression,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> QueryPlan:
        """ORDER BY/LIMIT/OFFSET over a combined result; keys name output columns."""
        order = node.args.get("order")
        operator = plan.operator
        if order is not None:
            scope = Scope(plan.fields, parent, owner, ctes)
            keys = []
            for ordered in order.expressions:
                target = ordered.this
                if _is_integer_literal(target):
                    position = int(target.this)
                    if not 1 <= position <= len(plan.fields):
                        raise SQLSyntaxError(f"ORDER BY position {position} is not in select list")
                    keys.append(_sort_key(position - 1, ordered))
                else:
                    keys.append(
                        SortKey(
                            self._compiler.compile(target, scope),
                            descending=bool(ordered.args.get("desc")),
                            nulls_first=bool(ordered.args.get("nulls_first")),
                        )
                    )
            operator = SortOperator(operator, keys)
        operator = self._limit(operator, node, parent, ctes, owner)
        return QueryPlan(operator, plan.fields, owner)

    def _limit(
        self,
        operator: Operator,
        node: exp.Expression,
        parent: Scope | None,
        ctes: dict[str, CTEDefinition],
        owner: Correlation,
    ) -> Operator:
        limit_node = node.args.get("limit")
        offset_node = node.args.get("offset")
        if limit_node is None and offset_node is None:
            return operator
        scope = Scope([], parent, owner, ctes)
        limit = None
        if isinstance(limit_node, exp.Fetch):
            count = limit_node.args.get("count")
            limit = self._compiler.compile(count, scope) if count is not None else None
        elif limit_node is not None and not limit_node.is_limit_all:
            limit = self._compiler.compile(limit_node.expression, scope)
        offset = (
            self._compiler.compile(offset_node.expression, scope)
            if offset_node is not None
            else None
        )
        return LimitOperator(operator, limit, offset)

    # Types

    def infer_type(self, node: exp.Expression, scope: Scope) -> ColumnType | None:
        """Static type of an expression, or None when it depends on the data."""
        if scope.substitutions and not isinstance(node, (exp.Column, exp.Literal)):
            key = self._key(node, scope)
            slot = scope.substitutions.get(key) if key is not None else None
            if slot is not None:
                return scope.fields[slot].type

        if isinstance(node, (exp.Alias, exp.Paren)):
            return self.infer_type(node.this, scope)
        if isinstance(node, exp.Column):
            return self._column_type(node, scope)
        if isinstance(node, exp.Literal):
            if node.is_string:
                return TEXT
            return INTEGER if node.this.isdigit() else DECIMAL
        if isinstance(node, _BOOLEAN_NODES):
            return BOOLEAN
        if isinstance(node, exp.Cast):
            try:
                return column_type_from_sql(node.to)[0]
            except SQLSyntaxError:
                return None
        if isinstance(node, _TEXT_FUNCTIONS):
            return TEXT
        if isinstance(node, (exp.Length, exp.Count)):
            return INTEGER
        if isinstance(node, exp.CurrentDate):
            return DATE
        if isinstance(node, exp.CurrentTimestamp):
            return TIMESTAMP
        if isinstance(node, exp.Extract):
            unit = node.this.name.upper() if node.this is not None else ""
            return DECIMAL if unit in ("SECOND", "EPOCH") else INTEGER
        if isinstance(node, (exp.Add, exp.Sub, exp.Mul, exp.Div, exp.Mod, exp.Pow)):
            return self._arithmetic_type(node, scope)
        if isinstance(node, (exp.Neg, exp.Abs, exp.Floor, exp.Ceil, exp.Round)):
            return self.infer_type(node.this, scope)
        if isinstance(node, exp.Sqrt):
            return DECIMAL
        if isinstance(node, (exp.Coalesce, exp.Greatest, exp.Least)):
            result = self.infer_type(node.this, scope)
            for other in node.expressions:
                result = _unify(result, self.infer_type(other, scope))
            return result
        if isinstance(node, exp.Nullif):
            return self.infer_type(node.this, scope)
        if isinstance(node, exp.Case):
            result = None
            for branch in node.args.get("ifs") or []:
                result = _unify(result, self.infer_type(branch.args.get("true"), scope))
            default = node.args.get("default")
            if default is not None:
                result = _unify(result, self.infer_type(default, scope))
            return result
        return None

    def _column_type(self, node: exp.Column, scope: Scope) -> ColumnType | None:
        current: Scope | None = scope
        try:
            while current is not None:
                if current.grouped or current.substitutions:
                    index = current.key_scope.lookup(node.name, node.table or None)
                    if index is not None:
                        slot = current.substitutions.get(column_key(index))
                        if slot is not None:
                            return current.fields[slot].type
                        return current.key_scope.fields[index].type
                else:
                    index = current.lookup(node.name, node.table or None)
                    if index is not None:
                        return current.fields[index].type
                current = current.parent
        except CatalogError:
            return None
        return None

    def _arithmetic_type(self, node: exp.Binary, scope: Scope) -> ColumnType | None:
        left = self.infer_type(node.this, scope)
        right = self.infer_type(node.expression, scope)
        if left is None or right is None:
            return None
        kinds = {left.kind, right.kind}
        if TypeKind.DATE in kinds:
            if left.kind == TypeKind.DATE and right.kind == TypeKind.DATE:
                return INTEGER
            return DATE
        if kinds == {TypeKind.INTEGER}:
            return INTEGER
        if kinds <= {TypeKind.INTEGER, TypeKind.DECIMAL}:
            return DECIMAL
        return None


# Helpers


def _rename(
    fields: Sequence[Field],
    names: Sequence[str],
    qualifier: str | None,
    relation: str,
) -> list[Field]:
    if len(names) > len(fields):
        raise SQLSyntaxError(
            f'table "{relation}" has {len(fields)} columns available but {len(names)} columns specified'
        )
    renamed = []
    for i, f in enumerate(fields):
        name = names[i] if i < len(names) else f.name
        renamed.append(Field(name, qualifier, f.type, hidden=f.hidden))
    return renamed


def _hidden_copy(f: Field) -> Field:
    return Field(f.name, f.qualifier, f.type, hidden=True)


def _conjuncts(node: exp.Expression) -> list[exp.Expression]:
    if isinstance(node, exp.Paren):
        return _conjuncts(node.this)
    if isinstance(node, exp.And):
        return _conjuncts(node.this) + _conjuncts(node.expression)
    return [node]


def _sort_key(index: int, ordered: exp.Ordered) -> SortKey:
    return SortKey(
        lambda row, outer: row[index],
        descending=bool(ordered.args.get("desc")),
        nulls_first=bool(ordered.args.get("nulls_first")),
    )


def _unify(left: ColumnType | None, right: ColumnType | None) -> ColumnType | None:
    if left is None:
        return right
    if right is None or left == right:
        return left
    if {left.kind, right.kind} <= {TypeKind.INTEGER, TypeKind.DECIMAL}:
        return DECIMAL
    if left.kind == right.kind:
        return ColumnType(left.kind)
    return left
