"""
Query planner.

Binds table and column references against the catalog, validates clause
rules (aggregate placement, GROUP BY coverage), and picks an access path for
each table: index lookup, index range scan, index join or full scan.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from . import ast_nodes as ast
from .catalog import Catalog, TableSchema
from .errors import (
    AmbiguousColumnError, DuplicateAliasError, InvalidAggregateUsageError,
    InvalidDefinitionError, UnknownColumnError, UnknownFunctionError,
)
from .expressions import (
    AGGREGATE_FUNCTIONS, SCALAR_FUNCTIONS, Scope, children, column_refs,
    conjuncts, contains_aggregate, contains_subquery, is_aggregate, render, walk,
)

logger = logging.getLogger(__name__)

RANGE_OPS = ('<', '<=', '>', '>=')
FLIPPED = {'<': '>', '<=': '>=', '>': '<', '>=': '<=', '=': '='}


@dataclass
class AccessPath:
    """How candidate rows of one table are fetched."""
    kind: str = 'scan'  # 'scan' | 'index' | 'range' | 'index_join'
    index_name: Optional[str] = None
    key: Tuple[ast.Expression, ...] = ()  # equality key, or join lookup key
    low: Optional[ast.Expression] = None
    high: Optional[ast.Expression] = None
    low_inclusive: bool = True
    high_inclusive: bool = True
    columns: Tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == 'index':
            conditions = ' AND '.join(f"{col} = {render(expr)}" for col, expr in zip(self.columns, self.key))
            return f"Index Lookup using {self.index_name} ({conditions})"
        if self.kind == 'range':
            parts = []
            if self.low is not None:
                parts.append(f"{self.columns[0]} {'>=' if self.low_inclusive else '>'} {render(self.low)}")
            if self.high is not None:
                parts.append(f"{self.columns[0]} {'<=' if self.high_inclusive else '<'} {render(self.high)}")
            return f"Index Range Scan using {self.index_name} ({' AND '.join(parts)})"
        if self.kind == 'index_join':
            return f"Index Join using {self.index_name} ({self.columns[0]} = {render(self.key[0])})"
        return "Seq Scan"


@dataclass
class SourcePlan:
    table: TableSchema
    binding: str
    offset: int
    join_kind: Optional[ast.JoinKind] = None
    condition: Optional[ast.Expression] = None
    access: AccessPath = field(default_factory=AccessPath)

    @property
    def width(self) -> int:
        return len(self.table.columns)

    def describe(self) -> str:
        target = self.table.name if self.binding == self.table.name else f"{self.table.name} {self.binding}"
        if self.join_kind is None:
            return f"{self.access.describe()} on {target}"
        if self.access.kind == 'index_join':
            text = f"{self.join_kind.value.title()} {self.access.describe()} on {target}"
        else:
            text = f"Nested Loop {self.join_kind.value.title()} Join on {target}"
        if self.condition is not None:
            text += f" ON {render(self.condition)}"
        return text


@dataclass
class OrderKey:
    descending: bool = False
    output_index: Optional[int] = None
    expr: Optional[ast.Expression] = None


@dataclass
class SelectPlan:
    statement: ast.Select
    sources: List[SourcePlan]
    scope: Scope
    outputs: List[Tuple[str, ast.Expression]]
    where: Optional[ast.Expression] = None
    grouped: bool = False
    group_by: List[ast.Expression] = field(default_factory=list)
    having: Optional[ast.Expression] = None
    order_by: List[OrderKey] = field(default_factory=list)
    distinct: bool = False
    limit: Optional[ast.Expression] = None
    offset: Optional[ast.Expression] = None

    @property
    def columns(self) -> List[str]:
        return [label for label, _ in self.outputs]

    def describe(self) -> List[str]:
        """One line per execution stage, in evaluation order."""
        lines = [source.describe() for source in self.sources] or ["Result (no table)"]
        if self.where is not None:
            lines.append(f"Filter: {render(self.where)}")
        if self.group_by:
            lines.append(f"Group By: {', '.join(render(expr) for expr in self.group_by)}")
        elif self.grouped:
            lines.append("Aggregate: single group")
        if self.having is not None:
            lines.append(f"Having: {render(self.having)}")
        lines.append(f"Project: {', '.join(self.columns)}")
        if self.distinct:
            lines.append("Distinct")
        if self.order_by:
            keys = []
            for key in self.order_by:
                text = self.columns[key.output_index] if key.output_index is not None else render(key.expr)
                keys.append(f"{text} {'DESC' if key.descending else 'ASC'}")
            lines.append(f"Sort: {', '.join(keys)}")
        if self.limit is not None or self.offset is not None:
            parts = []
            if self.limit is not None:
                parts.append(f"limit {render(self.limit)}")
            if self.offset is not None:
                parts.append(f"offset {render(self.offset)}")
            lines.append(f"Limit: {', '.join(parts)}")
        return lines


@dataclass
class MutationPlan:
    table: TableSchema
    scope: Scope
    where: Optional[ast.Expression] = None
    access: AccessPath = field(default_factory=AccessPath)


def is_constant(expr: ast.Expression) -> bool:
    """True for expressions that do not depend on any row."""
    return not column_refs(expr) and not contains_aggregate(expr) and not contains_subquery(expr)


class Planner:
    """Builds validated execution plans from statement trees."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    # ------------------------------------------------------------------
    # SELECT
    # ------------------------------------------------------------------

    def plan_select(self, select: ast.Select) -> SelectPlan:
        sources, scope = self._bind_sources(select)

        self.validate_expression(select.where, scope, allow_aggregates=False, clause='WHERE')
        for expr in select.group_by:
            self.validate_expression(expr, scope, allow_aggregates=False, clause='GROUP BY')

        outputs = self._expand_items(select.items, scope)
        self.validate_expression(select.having, scope, allow_aggregates=True, clause='HAVING')
        order_by = self._bind_order_by(select.order_by, outputs, scope)
        if select.distinct and any(key.expr is not None for key in order_by):
            raise InvalidDefinitionError("For SELECT DISTINCT, ORDER BY expressions must appear in select list")

        grouped = (
            bool(select.group_by)
            or select.having is not None
            or any(contains_aggregate(expr) for _, expr in outputs)
            or any(key.expr is not None and contains_aggregate(key.expr) for key in order_by)
        )
        if grouped:
            group_by = list(select.group_by)
            for _, expr in outputs:
                self._check_grouped(expr, group_by, scope)
            if select.having is not None:
                self._check_grouped(select.having, group_by, scope)
            for key in order_by:
                if key.expr is not None:
                    self._check_grouped(key.expr, group_by, scope)

        for clause, expr in (('LIMIT', select.limit), ('OFFSET', select.offset)):
            if expr is not None and not is_constant(expr):
                raise InvalidDefinitionError(f"Argument of {clause} must be a constant")

        if sources:
            outer_joins_only_left = all(
                source.join_kind in (ast.JoinKind.INNER, ast.JoinKind.LEFT, ast.JoinKind.CROSS)
                for source in sources[1:]
            )
            if outer_joins_only_left:
                sources[0].access = self._choose_access_path(sources[0], scope, select.where)
            for source in sources[1:]:
                source.access = self._choose_join_path(source, scope)

        plan = SelectPlan(
            statement=select,
            sources=sources,
            scope=scope,
            outputs=outputs,
            where=select.where,
            grouped=grouped,
            group_by=list(select.group_by),
            having=select.having,
            order_by=order_by,
            distinct=select.distinct,
            limit=select.limit,
            offset=select.offset,
        )
        logger.debug("Planned SELECT: %s", '; '.join(plan.describe()))
        return plan

    def _bind_sources(self, select: ast.Select) -> Tuple[List[SourcePlan], Scope]:
        scope = Scope()
        sources: List[SourcePlan] = []
        if select.from_table is None:
            return sources, scope

        refs = [(None, select.from_table, None)] + [(j.kind, j.table, j.condition) for j in select.joins]
        seen = set()
        for kind, table_ref, condition in refs:
            schema = self.catalog.lookup_table(table_ref.name)
            binding = table_ref.alias or schema.name
            if binding.lower() in seen:
                raise DuplicateAliasError(f"Table name '{binding}' specified more than once")
            seen.add(binding.lower())

            source = SourcePlan(schema, binding, scope.width, join_kind=kind, condition=condition)
            scope = scope.extend(binding, schema.column_names)
            self.validate_expression(condition, scope, allow_aggregates=False, clause='JOIN conditions')
            sources.append(source)
        return sources, scope

    def _expand_items(self, items: Sequence[ast.SelectItem], scope: Scope) -> List[Tuple[str, ast.Expression]]:
        outputs = []
        for item in items:
            if isinstance(item.expr, ast.Star):
                if scope.width == 0:
                    raise InvalidDefinitionError("SELECT * with no tables specified is not valid")
                for col in scope.columns_for(item.expr.table):
                    outputs.append((col.name, ast.ColumnRef(col.name, col.table)))
                continue

            self.validate_expression(item.expr, scope, allow_aggregates=True, clause='SELECT')
            if item.alias:
                label = item.alias
            elif isinstance(item.expr, ast.ColumnRef):
                label = item.expr.name
            else:
                label = render(item.expr)
            outputs.append((label, item.expr))
        return outputs

    def _bind_order_by(self, items: Sequence[ast.OrderItem], outputs, scope: Scope) -> List[OrderKey]:
        keys = []
        for item in items:
            expr = item.expr
            if isinstance(expr, ast.Literal) and isinstance(expr.value, int) and not isinstance(expr.value, bool):
                if not 1 <= expr.value <= len(outputs):
                    raise UnknownColumnError(f"ORDER BY position {expr.value} is not in select list")
                keys.append(OrderKey(item.descending, output_index=expr.value - 1))
                continue

            if isinstance(expr, ast.ColumnRef) and expr.table is None:
                matches = [i for i, (label, _) in enumerate(outputs) if label.lower() == expr.name.lower()]
                if len(matches) > 1 and len({outputs[i][1] for i in matches}) > 1:
                    raise AmbiguousColumnError(f"ORDER BY '{expr.name}' is ambiguous")
                if matches:
                    keys.append(OrderKey(item.descending, output_index=matches[0]))
                    continue

            self.validate_expression(expr, scope, allow_aggregates=True, clause='ORDER BY')
            same = [i for i, (_, output) in enumerate(outputs) if self._same_expression(expr, output, scope)]
            if same:
                keys.append(OrderKey(item.descending, output_index=same[0]))
            else:
                keys.append(OrderKey(item.descending, expr=expr))
        return keys

    def _check_grouped(self, expr: ast.Expression, group_by: List[ast.Expression], scope: Scope):
        """Non-aggregated column references must be covered by GROUP BY."""
        if any(self._same_expression(expr, candidate, scope) for candidate in group_by):
            return
        if is_aggregate(expr):
            return
        if isinstance(expr, ast.ColumnRef):
            raise InvalidAggregateUsageError(
                f"Column '{render(expr)}' must appear in the GROUP BY clause or be used in an aggregate function"
            )
        for child in children(expr):
            self._check_grouped(child, group_by, scope)

    @staticmethod
    def _same_expression(left: ast.Expression, right: ast.Expression, scope: Scope) -> bool:
        if isinstance(left, ast.ColumnRef) and isinstance(right, ast.ColumnRef):
            return scope.resolve(left) == scope.resolve(right)
        return left == right

    # ------------------------------------------------------------------
    # UPDATE / DELETE
    # ------------------------------------------------------------------

    def plan_mutation(self, table_name: str, where: Optional[ast.Expression]) -> MutationPlan:
        schema = self.catalog.lookup_table(table_name)
        scope = Scope.for_table(schema.name, schema.column_names)
        self.validate_expression(where, scope, allow_aggregates=False, clause='WHERE')
        source = SourcePlan(schema, schema.name, 0)
        access = self._choose_access_path(source, scope, where)
        return MutationPlan(schema, scope, where, access)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_expression(self, expr: Optional[ast.Expression], scope: Scope,
                            allow_aggregates: bool, clause: str):
        """Resolve every column and function in expr; reject misplaced aggregates."""
        if expr is None:
            return
        for node in walk(expr):
            if isinstance(node, ast.ColumnRef):
                scope.resolve(node)
            elif isinstance(node, ast.Star):
                raise InvalidDefinitionError("'*' is only allowed in the SELECT list or COUNT(*)")
            elif isinstance(node, ast.FunctionCall):
                self._validate_function(node, allow_aggregates, clause)
            elif isinstance(node, (ast.Subquery, ast.InSubquery, ast.Exists)):
                self.plan_select(node.query)

    def _validate_function(self, call: ast.FunctionCall, allow_aggregates: bool, clause: str):
        if call.name in AGGREGATE_FUNCTIONS:
            if not allow_aggregates:
                raise InvalidAggregateUsageError(f"Aggregate functions are not allowed in {clause}")
            if not call.star and len(call.args) != 1:
                raise InvalidAggregateUsageError(f"{call.name} takes exactly one argument")
            if any(contains_aggregate(arg) for arg in call.args):
                raise InvalidAggregateUsageError("Aggregate function calls cannot be nested")
            return

        if call.name not in SCALAR_FUNCTIONS:
            raise UnknownFunctionError(f"Function {call.name} does not exist")
        if call.distinct:
            raise InvalidDefinitionError(f"DISTINCT specified, but {call.name} is not an aggregate function")
        low, high = SCALAR_FUNCTIONS[call.name]
        if len(call.args) < low or (high is not None and len(call.args) > high):
            raise InvalidDefinitionError(f"Wrong number of arguments for {call.name}: {len(call.args)}")

    # ------------------------------------------------------------------
    # Access paths
    # ------------------------------------------------------------------

    def _column_of(self, expr: ast.Expression, scope: Scope, source: SourcePlan) -> Optional[int]:
        """Position within source's table if expr is a column of that table."""
        if not isinstance(expr, ast.ColumnRef):
            return None
        position = scope.resolve(expr)
        if source.offset <= position < source.offset + source.width:
            return position - source.offset
        return None

    def _choose_access_path(self, source: SourcePlan, scope: Scope,
                            predicate: Optional[ast.Expression]) -> AccessPath:
        equalities = {}
        lower = {}
        upper = {}
        for conjunct in conjuncts(predicate):
            if isinstance(conjunct, ast.BinaryOp) and conjunct.op in ('=',) + RANGE_OPS:
                op, left, right = conjunct.op, conjunct.left, conjunct.right
                position = self._column_of(left, scope, source)
                if position is None or not is_constant(right):
                    position = self._column_of(right, scope, source)
                    if position is None or not is_constant(left):
                        continue
                    op, right = FLIPPED[op], left
                if op == '=':
                    equalities.setdefault(position, right)
                elif op in ('>', '>='):
                    lower.setdefault(position, (right, op == '>='))
                else:
                    upper.setdefault(position, (right, op == '<='))
            elif isinstance(conjunct, ast.Between) and not conjunct.negated:
                position = self._column_of(conjunct.operand, scope, source)
                if position is not None and is_constant(conjunct.low) and is_constant(conjunct.high):
                    lower.setdefault(position, (conjunct.low, True))
                    upper.setdefault(position, (conjunct.high, True))

        schema = source.table
        indexes = [(index, [schema.get_column_index(name) for name in index.column_names])
                   for index in schema.indexes]

        usable = [(index, positions) for index, positions in indexes
                  if all(pos in equalities for pos in positions)]
        if usable:
            usable.sort(key=lambda item: (not item[0].unique, -len(item[1])))
            index, positions = usable[0]
            logger.debug("Using index %s for lookup on %s", index.name, schema.name)
            return AccessPath(
                kind='index',
                index_name=index.name,
                key=tuple(equalities[pos] for pos in positions),
                columns=tuple(schema.columns[pos].name for pos in positions),
            )

        for index, positions in indexes:
            if len(positions) != 1:
                continue
            position = positions[0]
            if position in lower or position in upper:
                low, low_inclusive = lower.get(position, (None, True))
                high, high_inclusive = upper.get(position, (None, True))
                logger.debug("Using index %s for range scan on %s", index.name, schema.name)
                return AccessPath(
                    kind='range',
                    index_name=index.name,
                    low=low,
                    high=high,
                    low_inclusive=low_inclusive,
                    high_inclusive=high_inclusive,
                    columns=(schema.columns[position].name,),
                )

        return AccessPath()

    def _choose_join_path(self, source: SourcePlan, scope: Scope) -> AccessPath:
        """Index nested-loop join on `outer_expr = inner_column` when an index allows it."""
        if source.join_kind not in (ast.JoinKind.INNER, ast.JoinKind.LEFT):
            return AccessPath()

        schema = source.table
        for conjunct in conjuncts(source.condition):
            if not (isinstance(conjunct, ast.BinaryOp) and conjunct.op == '='):
                continue
            for inner, outer in ((conjunct.left, conjunct.right), (conjunct.right, conjunct.left)):
                position = self._column_of(inner, scope, source)
                if position is None or contains_aggregate(outer) or contains_subquery(outer):
                    continue
                outer_refs = column_refs(outer)
                if not outer_refs or any(scope.resolve(ref) >= source.offset for ref in outer_refs):
                    continue
                for index in schema.indexes:
                    if [schema.get_column_index(name) for name in index.column_names] == [position]:
                        return AccessPath(
                            kind='index_join',
                            index_name=index.name,
                            key=(outer,),
                            columns=(f"{source.binding}.{schema.columns[position].name}",),
                        )
        return AccessPath()
