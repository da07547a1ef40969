"""
Query executor that processes parsed statements.

SELECT runs in a fixed order: fetch (access path), join, WHERE, GROUP BY,
HAVING, projection, DISTINCT, ORDER BY, LIMIT/OFFSET. UPDATE and DELETE
collect their targets from a snapshot before mutating anything.
"""

import logging
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import ast_nodes as ast
from .catalog import (
    Catalog, CheckConstraint, ForeignKey, IndexDef, PrimaryKey,
    ReferentialAction, TableSchema, UniqueConstraint,
)
from .errors import (
    ColumnCountMismatchError, InvalidDefinitionError, TypeMismatchError,
)
from .expressions import (
    ExpressionEvaluator, Scope, column_refs, contains_aggregate,
    contains_subquery, sort_key_compare,
)
from .planner import AccessPath, MutationPlan, Planner, SelectPlan, SourcePlan
from .results import Ack, Affected, ExecutionResult, Rows
from .storage import Storage, TableStore
from .types import Column, Row, RowId, coerce_value

logger = logging.getLogger(__name__)


class QueryExecutor:
    """Executes parsed statements against the catalog and storage."""

    def __init__(self, catalog: Catalog, storage: Storage):
        self.catalog = catalog
        self.storage = storage
        self.planner = Planner(catalog)
        self._subquery_results: Dict[ast.Select, Tuple[List[str], List[Row]]] = {}

    def execute(self, statement: ast.Statement) -> ExecutionResult:
        """Execute one statement atomically."""
        self._subquery_results = {}
        try:
            with self.storage.statement():
                return self._dispatch(statement)
        finally:
            self._subquery_results = {}

    def _dispatch(self, statement: ast.Statement) -> ExecutionResult:
        if isinstance(statement, ast.Select):
            return self._execute_select(statement)
        elif isinstance(statement, ast.Insert):
            return self._execute_insert(statement)
        elif isinstance(statement, ast.Update):
            return self._execute_update(statement)
        elif isinstance(statement, ast.Delete):
            return self._execute_delete(statement)
        elif isinstance(statement, ast.CreateTable):
            return self._execute_create_table(statement)
        elif isinstance(statement, ast.CreateIndex):
            return self._execute_create_index(statement)
        elif isinstance(statement, ast.DropTable):
            return self._execute_drop_table(statement)
        elif isinstance(statement, ast.DropIndex):
            return self._execute_drop_index(statement)
        elif isinstance(statement, ast.AlterTableAddColumn):
            return self._execute_add_column(statement)
        elif isinstance(statement, ast.Explain):
            return self._execute_explain(statement)
        raise ValueError(f"Unsupported statement type: {type(statement).__name__}")

    # ------------------------------------------------------------------
    # SELECT
    # ------------------------------------------------------------------

    def _execute_select(self, select: ast.Select) -> Rows:
        plan = self.planner.plan_select(select)
        rows = self._run_select(plan)
        logger.debug("SELECT returned %d row(s)", len(rows))
        return Rows(plan.columns, rows)

    def _execute_explain(self, statement: ast.Explain) -> Rows:
        plan = self.planner.plan_select(statement.statement)
        return Rows(['QUERY PLAN'], [(line,) for line in plan.describe()])

    def _run_subquery(self, query: ast.Select) -> Tuple[List[str], List[Row]]:
        """Uncorrelated subqueries are evaluated once per statement."""
        if query not in self._subquery_results:
            plan = self.planner.plan_select(query)
            self._subquery_results[query] = (plan.columns, self._run_select(plan))
        return self._subquery_results[query]

    def _run_select(self, plan: SelectPlan) -> List[Row]:
        evaluator = ExpressionEvaluator(plan.scope, self._run_subquery)

        rows = self._produce_rows(plan, evaluator)
        if plan.where is not None:
            rows = [row for row in rows if evaluator.is_true(plan.where, row)]

        # Each entry: (projected values, sort key values)
        projected: List[Tuple[Row, List[Any]]] = []
        if plan.grouped:
            for representative, members in self._group(plan, rows, evaluator):
                if plan.having is not None and not evaluator.is_true(plan.having, representative, members):
                    continue
                projected.append(self._project(plan, evaluator, representative, members))
        else:
            for row in rows:
                projected.append(self._project(plan, evaluator, row, None))

        if plan.distinct:
            seen = set()
            unique = []
            for values, keys in projected:
                if values not in seen:
                    seen.add(values)
                    unique.append((values, keys))
            projected = unique

        if plan.order_by:
            directions = [key.descending for key in plan.order_by]
            projected.sort(key=cmp_to_key(
                lambda left, right: _compare_sort_keys(left[1], right[1], directions)
            ))

        result = [values for values, _ in projected]
        return self._apply_limit(plan, result)

    def _produce_rows(self, plan: SelectPlan, evaluator: ExpressionEvaluator) -> List[Row]:
        if not plan.sources:
            return [()]

        first = plan.sources[0]
        store = self.storage.table(first.table.name)
        row_ids = self._candidate_ids(store, first.access, evaluator)
        if row_ids is None:
            rows = store.scan().rows()
        else:
            rows = [store.get(row_id) for row_id in row_ids]

        for source in plan.sources[1:]:
            rows = self._join(rows, source, evaluator)
        return rows

    def _join(self, left_rows: List[Row], source: SourcePlan, evaluator: ExpressionEvaluator) -> List[Row]:
        store = self.storage.table(source.table.name)
        right_rows = store.scan().rows()
        kind = source.join_kind
        condition = source.condition

        def matches(combined: Row) -> bool:
            return condition is None or evaluator.is_true(condition, combined)

        result: List[Row] = []
        if kind == ast.JoinKind.RIGHT:
            null_left = (None,) * source.offset
            for right in right_rows:
                matched = [left + right for left in left_rows if matches(left + right)]
                result.extend(matched or [null_left + right])
            return result

        null_right = (None,) * source.width
        matched_right = set()
        for left in left_rows:
            candidates = self._join_candidates(store, source, left, right_rows, evaluator)
            found = False
            for position, right in candidates:
                combined = left + right
                if matches(combined):
                    result.append(combined)
                    matched_right.add(position)
                    found = True
            if not found and kind in (ast.JoinKind.LEFT, ast.JoinKind.FULL):
                result.append(left + null_right)

        if kind == ast.JoinKind.FULL:
            null_left = (None,) * source.offset
            for position, right in enumerate(right_rows):
                if position not in matched_right:
                    result.append(null_left + right)
        return result

    def _join_candidates(self, store: TableStore, source: SourcePlan, left: Row,
                         right_rows: List[Row], evaluator: ExpressionEvaluator) -> List[Tuple[int, Row]]:
        access = source.access
        if access.kind == 'index_join':
            column = source.table.get_column(access.columns[0].split('.')[-1])
            value = evaluator.evaluate(access.key[0], left)
            if value is None:
                return []
            try:
                value = column.validate_value(value)
            except TypeMismatchError:
                pass
            else:
                row_ids = store.index_lookup(access.index_name, (value,))
                # Position is only used for FULL joins, which never take this path
                return [(-1, store.get(row_id)) for row_id in sorted(row_ids)]
        return list(enumerate(right_rows))

    def _group(self, plan: SelectPlan, rows: List[Row],
               evaluator: ExpressionEvaluator) -> List[Tuple[Row, List[Row]]]:
        if not plan.group_by:
            representative = rows[0] if rows else (None,) * plan.scope.width
            return [(representative, rows)]

        groups: Dict[tuple, List[Row]] = {}
        for row in rows:
            key = tuple(evaluator.evaluate(expr, row) for expr in plan.group_by)
            groups.setdefault(key, []).append(row)
        return [(members[0], members) for members in groups.values()]

    def _project(self, plan: SelectPlan, evaluator: ExpressionEvaluator, row: Row,
                 group: Optional[List[Row]]) -> Tuple[Row, List[Any]]:
        values = tuple(evaluator.evaluate(expr, row, group) for _, expr in plan.outputs)
        keys = []
        for key in plan.order_by:
            if key.output_index is not None:
                keys.append(values[key.output_index])
            else:
                keys.append(evaluator.evaluate(key.expr, row, group))
        return values, keys

    def _apply_limit(self, plan: SelectPlan, rows: List[Row]) -> List[Row]:
        offset = self._row_count_argument(plan.offset, 'OFFSET') or 0
        limit = self._row_count_argument(plan.limit, 'LIMIT')
        if limit is None:
            return rows[offset:]
        return rows[offset:offset + limit]

    def _row_count_argument(self, expr: Optional[ast.Expression], clause: str) -> Optional[int]:
        if expr is None:
            return None
        value = ExpressionEvaluator(Scope(), self._run_subquery).evaluate(expr, ())
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeMismatchError(f"Argument of {clause} must be an integer, got {value!r}")
        if value < 0:
            raise InvalidDefinitionError(f"{clause} must not be negative")
        return value

    # ------------------------------------------------------------------
    # Access paths
    # ------------------------------------------------------------------

    def _candidate_ids(self, store: TableStore, access: AccessPath,
                       evaluator: ExpressionEvaluator) -> Optional[List[RowId]]:
        """Row ids from an index, in RowId order, or None when a scan is needed."""
        schema = store.schema
        if access.kind == 'index':
            key = []
            for name, expr in zip(access.columns, access.key):
                value = self._index_value(schema.get_column(name), expr, evaluator)
                if value is _NO_INDEX:
                    return None
                if value is None:
                    return []
                key.append(value)
            row_ids = store.index_lookup(access.index_name, key)
            logger.debug("Index lookup on %s using %s matched %d row(s)",
                         schema.name, access.index_name, len(row_ids))
            return sorted(row_ids)

        if access.kind == 'range':
            column = schema.get_column(access.columns[0])
            bounds = []
            for expr in (access.low, access.high):
                if expr is None:
                    bounds.append(None)
                    continue
                value = self._index_value(column, expr, evaluator)
                if value is _NO_INDEX:
                    return None
                if value is None:
                    return []
                bounds.append(value)
            row_ids = store.index_range(access.index_name, bounds[0], bounds[1],
                                        access.low_inclusive, access.high_inclusive)
            logger.debug("Index range scan on %s using %s matched %d row(s)",
                         schema.name, access.index_name, len(row_ids))
            return sorted(row_ids)

        return None

    @staticmethod
    def _index_value(column: Column, expr: ast.Expression, evaluator: ExpressionEvaluator) -> Any:
        value = evaluator.evaluate(expr, ())
        try:
            return column.validate_value(value)
        except TypeMismatchError:
            return _NO_INDEX

    def _collect_targets(self, plan: MutationPlan,
                         evaluator: ExpressionEvaluator) -> List[Tuple[RowId, Row]]:
        store = self.storage.table(plan.table.name)
        row_ids = self._candidate_ids(store, plan.access, evaluator)
        if row_ids is None:
            candidates = list(store.scan())
        else:
            candidates = [(row_id, store.get(row_id)) for row_id in row_ids]
        if plan.where is None:
            return candidates
        return [(row_id, row) for row_id, row in candidates if evaluator.is_true(plan.where, row)]

    # ------------------------------------------------------------------
    # INSERT / UPDATE / DELETE
    # ------------------------------------------------------------------

    def _execute_insert(self, statement: ast.Insert) -> Affected:
        schema = self.catalog.lookup_table(statement.table)
        columns = None
        if statement.columns is not None:
            columns = [schema.columns[schema.get_column_index(name)].name for name in statement.columns]
            if len({name.lower() for name in columns}) != len(columns):
                raise InvalidDefinitionError("Column specified more than once in INSERT")
        width = len(columns) if columns is not None else len(schema.columns)

        if statement.query is not None:
            plan = self.planner.plan_select(statement.query)
            rows = self._run_select(plan)
            if len(plan.columns) != width:
                raise ColumnCountMismatchError(
                    f"INSERT has {width} target column(s) but the query returns {len(plan.columns)}"
                )
        else:
            evaluator = ExpressionEvaluator(Scope(), self._run_subquery)
            rows = []
            for values in statement.rows:
                if len(values) != width:
                    raise ColumnCountMismatchError(
                        f"INSERT has {width} target column(s) but {len(values)} value(s) were supplied"
                    )
                for expr in values:
                    self.planner.validate_expression(expr, Scope(), allow_aggregates=False, clause='VALUES')
                rows.append(tuple(evaluator.evaluate(expr, ()) for expr in values))

        for values in rows:
            if columns is not None:
                self.storage.insert(schema.name, dict(zip(columns, values)))
            else:
                self.storage.insert(schema.name, values)

        logger.debug("Inserted %d row(s) into %s", len(rows), schema.name)
        return Affected(len(rows))

    def _execute_update(self, statement: ast.Update) -> Affected:
        plan = self.planner.plan_mutation(statement.table, statement.where)
        schema = plan.table

        seen = set()
        for name, expr in statement.assignments:
            schema.get_column_index(name)
            if name.lower() in seen:
                raise InvalidDefinitionError(f"Multiple assignments to column '{name}'")
            seen.add(name.lower())
            self.planner.validate_expression(expr, plan.scope, allow_aggregates=False, clause='UPDATE')

        evaluator = ExpressionEvaluator(plan.scope, self._run_subquery)
        targets = self._collect_targets(plan, evaluator)
        changes = [
            (row_id, {name: evaluator.evaluate(expr, row) for name, expr in statement.assignments})
            for row_id, row in targets
        ]
        for row_id, values in changes:
            self.storage.update(schema.name, row_id, values)

        logger.debug("Updated %d row(s) in %s", len(changes), schema.name)
        return Affected(len(changes))

    def _execute_delete(self, statement: ast.Delete) -> Affected:
        plan = self.planner.plan_mutation(statement.table, statement.where)
        evaluator = ExpressionEvaluator(plan.scope, self._run_subquery)
        row_ids = [row_id for row_id, _ in self._collect_targets(plan, evaluator)]
        count = self.storage.delete_rows(plan.table.name, row_ids) if row_ids else 0

        logger.debug("Deleted %d row(s) from %s", count, plan.table.name)
        return Affected(count)

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def _execute_create_table(self, statement: ast.CreateTable) -> Ack:
        if self.catalog.has_table(statement.name) and statement.if_not_exists:
            return Ack(f"Table '{statement.name}' already exists, skipping")

        columns = []
        constraints: List[Any] = []
        for col_def in statement.columns:
            columns.append(self._build_column(col_def))
            if col_def.primary_key:
                constraints.append(PrimaryKey([col_def.name]))
            if col_def.unique:
                constraints.append(UniqueConstraint([col_def.name]))
            for check in col_def.checks:
                constraints.append(CheckConstraint(check.expr, check.name, check.text))
            if col_def.references is not None:
                constraints.append(_foreign_key(col_def.references))

        for clause in statement.constraints:
            if isinstance(clause, ast.PrimaryKeyClause):
                constraints.append(PrimaryKey(list(clause.columns), clause.name))
            elif isinstance(clause, ast.UniqueClause):
                constraints.append(UniqueConstraint(list(clause.columns), clause.name))
            elif isinstance(clause, ast.CheckClause):
                constraints.append(CheckConstraint(clause.expr, clause.name, clause.text))
            elif isinstance(clause, ast.ForeignKeyClause):
                constraints.append(_foreign_key(clause))

        schema = TableSchema(statement.name, columns, constraints)
        scope = Scope.for_table(schema.name, [col.name for col in columns])
        for check in schema.checks:
            if contains_subquery(check.expression):
                raise InvalidDefinitionError("Cannot use subquery in check constraint")
            self.planner.validate_expression(check.expression, scope, allow_aggregates=False,
                                             clause='check constraints')

        self.catalog.define_table(schema)
        self.storage.create_table(schema)
        return Ack(f"Table '{schema.name}' created")

    def _build_column(self, col_def: ast.ColumnDefNode) -> Column:
        default = col_def.default
        if default is not None:
            if column_refs(default) or contains_aggregate(default) or contains_subquery(default):
                raise InvalidDefinitionError(
                    f"Default value of column '{col_def.name}' must be a constant expression"
                )
            value = ExpressionEvaluator(Scope()).evaluate(default, ())
            coerce_value(col_def.dtype, value, col_def.name)
        return Column(
            name=col_def.name,
            dtype=col_def.dtype,
            nullable=not (col_def.not_null or col_def.primary_key),
            default=default,
        )

    def _execute_create_index(self, statement: ast.CreateIndex) -> Ack:
        if self.catalog.has_index(statement.name) and statement.if_not_exists:
            return Ack(f"Index '{statement.name}' already exists, skipping")

        schema = self.catalog.lookup_table(statement.table)
        names = [name.lower() for name, _ in statement.columns]
        if len(set(names)) != len(names):
            raise InvalidDefinitionError(f"Index '{statement.name}' names a column more than once")

        index = IndexDef(
            name=statement.name,
            table_name=schema.name,
            columns=list(statement.columns),
            unique=statement.unique,
        )
        self.catalog.define_index(index, rows=self.storage.table(schema.name).rows())
        self.storage.create_index(index)
        return Ack(f"Index '{index.name}' created")

    def _execute_drop_table(self, statement: ast.DropTable) -> Ack:
        schema = self.catalog.drop_table(statement.name, if_exists=statement.if_exists)
        if schema is None:
            return Ack(f"Table '{statement.name}' does not exist, skipping")
        self.storage.drop_table(schema.name)
        return Ack(f"Table '{schema.name}' dropped")

    def _execute_drop_index(self, statement: ast.DropIndex) -> Ack:
        index = self.catalog.drop_index(statement.name, if_exists=statement.if_exists)
        if index is None:
            return Ack(f"Index '{statement.name}' does not exist, skipping")
        self.storage.drop_index(index)
        return Ack(f"Index '{index.name}' dropped")

    def _execute_add_column(self, statement: ast.AlterTableAddColumn) -> Ack:
        col_def = statement.column
        if col_def.primary_key or col_def.unique or col_def.checks or col_def.references is not None:
            raise InvalidDefinitionError(
                "ALTER TABLE ADD COLUMN supports only NOT NULL and DEFAULT"
            )
        column = self._build_column(col_def)
        self.storage.add_column(statement.table, column)
        return Ack(f"Column '{column.name}' added to table '{statement.table}'")


_NO_INDEX = object()


def _foreign_key(clause: ast.ForeignKeyClause) -> ForeignKey:
    return ForeignKey(
        columns=list(clause.columns),
        ref_table=clause.ref_table,
        ref_columns=list(clause.ref_columns),
        on_delete=ReferentialAction(clause.on_delete),
        name=clause.name,
    )


def _compare_sort_keys(left: Sequence[Any], right: Sequence[Any], directions: Sequence[bool]) -> int:
    """ORDER BY comparison; NULLs sort last in either direction."""
    for a, b, descending in zip(left, right, directions):
        if a is None and b is None:
            continue
        if a is None:
            return 1
        if b is None:
            return -1
        order = sort_key_compare(a, b)
        if order:
            return -order if descending else order
    return 0
