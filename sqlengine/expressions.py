"""
Expression evaluation.

A Scope maps column references to positions in a (possibly joined) row
tuple. ExpressionEvaluator evaluates expression nodes against such rows
using SQL three-valued logic: None stands for NULL/UNKNOWN.
"""

import re
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from . import ast_nodes as ast
from .errors import (
    AmbiguousColumnError, CardinalityError, DivisionByZeroError,
    InvalidAggregateUsageError, InvalidDefinitionError, TypeMismatchError,
    UnknownColumnError, UnknownTableError,
)
from .types import Row, cast_value, is_number, value_category


AGGREGATE_FUNCTIONS = frozenset({'COUNT', 'SUM', 'AVG', 'MIN', 'MAX'})

# name -> (min args, max args or None for variadic)
SCALAR_FUNCTIONS = {
    'UPPER': (1, 1),
    'LOWER': (1, 1),
    'LENGTH': (1, 1),
    'ABS': (1, 1),
    'ROUND': (1, 2),
    'COALESCE': (1, None),
}

MAX_ROUND_DIGITS = 1000


@dataclass(frozen=True)
class BoundColumn:
    table: str  # binding name: alias, or table name when unaliased
    name: str
    position: int


class Scope:
    """Column names visible to an expression, with their row positions."""

    def __init__(self, columns: Sequence[BoundColumn] = ()):
        self.columns = list(columns)
        self._cache: Dict[Tuple[Optional[str], str], int] = {}

    @classmethod
    def for_table(cls, binding: str, column_names: Sequence[str], offset: int = 0) -> 'Scope':
        return cls([BoundColumn(binding, name, offset + i) for i, name in enumerate(column_names)])

    def extend(self, binding: str, column_names: Sequence[str]) -> 'Scope':
        """New scope with another table's columns appended."""
        return Scope(self.columns + Scope.for_table(binding, column_names, self.width).columns)

    @property
    def width(self) -> int:
        return len(self.columns)

    @property
    def bindings(self) -> List[str]:
        seen = []
        for col in self.columns:
            if col.table not in seen:
                seen.append(col.table)
        return seen

    def has_binding(self, table: str) -> bool:
        return any(col.table.lower() == table.lower() for col in self.columns)

    def columns_for(self, table: Optional[str] = None) -> List[BoundColumn]:
        """Columns in declaration order, for `*` or `table.*` expansion."""
        if table is None:
            return list(self.columns)
        if not self.has_binding(table):
            raise UnknownTableError(f"Missing FROM-clause entry for table '{table}'")
        return [col for col in self.columns if col.table.lower() == table.lower()]

    def resolve(self, ref: ast.ColumnRef) -> int:
        """Position of a column reference; case-insensitive."""
        key = (ref.table.lower() if ref.table else None, ref.name.lower())
        if key in self._cache:
            return self._cache[key]

        if ref.table is not None:
            if not self.has_binding(ref.table):
                raise UnknownTableError(f"Missing FROM-clause entry for table '{ref.table}'")
            matches = [col for col in self.columns
                       if col.table.lower() == key[0] and col.name.lower() == key[1]]
        else:
            matches = [col for col in self.columns if col.name.lower() == key[1]]

        if not matches:
            raise UnknownColumnError(f"Column '{render(ref)}' does not exist")
        if len(matches) > 1:
            tables = ', '.join(col.table for col in matches)
            raise AmbiguousColumnError(f"Column reference '{ref.name}' is ambiguous (in {tables})")

        self._cache[key] = matches[0].position
        return matches[0].position


# ----------------------------------------------------------------------
# Tree helpers
# ----------------------------------------------------------------------

def children(expr: ast.Expression) -> List[ast.Expression]:
    """Direct sub-expressions; subqueries are not descended into."""
    if isinstance(expr, ast.UnaryOp):
        return [expr.operand]
    if isinstance(expr, ast.BinaryOp):
        return [expr.left, expr.right]
    if isinstance(expr, ast.FunctionCall):
        return list(expr.args)
    if isinstance(expr, (ast.IsNull, ast.Cast, ast.InSubquery)):
        return [expr.operand]
    if isinstance(expr, ast.InList):
        return [expr.operand, *expr.items]
    if isinstance(expr, ast.Between):
        return [expr.operand, expr.low, expr.high]
    if isinstance(expr, ast.Like):
        return [expr.operand, expr.pattern]
    if isinstance(expr, ast.Case):
        parts = [part for when in expr.whens for part in when]
        if expr.else_result is not None:
            parts.append(expr.else_result)
        return parts
    return []


def walk(expr: ast.Expression) -> Iterator[ast.Expression]:
    yield expr
    for child in children(expr):
        yield from walk(child)


def is_aggregate(expr: ast.Expression) -> bool:
    return isinstance(expr, ast.FunctionCall) and expr.name in AGGREGATE_FUNCTIONS


def contains_aggregate(expr: Optional[ast.Expression]) -> bool:
    return expr is not None and any(is_aggregate(node) for node in walk(expr))


def contains_subquery(expr: Optional[ast.Expression]) -> bool:
    return expr is not None and any(
        isinstance(node, (ast.Subquery, ast.InSubquery, ast.Exists)) for node in walk(expr)
    )


def column_refs(expr: Optional[ast.Expression]) -> List[ast.ColumnRef]:
    if expr is None:
        return []
    return [node for node in walk(expr) if isinstance(node, ast.ColumnRef)]


def conjuncts(expr: Optional[ast.Expression]) -> List[ast.Expression]:
    """Split a predicate on top-level AND."""
    if expr is None:
        return []
    if isinstance(expr, ast.BinaryOp) and expr.op == 'AND':
        return conjuncts(expr.left) + conjuncts(expr.right)
    return [expr]


def render(expr: ast.Expression) -> str:
    """SQL text for an expression, used for result column labels and EXPLAIN."""
    if isinstance(expr, ast.Literal):
        value = expr.value
        if value is None:
            return 'NULL'
        if isinstance(value, bool):
            return 'TRUE' if value else 'FALSE'
        if isinstance(value, str):
            return "'" + value.replace("'", "''") + "'"
        if isinstance(value, date):
            return f"DATE '{value.isoformat()}'"
        return str(value)
    if isinstance(expr, ast.ColumnRef):
        return f"{expr.table}.{expr.name}" if expr.table else expr.name
    if isinstance(expr, ast.Star):
        return f"{expr.table}.*" if expr.table else '*'
    if isinstance(expr, ast.UnaryOp):
        if expr.op == 'NOT':
            return f"NOT {_render_operand(expr.operand)}"
        return f"{expr.op}{_render_operand(expr.operand)}"
    if isinstance(expr, ast.BinaryOp):
        return f"{_render_operand(expr.left)} {expr.op} {_render_operand(expr.right)}"
    if isinstance(expr, ast.FunctionCall):
        if expr.star:
            return f"{expr.name}(*)"
        args = ', '.join(render(arg) for arg in expr.args)
        return f"{expr.name}({'DISTINCT ' if expr.distinct else ''}{args})"
    if isinstance(expr, ast.IsNull):
        return f"{render(expr.operand)} IS {'NOT ' if expr.negated else ''}NULL"
    if isinstance(expr, ast.InList):
        items = ', '.join(render(item) for item in expr.items)
        return f"{render(expr.operand)} {'NOT ' if expr.negated else ''}IN ({items})"
    if isinstance(expr, ast.Between):
        return (f"{render(expr.operand)} {'NOT ' if expr.negated else ''}BETWEEN "
                f"{render(expr.low)} AND {render(expr.high)}")
    if isinstance(expr, ast.Like):
        return f"{render(expr.operand)} {'NOT ' if expr.negated else ''}LIKE {render(expr.pattern)}"
    if isinstance(expr, ast.Case):
        parts = ['CASE']
        for condition, result in expr.whens:
            parts.append(f"WHEN {render(condition)} THEN {render(result)}")
        if expr.else_result is not None:
            parts.append(f"ELSE {render(expr.else_result)}")
        parts.append('END')
        return ' '.join(parts)
    if isinstance(expr, ast.Cast):
        return f"CAST({render(expr.operand)} AS {expr.dtype.value})"
    if isinstance(expr, ast.Subquery):
        return '(subquery)'
    if isinstance(expr, ast.InSubquery):
        return f"{render(expr.operand)} {'NOT ' if expr.negated else ''}IN (subquery)"
    if isinstance(expr, ast.Exists):
        return 'EXISTS (subquery)'
    return type(expr).__name__


def _render_operand(expr: ast.Expression) -> str:
    text = render(expr)
    if isinstance(expr, (ast.BinaryOp, ast.Between, ast.Like, ast.InList, ast.IsNull)):
        return f"({text})"
    return text


# ----------------------------------------------------------------------
# Value operations
# ----------------------------------------------------------------------

def _align(left: Any, right: Any) -> Tuple[Any, Any]:
    """Bring two non-NULL values into a comparable form."""
    left_kind, right_kind = value_category(left), value_category(right)
    if left_kind == right_kind:
        return left, right
    try:
        if left_kind == 'date' and right_kind == 'text':
            return left, date.fromisoformat(right)
        if left_kind == 'text' and right_kind == 'date':
            return date.fromisoformat(left), right
    except ValueError:
        pass
    raise TypeMismatchError(f"Cannot compare {left_kind} {left!r} with {right_kind} {right!r}")


def compare_values(op: str, left: Any, right: Any) -> Optional[bool]:
    if left is None or right is None:
        return None
    left, right = _align(left, right)
    if op == '=':
        return left == right
    if op == '<>':
        return left != right
    if op == '<':
        return left < right
    if op == '<=':
        return left <= right
    if op == '>':
        return left > right
    if op == '>=':
        return left >= right
    raise ValueError(f"Unknown comparison operator {op}")


def sort_key_compare(left: Any, right: Any) -> int:
    """Three-way comparison of two non-NULL values."""
    left, right = _align(left, right)
    return (left > right) - (left < right)


def _truncating_divmod(left: int, right: int) -> Tuple[int, int]:
    quotient = abs(left) // abs(right)
    if (left < 0) != (right < 0):
        quotient = -quotient
    return quotient, left - right * quotient


def arithmetic(op: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if not is_number(left) or not is_number(right):
        raise TypeMismatchError(
            f"Operator {op} needs numeric operands, got {value_category(left)} and {value_category(right)}"
        )
    if op == '+':
        return left + right
    if op == '-':
        return left - right
    if op == '*':
        return left * right
    if right == 0:
        raise DivisionByZeroError("Division by zero")
    if op == '/':
        if isinstance(left, int) and isinstance(right, int):
            return _truncating_divmod(left, right)[0]
        return Decimal(left) / Decimal(right)
    if op == '%':
        if isinstance(left, int) and isinstance(right, int):
            return _truncating_divmod(left, right)[1]
        return Decimal(left) % Decimal(right)
    raise ValueError(f"Unknown arithmetic operator {op}")


def to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _require_boolean(value: Any, context: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    raise TypeMismatchError(f"Argument of {context} must be boolean, not {value_category(value)}")


@lru_cache(maxsize=256)
def _like_regex(pattern: str) -> 're.Pattern':
    parts = []
    for char in pattern:
        if char == '%':
            parts.append('.*')
        elif char == '_':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.DOTALL)


def like_match(value: str, pattern: str) -> bool:
    return _like_regex(pattern).fullmatch(value) is not None


def _in_values(operand: Any, candidates: Sequence[Any]) -> Optional[bool]:
    if operand is None:
        return None
    saw_null = False
    for candidate in candidates:
        result = compare_values('=', operand, candidate)
        if result is True:
            return True
        if result is None:
            saw_null = True
    return None if saw_null else False


def _negate(value: Optional[bool], negated: bool) -> Optional[bool]:
    if not negated or value is None:
        return value
    return not value


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------

SubqueryRunner = Callable[[ast.Select], Tuple[List[str], List[Row]]]


class ExpressionEvaluator:
    """Evaluates expressions against rows of a given scope.

    In aggregate context `group` holds the rows of the current group and
    `row` is a representative row used for grouping columns.
    """

    def __init__(self, scope: Scope, subquery_runner: Optional[SubqueryRunner] = None):
        self.scope = scope
        self.subquery_runner = subquery_runner

    def is_true(self, expr: ast.Expression, row: Row, group: Optional[List[Row]] = None) -> bool:
        return self.evaluate(expr, row, group) is True

    def evaluate(self, expr: ast.Expression, row: Row, group: Optional[List[Row]] = None) -> Any:
        if isinstance(expr, ast.Literal):
            return expr.value

        if isinstance(expr, ast.ColumnRef):
            return row[self.scope.resolve(expr)]

        if isinstance(expr, ast.BinaryOp):
            op = expr.op
            if op == 'AND':
                left = _require_boolean(self.evaluate(expr.left, row, group), 'AND')
                if left is False:
                    return False
                right = _require_boolean(self.evaluate(expr.right, row, group), 'AND')
                if right is False:
                    return False
                return None if left is None or right is None else True
            if op == 'OR':
                left = _require_boolean(self.evaluate(expr.left, row, group), 'OR')
                if left is True:
                    return True
                right = _require_boolean(self.evaluate(expr.right, row, group), 'OR')
                if right is True:
                    return True
                return None if left is None or right is None else False

            left = self.evaluate(expr.left, row, group)
            right = self.evaluate(expr.right, row, group)
            if op == '||':
                if left is None or right is None:
                    return None
                return to_text(left) + to_text(right)
            if op in ('+', '-', '*', '/', '%'):
                return arithmetic(op, left, right)
            return compare_values(op, left, right)

        if isinstance(expr, ast.UnaryOp):
            value = self.evaluate(expr.operand, row, group)
            if expr.op == 'NOT':
                value = _require_boolean(value, 'NOT')
                return None if value is None else not value
            if value is None:
                return None
            if not is_number(value):
                raise TypeMismatchError(f"Unary {expr.op} needs a numeric operand, got {value_category(value)}")
            return -value if expr.op == '-' else value

        if isinstance(expr, ast.FunctionCall):
            if expr.name in AGGREGATE_FUNCTIONS:
                if group is None:
                    raise InvalidAggregateUsageError(f"Aggregate {render(expr)} is not allowed here")
                return self._aggregate(expr, group)
            return self._scalar_function(expr, [self.evaluate(arg, row, group) for arg in expr.args])

        if isinstance(expr, ast.IsNull):
            value = self.evaluate(expr.operand, row, group)
            return (value is not None) if expr.negated else (value is None)

        if isinstance(expr, ast.InList):
            operand = self.evaluate(expr.operand, row, group)
            items = [self.evaluate(item, row, group) for item in expr.items]
            return _negate(_in_values(operand, items), expr.negated)

        if isinstance(expr, ast.Between):
            value = self.evaluate(expr.operand, row, group)
            low = compare_values('>=', value, self.evaluate(expr.low, row, group))
            high = compare_values('<=', value, self.evaluate(expr.high, row, group))
            if low is False or high is False:
                result = False
            elif low is None or high is None:
                result = None
            else:
                result = True
            return _negate(result, expr.negated)

        if isinstance(expr, ast.Like):
            value = self.evaluate(expr.operand, row, group)
            pattern = self.evaluate(expr.pattern, row, group)
            if value is None or pattern is None:
                return None
            if not isinstance(value, str) or not isinstance(pattern, str):
                raise TypeMismatchError("LIKE needs text operands")
            return _negate(like_match(value, pattern), expr.negated)

        if isinstance(expr, ast.Case):
            for condition, result in expr.whens:
                if self.evaluate(condition, row, group) is True:
                    return self.evaluate(result, row, group)
            if expr.else_result is not None:
                return self.evaluate(expr.else_result, row, group)
            return None

        if isinstance(expr, ast.Cast):
            return cast_value(expr.dtype, self.evaluate(expr.operand, row, group))

        if isinstance(expr, ast.Subquery):
            columns, rows = self._run_subquery(expr.query)
            if len(columns) != 1:
                raise CardinalityError("Subquery must return exactly one column")
            if len(rows) > 1:
                raise CardinalityError("More than one row returned by a subquery used as an expression")
            return rows[0][0] if rows else None

        if isinstance(expr, ast.InSubquery):
            columns, rows = self._run_subquery(expr.query)
            if len(columns) != 1:
                raise CardinalityError("Subquery has too many columns")
            operand = self.evaluate(expr.operand, row, group)
            return _negate(_in_values(operand, [r[0] for r in rows]), expr.negated)

        if isinstance(expr, ast.Exists):
            _, rows = self._run_subquery(expr.query)
            return bool(rows) != expr.negated

        if isinstance(expr, ast.Star):
            raise InvalidDefinitionError("'*' is only allowed in the SELECT list or COUNT(*)")

        raise TypeError(f"Cannot evaluate {type(expr).__name__}")

    def _run_subquery(self, query: ast.Select):
        if self.subquery_runner is None:
            raise InvalidDefinitionError("Subqueries are not allowed here")
        return self.subquery_runner(query)

    def _aggregate(self, call: ast.FunctionCall, group: List[Row]) -> Any:
        if call.star:
            return len(group)

        values = []
        for member in group:
            value = self.evaluate(call.args[0], member)
            if value is not None:
                values.append(value)

        if call.distinct:
            unique = []
            seen = set()
            for value in values:
                if value not in seen:
                    seen.add(value)
                    unique.append(value)
            values = unique

        if call.name == 'COUNT':
            return len(values)
        if not values:
            return None

        if call.name in ('SUM', 'AVG'):
            if not all(is_number(v) for v in values):
                raise TypeMismatchError(f"{call.name} needs numeric input")
            total = sum(values)
            if call.name == 'SUM':
                return total
            return Decimal(total) / Decimal(len(values))

        best = values[0]
        for value in values[1:]:
            order = sort_key_compare(value, best)
            if (call.name == 'MIN' and order < 0) or (call.name == 'MAX' and order > 0):
                best = value
        return best

    def _scalar_function(self, call: ast.FunctionCall, args: List[Any]) -> Any:
        name = call.name
        if name == 'COALESCE':
            return next((arg for arg in args if arg is not None), None)

        if args[0] is None:
            return None
        value = args[0]

        if name in ('UPPER', 'LOWER', 'LENGTH'):
            if not isinstance(value, str):
                raise TypeMismatchError(f"{name} needs a text argument")
            if name == 'UPPER':
                return value.upper()
            if name == 'LOWER':
                return value.lower()
            return len(value)

        if not is_number(value):
            raise TypeMismatchError(f"{name} needs a numeric argument")
        if name == 'ABS':
            return abs(value)
        if name == 'ROUND':
            digits = args[1] if len(args) > 1 else 0
            if digits is None:
                return None
            if not is_number(digits) or abs(digits) > MAX_ROUND_DIGITS or digits != int(digits):
                raise TypeMismatchError("ROUND needs an integer number of digits")
            digits = int(digits)
            if isinstance(value, int) and digits >= 0:
                return value
            try:
                return Decimal(value).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
            except InvalidOperation:
                raise TypeMismatchError(f"Cannot round {value} to {digits} digit(s)") from None
        raise ValueError(f"Unknown function {name}")
