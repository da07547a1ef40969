"""
Statement tree produced by the parser.

Nodes are immutable and compare structurally, which lets the planner match
a SELECT-list expression against a GROUP BY expression with ==.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from .types import DataType


# ---------- Expressions ----------

class Expression:
    """Base class for expression nodes."""


@dataclass(frozen=True)
class Literal(Expression):
    value: Any


@dataclass(frozen=True)
class ColumnRef(Expression):
    name: str
    table: Optional[str] = None


@dataclass(frozen=True)
class Star(Expression):
    """`*` or `table.*` in a projection list."""
    table: Optional[str] = None


@dataclass(frozen=True)
class UnaryOp(Expression):
    op: str  # '-', '+', 'NOT'
    operand: Expression


@dataclass(frozen=True)
class BinaryOp(Expression):
    op: str  # arithmetic, comparison, '||', 'AND', 'OR'
    left: Expression
    right: Expression


@dataclass(frozen=True)
class FunctionCall(Expression):
    name: str  # upper-cased
    args: Tuple[Expression, ...] = ()
    distinct: bool = False
    star: bool = False  # COUNT(*)


@dataclass(frozen=True)
class IsNull(Expression):
    operand: Expression
    negated: bool = False


@dataclass(frozen=True)
class InList(Expression):
    operand: Expression
    items: Tuple[Expression, ...]
    negated: bool = False


@dataclass(frozen=True)
class Between(Expression):
    operand: Expression
    low: Expression
    high: Expression
    negated: bool = False


@dataclass(frozen=True)
class Like(Expression):
    operand: Expression
    pattern: Expression
    negated: bool = False


@dataclass(frozen=True)
class Case(Expression):
    whens: Tuple[Tuple[Expression, Expression], ...]
    else_result: Optional[Expression] = None


@dataclass(frozen=True)
class Cast(Expression):
    operand: Expression
    dtype: DataType


@dataclass(frozen=True)
class Subquery(Expression):
    """Scalar subquery: (SELECT ...)."""
    query: 'Select'


@dataclass(frozen=True)
class InSubquery(Expression):
    operand: Expression
    query: 'Select'
    negated: bool = False


@dataclass(frozen=True)
class Exists(Expression):
    query: 'Select'
    negated: bool = False


# ---------- Query pieces ----------

class JoinKind(Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"
    CROSS = "CROSS"


@dataclass(frozen=True)
class SelectItem:
    expr: Expression
    alias: Optional[str] = None


@dataclass(frozen=True)
class TableRef:
    name: str
    alias: Optional[str] = None

    @property
    def binding(self) -> str:
        return self.alias or self.name


@dataclass(frozen=True)
class Join:
    kind: JoinKind
    table: TableRef
    condition: Optional[Expression] = None


@dataclass(frozen=True)
class OrderItem:
    expr: Expression
    descending: bool = False


# ---------- Statements ----------

class Statement:
    """Base class marker for all statements."""


@dataclass(frozen=True)
class Select(Statement):
    items: Tuple[SelectItem, ...]
    from_table: Optional[TableRef] = None
    joins: Tuple[Join, ...] = ()
    where: Optional[Expression] = None
    group_by: Tuple[Expression, ...] = ()
    having: Optional[Expression] = None
    order_by: Tuple[OrderItem, ...] = ()
    distinct: bool = False
    limit: Optional[Expression] = None
    offset: Optional[Expression] = None


@dataclass(frozen=True)
class Insert(Statement):
    table: str
    columns: Optional[Tuple[str, ...]] = None
    rows: Tuple[Tuple[Expression, ...], ...] = ()
    query: Optional[Select] = None


@dataclass(frozen=True)
class Update(Statement):
    table: str
    assignments: Tuple[Tuple[str, Expression], ...]
    where: Optional[Expression] = None


@dataclass(frozen=True)
class Delete(Statement):
    table: str
    where: Optional[Expression] = None


@dataclass(frozen=True)
class ForeignKeyClause:
    columns: Tuple[str, ...]
    ref_table: str
    ref_columns: Tuple[str, ...] = ()
    on_delete: str = "NO ACTION"
    name: Optional[str] = None


@dataclass(frozen=True)
class PrimaryKeyClause:
    columns: Tuple[str, ...]
    name: Optional[str] = None


@dataclass(frozen=True)
class UniqueClause:
    columns: Tuple[str, ...]
    name: Optional[str] = None


@dataclass(frozen=True)
class CheckClause:
    expr: Expression
    name: Optional[str] = None
    text: str = ''


@dataclass(frozen=True)
class ColumnDefNode:
    name: str
    dtype: DataType
    not_null: bool = False
    primary_key: bool = False
    unique: bool = False
    default: Optional[Expression] = None
    checks: Tuple[CheckClause, ...] = ()
    references: Optional[ForeignKeyClause] = None


@dataclass(frozen=True)
class CreateTable(Statement):
    name: str
    columns: Tuple[ColumnDefNode, ...]
    constraints: Tuple[Any, ...] = ()
    if_not_exists: bool = False


@dataclass(frozen=True)
class CreateIndex(Statement):
    name: str
    table: str
    columns: Tuple[Tuple[str, str], ...]  # (column, 'ASC' | 'DESC')
    unique: bool = False
    if_not_exists: bool = False


@dataclass(frozen=True)
class DropTable(Statement):
    name: str
    if_exists: bool = False


@dataclass(frozen=True)
class DropIndex(Statement):
    name: str
    if_exists: bool = False


@dataclass(frozen=True)
class AlterTableAddColumn(Statement):
    table: str
    column: ColumnDefNode


@dataclass(frozen=True)
class Explain(Statement):
    statement: Select
