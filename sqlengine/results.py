"""
Statement results.

ExecutionResult is a tagged variant: Rows for queries, Affected for
INSERT/UPDATE/DELETE, Ack for DDL.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Tuple


class ExecutionResult:
    """Base class of statement results."""

    kind = ''

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class Rows(ExecutionResult):
    columns: List[str]
    rows: List[Tuple[Any, ...]] = field(default_factory=list)

    kind = 'rows'

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]

    def scalar(self) -> Any:
        """The single value of a one-row, one-column result."""
        if len(self.rows) != 1 or len(self.columns) != 1:
            raise ValueError(f"Expected a single value, got {len(self.rows)} row(s) of {len(self.columns)} column(s)")
        return self.rows[0][0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': 'OK',
            'kind': self.kind,
            'columns': list(self.columns),
            'rows': [[json_value(value) for value in row] for row in self.rows],
        }


@dataclass
class Affected(ExecutionResult):
    count: int

    kind = 'affected'

    def to_dict(self) -> Dict[str, Any]:
        return {'status': 'OK', 'kind': self.kind, 'count': self.count}


@dataclass
class Ack(ExecutionResult):
    message: str = 'OK'

    kind = 'ack'

    def to_dict(self) -> Dict[str, Any]:
        return {'status': 'OK', 'kind': self.kind, 'message': self.message}


def json_value(value: Any) -> Any:
    """Convert an engine value to a JSON-friendly one."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def format_value(value: Any) -> str:
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
