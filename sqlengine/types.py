"""
Core data types, value coercion and the in-memory index structure.
"""

import math
from bisect import bisect_left, bisect_right, insort
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .errors import TypeMismatchError


RowId = int
Row = Tuple[Any, ...]


class DataType(Enum):
    """Supported SQL data types."""
    INT = "INT"
    DECIMAL = "DECIMAL"
    TEXT = "TEXT"
    DATE = "DATE"
    BOOL = "BOOLEAN"

    @classmethod
    def from_name(cls, name: str) -> 'DataType':
        """Resolve a type name (including common aliases) to a DataType."""
        try:
            return _TYPE_ALIASES[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown data type '{name}'") from None


_TYPE_ALIASES = {
    'INT': DataType.INT,
    'INTEGER': DataType.INT,
    'SMALLINT': DataType.INT,
    'BIGINT': DataType.INT,
    'DECIMAL': DataType.DECIMAL,
    'NUMERIC': DataType.DECIMAL,
    'REAL': DataType.DECIMAL,
    'FLOAT': DataType.DECIMAL,
    'DOUBLE': DataType.DECIMAL,
    'TEXT': DataType.TEXT,
    'VARCHAR': DataType.TEXT,
    'CHAR': DataType.TEXT,
    'STRING': DataType.TEXT,
    'DATE': DataType.DATE,
    'BOOL': DataType.BOOL,
    'BOOLEAN': DataType.BOOL,
}


def is_number(value: Any) -> bool:
    return isinstance(value, (int, Decimal)) and not isinstance(value, bool)


def value_category(value: Any) -> str:
    """Comparison family of a non-NULL value."""
    if isinstance(value, bool):
        return 'boolean'
    if is_number(value):
        return 'number'
    if isinstance(value, str):
        return 'text'
    if isinstance(value, date):
        return 'date'
    return type(value).__name__


def coerce_value(dtype: DataType, value: Any, column: str = '?') -> Any:
    """Convert value to the Python representation of dtype.

    Raises TypeMismatchError when the value cannot be stored in a column
    of that type. NULL passes through unchanged.
    """
    if value is None:
        return None

    if dtype == DataType.INT:
        if isinstance(value, bool):
            pass
        elif isinstance(value, int):
            return value
        elif isinstance(value, Decimal) and value == value.to_integral_value():
            return int(value)
    elif dtype == DataType.DECIMAL:
        if isinstance(value, bool):
            pass
        elif isinstance(value, Decimal):
            if value.is_finite():
                return value
        elif isinstance(value, int):
            return Decimal(value)
        elif isinstance(value, float):
            if math.isfinite(value):
                return Decimal(str(value))
    elif dtype == DataType.TEXT:
        if isinstance(value, str):
            return value
    elif dtype == DataType.DATE:
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value)
            except ValueError:
                pass
    elif dtype == DataType.BOOL:
        if isinstance(value, bool):
            return value

    raise TypeMismatchError(
        f"Invalid value {value!r} for column '{column}'. Expected {dtype.value}"
    )


def cast_value(dtype: DataType, value: Any) -> Any:
    """Explicit CAST: more permissive than column coercion."""
    if value is None:
        return None
    try:
        if dtype == DataType.TEXT:
            if isinstance(value, bool):
                return 'true' if value else 'false'
            return str(value)
        if dtype == DataType.INT and isinstance(value, str):
            return int(value.strip())
        if dtype == DataType.INT and isinstance(value, Decimal):
            return int(value)
        if dtype == DataType.DECIMAL and isinstance(value, str):
            value = Decimal(value.strip())
        if dtype == DataType.BOOL and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ('true', 't', 'yes', '1'):
                return True
            if lowered in ('false', 'f', 'no', '0'):
                return False
        if dtype == DataType.BOOL and is_number(value):
            return value != 0
    except (ValueError, InvalidOperation):
        raise TypeMismatchError(f"Cannot cast {value!r} to {dtype.value}") from None
    return coerce_value(dtype, value, column='CAST')


@dataclass
class Column:
    """Represents a table column definition."""
    name: str
    dtype: DataType
    nullable: bool = True
    default: Any = None  # expression node, evaluated at insert time

    def validate_value(self, value: Any) -> Any:
        """Coerce a value to the column's data type."""
        return coerce_value(self.dtype, value, self.name)

    def __str__(self):
        text = f"{self.name} {self.dtype.value}"
        if not self.nullable:
            text += " NOT NULL"
        return text


class Index:
    """Hash index over one or more columns, with ordered keys for range scans.

    Maps key tuples to the set of row ids holding that key. Keys containing
    a NULL component are never stored.
    """

    def __init__(self, name: str, positions: Sequence[int], is_unique: bool = False):
        self.name = name
        self.positions = tuple(positions)
        self.is_unique = is_unique
        self._index: Dict[tuple, Set[RowId]] = {}
        self._sorted_keys: List[tuple] = []

    def key_for(self, row: Row) -> Optional[tuple]:
        """Extract the key tuple of a row, or None if any component is NULL."""
        key = tuple(row[pos] for pos in self.positions)
        if any(part is None for part in key):
            return None
        return key

    def insert(self, key: Optional[tuple], row_id: RowId):
        """Insert a key into the index."""
        if key is None:
            return  # Don't index NULL values

        if key not in self._index:
            insort(self._sorted_keys, key)
            self._index[key] = set()
        self._index[key].add(row_id)

    def delete(self, key: Optional[tuple], row_id: RowId):
        """Remove a key from the index."""
        if key is None or key not in self._index:
            return
        self._index[key].discard(row_id)
        if not self._index[key]:
            del self._index[key]
            pos = bisect_left(self._sorted_keys, key)
            del self._sorted_keys[pos]

    def search(self, key: tuple) -> Set[RowId]:
        """Find row ids for a given key."""
        return set(self._index.get(tuple(key), ()))

    def range_search(self, low: Any = None, high: Any = None,
                     low_inclusive: bool = True, high_inclusive: bool = True) -> Set[RowId]:
        """Find row ids whose single-column key lies within [low, high]."""
        if len(self.positions) != 1:
            raise ValueError(f"Range scans need a single-column index, '{self.name}' has {len(self.positions)}")

        if low is None:
            start = 0
        elif low_inclusive:
            start = bisect_left(self._sorted_keys, (low,))
        else:
            start = bisect_right(self._sorted_keys, (low,))

        if high is None:
            stop = len(self._sorted_keys)
        elif high_inclusive:
            stop = bisect_right(self._sorted_keys, (high,))
        else:
            stop = bisect_left(self._sorted_keys, (high,))

        result: Set[RowId] = set()
        for key in self._sorted_keys[start:stop]:
            result.update(self._index[key])
        return result

    def conflicts(self, key: Optional[tuple], exclude_row_id: Optional[RowId] = None) -> bool:
        """Check whether inserting key would violate uniqueness."""
        if key is None or key not in self._index:
            return False
        return bool(self._index[key] - {exclude_row_id})

    def has_value(self, key: tuple) -> bool:
        """Check if key exists in index."""
        return tuple(key) in self._index

    def __len__(self):
        return sum(len(ids) for ids in self._index.values())
