"""
Typed errors raised by the engine.

Every failure carries a stable ErrorKind tag and a human-readable message.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Stable error tags exposed to callers."""
    SYNTAX = "SyntaxError"
    UNKNOWN_TABLE = "UnknownTableError"
    UNKNOWN_COLUMN = "UnknownColumnError"
    UNKNOWN_INDEX = "UnknownIndexError"
    UNKNOWN_FUNCTION = "UnknownFunctionError"
    AMBIGUOUS_COLUMN = "AmbiguousColumnError"
    DUPLICATE_ALIAS = "DuplicateAliasError"
    CONSTRAINT_VIOLATION = "ConstraintViolationError"
    NOT_NULL_VIOLATION = "NotNullViolationError"
    CHECK_VIOLATION = "CheckViolationError"
    UNIQUE_VIOLATION = "UniqueViolationError"
    FOREIGN_KEY_VIOLATION = "ForeignKeyViolationError"
    DUPLICATE_TABLE = "DuplicateTableError"
    DUPLICATE_INDEX = "DuplicateIndexError"
    DEPENDENT_OBJECT = "DependentObjectError"
    INVALID_DEFINITION = "InvalidDefinitionError"
    INVALID_AGGREGATE_USAGE = "InvalidAggregateUsageError"
    TYPE_MISMATCH = "TypeMismatchError"
    DIVISION_BY_ZERO = "DivisionByZeroError"
    COLUMN_COUNT_MISMATCH = "ColumnCountMismatchError"
    CARDINALITY = "CardinalityError"


class DatabaseError(Exception):
    """Base class for every error raised by the engine."""

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message

    def to_dict(self):
        return {'kind': self.kind.value, 'message': self.message}


class SQLSyntaxError(DatabaseError, SyntaxError):
    """Malformed statement text."""

    kind = ErrorKind.SYNTAX

    def __init__(self, message: str, token: Any = None, position: Optional[int] = None,
                 line: Optional[int] = None, column: Optional[int] = None):
        if position is not None and line is not None:
            message = f"{message} at line {line}, column {column}"
        super().__init__(message)
        self.token = token
        self.position = position
        self.line = line
        self.column = column


class UnknownTableError(DatabaseError):
    kind = ErrorKind.UNKNOWN_TABLE


class UnknownColumnError(DatabaseError):
    kind = ErrorKind.UNKNOWN_COLUMN


class UnknownIndexError(DatabaseError):
    kind = ErrorKind.UNKNOWN_INDEX


class UnknownFunctionError(DatabaseError):
    kind = ErrorKind.UNKNOWN_FUNCTION


class AmbiguousColumnError(DatabaseError):
    kind = ErrorKind.AMBIGUOUS_COLUMN


class DuplicateAliasError(DatabaseError):
    kind = ErrorKind.DUPLICATE_ALIAS


class ConstraintViolationError(DatabaseError):
    """A row failed a table constraint; carries the constraint name."""

    kind = ErrorKind.CONSTRAINT_VIOLATION

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint

    def to_dict(self):
        data = super().to_dict()
        data['constraint'] = self.constraint
        return data


class NotNullViolationError(ConstraintViolationError):
    kind = ErrorKind.NOT_NULL_VIOLATION


class CheckViolationError(ConstraintViolationError):
    kind = ErrorKind.CHECK_VIOLATION


class UniqueViolationError(ConstraintViolationError):
    kind = ErrorKind.UNIQUE_VIOLATION


class ForeignKeyViolationError(ConstraintViolationError):
    kind = ErrorKind.FOREIGN_KEY_VIOLATION


class DuplicateTableError(DatabaseError):
    kind = ErrorKind.DUPLICATE_TABLE


class DuplicateIndexError(DatabaseError):
    kind = ErrorKind.DUPLICATE_INDEX


class DependentObjectError(DatabaseError):
    kind = ErrorKind.DEPENDENT_OBJECT


class InvalidDefinitionError(DatabaseError):
    kind = ErrorKind.INVALID_DEFINITION


class InvalidAggregateUsageError(DatabaseError):
    kind = ErrorKind.INVALID_AGGREGATE_USAGE


class TypeMismatchError(DatabaseError):
    kind = ErrorKind.TYPE_MISMATCH


class DivisionByZeroError(DatabaseError):
    kind = ErrorKind.DIVISION_BY_ZERO


class ColumnCountMismatchError(DatabaseError):
    kind = ErrorKind.COLUMN_COUNT_MISMATCH


class CardinalityError(DatabaseError):
    kind = ErrorKind.CARDINALITY
