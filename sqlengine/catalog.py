"""
Catalog System - Manages database metadata (tables, columns, constraints, indexes)

The catalog stores:
- Table schemas (columns, types, constraints)
- Index definitions, including the implicit ones backing PRIMARY KEY and UNIQUE

Names are matched case-insensitively; the declared spelling is kept for display.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import (
    DependentObjectError, DuplicateIndexError, DuplicateTableError,
    InvalidDefinitionError, UniqueViolationError, UnknownColumnError,
    UnknownIndexError, UnknownTableError,
)
from .types import Column

logger = logging.getLogger(__name__)


class ReferentialAction(Enum):
    """ON DELETE behaviour of a foreign key."""
    NO_ACTION = "NO ACTION"
    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"


@dataclass
class PrimaryKey:
    columns: List[str]
    name: Optional[str] = None

    def __str__(self):
        return f"PRIMARY KEY ({', '.join(self.columns)})"


@dataclass
class UniqueConstraint:
    columns: List[str]
    name: Optional[str] = None

    def __str__(self):
        return f"UNIQUE ({', '.join(self.columns)})"


@dataclass
class ForeignKey:
    columns: List[str]
    ref_table: str
    ref_columns: List[str]
    on_delete: ReferentialAction = ReferentialAction.NO_ACTION
    name: Optional[str] = None

    def __str__(self):
        return (f"FOREIGN KEY ({', '.join(self.columns)}) REFERENCES {self.ref_table} "
                f"({', '.join(self.ref_columns)}) ON DELETE {self.on_delete.value}")


@dataclass
class CheckConstraint:
    expression: Any  # expression node
    name: Optional[str] = None
    text: str = ''

    def __str__(self):
        return f"CHECK ({self.text})"


Constraint = Union[PrimaryKey, UniqueConstraint, ForeignKey, CheckConstraint]


@dataclass
class IndexDef:
    """Index metadata"""
    name: str
    table_name: str
    columns: List[Tuple[str, str]]  # (column name, 'ASC' | 'DESC')
    unique: bool = False
    constraint: Optional[str] = None  # name of the PK/UNIQUE constraint it backs

    @property
    def column_names(self) -> List[str]:
        return [name for name, _ in self.columns]


@dataclass
class TableSchema:
    """Table metadata - schema definition"""
    name: str
    columns: List[Column]
    constraints: List[Constraint] = field(default_factory=list)
    indexes: List[IndexDef] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    @property
    def primary_key(self) -> Optional[PrimaryKey]:
        return next((c for c in self.constraints if isinstance(c, PrimaryKey)), None)

    @property
    def unique_constraints(self) -> List[Union[PrimaryKey, UniqueConstraint]]:
        return [c for c in self.constraints if isinstance(c, (PrimaryKey, UniqueConstraint))]

    @property
    def foreign_keys(self) -> List[ForeignKey]:
        return [c for c in self.constraints if isinstance(c, ForeignKey)]

    @property
    def checks(self) -> List[CheckConstraint]:
        return [c for c in self.constraints if isinstance(c, CheckConstraint)]

    def get_column(self, name: str) -> Optional[Column]:
        """Get column by name"""
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None

    def get_column_index(self, name: str) -> int:
        """Get column position by name"""
        lowered = name.lower()
        for i, col in enumerate(self.columns):
            if col.name.lower() == lowered:
                return i
        raise UnknownColumnError(f"Column '{name}' does not exist in table '{self.name}'")

    def get_index(self, name: str) -> Optional[IndexDef]:
        lowered = name.lower()
        return next((idx for idx in self.indexes if idx.name.lower() == lowered), None)


def _same_columns(left: Iterable[str], right: Iterable[str]) -> bool:
    return [c.lower() for c in left] == [c.lower() for c in right]


class Catalog:
    """System catalog - manages all database metadata"""

    def __init__(self):
        self.tables: Dict[str, TableSchema] = {}
        self.indexes: Dict[str, IndexDef] = {}

    def define_table(self, schema: TableSchema) -> TableSchema:
        """Register a new table and the indexes implied by its key constraints."""
        key = schema.name.lower()
        if key in self.tables:
            raise DuplicateTableError(f"Table '{schema.name}' already exists")

        self._validate_table(schema)

        implicit = self._implicit_indexes(schema)
        names = set()
        for index in implicit:
            if index.name.lower() in self.indexes or index.name.lower() in names:
                raise DuplicateIndexError(f"Index '{index.name}' already exists")
            names.add(index.name.lower())

        schema.indexes = list(implicit)
        self.tables[key] = schema
        for index in implicit:
            self.indexes[index.name.lower()] = index

        logger.info("Defined table %s with %d column(s)", schema.name, len(schema.columns))
        return schema

    def _validate_table(self, schema: TableSchema):
        seen = set()
        for col in schema.columns:
            if col.name.lower() in seen:
                raise InvalidDefinitionError(
                    f"Column '{col.name}' specified more than once in table '{schema.name}'"
                )
            seen.add(col.name.lower())

        primary_keys = [c for c in schema.constraints if isinstance(c, PrimaryKey)]
        if len(primary_keys) > 1:
            raise InvalidDefinitionError(f"Multiple primary keys for table '{schema.name}' are not allowed")

        for constraint in schema.constraints:
            if isinstance(constraint, (PrimaryKey, UniqueConstraint, ForeignKey)):
                for col_name in constraint.columns:
                    if not schema.get_column(col_name):
                        raise UnknownColumnError(
                            f"Column '{col_name}' named in {constraint} does not exist in table '{schema.name}'"
                        )

        for pk in primary_keys:
            for col_name in pk.columns:
                schema.get_column(col_name).nullable = False

        for fk in schema.foreign_keys:
            self._validate_foreign_key(schema, fk)

    def _validate_foreign_key(self, schema: TableSchema, fk: ForeignKey):
        if fk.ref_table.lower() == schema.name.lower():
            target = schema
        else:
            target = self.lookup_table(fk.ref_table)

        if not fk.ref_columns:
            if target.primary_key is None:
                raise InvalidDefinitionError(
                    f"Table '{target.name}' has no primary key for {fk.columns} to reference"
                )
            fk.ref_columns = list(target.primary_key.columns)

        if len(fk.ref_columns) != len(fk.columns):
            raise InvalidDefinitionError(
                f"Foreign key {fk.columns} and referenced columns {fk.ref_columns} differ in length"
            )

        for col_name in fk.ref_columns:
            if not target.get_column(col_name):
                raise UnknownColumnError(
                    f"Referenced column '{col_name}' does not exist in table '{target.name}'"
                )

        if not any(_same_columns(c.columns, fk.ref_columns) for c in target.unique_constraints):
            raise InvalidDefinitionError(
                f"There is no PRIMARY KEY or UNIQUE constraint on {target.name}({', '.join(fk.ref_columns)})"
            )
        fk.ref_table = target.name

    def _implicit_indexes(self, schema: TableSchema) -> List[IndexDef]:
        indexes = []
        for constraint in schema.unique_constraints:
            if constraint.name is None:
                if isinstance(constraint, PrimaryKey):
                    constraint.name = f"{schema.name}_pkey"
                else:
                    constraint.name = f"{schema.name}_{'_'.join(constraint.columns)}_key"
            indexes.append(IndexDef(
                name=constraint.name,
                table_name=schema.name,
                columns=[(col, 'ASC') for col in constraint.columns],
                unique=True,
                constraint=constraint.name,
            ))

        for constraint in schema.foreign_keys:
            if constraint.name is None:
                constraint.name = f"{schema.name}_{'_'.join(constraint.columns)}_fkey"
        for i, constraint in enumerate(schema.checks, start=1):
            if constraint.name is None:
                constraint.name = f"{schema.name}_check{i}"
        return indexes

    def drop_table(self, table_name: str, if_exists: bool = False) -> Optional[TableSchema]:
        """Remove table and all its indexes"""
        key = table_name.lower()
        if key not in self.tables:
            if if_exists:
                return None
            raise UnknownTableError(f"Table '{table_name}' does not exist")

        schema = self.tables[key]
        dependents = [
            other.name for other, fk in self.referencing_foreign_keys(schema.name)
            if other.name.lower() != key
        ]
        if dependents:
            raise DependentObjectError(
                f"Cannot drop table '{schema.name}' because table(s) {', '.join(sorted(set(dependents)))} "
                f"reference it"
            )

        for index in schema.indexes:
            del self.indexes[index.name.lower()]
        del self.tables[key]

        logger.info("Dropped table %s", schema.name)
        return schema

    def define_index(self, index: IndexDef, rows: Iterable[tuple] = ()) -> IndexDef:
        """Register a new index, validating existing rows if it is unique."""
        schema = self.lookup_table(index.table_name)

        if index.name.lower() in self.indexes:
            raise DuplicateIndexError(f"Index '{index.name}' already exists")

        positions = [self.lookup_column(schema.name, col)[0] for col in index.column_names]

        if index.unique:
            seen = set()
            for row in rows:
                key = tuple(row[pos] for pos in positions)
                if any(part is None for part in key):
                    continue
                if key in seen:
                    raise UniqueViolationError(
                        f"Could not create unique index '{index.name}': key {key} is duplicated",
                        constraint=index.name,
                    )
                seen.add(key)

        index.table_name = schema.name
        schema.indexes.append(index)
        self.indexes[index.name.lower()] = index

        logger.info("Defined index %s on %s(%s)", index.name, schema.name, ', '.join(index.column_names))
        return index

    def drop_index(self, index_name: str, if_exists: bool = False) -> Optional[IndexDef]:
        key = index_name.lower()
        if key not in self.indexes:
            if if_exists:
                return None
            raise UnknownIndexError(f"Index '{index_name}' does not exist")

        index = self.indexes[key]
        if index.constraint is not None:
            raise DependentObjectError(
                f"Cannot drop index '{index.name}' because constraint '{index.constraint}' "
                f"on table '{index.table_name}' requires it"
            )

        schema = self.lookup_table(index.table_name)
        schema.indexes = [idx for idx in schema.indexes if idx.name.lower() != key]
        del self.indexes[key]

        logger.info("Dropped index %s", index.name)
        return index

    def add_column(self, table_name: str, column: Column) -> int:
        """Append a column to a table; returns its position."""
        schema = self.lookup_table(table_name)
        if schema.get_column(column.name):
            raise InvalidDefinitionError(
                f"Column '{column.name}' already exists in table '{schema.name}'"
            )
        schema.columns.append(column)
        logger.info("Added column %s to table %s", column.name, schema.name)
        return len(schema.columns) - 1

    def lookup_table(self, table_name: str) -> TableSchema:
        """Retrieve table schema"""
        try:
            return self.tables[table_name.lower()]
        except KeyError:
            raise UnknownTableError(f"Table '{table_name}' does not exist") from None

    def lookup_column(self, table_name: str, column_name: str) -> Tuple[int, Column]:
        """Retrieve a column's position and definition"""
        schema = self.lookup_table(table_name)
        position = schema.get_column_index(column_name)
        return position, schema.columns[position]

    def lookup_index(self, index_name: str) -> IndexDef:
        try:
            return self.indexes[index_name.lower()]
        except KeyError:
            raise UnknownIndexError(f"Index '{index_name}' does not exist") from None

    def has_table(self, table_name: str) -> bool:
        return table_name.lower() in self.tables

    def has_index(self, index_name: str) -> bool:
        return index_name.lower() in self.indexes

    def referencing_foreign_keys(self, table_name: str) -> List[Tuple[TableSchema, ForeignKey]]:
        """All (table, foreign key) pairs whose foreign key points at table_name."""
        lowered = table_name.lower()
        return [
            (schema, fk)
            for schema in self.tables.values()
            for fk in schema.foreign_keys
            if fk.ref_table.lower() == lowered
        ]

    def list_tables(self) -> List[str]:
        """List all table names"""
        return [schema.name for schema in self.tables.values()]

    def list_indexes(self) -> List[str]:
        """List all index names"""
        return [index.name for index in self.indexes.values()]
