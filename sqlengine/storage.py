"""
In-memory row storage for tables and their indexes.

Every mutation entry point validates completely before touching any row or
index, so a failed insert/update/delete leaves no trace. Mutations made
inside Storage.statement() are journaled and undone if the statement fails.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .catalog import Catalog, ForeignKey, IndexDef, ReferentialAction, TableSchema
from .errors import (
    CheckViolationError, ColumnCountMismatchError, ForeignKeyViolationError,
    NotNullViolationError, UniqueViolationError, UnknownColumnError,
    UnknownIndexError, UnknownTableError,
)
from .expressions import ExpressionEvaluator, Scope
from .types import Column, Index, Row, RowId

logger = logging.getLogger(__name__)


class TableSnapshot:
    """Restartable point-in-time view of a table's rows, in RowId order."""

    def __init__(self, items: List[Tuple[RowId, Row]]):
        self._items = items

    def __iter__(self) -> Iterator[Tuple[RowId, Row]]:
        for item in self._items:
            yield item

    def __len__(self):
        return len(self._items)

    def row_ids(self) -> List[RowId]:
        return [row_id for row_id, _ in self._items]

    def rows(self) -> List[Row]:
        return [row for _, row in self._items]


class TableStore:
    """Rows and index structures of one table.

    The underscore methods mutate without validation; Storage calls them only
    after all constraints have been checked, and to undo journaled changes.
    """

    def __init__(self, schema: TableSchema):
        self.schema = schema
        self._rows: Dict[RowId, Row] = {}
        self._next_row_id = 1
        self.indexes: Dict[str, Index] = {}
        for index_def in schema.indexes:
            self.add_index(index_def)

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def key(self) -> str:
        return self.schema.name.lower()

    def __len__(self):
        return len(self._rows)

    def __contains__(self, row_id: RowId):
        return row_id in self._rows

    def get(self, row_id: RowId) -> Row:
        return self._rows[row_id]

    def scan(self) -> TableSnapshot:
        return TableSnapshot(sorted(self._rows.items()))

    def rows(self) -> List[Row]:
        return [row for _, row in sorted(self._rows.items())]

    def allocate_row_id(self) -> RowId:
        """Row ids are never reused, even after deletion."""
        row_id = self._next_row_id
        self._next_row_id += 1
        return row_id

    def get_index(self, index_name: str) -> Index:
        try:
            return self.indexes[index_name.lower()]
        except KeyError:
            raise UnknownIndexError(f"Index '{index_name}' does not exist on table '{self.name}'") from None

    def find_index(self, positions: Sequence[int]) -> Optional[Index]:
        """An index over exactly these column positions, preferring unique ones."""
        positions = tuple(positions)
        matches = [idx for idx in self.indexes.values() if idx.positions == positions]
        matches.sort(key=lambda idx: not idx.is_unique)
        return matches[0] if matches else None

    def index_lookup(self, index_name: str, key: Sequence[Any]) -> Set[RowId]:
        return self.get_index(index_name).search(tuple(key))

    def index_range(self, index_name: str, low: Any = None, high: Any = None,
                    low_inclusive: bool = True, high_inclusive: bool = True) -> Set[RowId]:
        return self.get_index(index_name).range_search(low, high, low_inclusive, high_inclusive)

    def add_index(self, index_def: IndexDef) -> Index:
        positions = [self.schema.get_column_index(name) for name in index_def.column_names]
        index = Index(index_def.name, positions, is_unique=index_def.unique)
        for row_id, row in self._rows.items():
            index.insert(index.key_for(row), row_id)
        self.indexes[index_def.name.lower()] = index
        return index

    def drop_index(self, index_name: str):
        self.indexes.pop(index_name.lower(), None)

    def extend_rows(self, value: Any):
        """Append a value to every row after a column was added."""
        for row_id, row in self._rows.items():
            self._rows[row_id] = row + (value,)

    def _index_row(self, row_id: RowId, row: Row):
        """Add row to every index; on failure the indexes are left as they were."""
        done = []
        try:
            for index in self.indexes.values():
                index.insert(index.key_for(row), row_id)
                done.append(index)
        except Exception:
            for index in done:
                index.delete(index.key_for(row), row_id)
            raise

    def _unindex_row(self, row_id: RowId, row: Row):
        for index in self.indexes.values():
            index.delete(index.key_for(row), row_id)

    def _put(self, row_id: RowId, row: Row):
        self._index_row(row_id, row)
        self._rows[row_id] = row

    def _remove(self, row_id: RowId) -> Row:
        row = self._rows.pop(row_id)
        self._unindex_row(row_id, row)
        return row

    def _replace(self, row_id: RowId, row: Row) -> Row:
        old = self._rows[row_id]
        self._unindex_row(row_id, old)
        try:
            self._index_row(row_id, row)
        except Exception:
            self._index_row(row_id, old)
            raise
        self._rows[row_id] = row
        return old


class Storage:
    """Owns the row stores of every table and enforces constraints across them."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self.tables: Dict[str, TableStore] = {}
        self._journal: Optional[List[Callable[[], None]]] = None

    # ------------------------------------------------------------------
    # Table and index lifecycle
    # ------------------------------------------------------------------

    def create_table(self, schema: TableSchema) -> TableStore:
        store = TableStore(schema)
        self.tables[store.key] = store
        return store

    def drop_table(self, table_name: str):
        self.tables.pop(table_name.lower(), None)

    def table(self, table_name: str) -> TableStore:
        try:
            return self.tables[table_name.lower()]
        except KeyError:
            raise UnknownTableError(f"Table '{table_name}' does not exist") from None

    def create_index(self, index_def: IndexDef) -> Index:
        return self.table(index_def.table_name).add_index(index_def)

    def drop_index(self, index_def: IndexDef):
        self.table(index_def.table_name).drop_index(index_def.name)

    def add_column(self, table_name: str, column: Column):
        """Add a column to the table, filling existing rows with its default."""
        store = self.table(table_name)
        value = column.validate_value(self._default_for(column))
        if value is None and not column.nullable and len(store):
            raise NotNullViolationError(
                f"Column '{column.name}' of table '{store.name}' contains null values",
                constraint=f"{store.name}_{column.name}_not_null",
            )
        self.catalog.add_column(store.name, column)
        store.extend_rows(value)

    # ------------------------------------------------------------------
    # Statement journal
    # ------------------------------------------------------------------

    @contextmanager
    def statement(self):
        """Run a block atomically: on error every row mutation is undone."""
        if self._journal is not None:
            yield
            return

        journal = self._journal = []
        try:
            yield
        except Exception:
            for undo in reversed(journal):
                undo()
            if journal:
                logger.debug("Rolled back %d change(s)", len(journal))
            raise
        finally:
            self._journal = None

    def _record(self, undo: Callable[[], None]):
        if self._journal is not None:
            self._journal.append(undo)

    def _apply_insert(self, store: TableStore, row_id: RowId, row: Row):
        store._put(row_id, row)
        self._record(lambda: store._remove(row_id))

    def _apply_delete(self, store: TableStore, row_id: RowId):
        old = store._remove(row_id)
        self._record(lambda: store._put(row_id, old))

    def _apply_replace(self, store: TableStore, row_id: RowId, row: Row):
        old = store._replace(row_id, row)
        self._record(lambda: store._replace(row_id, old))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def scan(self, table_name: str) -> TableSnapshot:
        return self.table(table_name).scan()

    def index_lookup(self, table_name: str, index_name: str, key: Sequence[Any]) -> Set[RowId]:
        return self.table(table_name).index_lookup(index_name, key)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, table_name: str, values: Union[Mapping[str, Any], Sequence[Any]]) -> RowId:
        """Insert a row given as a full sequence or as a column-name mapping.

        Columns missing from a mapping receive their default value.
        """
        store = self.table(table_name)
        row = self.build_row(store, values)
        self._check_row(store, row)

        row_id = store.allocate_row_id()
        self._apply_insert(store, row_id, row)
        return row_id

    def update(self, table_name: str, row_id: RowId, changes: Mapping[str, Any]) -> Row:
        """Replace some column values of a row, re-validating every constraint."""
        store = self.table(table_name)
        schema = store.schema
        old = store.get(row_id)

        new = list(old)
        for name, value in changes.items():
            position = schema.get_column_index(name)
            new[position] = schema.columns[position].validate_value(value)
        new_row = tuple(new)

        self._check_row(store, new_row, exclude_row_id=row_id)
        self._check_referenced_keys(store, old, new_row)
        self._apply_replace(store, row_id, new_row)
        return new_row

    def delete(self, table_name: str, row_id: RowId) -> int:
        return self.delete_rows(table_name, [row_id])

    def delete_rows(self, table_name: str, row_ids: Sequence[RowId]) -> int:
        """Delete rows, applying ON DELETE actions of referencing foreign keys.

        Rows deleted together never count as referencing each other.
        """
        store = self.table(table_name)
        doomed: Dict[str, Set[RowId]] = {store.key: set(row_ids)}
        nullify: Dict[Tuple[str, RowId], Set[int]] = {}
        pending = [(store, row_id) for row_id in sorted(row_ids)]

        while pending:
            parent, row_id = pending.pop(0)
            row = parent.get(row_id)
            for child_schema, fk in self.catalog.referencing_foreign_keys(parent.name):
                key = tuple(row[parent.schema.get_column_index(col)] for col in fk.ref_columns)
                if any(part is None for part in key):
                    continue
                child = self.table(child_schema.name)
                for child_id in self._referencing_rows(child, fk, key):
                    if child_id in doomed.get(child.key, ()):
                        continue
                    if fk.on_delete == ReferentialAction.CASCADE:
                        doomed.setdefault(child.key, set()).add(child_id)
                        pending.append((child, child_id))
                    elif fk.on_delete == ReferentialAction.SET_NULL:
                        positions = {child.schema.get_column_index(col) for col in fk.columns}
                        nullify.setdefault((child.key, child_id), set()).update(positions)
                    else:
                        raise ForeignKeyViolationError(
                            f"Delete on table '{parent.name}' violates foreign key constraint "
                            f"'{fk.name}': key {key} is still referenced from table '{child.name}'",
                            constraint=fk.name,
                        )

        replacements = []
        for (table_key, child_id), positions in nullify.items():
            if child_id in doomed.get(table_key, ()):
                continue
            child = self.tables[table_key]
            old = child.get(child_id)
            new_row = tuple(None if i in positions else value for i, value in enumerate(old))
            self._check_row(child, new_row, exclude_row_id=child_id)
            replacements.append((child, child_id, new_row))

        for child, child_id, new_row in replacements:
            self._apply_replace(child, child_id, new_row)
        for table_key, ids in doomed.items():
            target = self.tables[table_key]
            for row_id in sorted(ids):
                self._apply_delete(target, row_id)

        cascaded = sum(len(ids) for ids in doomed.values()) - len(row_ids)
        if cascaded or replacements:
            logger.debug("Delete on %s cascaded to %d row(s), nulled %d row(s)",
                         store.name, cascaded, len(replacements))
        return len(row_ids)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def build_row(self, store: TableStore, values: Union[Mapping[str, Any], Sequence[Any]]) -> Row:
        schema = store.schema
        if isinstance(values, Mapping):
            provided = {name.lower(): value for name, value in values.items()}
            known = {col.name.lower() for col in schema.columns}
            for name in provided:
                if name not in known:
                    raise UnknownColumnError(f"Column '{name}' does not exist in table '{schema.name}'")
            row = []
            for col in schema.columns:
                key = col.name.lower()
                value = provided[key] if key in provided else self._default_for(col)
                row.append(col.validate_value(value))
            return tuple(row)

        if len(values) != len(schema.columns):
            raise ColumnCountMismatchError(
                f"Table '{schema.name}' has {len(schema.columns)} columns but {len(values)} values were supplied"
            )
        return tuple(col.validate_value(value) for col, value in zip(schema.columns, values))

    def _default_for(self, column: Column) -> Any:
        if column.default is None:
            return None
        return ExpressionEvaluator(Scope()).evaluate(column.default, ())

    def _check_row(self, store: TableStore, row: Row, exclude_row_id: Optional[RowId] = None):
        schema = store.schema

        for col, value in zip(schema.columns, row):
            if value is None and not col.nullable:
                raise NotNullViolationError(
                    f"Null value in column '{col.name}' of table '{schema.name}' violates not-null constraint",
                    constraint=f"{schema.name}_{col.name}_not_null",
                )

        if schema.checks:
            evaluator = ExpressionEvaluator(Scope.for_table(schema.name, schema.column_names))
            for check in schema.checks:
                if evaluator.evaluate(check.expression, row) is False:
                    raise CheckViolationError(
                        f"Row violates check constraint '{check.name}' {check} on table '{schema.name}'",
                        constraint=check.name,
                    )

        for index in store.indexes.values():
            if index.is_unique:
                key = index.key_for(row)
                if index.conflicts(key, exclude_row_id):
                    raise UniqueViolationError(
                        f"Duplicate key {key} violates unique constraint '{index.name}' on table '{schema.name}'",
                        constraint=index.name,
                    )

        for fk in schema.foreign_keys:
            key = tuple(row[schema.get_column_index(col)] for col in fk.columns)
            if any(part is None for part in key):
                continue
            parent = self.table(fk.ref_table)
            if parent is store:
                own = tuple(row[schema.get_column_index(col)] for col in fk.ref_columns)
                if own == key:
                    continue
            positions = [parent.schema.get_column_index(col) for col in fk.ref_columns]
            index = parent.find_index(positions)
            if index is not None:
                found = bool(index.search(key) - ({exclude_row_id} if parent is store else set()))
            else:
                found = any(
                    tuple(other[p] for p in positions) == key
                    for other_id, other in parent.scan()
                    if not (parent is store and other_id == exclude_row_id)
                )
            if not found:
                raise ForeignKeyViolationError(
                    f"Key {key} of table '{schema.name}' is not present in table '{parent.name}' "
                    f"(foreign key constraint '{fk.name}')",
                    constraint=fk.name,
                )

    def _check_referenced_keys(self, store: TableStore, old: Row, new: Row):
        """An update may not change a key that other rows still reference."""
        schema = store.schema
        for child_schema, fk in self.catalog.referencing_foreign_keys(schema.name):
            positions = [schema.get_column_index(col) for col in fk.ref_columns]
            old_key = tuple(old[p] for p in positions)
            new_key = tuple(new[p] for p in positions)
            if old_key == new_key or any(part is None for part in old_key):
                continue
            child = self.table(child_schema.name)
            referencing = self._referencing_rows(child, fk, old_key)
            if child is store:
                # A self-reference from the row being updated moves with it
                referencing = [rid for rid in referencing if store.get(rid) != old]
            if referencing:
                raise ForeignKeyViolationError(
                    f"Update on table '{schema.name}' violates foreign key constraint '{fk.name}': "
                    f"key {old_key} is still referenced from table '{child.name}'",
                    constraint=fk.name,
                )

    def _referencing_rows(self, child: TableStore, fk: ForeignKey, key: tuple) -> List[RowId]:
        positions = [child.schema.get_column_index(col) for col in fk.columns]
        index = child.find_index(positions)
        if index is not None:
            return sorted(index.search(key))
        return [
            row_id for row_id, row in child.scan()
            if tuple(row[p] for p in positions) == key
        ]
