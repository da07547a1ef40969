from decimal import Decimal

import pytest

from sqlengine import ast_nodes as ast
from sqlengine.catalog import (
    CheckConstraint, ForeignKey, IndexDef, PrimaryKey, ReferentialAction,
    TableSchema, UniqueConstraint,
)
from sqlengine.errors import (
    CheckViolationError, ColumnCountMismatchError, ConstraintViolationError,
    ForeignKeyViolationError, NotNullViolationError, TypeMismatchError,
    UniqueViolationError, UnknownColumnError, UnknownTableError,
)
from sqlengine.types import Column, DataType


def _define(catalog, storage, schema):
    catalog.define_table(schema)
    return storage.create_table(schema)


@pytest.fixture
def items(catalog, storage):
    schema = TableSchema(
        'items',
        [
            Column('id', DataType.INT),
            Column('sku', DataType.TEXT),
            Column('price', DataType.DECIMAL, default=ast.Literal(1)),
            Column('qty', DataType.INT, nullable=False, default=ast.Literal(0)),
        ],
        [
            PrimaryKey(['id']),
            UniqueConstraint(['sku']),
            CheckConstraint(ast.BinaryOp('>=', ast.ColumnRef('qty'), ast.Literal(0)), text='qty >= 0'),
        ],
    )
    return _define(catalog, storage, schema)


def _index_sizes(store):
    return {name: len(index) for name, index in store.indexes.items()}


def test_insert_sequence_and_mapping(storage, items):
    first = storage.insert('items', [1, 'a', 5, 2])
    second = storage.insert('items', {'ID': 2, 'sku': 'b'})
    assert (first, second) == (1, 2)
    assert items.get(1) == (1, 'a', Decimal(5), 2)
    assert items.get(2) == (2, 'b', Decimal(1), 0)


def test_insert_validation_errors(storage, items):
    with pytest.raises(ColumnCountMismatchError):
        storage.insert('items', [1, 'a'])
    with pytest.raises(UnknownColumnError):
        storage.insert('items', {'id': 1, 'nope': 2})
    with pytest.raises(TypeMismatchError):
        storage.insert('items', [1, 'a', 'cheap', 1])
    with pytest.raises(UnknownTableError):
        storage.insert('ghost', [1])


def test_constraint_violations_leave_no_trace(storage, items):
    storage.insert('items', [1, 'a', 5, 2])
    before = (len(items), _index_sizes(items))

    with pytest.raises(UniqueViolationError) as exc:
        storage.insert('items', [1, 'b', 5, 2])
    assert exc.value.constraint == 'items_pkey'
    with pytest.raises(UniqueViolationError):
        storage.insert('items', [2, 'a', 5, 2])
    with pytest.raises(NotNullViolationError):
        storage.insert('items', [None, 'c', 5, 2])
    with pytest.raises(NotNullViolationError):
        storage.insert('items', [3, 'c', 5, None])
    with pytest.raises(CheckViolationError) as exc:
        storage.insert('items', [3, 'c', 5, -1])
    assert exc.value.constraint == 'items_check1'

    assert (len(items), _index_sizes(items)) == before


def test_all_violations_share_a_base_class(storage, items):
    storage.insert('items', [1, 'a', 5, 2])
    with pytest.raises(ConstraintViolationError):
        storage.insert('items', [1, 'a', 5, 2])


def test_null_unique_keys_do_not_conflict(storage, items):
    storage.insert('items', [1, None, 5, 1])
    storage.insert('items', [2, None, 5, 1])
    assert len(items) == 2


def test_row_ids_are_never_reused(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    storage.delete('items', 1)
    assert storage.insert('items', [1, 'a', 5, 1]) == 2


def test_update_repositions_indexes(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    storage.insert('items', [2, 'b', 5, 1])

    storage.update('items', 1, {'sku': 'z'})
    assert storage.index_lookup('items', 'items_sku_key', ('z',)) == {1}
    assert storage.index_lookup('items', 'items_sku_key', ('a',)) == set()

    # A row does not conflict with its own key
    storage.update('items', 1, {'sku': 'z', 'qty': 9})
    with pytest.raises(UniqueViolationError):
        storage.update('items', 1, {'sku': 'b'})
    assert items.get(1) == (1, 'z', Decimal(5), 9)


def test_scan_is_a_restartable_snapshot(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    storage.insert('items', [2, 'b', 5, 1])
    snapshot = storage.scan('items')
    storage.delete('items', 1)
    assert snapshot.row_ids() == [1, 2]
    assert list(snapshot) == list(snapshot)
    assert storage.scan('items').row_ids() == [2]


def test_index_range(storage, items, catalog):
    for i in range(1, 6):
        storage.insert('items', [i, f's{i}', i * 10, i])
    index = IndexDef('idx_price', 'items', [('price', 'ASC')])
    catalog.define_index(index, items.rows())
    storage.create_index(index)
    assert items.index_range('idx_price', Decimal(20), Decimal(40)) == {2, 3, 4}
    assert items.index_range('idx_price', Decimal(20), Decimal(40), low_inclusive=False) == {3, 4}
    assert items.index_range('idx_price', high=Decimal(20), high_inclusive=False) == {1}


def test_statement_journal_rolls_back(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    with pytest.raises(UniqueViolationError):
        with storage.statement():
            storage.insert('items', [2, 'b', 5, 1])
            storage.update('items', 1, {'qty': 7})
            storage.delete('items', 2)
            storage.insert('items', [3, 'a', 5, 1])
    assert storage.scan('items').rows() == [(1, 'a', Decimal(5), 1)]
    assert _index_sizes(items) == {'items_pkey': 1, 'items_sku_key': 1}


@pytest.fixture
def parent_child(catalog, storage):
    def build(action):
        _define(catalog, storage, TableSchema(
            'parent', [Column('id', DataType.INT)], [PrimaryKey(['id'])]
        ))
        _define(catalog, storage, TableSchema(
            'child',
            [Column('id', DataType.INT), Column('parent_id', DataType.INT)],
            [PrimaryKey(['id']), ForeignKey(['parent_id'], 'parent', [], action)],
        ))
        storage.insert('parent', [1])
        storage.insert('parent', [2])
        storage.insert('child', [10, 1])
        storage.insert('child', [11, 1])
        storage.insert('child', [12, 2])
        return storage.table('parent'), storage.table('child')
    return build


def test_foreign_key_checked_on_insert(storage, parent_child):
    parent_child(ReferentialAction.NO_ACTION)
    with pytest.raises(ForeignKeyViolationError):
        storage.insert('child', [13, 99])
    storage.insert('child', [13, None])


def test_delete_referenced_row_is_rejected(storage, parent_child):
    parent, child = parent_child(ReferentialAction.RESTRICT)
    with pytest.raises(ForeignKeyViolationError):
        storage.delete('parent', 1)
    assert len(parent) == 2
    assert len(child) == 3


def test_delete_cascade(storage, parent_child):
    parent, child = parent_child(ReferentialAction.CASCADE)
    assert storage.delete('parent', 1) == 1
    assert parent.rows() == [(2,)]
    assert child.rows() == [(12, 2)]


def test_delete_set_null(storage, parent_child):
    parent, child = parent_child(ReferentialAction.SET_NULL)
    storage.delete('parent', 1)
    assert child.rows() == [(10, None), (11, None), (12, 2)]


def test_rows_deleted_together_do_not_block(catalog, storage):
    nodes = _define(catalog, storage, TableSchema(
        'nodes',
        [Column('id', DataType.INT), Column('parent', DataType.INT)],
        [PrimaryKey(['id']), ForeignKey(['parent'], 'nodes', [])],
    ))
    storage.insert('nodes', [1, None])
    storage.insert('nodes', [2, 1])
    with pytest.raises(ForeignKeyViolationError):
        storage.delete('nodes', 1)
    assert storage.delete_rows('nodes', [1, 2]) == 2
    assert len(nodes) == 0


def test_update_of_referenced_key_fails(storage, parent_child):
    parent, _ = parent_child(ReferentialAction.CASCADE)
    with pytest.raises(ForeignKeyViolationError):
        storage.update('parent', 1, {'id': 5})
    storage.insert('parent', [3])
    storage.update('parent', 3, {'id': 4})
    assert parent.rows()[-1] == (4,)


def test_add_column_fills_default(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    storage.add_column('items', Column('note', DataType.TEXT, default=ast.Literal('n/a')))
    assert items.get(1) == (1, 'a', Decimal(5), 1, 'n/a')


def test_add_not_null_column_without_default_fails(storage, items, catalog):
    storage.insert('items', [1, 'a', 5, 1])
    with pytest.raises(NotNullViolationError):
        storage.add_column('items', Column('note', DataType.TEXT, nullable=False))
    assert len(catalog.lookup_table('items').columns) == 4


def test_failed_index_write_leaves_no_trace(storage, items):
    storage.insert('items', [1, 'a', 5, 1])
    storage.insert('items', [2, 'b', 5, 1])
    before = _index_sizes(items)

    # An int sku cannot be ordered against the stored str key
    with pytest.raises(TypeError):
        items._put(99, (99, 5, Decimal(1), 1))
    assert 99 not in items
    assert _index_sizes(items) == before
    assert storage.index_lookup('items', 'items_pkey', (99,)) == set()

    with pytest.raises(TypeError):
        items._replace(1, (1, 5, Decimal(1), 1))
    assert items.get(1) == (1, 'a', Decimal(5), 1)
    assert _index_sizes(items) == before
    assert storage.index_lookup('items', 'items_sku_key', ('a',)) == {1}
