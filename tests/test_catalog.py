import pytest

from sqlengine.catalog import (
    CheckConstraint, ForeignKey, IndexDef, PrimaryKey, ReferentialAction,
    TableSchema, UniqueConstraint,
)
from sqlengine.errors import (
    DependentObjectError, DuplicateIndexError, DuplicateTableError,
    InvalidDefinitionError, UniqueViolationError, UnknownColumnError,
    UnknownIndexError, UnknownTableError,
)
from sqlengine.types import Column, DataType


def _users():
    return TableSchema(
        'users',
        [Column('id', DataType.INT), Column('email', DataType.TEXT), Column('age', DataType.INT)],
        [PrimaryKey(['id']), UniqueConstraint(['email'])],
    )


def test_define_table_creates_implicit_indexes(catalog):
    schema = catalog.define_table(_users())
    assert [index.name for index in schema.indexes] == ['users_pkey', 'users_email_key']
    assert all(index.unique for index in schema.indexes)
    assert schema.indexes[0].constraint == 'users_pkey'
    assert catalog.has_index('USERS_PKEY')
    assert not schema.get_column('id').nullable


def test_lookup_is_case_insensitive(catalog):
    catalog.define_table(_users())
    assert catalog.lookup_table('USERS').name == 'users'
    position, column = catalog.lookup_column('Users', 'EMAIL')
    assert position == 1
    assert column.name == 'email'


def test_lookup_failures(catalog):
    catalog.define_table(_users())
    with pytest.raises(UnknownTableError):
        catalog.lookup_table('nope')
    with pytest.raises(UnknownColumnError):
        catalog.lookup_column('users', 'nope')
    with pytest.raises(UnknownIndexError):
        catalog.lookup_index('nope')


def test_duplicate_table_rejected(catalog):
    catalog.define_table(_users())
    with pytest.raises(DuplicateTableError):
        catalog.define_table(_users())


def test_invalid_table_definitions(catalog):
    with pytest.raises(InvalidDefinitionError):
        catalog.define_table(TableSchema('t', [Column('a', DataType.INT), Column('A', DataType.TEXT)]))
    with pytest.raises(InvalidDefinitionError):
        catalog.define_table(TableSchema('t', [Column('a', DataType.INT)], [PrimaryKey(['a']), PrimaryKey(['a'])]))
    with pytest.raises(UnknownColumnError):
        catalog.define_table(TableSchema('t', [Column('a', DataType.INT)], [UniqueConstraint(['b'])]))
    assert not catalog.has_table('t')


def test_foreign_key_defaults_to_primary_key(catalog):
    catalog.define_table(_users())
    fk = ForeignKey(['user_id'], 'USERS', [], ReferentialAction.CASCADE)
    orders = catalog.define_table(TableSchema('orders', [Column('user_id', DataType.INT)], [fk]))
    assert orders.foreign_keys[0].ref_columns == ['id']
    assert orders.foreign_keys[0].ref_table == 'users'
    assert orders.foreign_keys[0].name == 'orders_user_id_fkey'
    assert catalog.referencing_foreign_keys('users') == [(orders, fk)]


def test_foreign_key_must_target_a_key(catalog):
    catalog.define_table(_users())
    with pytest.raises(InvalidDefinitionError):
        catalog.define_table(TableSchema(
            'orders', [Column('age', DataType.INT)], [ForeignKey(['age'], 'users', ['age'])]
        ))
    with pytest.raises(UnknownTableError):
        catalog.define_table(TableSchema(
            'orders', [Column('x', DataType.INT)], [ForeignKey(['x'], 'missing', ['id'])]
        ))


def test_self_referencing_foreign_key(catalog):
    schema = catalog.define_table(TableSchema(
        'nodes',
        [Column('id', DataType.INT), Column('parent', DataType.INT)],
        [PrimaryKey(['id']), ForeignKey(['parent'], 'nodes', [])],
    ))
    assert schema.foreign_keys[0].ref_columns == ['id']


def test_check_constraints_are_named(catalog):
    schema = catalog.define_table(TableSchema(
        'accounts', [Column('balance', DataType.DECIMAL)], [CheckConstraint(None, text='balance >= 0')]
    ))
    assert schema.checks[0].name == 'accounts_check1'


def test_drop_table_cascades_indexes(catalog):
    catalog.define_table(_users())
    catalog.define_index(IndexDef('idx_age', 'users', [('age', 'ASC')]))
    catalog.drop_table('users')
    assert not catalog.has_table('users')
    assert catalog.list_indexes() == []


def test_drop_table_if_exists(catalog):
    assert catalog.drop_table('ghost', if_exists=True) is None
    with pytest.raises(UnknownTableError):
        catalog.drop_table('ghost')


def test_drop_referenced_table_fails(catalog):
    catalog.define_table(_users())
    catalog.define_table(TableSchema(
        'orders', [Column('user_id', DataType.INT)], [ForeignKey(['user_id'], 'users', [])]
    ))
    with pytest.raises(DependentObjectError):
        catalog.drop_table('users')
    catalog.drop_table('orders')
    catalog.drop_table('users')


def test_define_index_validation(catalog):
    catalog.define_table(_users())
    with pytest.raises(UnknownColumnError):
        catalog.define_index(IndexDef('idx', 'users', [('missing', 'ASC')]))
    with pytest.raises(DuplicateIndexError):
        catalog.define_index(IndexDef('users_pkey', 'users', [('age', 'ASC')]))
    with pytest.raises(UnknownTableError):
        catalog.define_index(IndexDef('idx', 'ghost', [('a', 'ASC')]))


def test_unique_index_checks_existing_rows(catalog):
    catalog.define_table(_users())
    rows = [(1, 'a', 30), (2, 'b', 30)]
    with pytest.raises(UniqueViolationError):
        catalog.define_index(IndexDef('uq_age', 'users', [('age', 'ASC')], unique=True), rows)
    assert not catalog.has_index('uq_age')

    # NULL keys never collide
    catalog.define_index(IndexDef('uq_age', 'users', [('age', 'ASC')], unique=True), [(1, 'a', None), (2, 'b', None)])
    assert catalog.has_index('uq_age')


def test_drop_index(catalog):
    catalog.define_table(_users())
    catalog.define_index(IndexDef('idx_age', 'users', [('age', 'ASC')]))
    catalog.drop_index('IDX_AGE')
    assert [index.name for index in catalog.lookup_table('users').indexes] == ['users_pkey', 'users_email_key']
    assert catalog.drop_index('idx_age', if_exists=True) is None
    with pytest.raises(UnknownIndexError):
        catalog.drop_index('idx_age')


def test_constraint_index_cannot_be_dropped(catalog):
    catalog.define_table(_users())
    with pytest.raises(DependentObjectError):
        catalog.drop_index('users_pkey')


def test_add_column(catalog):
    catalog.define_table(_users())
    assert catalog.add_column('users', Column('active', DataType.BOOL)) == 3
    with pytest.raises(InvalidDefinitionError):
        catalog.add_column('users', Column('ACTIVE', DataType.BOOL))


def test_implicit_index_names_must_be_unique(catalog):
    twice = TableSchema(
        't', [Column('a', DataType.INT)], [UniqueConstraint(['a']), UniqueConstraint(['a'])],
    )
    with pytest.raises(DuplicateIndexError):
        catalog.define_table(twice)
    assert not catalog.has_table('t')
    assert not catalog.has_index('t_a_key')

    catalog.define_table(_users())
    clash = TableSchema(
        'other', [Column('x', DataType.INT)], [UniqueConstraint(['x'], name='users_pkey')],
    )
    with pytest.raises(DuplicateIndexError):
        catalog.define_table(clash)
    assert not catalog.has_table('other')
    assert catalog.lookup_index('users_pkey').table_name == 'users'
