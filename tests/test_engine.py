from decimal import Decimal

import pytest

from sqlengine import DatabaseEngine
from sqlengine.errors import (
    ConstraintViolationError, ErrorKind, ForeignKeyViolationError, SQLSyntaxError,
    TypeMismatchError, UniqueViolationError, UnknownTableError,
)
from sqlengine.results import Ack, Affected, Rows
from sqlengine.settings import EngineSettings


def _index_sizes(engine, table):
    return {name: len(index) for name, index in engine.storage.table(table).indexes.items()}


def test_insert_read_round_trip(engine):
    engine.execute("CREATE TABLE items (id INT PRIMARY KEY, label TEXT, price DECIMAL, added DATE, ok BOOLEAN)")
    rows = [
        (1, 'one', Decimal('1.50'), None, True),
        (2, "it's", Decimal(0), None, False),
        (3, None, None, None, None),
    ]
    engine.execute(
        "INSERT INTO items VALUES (1, 'one', 1.50, NULL, TRUE), (2, 'it''s', 0, NULL, FALSE), "
        "(3, NULL, NULL, NULL, NULL)"
    )
    for row in rows:
        assert engine.execute(f"SELECT * FROM items WHERE id = {row[0]}").rows == [row]


def test_constraint_violation_changes_nothing(engine):
    engine.execute("CREATE TABLE users (id INT PRIMARY KEY, email TEXT UNIQUE, age INT CHECK (age > 0))")
    engine.execute("INSERT INTO users VALUES (1, 'a@x', 30)")
    before = (len(engine.storage.table('users')), _index_sizes(engine, 'users'))

    for sql in [
        "INSERT INTO users VALUES (2, 'b@x', 20), (3, 'a@x', 40)",
        "INSERT INTO users VALUES (2, 'b@x', 20), (3, 'c@x', -1)",
        "INSERT INTO users VALUES (2, 'b@x', 20), (NULL, 'c@x', 1)",
    ]:
        with pytest.raises(ConstraintViolationError):
            engine.execute(sql)
        assert (len(engine.storage.table('users')), _index_sizes(engine, 'users')) == before


def test_where_group_having_order(engine):
    engine.execute_script("""
        CREATE TABLE t (dept TEXT, sal INT);
        INSERT INTO t VALUES ('A', 10), ('A', 90), ('B', 50);
    """)
    result = engine.execute("SELECT dept, AVG(sal) FROM t WHERE sal > 5 GROUP BY dept HAVING AVG(sal) > 40")
    assert set(result.rows) == {('A', 50), ('B', 50)}


def test_index_and_scan_agree_after_changes(engine):
    engine.execute_script("""
        CREATE TABLE nums (id INT PRIMARY KEY, n INT, tag TEXT);
        INSERT INTO nums VALUES (1, 5, 'a'), (2, 3, 'b'), (3, 5, NULL), (4, NULL, 'a'), (5, 9, 'c');
    """)

    def compare(predicate):
        indexed = engine.execute(f"SELECT * FROM nums WHERE {predicate}").rows
        scanned = engine.execute(f"SELECT * FROM nums WHERE ({predicate}) OR FALSE").rows
        assert indexed == scanned, predicate

    predicates = ["n = 5", "n > 3", "n <= 5", "n BETWEEN 4 AND 9", "id = 2 AND n = 3", "tag = 'a'"]
    for predicate in predicates:
        compare(predicate)

    engine.execute("CREATE INDEX idx_n ON nums (n)")
    engine.execute("CREATE INDEX idx_tag_n ON nums (tag, n)")
    engine.execute("UPDATE nums SET n = 7 WHERE id = 2")
    engine.execute("DELETE FROM nums WHERE id = 5")
    engine.execute("INSERT INTO nums VALUES (6, 5, 'a')")
    for predicate in predicates + ["tag = 'a' AND n = 5"]:
        compare(predicate)


def test_update_keeps_index_consistent(engine):
    engine.execute_script("""
        CREATE TABLE t (id INT PRIMARY KEY, k TEXT);
        CREATE INDEX idx_k ON t (k);
        INSERT INTO t VALUES (1, 'old'), (2, 'other');
        UPDATE t SET k = 'new' WHERE id = 1;
    """)
    assert engine.storage.index_lookup('t', 'idx_k', ('new',)) == {1}
    assert engine.storage.index_lookup('t', 'idx_k', ('old',)) == set()
    assert engine.execute("SELECT id FROM t WHERE k = 'new'").rows == [(1,)]
    assert engine.execute("SELECT id FROM t WHERE k = 'old'").rows == []


def test_delete_of_referenced_row_leaves_tables_unchanged(engine):
    engine.execute_script("""
        CREATE TABLE parent (id INT PRIMARY KEY);
        CREATE TABLE child (id INT PRIMARY KEY, parent_id INT REFERENCES parent (id));
        INSERT INTO parent VALUES (1), (2);
        INSERT INTO child VALUES (1, 1);
    """)
    with pytest.raises(ForeignKeyViolationError):
        engine.execute("DELETE FROM parent")
    assert engine.execute("SELECT * FROM parent").rows == [(1,), (2,)]
    assert engine.execute("SELECT * FROM child").rows == [(1, 1)]


def test_employees_grouping_scenario(engine):
    results = engine.execute_script("""
        CREATE TABLE employees(id INT PRIMARY KEY, dept TEXT, salary DECIMAL);
        INSERT INTO employees VALUES (1,'Sales',50000),(2,'Sales',70000),(3,'HR',40000);
        SELECT dept, COUNT(*) AS c FROM employees GROUP BY dept HAVING COUNT(*) >= 2 ORDER BY dept;
    """)
    assert isinstance(results[0], Ack)
    assert results[1] == Affected(3)
    assert results[2].columns == ['dept', 'c']
    assert results[2].rows == [('Sales', 2)]


def test_execute_script_stops_at_first_error(engine):
    with pytest.raises(UniqueViolationError):
        engine.execute_script("""
            CREATE TABLE t (id INT PRIMARY KEY);
            INSERT INTO t VALUES (1);
            INSERT INTO t VALUES (1);
            INSERT INTO t VALUES (2);
        """)
    assert engine.execute("SELECT * FROM t").rows == [(1,)]


def test_script_with_syntax_error_runs_nothing(engine):
    with pytest.raises(SQLSyntaxError):
        engine.execute_script("CREATE TABLE t (id INT); SELEC 1;")
    assert engine.list_tables() == []


def test_execute_accepts_trailing_semicolon(engine):
    assert isinstance(engine.execute("SELECT 1;"), Rows)


def test_errors_carry_a_kind(engine):
    with pytest.raises(UnknownTableError) as exc:
        engine.execute("SELECT * FROM nowhere")
    assert exc.value.kind == ErrorKind.UNKNOWN_TABLE
    assert exc.value.to_dict() == {'kind': 'UnknownTableError', 'message': str(exc.value)}


def test_get_table_info(company):
    company.execute("CREATE INDEX idx_salary ON employees (salary)")
    info = company.get_table_info('EMPLOYEES')
    assert info['name'] == 'employees'
    assert info['row_count'] == 5
    assert info['schema'][0] == {
        'name': 'id', 'type': 'INT', 'nullable': False, 'default': None, 'is_primary': True,
    }
    assert info['schema'][3]['type'] == 'DECIMAL'
    assert info['constraints'] == [
        'PRIMARY KEY (id)',
        'FOREIGN KEY (dept_id) REFERENCES departments (id) ON DELETE NO ACTION',
        'CHECK (salary >= 0)',
    ]
    assert info['indexes'] == [
        {'name': 'employees_pkey', 'columns': ['id'], 'unique': True},
        {'name': 'idx_salary', 'columns': ['salary'], 'unique': False},
    ]
    with pytest.raises(UnknownTableError):
        company.get_table_info('ghost')


def test_statement_length_limit():
    engine = DatabaseEngine(EngineSettings(_env_file=None, max_sql_length=20))
    engine.execute("SELECT 1")
    with pytest.raises(SQLSyntaxError):
        engine.execute("SELECT 1 + 1 + 1 + 1 + 1 + 1")


def test_results_serialize_to_json_ready_dicts(company):
    data = company.execute("SELECT name, salary, hired FROM employees WHERE id = 1").to_dict()
    assert data['kind'] == 'rows'
    assert data['columns'] == ['name', 'salary', 'hired']
    assert data['rows'] == [['Alice', 50000, '2020-01-15']]
    assert company.execute("DELETE FROM employees WHERE id = 4").to_dict()['count'] == 1


@pytest.mark.parametrize("literal", ["'NaN'", "'Infinity'", "'-inf'", "'sNaN'"])
def test_non_finite_decimals_are_rejected(engine, literal):
    engine.execute("CREATE TABLE t (id INT PRIMARY KEY, v DECIMAL UNIQUE)")
    engine.execute("INSERT INTO t VALUES (1, 2.5)")
    before = (len(engine.storage.table('t')), _index_sizes(engine, 't'))

    with pytest.raises(TypeMismatchError):
        engine.execute(f"INSERT INTO t VALUES (2, CAST({literal} AS DECIMAL))")
    with pytest.raises(TypeMismatchError):
        engine.execute(f"UPDATE t SET v = CAST({literal} AS DECIMAL)")
    assert (len(engine.storage.table('t')), _index_sizes(engine, 't')) == before
    assert engine.execute("SELECT v FROM t WHERE v = 2.5").rows == [(Decimal('2.5'),)]
