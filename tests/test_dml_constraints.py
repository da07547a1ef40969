from decimal import Decimal

import pytest

from sqlengine.errors import (
    CheckViolationError, ColumnCountMismatchError, DependentObjectError,
    DuplicateIndexError, DuplicateTableError, ForeignKeyViolationError,
    InvalidDefinitionError, NotNullViolationError, TypeMismatchError,
    UniqueViolationError, UnknownColumnError, UnknownTableError,
)
from sqlengine.results import Ack, Affected


def _rows(engine, sql):
    return engine.execute(sql).rows


def test_insert_reports_affected_rows(engine):
    engine.execute("CREATE TABLE t (a INT, b TEXT)")
    result = engine.execute("INSERT INTO t VALUES (1, 'x'), (2, 'y')")
    assert isinstance(result, Affected)
    assert result.count == 2


def test_insert_column_list_fills_defaults(engine):
    engine.execute("CREATE TABLE t (id INT PRIMARY KEY, status TEXT DEFAULT 'new', note TEXT)")
    engine.execute("INSERT INTO t (id) VALUES (1)")
    engine.execute("INSERT INTO t (note, ID) VALUES ('hi', 2)")
    assert _rows(engine, "SELECT * FROM t") == [(1, 'new', None), (2, 'new', 'hi')]


def test_insert_errors(engine):
    engine.execute("CREATE TABLE t (a INT NOT NULL, b TEXT)")
    with pytest.raises(ColumnCountMismatchError):
        engine.execute("INSERT INTO t VALUES (1)")
    with pytest.raises(ColumnCountMismatchError):
        engine.execute("INSERT INTO t (a) VALUES (1, 'x')")
    with pytest.raises(UnknownColumnError):
        engine.execute("INSERT INTO t (a, c) VALUES (1, 2)")
    with pytest.raises(InvalidDefinitionError):
        engine.execute("INSERT INTO t (a, A) VALUES (1, 2)")
    with pytest.raises(TypeMismatchError):
        engine.execute("INSERT INTO t VALUES ('one', 'x')")
    with pytest.raises(NotNullViolationError):
        engine.execute("INSERT INTO t (b) VALUES ('x')")
    with pytest.raises(UnknownTableError):
        engine.execute("INSERT INTO ghost VALUES (1)")


def test_insert_coerces_values(engine):
    engine.execute("CREATE TABLE t (n INT, d DECIMAL, day DATE)")
    engine.execute("INSERT INTO t VALUES (2.0, 3, '2024-02-29')")
    row = _rows(engine, "SELECT * FROM t")[0]
    assert row[0] == 2 and isinstance(row[0], int)
    assert row[1] == Decimal(3) and isinstance(row[1], Decimal)
    assert row[2].isoformat() == '2024-02-29'


def test_multi_row_insert_is_atomic(engine):
    engine.execute("CREATE TABLE t (id INT PRIMARY KEY)")
    with pytest.raises(UniqueViolationError):
        engine.execute("INSERT INTO t VALUES (1), (2), (1)")
    assert _rows(engine, "SELECT COUNT(*) FROM t") == [(0,)]


def test_insert_select(company):
    company.execute("CREATE TABLE archive (id INT, name TEXT)")
    result = company.execute("INSERT INTO archive SELECT id, name FROM employees WHERE dept_id = 1")
    assert result.count == 2
    assert _rows(company, "SELECT name FROM archive ORDER BY id") == [('Alice',), ('Bob',)]
    with pytest.raises(ColumnCountMismatchError):
        company.execute("INSERT INTO archive SELECT id FROM employees")


def test_update(company):
    result = company.execute("UPDATE employees SET salary = salary * 2 WHERE dept_id = 2")
    assert result.count == 2
    assert _rows(company, "SELECT id, salary FROM employees WHERE dept_id = 2") == [
        (3, Decimal(80000)), (5, None)
    ]
    assert company.execute("UPDATE employees SET name = 'x' WHERE id = 99").count == 0


def test_update_uses_values_from_before_the_statement(engine):
    engine.execute("CREATE TABLE t (a INT, b INT)")
    engine.execute("INSERT INTO t VALUES (1, 2)")
    engine.execute("UPDATE t SET a = b, b = a")
    assert _rows(engine, "SELECT a, b FROM t") == [(2, 1)]


def test_update_errors(company):
    with pytest.raises(UnknownColumnError):
        company.execute("UPDATE employees SET ghost = 1")
    with pytest.raises(InvalidDefinitionError):
        company.execute("UPDATE employees SET name = 'a', NAME = 'b'")
    with pytest.raises(CheckViolationError):
        company.execute("UPDATE employees SET salary = -1 WHERE id = 1")
    with pytest.raises(NotNullViolationError):
        company.execute("UPDATE employees SET name = NULL WHERE id = 1")


def test_failed_update_leaves_every_row_unchanged(company):
    before = _rows(company, "SELECT * FROM employees")
    with pytest.raises(UniqueViolationError):
        company.execute("UPDATE employees SET id = 3 WHERE id < 3")
    assert _rows(company, "SELECT * FROM employees") == before


def test_update_then_index_lookup_sees_new_key(company):
    company.execute("UPDATE employees SET id = 10 WHERE id = 4")
    assert _rows(company, "SELECT name FROM employees WHERE id = 10") == [('Dave',)]
    assert _rows(company, "SELECT name FROM employees WHERE id = 4") == []


def test_delete(company):
    result = company.execute("DELETE FROM employees WHERE salary < 45000")
    assert result.count == 2
    assert _rows(company, "SELECT id FROM employees") == [(1,), (2,), (5,)]
    assert company.execute("DELETE FROM employees").count == 3


def test_delete_referenced_row_is_rejected(company):
    with pytest.raises(ForeignKeyViolationError) as exc:
        company.execute("DELETE FROM departments WHERE id = 1")
    assert exc.value.constraint == 'employees_dept_id_fkey'
    assert _rows(company, "SELECT COUNT(*) FROM departments") == [(3,)]
    assert company.execute("DELETE FROM departments WHERE id = 3").count == 1


def test_foreign_key_checked_on_insert_and_update(company):
    with pytest.raises(ForeignKeyViolationError):
        company.execute("INSERT INTO employees VALUES (6, 'Fay', 9, 1, NULL)")
    with pytest.raises(ForeignKeyViolationError):
        company.execute("UPDATE employees SET dept_id = 9 WHERE id = 1")
    with pytest.raises(ForeignKeyViolationError):
        company.execute("UPDATE departments SET id = 7 WHERE id = 1")


def test_on_delete_cascade(engine):
    engine.execute_script("""
        CREATE TABLE authors (id INT PRIMARY KEY);
        CREATE TABLE books (id INT PRIMARY KEY, author INT REFERENCES authors ON DELETE CASCADE);
        CREATE TABLE reviews (id INT PRIMARY KEY, book INT REFERENCES books ON DELETE CASCADE);
        INSERT INTO authors VALUES (1), (2);
        INSERT INTO books VALUES (10, 1), (11, 1), (12, 2);
        INSERT INTO reviews VALUES (100, 10), (101, 12);
    """)
    # Cascaded rows are not part of the count
    assert engine.execute("DELETE FROM authors WHERE id = 1").count == 1
    assert _rows(engine, "SELECT id FROM books") == [(12,)]
    assert _rows(engine, "SELECT id FROM reviews") == [(101,)]


def test_on_delete_set_null(engine):
    engine.execute_script("""
        CREATE TABLE teams (id INT PRIMARY KEY);
        CREATE TABLE players (id INT PRIMARY KEY, team INT REFERENCES teams (id) ON DELETE SET NULL);
        INSERT INTO teams VALUES (1), (2);
        INSERT INTO players VALUES (1, 1), (2, 2);
    """)
    engine.execute("DELETE FROM teams WHERE id = 1")
    assert _rows(engine, "SELECT * FROM players") == [(1, None), (2, 2)]


def test_set_null_on_not_null_column_rolls_back(engine):
    engine.execute_script("""
        CREATE TABLE teams (id INT PRIMARY KEY);
        CREATE TABLE players (id INT PRIMARY KEY, team INT NOT NULL REFERENCES teams ON DELETE SET NULL);
        INSERT INTO teams VALUES (1);
        INSERT INTO players VALUES (1, 1);
    """)
    with pytest.raises(NotNullViolationError):
        engine.execute("DELETE FROM teams")
    assert _rows(engine, "SELECT COUNT(*) FROM teams") == [(1,)]


def test_create_table_variants(engine):
    assert isinstance(engine.execute("CREATE TABLE t (a INT)"), Ack)
    with pytest.raises(DuplicateTableError):
        engine.execute("CREATE TABLE T (b INT)")
    assert 'skipping' in engine.execute("CREATE TABLE IF NOT EXISTS t (b INT)").message
    with pytest.raises(InvalidDefinitionError):
        engine.execute("CREATE TABLE u (a INT DEFAULT b)")
    with pytest.raises(TypeMismatchError):
        engine.execute("CREATE TABLE u (a INT DEFAULT 'x')")
    with pytest.raises(InvalidDefinitionError):
        engine.execute("CREATE TABLE u (a INT CHECK (a IN (SELECT a FROM t)))")
    with pytest.raises(UnknownColumnError):
        engine.execute("CREATE TABLE u (a INT CHECK (b > 0))")
    assert engine.list_tables() == ['t']


def test_table_level_constraints(engine):
    engine.execute("""
        CREATE TABLE pairs (
            a INT, b INT, total INT,
            CONSTRAINT pairs_pk PRIMARY KEY (a, b),
            CHECK (total >= a + b)
        )
    """)
    engine.execute("INSERT INTO pairs VALUES (1, 2, 3)")
    with pytest.raises(UniqueViolationError) as exc:
        engine.execute("INSERT INTO pairs VALUES (1, 2, 5)")
    assert exc.value.constraint == 'pairs_pk'
    with pytest.raises(CheckViolationError):
        engine.execute("INSERT INTO pairs VALUES (2, 2, 1)")
    # UNKNOWN passes a check
    engine.execute("INSERT INTO pairs VALUES (3, 3, NULL)")


def test_drop_table(company):
    with pytest.raises(DependentObjectError):
        company.execute("DROP TABLE departments")
    company.execute("DROP TABLE employees")
    company.execute("DROP TABLE departments")
    assert company.list_tables() == []
    assert 'skipping' in company.execute("DROP TABLE IF EXISTS employees").message
    with pytest.raises(UnknownTableError):
        company.execute("DROP TABLE employees")


def test_create_and_drop_index(company):
    company.execute("CREATE INDEX idx_name ON employees (name)")
    with pytest.raises(DuplicateIndexError):
        company.execute("CREATE INDEX idx_name ON employees (salary)")
    assert 'skipping' in company.execute("CREATE INDEX IF NOT EXISTS idx_name ON employees (salary)").message
    with pytest.raises(InvalidDefinitionError):
        company.execute("CREATE INDEX idx_twice ON employees (name, NAME)")
    company.execute("DROP INDEX idx_name")
    assert 'skipping' in company.execute("DROP INDEX IF EXISTS idx_name").message


def test_constraint_index_cannot_be_dropped(company):
    with pytest.raises(DependentObjectError):
        company.execute("DROP INDEX employees_pkey")


def test_unique_index_on_duplicate_data_fails(company):
    with pytest.raises(UniqueViolationError):
        company.execute("CREATE UNIQUE INDEX uq_dept ON employees (dept_id)")
    company.execute("CREATE UNIQUE INDEX uq_hired ON employees (hired)")
    with pytest.raises(UniqueViolationError):
        company.execute("INSERT INTO employees VALUES (6, 'Fay', 1, 1, '2020-01-15')")


def test_alter_table_add_column(company):
    company.execute("ALTER TABLE employees ADD COLUMN active BOOLEAN DEFAULT TRUE")
    assert _rows(company, "SELECT DISTINCT active FROM employees") == [(True,)]
    with pytest.raises(InvalidDefinitionError):
        company.execute("ALTER TABLE employees ADD COLUMN code TEXT UNIQUE")
    with pytest.raises(NotNullViolationError):
        company.execute("ALTER TABLE employees ADD COLUMN code TEXT NOT NULL")
    with pytest.raises(InvalidDefinitionError):
        company.execute("ALTER TABLE employees ADD COLUMN ACTIVE INT")


def test_duplicate_unique_constraints_create_nothing(company):
    with pytest.raises(DuplicateIndexError):
        company.execute("CREATE TABLE t (a INT UNIQUE, UNIQUE (a))")
    assert 't' not in company.list_tables()
    company.execute("CREATE TABLE t (a INT UNIQUE)")
    assert company.execute("INSERT INTO t VALUES (1)").count == 1
