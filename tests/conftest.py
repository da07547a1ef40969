import pytest

from sqlengine.catalog import Catalog
from sqlengine.engine import DatabaseEngine
from sqlengine.settings import EngineSettings
from sqlengine.storage import Storage


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None)


@pytest.fixture
def engine(settings) -> DatabaseEngine:
    return DatabaseEngine(settings)


@pytest.fixture
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture
def storage(catalog) -> Storage:
    return Storage(catalog)


@pytest.fixture
def company(engine) -> DatabaseEngine:
    """Departments and employees with a foreign key between them."""
    engine.execute_script("""
        CREATE TABLE departments (
            id INT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
        );
        CREATE TABLE employees (
            id INT PRIMARY KEY,
            name TEXT NOT NULL,
            dept_id INT REFERENCES departments (id),
            salary DECIMAL CHECK (salary >= 0),
            hired DATE
        );
        INSERT INTO departments VALUES (1, 'Sales'), (2, 'HR'), (3, 'Research');
        INSERT INTO employees VALUES
            (1, 'Alice', 1, 50000, '2020-01-15'),
            (2, 'Bob', 1, 70000, '2019-03-01'),
            (3, 'Carol', 2, 40000, '2021-07-20'),
            (4, 'Dave', NULL, 30000, NULL),
            (5, 'Eve', 2, NULL, '2022-11-02');
    """)
    return engine
