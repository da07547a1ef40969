"""
Main database engine class.
"""

import logging
from typing import Any, Dict, List, Optional

from .catalog import Catalog
from .errors import DatabaseError
from .executor import QueryExecutor
from .expressions import render
from .parser import QueryParser
from .results import ExecutionResult
from .settings import EngineSettings, get_settings
from .storage import Storage

logger = logging.getLogger(__name__)


class DatabaseEngine:
    """Main database engine interface."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_settings()
        self.catalog = Catalog()
        self.storage = Storage(self.catalog)
        self.parser = QueryParser(max_length=self.settings.max_sql_length)
        self.executor = QueryExecutor(self.catalog, self.storage)

    def execute(self, query: str) -> ExecutionResult:
        """
        Execute a single SQL statement.

        Args:
            query: SQL statement text; a trailing semicolon is allowed

        Returns:
            Rows for queries, Affected for INSERT/UPDATE/DELETE, Ack for DDL

        Raises:
            DatabaseError: a typed error; the statement left no changes behind
        """
        statement = self.parser.parse(query)
        return self.executor.execute(statement)

    def execute_script(self, script: str) -> List[ExecutionResult]:
        """Execute semicolon-separated statements in order, stopping at the first error.

        Statements that completed before the error keep their effects.
        """
        statements = self.parser.parse_script(script)
        results = []
        for i, statement in enumerate(statements, start=1):
            try:
                results.append(self.executor.execute(statement))
            except DatabaseError:
                logger.debug("Script stopped at statement %d of %d", i, len(statements))
                raise
        return results

    def list_tables(self) -> List[str]:
        """List all tables in the database."""
        return self.catalog.list_tables()

    def get_table_info(self, table_name: str) -> Dict[str, Any]:
        """Get information about a table."""
        schema = self.catalog.lookup_table(table_name)
        primary_key = schema.primary_key
        pk_columns = {name.lower() for name in primary_key.columns} if primary_key else set()

        return {
            'name': schema.name,
            'schema': [
                {
                    'name': col.name,
                    'type': col.dtype.value,
                    'nullable': col.nullable,
                    'default': render(col.default) if col.default is not None else None,
                    'is_primary': col.name.lower() in pk_columns,
                }
                for col in schema.columns
            ],
            'constraints': [str(constraint) for constraint in schema.constraints],
            'indexes': [
                {
                    'name': index.name,
                    'columns': index.column_names,
                    'unique': index.unique,
                }
                for index in schema.indexes
            ],
            'row_count': len(self.storage.table(schema.name)),
        }
