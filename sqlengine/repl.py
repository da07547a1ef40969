"""
Interactive REPL and script runner for the database.
"""

import logging
import sys
from typing import List, Optional

from .engine import DatabaseEngine
from .errors import DatabaseError
from .logging_config import setup_logging
from .results import Ack, Affected, ExecutionResult, Rows, format_value
from .settings import LOG_LEVELS, EngineSettings, get_settings

logger = logging.getLogger(__name__)


class DatabaseREPL:
    """Command-line REPL for interacting with the database."""

    def __init__(self, engine: Optional[DatabaseEngine] = None, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_settings()
        self.engine = engine or DatabaseEngine(self.settings)
        self.running = False

    def run(self):
        """Run the REPL."""
        self.running = True
        print("sqlengine REPL")
        print("Type 'exit' or 'quit' to exit")
        print("Type 'help' for help\n")

        while self.running:
            try:
                line = input(self.settings.prompt).strip()
                if not line:
                    continue
                if self._handle_command(line):
                    continue

                # Multi-line input runs until a line ends with ';'
                lines = [line]
                while not lines[-1].rstrip().endswith(';'):
                    next_line = input(self.settings.continuation_prompt)
                    if next_line.strip().lower() in ('exit', 'quit'):
                        self.running = False
                        break
                    lines.append(next_line)
                if not self.running:
                    break

                self.execute("\n".join(lines))

            except KeyboardInterrupt:
                print("\nInterrupted")
                break
            except EOFError:
                print()
                break

    def _handle_command(self, line: str) -> bool:
        """Run a meta command; returns False when line is SQL."""
        command = line.rstrip(';').strip()
        words = command.split()
        keyword = words[0].lower()

        if keyword in ('exit', 'quit') and len(words) == 1:
            self.running = False
        elif keyword == 'help' and len(words) == 1:
            self._print_help()
        elif keyword in ('tables', '.tables') and len(words) == 1:
            self._list_tables()
        elif keyword in ('describe', '.schema') and len(words) == 2:
            self._describe(words[1])
        elif keyword == '.schema' and len(words) == 1:
            for table in self.engine.list_tables():
                self._describe(table)
        else:
            return False
        return True

    def execute(self, sql: str) -> bool:
        """Execute statements and print their results; returns False on error."""
        try:
            results = self.engine.execute_script(sql)
        except DatabaseError as e:
            logger.warning("Statement failed: %s", e)
            print(f"Error [{e.kind.value}]: {e.message}")
            return False
        except Exception as e:
            logger.exception("Unexpected error")
            print(f"Unexpected error: {e}")
            return False

        for result in results:
            self._display_result(result)
        return True

    def run_script(self, script: str) -> int:
        """Run a whole script, stopping at the first error; returns an exit code."""
        return 0 if self.execute(script) else 1

    def _print_help(self):
        """Print help information."""
        help_text = """
Available commands:
  exit, quit                 - Exit the REPL
  help                       - Show this help
  tables, .tables            - List all tables
  describe <t>, .schema <t>  - Show columns, constraints and indexes of a table

Statements end with ';' and may span several lines.

Examples:
  CREATE TABLE users (id INT PRIMARY KEY, name TEXT NOT NULL, age INT CHECK (age >= 0));
  CREATE INDEX idx_users_age ON users (age);
  INSERT INTO users VALUES (1, 'Alice', 30), (2, 'Bob', 25);
  SELECT name, age FROM users WHERE age > 25 ORDER BY name;
  SELECT age, COUNT(*) FROM users GROUP BY age HAVING COUNT(*) > 1;
  UPDATE users SET age = 31 WHERE name = 'Alice';
  DELETE FROM users WHERE id = 1;
  EXPLAIN SELECT * FROM users WHERE age = 30;
        """
        print(help_text)

    def _list_tables(self):
        """List all tables."""
        tables = self.engine.list_tables()
        if tables:
            print("Tables:")
            for table in tables:
                info = self.engine.get_table_info(table)
                print(f"  {table} ({info['row_count']} rows)")
        else:
            print("No tables in database.")

    def _describe(self, table_name: str):
        try:
            info = self.engine.get_table_info(table_name)
        except DatabaseError as e:
            print(f"Error [{e.kind.value}]: {e.message}")
            return

        print(f"Table {info['name']} ({info['row_count']} rows)")
        for col in info['schema']:
            parts = [col['name'], col['type']]
            if not col['nullable']:
                parts.append("NOT NULL")
            if col['default'] is not None:
                parts.append(f"DEFAULT {col['default']}")
            print("  " + " ".join(parts))
        for constraint in info['constraints']:
            print(f"  CONSTRAINT {constraint}")
        for index in info['indexes']:
            unique = "UNIQUE " if index['unique'] else ""
            print(f"  {unique}INDEX {index['name']} ({', '.join(index['columns'])})")

    def _display_result(self, result: ExecutionResult):
        """Display a statement result in a readable format."""
        if isinstance(result, Ack):
            print(result.message)
        elif isinstance(result, Affected):
            print(f"{result.count} row(s) affected")
        elif isinstance(result, Rows):
            print(format_table(result.columns, result.rows))
            print(f"({len(result.rows)} row(s))")


def format_table(columns: List[str], rows: List[tuple]) -> str:
    """Render rows as an aligned text table."""
    cells = [[format_value(value) for value in row] for row in rows]
    widths = [len(col) for col in columns]
    for row in cells:
        for i, text in enumerate(row):
            widths[i] = max(widths[i], len(text))

    header = " | ".join(f"{col:<{widths[i]}}" for i, col in enumerate(columns))
    lines = [header, "-" * len(header)]
    for row in cells:
        lines.append(" | ".join(f"{text:<{widths[i]}}" for i, text in enumerate(row)))
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the REPL."""
    import argparse

    parser = argparse.ArgumentParser(description="In-memory SQL engine")
    parser.add_argument("--file", help="Run the statements in this script and exit")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS,
                        help="Override the configured log level")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(args.log_level or settings.log_level)

    repl = DatabaseREPL(settings=settings)
    if args.file:
        with open(args.file, encoding="utf-8") as f:
            return repl.run_script(f.read())

    repl.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
