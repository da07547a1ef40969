"""
sqlengine - a minimal in-memory relational SQL engine
"""

from .engine import DatabaseEngine
from .errors import DatabaseError, ErrorKind
from .repl import DatabaseREPL
from .results import Ack, Affected, ExecutionResult, Rows

__all__ = [
    'DatabaseEngine', 'DatabaseREPL', 'DatabaseError', 'ErrorKind',
    'ExecutionResult', 'Rows', 'Affected', 'Ack',
]
