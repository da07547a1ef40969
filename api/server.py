"""
FastAPI server exposing the SQL engine as a REST API.
"""

import logging
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sqlengine.engine import DatabaseEngine
from sqlengine.errors import DatabaseError, ErrorKind
from sqlengine.settings import get_settings

logger = logging.getLogger(__name__)

app = FastAPI(title="sqlengine API", version="1.0.0")

# Enable CORS for the web console
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One in-memory database per process
engine = DatabaseEngine()


class QueryRequest(BaseModel):
    sql: str = Field(..., min_length=1, description="A single SQL statement")


class ScriptRequest(BaseModel):
    sql: str = Field(..., min_length=1, description="Semicolon-separated SQL statements")


def _error_response(error: DatabaseError, status_code: int = 400) -> HTTPException:
    logger.warning("Statement failed: [%s] %s", error.kind.value, error.message)
    return HTTPException(status_code=status_code, detail=error.to_dict())


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "sqlengine API",
        "version": "1.0.0",
        "endpoints": {
            "POST /query": "Execute one SQL statement",
            "POST /script": "Execute several SQL statements",
            "GET /tables": "List all tables",
            "GET /tables/{name}": "Get table info",
        }
    }


@app.get("/tables")
async def list_tables():
    """List all tables in the database."""
    return {"tables": engine.list_tables()}


@app.get("/tables/{table_name}")
async def get_table_info(table_name: str):
    """Get information about a specific table."""
    try:
        return engine.get_table_info(table_name)
    except DatabaseError as e:
        status_code = 404 if e.kind == ErrorKind.UNKNOWN_TABLE else 400
        raise _error_response(e, status_code)


@app.post("/query")
async def execute_query(request: QueryRequest) -> Dict[str, Any]:
    """Execute a single SQL statement."""
    try:
        result = engine.execute(request.sql)
    except DatabaseError as e:
        raise _error_response(e)
    return result.to_dict()


@app.post("/script")
async def execute_script(request: ScriptRequest) -> List[Dict[str, Any]]:
    """Execute statements in order; statements before a failing one keep their effects."""
    try:
        results = engine.execute_script(request.sql)
    except DatabaseError as e:
        raise _error_response(e)
    return [result.to_dict() for result in results]


if __name__ == "__main__":
    import uvicorn
    from sqlengine.logging_config import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
