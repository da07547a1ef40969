"""
Browser console for the SQL engine; talks to the HTTP API.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from sqlengine.settings import get_settings

logger = logging.getLogger(__name__)

app = FastAPI(title="sqlengine Web Console")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

templates = Jinja2Templates(directory=TEMPLATES_DIR)


class APIError(Exception):
    """The API rejected a request."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


class APIClient:
    """Client to communicate with the sqlengine API."""

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.transport = transport

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make HTTP request to API."""
        url = f"{self.base_url}{endpoint}"

        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.request(method, url, **kwargs)
            if response.status_code in (400, 404):
                detail = response.json().get("detail", {})
                if isinstance(detail, dict):
                    raise APIError(detail.get("kind", "Error"), detail.get("message", ""))
            response.raise_for_status()
            return response.json()

    async def query(self, sql: str) -> Dict[str, Any]:
        """Execute one statement."""
        return await self._request("POST", "/query", json={"sql": sql})

    async def list_tables(self) -> List[str]:
        """Get all table names."""
        result = await self._request("GET", "/tables")
        return result.get("tables", [])


client = APIClient(get_settings().api_url)


def _render(request: Request, sql: str = "", result: Optional[Dict[str, Any]] = None,
            error: Optional[str] = None, tables: Optional[List[str]] = None):
    return templates.TemplateResponse(
        request,
        "console.html",
        {"sql": sql, "result": result, "error": error, "tables": tables or []},
    )


async def _tables() -> List[str]:
    try:
        return await client.list_tables()
    except httpx.HTTPError as e:
        logger.warning("Could not list tables: %s", e)
        return []


@app.get("/", response_class=HTMLResponse)
async def console(request: Request):
    """Empty console."""
    return _render(request, tables=await _tables())


@app.post("/", response_class=HTMLResponse)
async def run_query(request: Request, sql: str = Form(...)):
    """Forward a statement to the API and show its result."""
    try:
        result = await client.query(sql)
    except APIError as e:
        return _render(request, sql, error=f"{e.kind}: {e.message}", tables=await _tables())
    except httpx.HTTPError as e:
        logger.warning("API request failed: %s", e)
        return _render(request, sql, error=f"Could not reach the API: {e}")
    return _render(request, sql, result=result, tables=await _tables())


if __name__ == "__main__":
    import uvicorn
    from sqlengine.logging_config import setup_logging

    setup_logging(get_settings().log_level)
    uvicorn.run(app, host="127.0.0.1", port=8080)
