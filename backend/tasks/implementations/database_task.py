"""Database query task.

Runs one parameterized SQL statement through SQLAlchemy. Values are always
passed as bound parameters, never formatted into the SQL text.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)


class DatabaseQueryTask(BaseTask):
    """Execute a parameterized query.

    Config:
        query: SQL text with ``:name`` placeholders (required)
        params: Dict of bound parameter values
        connection_url: SQLAlchemy URL (default: DATABASE_URL)
        max_rows: Maximum rows returned for SELECT-like statements (default: 1000)
    """

    task_type = "database_query"
    display_name = "Database Query"
    description = "Execute a parameterized SQL query"

    def __init__(self):
        self._engines: dict[str, Engine] = {}

    def _get_engine(self, url: str) -> Engine:
        engine = self._engines.get(url)
        if engine is None:
            engine = create_engine(url, future=True)
            self._engines[url] = engine
        return engine

    async def execute(self, config: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        query = config.get("query")
        if not query:
            return TaskResult(success=False, error="Missing required config: query")

        url = config.get("connection_url") or get_settings().DATABASE_URL
        params = config.get("params") or {}
        max_rows = int(config.get("max_rows", 1000))

        try:
            output = await asyncio.to_thread(self._run_query, url, query, params, max_rows)
        except SQLAlchemyError as e:
            # Driver messages can be long; keep the first line
            message = str(e).splitlines()[0] if str(e) else type(e).__name__
            return TaskResult(success=False, error=f"Query failed: {message}")

        return TaskResult(success=True, output=output)

    def _run_query(self, url: str, query: str, params: dict, max_rows: int) -> dict:
        engine = self._get_engine(url)
        with engine.begin() as conn:
            result = conn.execute(text(query), params)
            if result.returns_rows:
                rows = [dict(row._mapping) for row in result.fetchmany(max_rows)]
                return {"rows": rows, "row_count": len(rows)}
            return {"row_count": result.rowcount}

    def dispose(self) -> None:
        """Dispose cached engines. Later queries open fresh ones."""
        for engine in self._engines.values():
            engine.dispose()
        self._engines.clear()

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["query"],
            "properties": {
                "query": {"type": "string"},
                "params": {"type": "object"},
                "connection_url": {"type": "string"},
                "max_rows": {"type": "integer", "default": 1000},
            },
        }


# Export for task registry
DATABASE_TASK_TYPES = {
    "database_query": DatabaseQueryTask,
}
