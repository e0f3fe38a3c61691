from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

from src.setup.tool_server_config import DatabaseServerSettings
from src.tool_servers.server import ToolHandler, ToolInputError, main

_READ_PREFIXES = ("select", "with", "explain", "pragma table_info")


class QueryDatabase(ToolHandler):
    name = "db.query"
    description = "Run a read-only SQL query against the task database."
    parameters = {
        "sql": {"type": "string", "description": "A single SELECT statement."},
        "params": {"type": "array", "description": "Positional bind parameters."},
    }

    def __init__(self, db_path: str, max_rows: int) -> None:
        self._db_path = db_path
        self._max_rows = max_rows

    def _connect(self) -> sqlite3.Connection:
        uri = f"{Path(self._db_path).resolve().as_uri()}?mode=ro"
        conn = sqlite3.connect(uri, uri=True, timeout=1)
        conn.row_factory = sqlite3.Row
        return conn

    def handle(self, params: dict[str, Any]) -> dict:
        sql = params.get("sql")
        if not isinstance(sql, str) or not sql.strip():
            raise ToolInputError("'sql' is required")
        if not sql.strip().lower().startswith(_READ_PREFIXES):
            raise ToolInputError("Only read-only queries are allowed")
        bind = params.get("params") or []
        if not isinstance(bind, (list, dict)):
            raise ToolInputError("'params' must be a list or an object")

        with closing(self._connect()) as conn:
            try:
                cursor = conn.execute(sql, bind)
            except sqlite3.Error as exc:
                raise ToolInputError(f"Query failed: {exc}") from exc
            rows = cursor.fetchmany(self._max_rows + 1)
            columns = [column[0] for column in cursor.description or ()]
        return {
            "columns": columns,
            "rows": [list(row) for row in rows[: self._max_rows]],
            "truncated": len(rows) > self._max_rows,
        }


def build_handlers(settings: DatabaseServerSettings | None = None) -> list[ToolHandler]:
    settings = settings or DatabaseServerSettings()
    return [QueryDatabase(settings.DB_PATH, settings.DB_MAX_ROWS)]


if __name__ == "__main__":
    main(build_handlers())
