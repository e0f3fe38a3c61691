"""
Base pieces for a line-delimited JSON-RPC 2.0 tool server.

A tool server reads one request per line from stdin and writes one response
per line to stdout. Logging goes to stderr, which the gateway drains into its
own log. A minimal server::

    class Echo(ToolHandler):
        name = "echo"
        description = "Returns its input"

        def handle(self, params):
            return params

    if __name__ == "__main__":
        main([Echo()])

Run persistently (``transport: stdio``) or with ``--once`` to answer a
single request and exit (``transport: oneshot``).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import IO, Any

from src.app.infrastructure.transports.jsonrpc import PING, TOOLS_CALL, TOOLS_LIST
from src.setup.logging_config import configure_logging

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ToolInputError(ValueError):
    """Arguments are missing or malformed. Reported as invalid params."""


class ToolHandler(ABC):
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """Execute the tool; the return value must be JSON serializable."""

    def get_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {"type": "object", "properties": self.parameters},
        }


class StdioToolServer:
    """Dispatches ``ping``, ``tools/list`` and ``tools/call``."""

    def __init__(self, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.debug("Registered tool %s", handler.name)

    def run(self, once: bool = False) -> None:
        """Serve until stdin closes, or after the first request when ``once``."""
        logger.info("Tool server starting with tools: %s", sorted(self._handlers))
        for line in self._stdin:
            line = line.strip()
            if not line:
                continue
            if self.handle_line(line) and once:
                return

    def handle_line(self, line: str) -> bool:
        """Process one message; return whether it was a request (has an id)."""
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            self._write_error(None, PARSE_ERROR, f"Parse error: {exc}")
            return True
        if not isinstance(message, dict):
            self._write_error(None, INVALID_REQUEST, "Request must be a JSON object")
            return True

        request_id = message.get("id")
        method = message.get("method", "")
        if request_id is None:
            # Notifications (e.g. cancellation) get no response.
            logger.debug("Ignoring notification %s", method)
            return False

        params = message.get("params") or {}
        try:
            result = self._dispatch(method, params)
        except LookupError as exc:
            self._write_error(request_id, METHOD_NOT_FOUND, str(exc))
        except ToolInputError as exc:
            self._write_error(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:
            logger.exception("Tool call failed")
            self._write_error(request_id, INTERNAL_ERROR, str(exc))
        else:
            self._write({"jsonrpc": "2.0", "id": request_id, "result": result})
        return True

    def _dispatch(self, method: str, params: dict) -> Any:
        if method == PING:
            return {"status": "ok", "tools": sorted(self._handlers)}
        if method == TOOLS_LIST:
            return [handler.get_schema() for handler in self._handlers.values()]
        if method == TOOLS_CALL:
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if handler is None:
                raise LookupError(f"Unknown tool: '{tool_name}'")
            arguments = params.get("arguments")
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, dict):
                raise ToolInputError("Tool arguments must be an object")
            return handler.handle(arguments)
        raise LookupError(f"Unknown method: '{method}'")

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        self._write(
            {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
        )

    def _write(self, message: dict) -> None:
        self._stdout.write(json.dumps(message, default=str) + "\n")
        self._stdout.flush()


def main(handlers: Iterable[ToolHandler], argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="JSON-RPC tool server")
    parser.add_argument("--once", action="store_true", help="answer one request and exit")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    server = StdioToolServer()
    for handler in handlers:
        server.register(handler)
    server.run(once=args.once)
