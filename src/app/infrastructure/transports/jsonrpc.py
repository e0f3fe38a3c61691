"""
JSON-RPC 2.0 framing shared by the transports and the bundled tool servers.

One message per line. Requests carry the correlation id as the JSON-RPC
``id`` so responses can be matched regardless of arrival order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from src.app.domain.exceptions import ProtocolError

TOOLS_CALL = "tools/call"
TOOLS_LIST = "tools/list"
PING = "ping"
CANCELLED = "notifications/cancelled"


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: int | str | None = None

    def to_line(self) -> bytes:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method, "params": self.params}
        if self.id is not None:
            message["id"] = self.id
        return (json.dumps(message) + "\n").encode("utf-8")

    @classmethod
    def tool_call(cls, correlation_id: str, tool_name: str, arguments: Any) -> "JsonRpcRequest":
        return cls(
            method=TOOLS_CALL,
            params={"name": tool_name, "arguments": arguments if arguments is not None else {}},
            id=correlation_id,
        )


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_line(cls, line: bytes | str) -> "JsonRpcResponse":
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolError("Backend emitted non UTF-8 output") from exc
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Backend emitted invalid JSON: {line[:120]!r}") from exc
        if not isinstance(parsed, dict):
            raise ProtocolError("Backend message is not a JSON object")
        if "result" not in parsed and "error" not in parsed:
            if "method" in parsed:
                # Notification or server-initiated request, not a response.
                return cls(id=None)
            raise ProtocolError("Backend response has neither result nor error")
        error = parsed.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return cls(id=parsed.get("id"), result=parsed.get("result"), error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_response(self) -> bool:
        return self.id is not None or self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message", "Tool error"))[:500]
