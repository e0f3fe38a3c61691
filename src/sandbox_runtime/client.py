"""
Client used by task code running inside a sandbox.

The sandbox has no credentials of its own for any backend system. It holds a
single task-scoped token (``GATEWAY_AUTH_TOKEN``) and reaches tools only by
posting to the gateway's internal surface (``GATEWAY_INTERNAL_URL``).
"""

from __future__ import annotations

import os
from typing import Any

import httpx


class GatewayCallError(Exception):
    """A tool call was refused or failed; ``kind`` mirrors the gateway's error kind."""

    def __init__(self, kind: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.status_code = status_code


class GatewayClient:
    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url or os.environ["GATEWAY_INTERNAL_URL"]
        self.token = token or os.environ["GATEWAY_AUTH_TOKEN"]
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def call_tool(self, tool_name: str, payload: Any = None, deadline: float | None = None) -> Any:
        body: dict[str, Any] = {"authToken": self.token, "toolName": tool_name, "input": payload}
        if deadline is not None:
            body["deadline"] = deadline
        try:
            response = self._client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            raise GatewayCallError("Transport", str(exc)) from exc
        return self._unwrap(response)["output"]

    def list_tools(self) -> list[dict]:
        tools_url = httpx.URL(self.url).copy_with(path="/internal/tools")
        try:
            response = self._client.get(tools_url, headers={"Authorization": f"Bearer {self.token}"})
        except httpx.HTTPError as exc:
            raise GatewayCallError("Transport", str(exc)) from exc
        return self._unwrap(response)

    def describe_tool(self, name: str) -> dict:
        return self.call_tool("gateway.describe_tool", {"name": name})

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        try:
            data = response.json()
        except ValueError:
            data = None
        if response.is_success:
            return data
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            raise GatewayCallError(
                str(error.get("kind", "Error")), str(error.get("message", "")), response.status_code
            )
        raise GatewayCallError("HTTPError", response.text[:200], response.status_code)
