from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import inject

from src.app.application.registry import ToolRegistry
from src.app.domain.exceptions import ToolExecutionError, UnknownToolError

logger = logging.getLogger(__name__)

LIST_TOOLS = "gateway.list_tools"
DESCRIBE_TOOL = "gateway.describe_tool"

MetaHandler = Callable[[Any], Awaitable[Any]]


class MetaToolHandler:
    """Answers the discovery tools in-process instead of through a backend."""

    def __init__(self, registry: ToolRegistry | None = None) -> None:
        self._registry = registry or inject.instance(ToolRegistry)
        self._handlers: dict[str, MetaHandler] = {}
        self.register(LIST_TOOLS, self.list_tools)
        self.register(DESCRIBE_TOOL, self.describe_tool)

    def register(self, tool_name: str, handler: MetaHandler) -> None:
        self._handlers[tool_name] = handler

    def handles(self, tool_name: str) -> bool:
        return tool_name in self._handlers

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, tool_name: str, payload: Any) -> Any:
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise UnknownToolError(tool_name)
        logger.debug("Answering meta tool", extra={"tool_name": tool_name})
        return await handler(payload)

    async def list_tools(self, payload: Any) -> list[dict[str, Any]]:
        tag = payload.get("tag") if isinstance(payload, dict) else None
        tools = []
        for descriptor in self._registry.list():
            if tag and tag not in descriptor.tags:
                continue
            tools.append(
                {
                    "name": descriptor.name,
                    "description": descriptor.description,
                    "tags": list(descriptor.tags),
                }
            )
        return tools

    async def describe_tool(self, payload: Any) -> dict[str, Any]:
        name = payload.get("name") if isinstance(payload, dict) else None
        if not isinstance(name, str) or not name:
            raise ToolExecutionError("gateway.describe_tool requires a 'name'")
        return self._registry.resolve(name).public_view()
