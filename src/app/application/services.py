from datetime import UTC, datetime
from typing import Any, cast

import inject

from src.app.application.orchestrator import TaskOrchestrator
from src.app.application.registry import ToolRegistry
from src.app.application.router import ToolCallRouter
from src.app.application.supervisor import BackendSupervisor
from src.app.domain.models import BackendStatus, TaskView, ToolCallResult


class TaskService:
    """Public task operations: submit, inspect, cancel."""

    def __init__(self) -> None:
        self._orchestrator = cast(TaskOrchestrator, inject.instance(TaskOrchestrator))

    async def submit(self, user_id: str, payload: Any) -> TaskView:
        """Run the task to completion and return its terminal view."""
        task = await self._orchestrator.run_task(user_id, payload)
        return TaskView.from_task(task)

    async def get_task(self, task_id: str, user_id: str) -> TaskView:
        task = await self._orchestrator.get_task(task_id, user_id)
        return TaskView.from_task(task)

    async def cancel_task(self, task_id: str, user_id: str) -> TaskView:
        task = await self._orchestrator.cancel_task(task_id, user_id)
        return TaskView.from_task(task)


class ToolService:
    """Tool calls from sandboxes plus the operational views of the backends."""

    def __init__(self) -> None:
        self._router = cast(ToolCallRouter, inject.instance(ToolCallRouter))
        self._registry = cast(ToolRegistry, inject.instance(ToolRegistry))
        self._supervisor = cast(BackendSupervisor, inject.instance(BackendSupervisor))

    async def call_tool(
        self, token: str | None, tool_name: str, payload: Any, deadline: float | None = None
    ) -> ToolCallResult:
        return await self._router.route(token, tool_name, payload, deadline)

    async def list_tools(self, token: str | None) -> list[dict[str, Any]]:
        return await self._router.list_tools(token)

    def backends(self) -> list[BackendStatus]:
        return self._supervisor.status()

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "tools": len(self._registry),
            "backends": [status.model_dump(mode="json") for status in self._supervisor.status()],
            "calls": self._router.stats(),
        }

    async def reload_registry(self, path: str) -> dict[str, list[str]]:
        """Swap in the catalog at ``path`` and retire outdated backends."""
        changes = self._registry.reload_from_file(path)
        await self._supervisor.retire(changes["removed"] + changes["changed"])
        return changes

    async def reset_backend(self, tool_name: str) -> bool:
        return await self._supervisor.reset(tool_name)
