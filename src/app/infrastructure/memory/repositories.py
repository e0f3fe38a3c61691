from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from src.app.domain.exceptions import TaskNotFoundError, TaskStateError
from src.app.domain.models.task import Task, TaskError
from src.app.domain.models.task_state import TaskState
from src.app.domain.repositories import StorageRepository

_ALLOWED: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.RUNNING, TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.RUNNING: {TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
}


class InMemoryStorageRepository(StorageRepository):
    """Task table that lives as long as the gateway process."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tasks: dict[str, Task] = {}

    async def create_task(self, task: Task) -> str:
        """Persist a new task and return its id."""
        if not task.id:
            task.id = uuid4().hex
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task '{task.id}' already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.id

    async def get_task(self, task_id: str) -> Task:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return task.model_copy(deep=True)

    async def get_state(self, task_id: str) -> TaskState | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return task.state if task is not None else None

    async def transition(
        self,
        task_id: str,
        state: TaskState,
        *,
        result: Any | None = None,
        error: TaskError | None = None,
        logs: list[str] | None = None,
    ) -> Task:
        """Move a task to ``state``; terminal states are entered exactly once."""
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if state not in _ALLOWED[task.state]:
                raise TaskStateError(task_id, task.state.value, state.value)
            task.state = state
            if state.is_terminal:
                task.result = result
                task.error = error
                task.completed_at = datetime.now(UTC)
            if logs:
                task.logs.extend(logs)
            return task.model_copy(deep=True)
