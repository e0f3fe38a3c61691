from __future__ import annotations

from typing import Any, Protocol

from src.app.domain.models.credential import Credential
from src.app.domain.models.payloads import SandboxOutcome
from src.app.domain.models.task import Task, TaskError
from src.app.domain.models.task_state import TaskState
from src.app.domain.models.tool_call import ToolCallRequest
from src.app.domain.models.tool_descriptor import ToolDescriptor


class StorageRepository(Protocol):
    """Repository contract for the lifetime-of-run task table."""

    async def create_task(self, task: Task) -> str:
        """Persist a new task and return its id."""

    async def get_task(self, task_id: str) -> Task:
        """Fetch a task or raise ``TaskNotFoundError``."""

    async def get_state(self, task_id: str) -> TaskState | None:
        """Return the task's state, or ``None`` when unknown."""

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


class SandboxRunner(Protocol):
    """Collaborator contract for the isolated execution environment."""

    async def run(self, task_id: str, credential: Credential, payload: Any) -> SandboxOutcome:
        """Execute ``payload`` and return its single terminal signal."""

    async def terminate(self, task_id: str) -> None:
        """Force-stop the sandbox running ``task_id``, if any."""


class TransportAdapter(Protocol):
    """Uniform "send request, await response" over a backend process."""

    async def launch(self, descriptor: ToolDescriptor) -> Any:
        """Start the backend and return an opaque handle."""

    async def exchange(self, handle: Any, request: ToolCallRequest) -> Any:
        """Send one request and return the backend's output.

        Raises ``ToolTimeoutError``, ``ProtocolError``, ``ProcessExitedError``
        or ``ToolExecutionError``.
        """

    async def cancel(self, handle: Any, correlation_id: str) -> None:
        """Best-effort cancellation of an in-flight exchange."""

    async def terminate(self, handle: Any) -> None:
        """Stop the backend process behind ``handle``."""

    def is_alive(self, handle: Any) -> bool:
        """Whether the handle can still carry exchanges."""
