from __future__ import annotations

import asyncio
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from src.app.application.credentials import CredentialIssuer
from src.app.domain.exceptions import (
    ProcessExitedError,
    ToolExecutionError,
    ToolTimeoutError,
)
from src.app.domain.models.task import Task
from src.app.domain.models.task_state import TaskState
from src.app.domain.models.tool_call import ToolCallRequest
from src.app.domain.models.tool_descriptor import LaunchSpec, ToolDescriptor, TransportKind
from src.app.infrastructure.memory.repositories import InMemoryStorageRepository
from src.setup.credential_config import CredentialSettings
from src.setup.router_config import RouterSettings
from src.setup.supervisor_config import SupervisorSettings

PROJECT_ROOT = Path(__file__).resolve().parents[1]
FLAKY_SERVER = PROJECT_ROOT / "tests" / "servers" / "flaky.py"


class FakeClock:
    """Controllable replacement for ``datetime.now(UTC)``."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeHandle:
    def __init__(self, number: int) -> None:
        self.number = number
        self.alive = True


class FakeTransport:
    """In-process transport whose behaviour is driven by the request input.

    ``"crash"`` kills the handle, ``"timeout"`` raises a timeout and
    ``"tool-error"`` returns a JSON-RPC style error. With ``hold`` set every
    exchange waits until :meth:`release_all`.
    """

    def __init__(self, fail_launches: int = 0) -> None:
        self.fail_launches = fail_launches
        self.launches = 0
        self.sent: list[Any] = []
        self.cancelled: list[str] = []
        self.hold = False
        self._gates: list[asyncio.Event] = []

    async def launch(self, descriptor: ToolDescriptor) -> FakeHandle:
        self.launches += 1
        if self.launches <= self.fail_launches:
            raise ProcessExitedError("launch failed")
        return FakeHandle(self.launches)

    async def exchange(self, handle: FakeHandle, request: ToolCallRequest) -> Any:
        self.sent.append(request.input)
        if self.hold:
            gate = asyncio.Event()
            self._gates.append(gate)
            await gate.wait()
        if request.input == "crash":
            handle.alive = False
            raise ProcessExitedError("backend died")
        if request.input == "timeout":
            raise ToolTimeoutError("too slow")
        if request.input == "tool-error":
            raise ToolExecutionError("bad arguments")
        return {"echo": request.input, "handle": handle.number}

    async def cancel(self, handle: FakeHandle, correlation_id: str) -> None:
        self.cancelled.append(correlation_id)

    async def terminate(self, handle: FakeHandle) -> None:
        handle.alive = False

    def is_alive(self, handle: FakeHandle) -> bool:
        return handle is not None and handle.alive

    def release_all(self) -> None:
        for gate in self._gates:
            gate.set()
        self._gates.clear()

    def factory(self, kind: TransportKind, settings: SupervisorSettings) -> "FakeTransport":
        return self


class StubSandbox:
    """Sandbox collaborator that runs an async callable instead of a process."""

    def __init__(self, behaviour) -> None:
        self._behaviour = behaviour
        self.terminated: list[str] = []
        self.credentials: list[str] = []

    async def run(self, task_id, credential, payload):
        self.credentials.append(credential.token)
        return await self._behaviour(task_id, credential, payload)

    async def terminate(self, task_id: str) -> None:
        self.terminated.append(task_id)


def fake_descriptor(name: str = "echo", max_concurrent_calls: int = 1) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        transport=TransportKind.STDIO,
        launch=LaunchSpec(command="fake"),
        max_concurrent_calls=max_concurrent_calls,
        description=f"{name} tool",
        tags=["test"],
    )


def module_descriptor(
    name: str,
    module: str,
    *,
    transport: TransportKind = TransportKind.STDIO,
    env: dict[str, str] | None = None,
    args: list[str] | None = None,
    max_concurrent_calls: int = 1,
) -> ToolDescriptor:
    """Descriptor for a bundled server started with the current interpreter."""
    return ToolDescriptor(
        name=name,
        transport=transport,
        launch=LaunchSpec(
            command=sys.executable,
            args=["-m", module, *(args or [])],
            env=env or {},
            cwd=str(PROJECT_ROOT),
        ),
        max_concurrent_calls=max_concurrent_calls,
    )


def flaky_descriptor(
    name: str,
    *,
    transport: TransportKind = TransportKind.STDIO,
    args: list[str] | None = None,
    max_concurrent_calls: int = 1,
) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        transport=transport,
        launch=LaunchSpec(
            command=sys.executable,
            args=[str(FLAKY_SERVER), *(args or [])],
            env={"PYTHONPATH": str(PROJECT_ROOT)},
            cwd=str(PROJECT_ROOT),
        ),
        max_concurrent_calls=max_concurrent_calls,
    )


def make_request(tool_name: str, payload: Any = None, timeout: float = 5.0, **kwargs) -> ToolCallRequest:
    deadline = asyncio.get_running_loop().time() + timeout
    return ToolCallRequest(
        tool_name=tool_name, task_id="task-1", input=payload, deadline=deadline, **kwargs
    )


async def running_task(storage: InMemoryStorageRepository, task_id: str = "task-1", user_id: str = "alice") -> str:
    await storage.create_task(
        Task(id=task_id, user_id=user_id, payload="noop", created_at=datetime.now(UTC))
    )
    await storage.transition(task_id, TaskState.RUNNING)
    return task_id


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> InMemoryStorageRepository:
    return InMemoryStorageRepository()


@pytest.fixture
def credential_settings() -> CredentialSettings:
    return CredentialSettings(
        CREDENTIAL_DEFAULT_TTL_SECONDS=60,
        CREDENTIAL_MAX_TTL_SECONDS=300,
        CREDENTIAL_REVOKE_DRAIN_SECONDS=0.5,
    )


@pytest.fixture
def issuer(storage, credential_settings, clock) -> CredentialIssuer:
    return CredentialIssuer(storage, credential_settings, clock=clock)


@pytest.fixture
def supervisor_settings() -> SupervisorSettings:
    return SupervisorSettings(
        SUPERVISOR_QUEUE_BOUND=4,
        SUPERVISOR_DEGRADED_THRESHOLD=2,
        SUPERVISOR_RESTART_THRESHOLD=4,
        SUPERVISOR_MAX_RESTARTS=3,
        SUPERVISOR_BACKOFF_BASE_SECONDS=0.01,
        SUPERVISOR_BACKOFF_CAP_SECONDS=0.05,
        SUPERVISOR_BACKOFF_JITTER_SECONDS=0.0,
        SUPERVISOR_TERMINATE_GRACE_SECONDS=1.0,
    )


@pytest.fixture
def router_settings() -> RouterSettings:
    return RouterSettings(
        ROUTER_MAX_CALLS_PER_TASK=4,
        ROUTER_DEFAULT_DEADLINE_SECONDS=5.0,
        ROUTER_MAX_DEADLINE_SECONDS=10.0,
    )
