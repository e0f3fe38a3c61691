from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import inject

from src.app.application.credentials import CredentialIssuer
from src.app.application.pii import PiiCensor
from src.app.domain.exceptions import (
    SandboxTimeoutError,
    TaskAccessDeniedError,
    TaskCancelledError,
    TaskStateError,
)
from src.app.domain.models.task import Task, TaskError
from src.app.domain.models.task_state import TaskState
from src.app.domain.repositories import SandboxRunner, StorageRepository
from src.setup.sandbox_config import SandboxSettings, get_sandbox_settings

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Task failed due to an internal error."


class TaskOrchestrator:
    """
    Drives one task from submission to its terminal state.

    The task's credential is issued before the sandbox starts and revoked once
    the sandbox has signalled, whatever the outcome. Nothing raised while the
    task runs escapes :meth:`run_task`; the caller always gets a terminal task.
    """

    def __init__(
        self,
        storage: StorageRepository | None = None,
        issuer: CredentialIssuer | None = None,
        sandbox: SandboxRunner | None = None,
        censor: PiiCensor | None = None,
        settings: SandboxSettings | None = None,
    ) -> None:
        self._storage = storage or inject.instance(StorageRepository)
        self._issuer = issuer or inject.instance(CredentialIssuer)
        self._sandbox = sandbox or inject.instance(SandboxRunner)
        self._censor = censor or inject.instance(PiiCensor)
        self._settings = settings or get_sandbox_settings()
        self._running: dict[str, asyncio.Task] = {}
        self._finished: dict[str, asyncio.Event] = {}
        self._cancel_requested: set[str] = set()

    async def run_task(self, user_id: str, payload: Any) -> Task:
        task = Task(
            id=uuid4().hex,
            user_id=user_id,
            payload=payload,
            created_at=datetime.now(UTC),
        )
        task_id = await self._storage.create_task(task)
        self._finished[task_id] = asyncio.Event()
        logger.info("Task created", extra={"task_id": task_id, "user_id": user_id})

        runner: asyncio.Task | None = None
        try:
            credential = await self._issuer.issue(task_id)
            await self._storage.transition(task_id, TaskState.RUNNING)
            runner = asyncio.create_task(self._sandbox.run(task_id, credential, payload))
            self._running[task_id] = runner
            if task_id in self._cancel_requested:
                runner.cancel()
            try:
                outcome = await asyncio.wait_for(
                    asyncio.shield(runner), timeout=self._settings.SANDBOX_TIMEOUT_SECONDS
                )
            finally:
                self._running.pop(task_id, None)
        except asyncio.TimeoutError:
            runner.cancel()
            await self._sandbox.terminate(task_id)
            await asyncio.gather(runner, return_exceptions=True)
            error = SandboxTimeoutError(
                f"Sandbox exceeded {self._settings.SANDBOX_TIMEOUT_SECONDS:.0f}s"
            )
            return await self._finish(task_id, TaskState.FAILED, error=TaskError(**error.to_dict()))
        except asyncio.CancelledError:
            if runner is not None and runner.cancelled():
                error = TaskCancelledError("Task was cancelled")
                return await self._finish(task_id, TaskState.FAILED, error=TaskError(**error.to_dict()))
            # Caller cancelled: stop the sandbox and revoke before propagating.
            await asyncio.shield(self._abandon(task_id, runner))
            raise
        except Exception:
            logger.exception("Task run failed", extra={"task_id": task_id})
            return await self._finish(
                task_id, TaskState.FAILED, error=TaskError(kind="InternalError", message=GENERIC_FAILURE)
            )

        logs = self._censor.tokenize(task_id, outcome.logs)
        if outcome.succeeded:
            return await self._finish(
                task_id,
                TaskState.SUCCEEDED,
                result=self._censor.tokenize(task_id, outcome.output),
                logs=logs,
            )
        message = self._censor.tokenize(task_id, outcome.error or "Sandbox reported a failure")
        return await self._finish(
            task_id,
            TaskState.FAILED,
            error=TaskError(kind="SandboxFailure", message=message),
            logs=logs,
        )

    async def cancel_task(self, task_id: str, user_id: str) -> Task:
        """Revoke the task's credential at once and stop waiting on its sandbox.

        Calls already written to a backend are not interrupted; their results
        are discarded. Returns the task once it has reached its terminal state.
        """
        task = await self.get_task(task_id, user_id)
        if task.state.is_terminal:
            raise TaskStateError(task_id, task.state.value, "cancelled")
        self._cancel_requested.add(task_id)
        await self._issuer.revoke(task_id)
        runner = self._running.get(task_id)
        if runner is not None:
            runner.cancel()
            await self._sandbox.terminate(task_id)
        logger.info("Task cancelled", extra={"task_id": task_id, "user_id": user_id})
        finished = self._finished.get(task_id)
        if finished is not None:
            await finished.wait()
        return await self._storage.get_task(task_id)

    async def get_task(self, task_id: str, user_id: str) -> Task:
        task = await self._storage.get_task(task_id)
        if task.user_id != user_id:
            raise TaskAccessDeniedError(task_id, user_id)
        return task

    @property
    def running_count(self) -> int:
        return len(self._running)

    async def _abandon(self, task_id: str, runner: asyncio.Task | None) -> None:
        if runner is not None:
            runner.cancel()
            await self._sandbox.terminate(task_id)
            await asyncio.gather(runner, return_exceptions=True)
        error = TaskCancelledError("Task run was interrupted")
        await self._finish(task_id, TaskState.FAILED, error=TaskError(**error.to_dict()))

    async def _finish(
        self,
        task_id: str,
        state: TaskState,
        *,
        result: Any | None = None,
        error: TaskError | None = None,
        logs: list[str] | None = None,
    ) -> Task:
        try:
            task = await self._storage.transition(
                task_id, state, result=result, error=error, logs=logs
            )
        finally:
            await self._issuer.revoke(task_id)
            self._censor.clear_session(task_id)
            self._cancel_requested.discard(task_id)
            finished = self._finished.pop(task_id, None)
            if finished is not None:
                finished.set()
        logger.info(
            "Task finished",
            extra={
                "task_id": task_id,
                "state": state.value,
                "error_kind": error.kind if error is not None else None,
            },
        )
        return task
