from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

import inject

from src.app.application.credentials import CredentialIssuer
from src.app.application.handlers import MetaToolHandler
from src.app.application.pii import PiiCensor
from src.app.application.registry import ToolRegistry
from src.app.application.supervisor import BackendSupervisor
from src.app.domain.exceptions import (
    GatewayError,
    RevokedError,
    ToolTimeoutError,
    TooManyConcurrentCallsError,
)
from src.app.domain.models.tool_call import ToolCallRequest, ToolCallResult, new_correlation_id
from src.setup.router_config import RouterSettings, get_router_settings

logger = logging.getLogger(__name__)


class ToolCallRouter:
    """
    Entry point for every tool call issued from inside a sandbox.

    A call is validated, resolved, admitted against the per-task cap, queued
    on the tool's backend and awaited until its deadline. The credential
    lease is held for the whole call: the supervisor re-checks the token right
    before the request is written to the backend, and a result that arrives
    after the task's credential was revoked is discarded. The router never
    retries.
    """

    def __init__(
        self,
        issuer: CredentialIssuer | None = None,
        registry: ToolRegistry | None = None,
        supervisor: BackendSupervisor | None = None,
        censor: PiiCensor | None = None,
        meta: MetaToolHandler | None = None,
        settings: RouterSettings | None = None,
    ) -> None:
        self._issuer = issuer or inject.instance(CredentialIssuer)
        self._registry = registry or inject.instance(ToolRegistry)
        self._supervisor = supervisor or inject.instance(BackendSupervisor)
        self._censor = censor or inject.instance(PiiCensor)
        self._meta = meta or MetaToolHandler(self._registry)
        self._settings = settings or get_router_settings()
        self._lock = asyncio.Lock()
        self._active: dict[str, int] = {}
        self._calls: dict[str, dict[str, int]] = defaultdict(lambda: {"success": 0, "failure": 0})

    async def route(
        self,
        token: str | None,
        tool_name: str,
        payload: Any = None,
        deadline: float | None = None,
    ) -> ToolCallResult:
        correlation_id = new_correlation_id()
        try:
            result = await self._route(correlation_id, token, tool_name, payload, deadline)
        except GatewayError as exc:
            self._record(tool_name, ok=False)
            logger.info(
                "Tool call failed: %s",
                exc.message,
                extra={
                    "tool_name": tool_name,
                    "correlation_id": correlation_id,
                    "error_kind": exc.kind,
                },
            )
            raise
        self._record(tool_name, ok=True)
        return result

    async def list_tools(self, token: str | None) -> list[dict[str, Any]]:
        await self._issuer.validate(token)
        tools = [descriptor.public_view() for descriptor in self._registry.list()]
        tools.extend(
            {"name": name, "description": "Gateway discovery tool.", "tags": ["gateway"]}
            for name in self._meta.names
        )
        return tools

    async def active_calls(self, task_id: str) -> int:
        async with self._lock:
            return self._active.get(task_id, 0)

    def stats(self) -> dict[str, Any]:
        successes = sum(entry["success"] for entry in self._calls.values())
        failures = sum(entry["failure"] for entry in self._calls.values())
        total = successes + failures
        return {
            "total_calls": total,
            "successful_calls": successes,
            "failed_calls": failures,
            "success_rate": round(successes / total, 4) if total else 0.0,
            "tools": {name: dict(entry) for name, entry in sorted(self._calls.items())},
        }

    async def _route(
        self,
        correlation_id: str,
        token: str | None,
        tool_name: str,
        payload: Any,
        deadline: float | None,
    ) -> ToolCallResult:
        async with self._issuer.authorize(token) as task_id:
            if self._meta.handles(tool_name):
                output = await self._meta.dispatch(tool_name, payload)
                return ToolCallResult(
                    correlation_id=correlation_id,
                    tool_name=tool_name,
                    output=self._censor.tokenize(task_id, output),
                )

            descriptor = self._registry.resolve(tool_name)
            await self._acquire_slot(task_id)
            try:
                output = await self._dispatch(
                    correlation_id, token, task_id, descriptor, payload, deadline
                )
            finally:
                await self._release_slot(task_id)

            try:
                await self._issuer.validate(token)
            except RevokedError:
                logger.warning(
                    "Discarding result of a call whose task was revoked mid-flight",
                    extra={"task_id": task_id, "tool_name": tool_name, "correlation_id": correlation_id},
                )
                raise

        logger.debug(
            "Tool call succeeded",
            extra={"task_id": task_id, "tool_name": tool_name, "correlation_id": correlation_id},
        )
        return ToolCallResult(
            correlation_id=correlation_id,
            tool_name=tool_name,
            output=self._censor.tokenize(task_id, output),
        )

    async def _dispatch(self, correlation_id, token, task_id, descriptor, payload, deadline) -> Any:
        loop = asyncio.get_running_loop()
        timeout = self._clamp_deadline(deadline)

        async def recheck_credential() -> None:
            await self._issuer.validate(token)

        request = ToolCallRequest(
            correlation_id=correlation_id,
            tool_name=descriptor.name,
            task_id=task_id,
            input=self._censor.detokenize(task_id, payload),
            deadline=loop.time() + timeout,
            before_dispatch=recheck_credential,
        )
        future = await self._supervisor.enqueue(descriptor, request)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._supervisor.cancel(descriptor.name, correlation_id)
            raise ToolTimeoutError(
                f"Tool '{descriptor.name}' did not answer within {timeout:.1f}s"
            ) from exc

    def _clamp_deadline(self, deadline: float | None) -> float:
        if deadline is None or deadline <= 0:
            deadline = self._settings.ROUTER_DEFAULT_DEADLINE_SECONDS
        return min(deadline, self._settings.ROUTER_MAX_DEADLINE_SECONDS)

    async def _acquire_slot(self, task_id: str) -> None:
        async with self._lock:
            current = self._active.get(task_id, 0)
            if current >= self._settings.ROUTER_MAX_CALLS_PER_TASK:
                raise TooManyConcurrentCallsError(
                    f"Task already has {current} tool calls in flight"
                )
            self._active[task_id] = current + 1

    async def _release_slot(self, task_id: str) -> None:
        async with self._lock:
            remaining = self._active.get(task_id, 1) - 1
            if remaining <= 0:
                self._active.pop(task_id, None)
            else:
                self._active[task_id] = remaining

    def _record(self, tool_name: str, ok: bool) -> None:
        if tool_name not in self._registry and not self._meta.handles(tool_name):
            return
        self._calls[tool_name]["success" if ok else "failure"] += 1
