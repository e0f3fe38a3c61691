"""
Spawn-per-call transport for stateless tools.

Every exchange launches a fresh process, writes one JSON-RPC request to its
stdin, closes stdin and reads the response from stdout. The process is gone
when the exchange returns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any

from src.app.domain.exceptions import (
    ProcessExitedError,
    ProtocolError,
    ToolExecutionError,
    ToolTimeoutError,
)
from src.app.domain.models.tool_call import ToolCallRequest
from src.app.domain.models.tool_descriptor import ToolDescriptor
from src.app.infrastructure.transports.jsonrpc import JsonRpcRequest, JsonRpcResponse
from src.app.infrastructure.transports.stdio import build_environment
from src.setup.supervisor_config import SupervisorSettings

logger = logging.getLogger(__name__)


@dataclass
class OneShotHandle:
    descriptor: ToolDescriptor
    running: dict[str, asyncio.subprocess.Process] = field(default_factory=dict)
    cancelled: set[str] = field(default_factory=set)
    closed: bool = False


class OneShotTransport:
    """Transport adapter for ``transport: oneshot`` descriptors."""

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> "OneShotTransport":
        return cls()

    async def launch(self, descriptor: ToolDescriptor) -> OneShotHandle:
        command = descriptor.launch.command
        if shutil.which(command) is None and not os.access(command, os.X_OK):
            raise ProcessExitedError(f"Executable {command!r} not found")
        return OneShotHandle(descriptor=descriptor)

    async def exchange(self, handle: OneShotHandle, request: ToolCallRequest) -> Any:
        if handle.closed:
            raise ProcessExitedError("Backend has been terminated")
        timeout = request.deadline - asyncio.get_running_loop().time()
        if timeout <= 0:
            raise ToolTimeoutError(f"Deadline passed before '{request.tool_name}' was sent")

        descriptor = handle.descriptor
        try:
            process = await asyncio.create_subprocess_exec(
                *descriptor.launch.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_environment(descriptor),
                cwd=descriptor.launch.cwd,
            )
        except OSError as exc:
            raise ProcessExitedError(f"Could not spawn backend: {exc}") from exc

        handle.running[request.correlation_id] = process
        message = JsonRpcRequest.tool_call(request.correlation_id, request.tool_name, request.input)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(message.to_line()), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            _kill(process)
            await process.wait()
            raise ToolTimeoutError(
                f"Backend '{descriptor.name}' did not answer in {timeout:.1f}s"
            ) from exc
        except asyncio.CancelledError:
            _kill(process)
            raise
        finally:
            handle.running.pop(request.correlation_id, None)
            cancelled = request.correlation_id in handle.cancelled
            handle.cancelled.discard(request.correlation_id)

        if cancelled:
            # Killed by cancel(), not a backend failure.
            raise ToolTimeoutError(f"Exchange '{request.correlation_id}' cancelled by the gateway")

        if stderr:
            logger.debug(
                "backend stderr: %s",
                stderr.decode("utf-8", errors="replace").rstrip(),
                extra={"tool_name": descriptor.name},
            )
        return self._parse(process.returncode, stdout, request.correlation_id)

    async def cancel(self, handle: OneShotHandle, correlation_id: str) -> None:
        process = handle.running.get(correlation_id)
        if process is not None:
            handle.cancelled.add(correlation_id)
            _kill(process)

    async def terminate(self, handle: OneShotHandle) -> None:
        handle.closed = True
        for process in list(handle.running.values()):
            _kill(process)

    def is_alive(self, handle: OneShotHandle) -> bool:
        return not handle.closed

    @staticmethod
    def _parse(returncode: int | None, stdout: bytes, correlation_id: str) -> Any:
        for line in stdout.splitlines():
            if not line.strip():
                continue
            response = JsonRpcResponse.from_line(line)
            if not response.is_response or str(response.id) != correlation_id:
                continue
            if response.is_error:
                raise ToolExecutionError(response.error_message)
            return response.result
        if returncode:
            raise ProcessExitedError(f"Backend exited with code {returncode} without a response")
        raise ProtocolError("Backend produced no response")


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
