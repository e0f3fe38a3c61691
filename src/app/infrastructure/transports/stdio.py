"""
Persistent duplex transport: JSON-RPC over the stdin/stdout pipes of a
long-lived child process.

Several exchanges can be in flight at once. Each request's correlation id is
its JSON-RPC ``id``; a background reader task resolves the matching future
when the response line arrives.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from src.app.domain.exceptions import (
    ProcessExitedError,
    ProtocolError,
    ToolExecutionError,
    ToolTimeoutError,
    TransportError,
)
from src.app.domain.models.tool_call import ToolCallRequest
from src.app.domain.models.tool_descriptor import ToolDescriptor
from src.app.infrastructure.transports.jsonrpc import (
    CANCELLED,
    PING,
    JsonRpcRequest,
    JsonRpcResponse,
)
from src.setup.supervisor_config import SupervisorSettings

logger = logging.getLogger(__name__)

_STREAM_LIMIT = 4 * 1024 * 1024


def build_environment(descriptor: ToolDescriptor) -> dict[str, str]:
    env = dict(os.environ)
    env.update(descriptor.launch.env)
    return env


@dataclass
class StdioHandle:
    descriptor: ToolDescriptor
    process: asyncio.subprocess.Process
    semaphore: asyncio.Semaphore
    pending: dict[str, asyncio.Future] = field(default_factory=dict)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    reader: asyncio.Task | None = None
    stderr_reader: asyncio.Task | None = None
    closed: bool = False
    broken: str | None = None


class StdioTransport:
    """Transport adapter for ``transport: stdio`` descriptors."""

    def __init__(
        self,
        *,
        handshake_timeout: float = 5.0,
        terminate_grace: float = 5.0,
    ) -> None:
        self._handshake_timeout = handshake_timeout
        self._terminate_grace = terminate_grace

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> "StdioTransport":
        return cls(terminate_grace=settings.SUPERVISOR_TERMINATE_GRACE_SECONDS)

    async def launch(self, descriptor: ToolDescriptor) -> StdioHandle:
        logger.info(
            "Starting stdio backend: %s",
            " ".join(descriptor.launch.argv),
            extra={"tool_name": descriptor.name},
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *descriptor.launch.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_environment(descriptor),
                cwd=descriptor.launch.cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProcessExitedError(f"Could not launch backend: {exc}") from exc

        handle = StdioHandle(
            descriptor=descriptor,
            process=process,
            semaphore=asyncio.Semaphore(descriptor.max_concurrent_calls),
        )
        handle.reader = asyncio.create_task(self._read_stdout(handle))
        handle.stderr_reader = asyncio.create_task(self._read_stderr(handle))

        try:
            await self._handshake(handle)
        except TransportError:
            await self.terminate(handle)
            raise
        return handle

    async def exchange(self, handle: StdioHandle, request: ToolCallRequest) -> Any:
        loop = asyncio.get_running_loop()
        remaining = request.deadline - loop.time()
        if remaining <= 0:
            raise ToolTimeoutError(f"Deadline passed before '{request.tool_name}' was sent")
        try:
            await asyncio.wait_for(handle.semaphore.acquire(), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(f"No exchange slot for '{request.tool_name}'") from exc
        try:
            message = JsonRpcRequest.tool_call(
                request.correlation_id, request.tool_name, request.input
            )
            return await self._send(handle, message, request.deadline - loop.time())
        finally:
            handle.semaphore.release()

    async def cancel(self, handle: StdioHandle, correlation_id: str) -> None:
        future = handle.pending.pop(correlation_id, None)
        if future is not None and not future.done():
            future.set_exception(ToolTimeoutError("Exchange cancelled by the gateway"))
        if not self.is_alive(handle):
            return
        notification = JsonRpcRequest(method=CANCELLED, params={"requestId": correlation_id})
        try:
            async with handle.write_lock:
                handle.process.stdin.write(notification.to_line())
                await handle.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Cancel notification not delivered: %s", exc)

    async def terminate(self, handle: StdioHandle) -> None:
        handle.closed = True
        process = handle.process
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._terminate_grace)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        for task in (handle.reader, handle.stderr_reader):
            if task is not None and not task.done():
                task.cancel()
        self._fail_pending(handle, ProcessExitedError("Backend was terminated"))
        logger.info(
            "Stdio backend stopped",
            extra={"tool_name": handle.descriptor.name, "returncode": process.returncode},
        )

    def is_alive(self, handle: StdioHandle) -> bool:
        return not handle.closed and handle.broken is None and handle.process.returncode is None

    async def _handshake(self, handle: StdioHandle) -> None:
        message = JsonRpcRequest(method=PING, id=f"ping-{id(handle)}")
        try:
            await self._send(handle, message, self._handshake_timeout)
        except ToolTimeoutError as exc:
            raise ProtocolError("Backend did not answer the startup ping") from exc
        except ToolExecutionError:
            # Servers without ping still proved they speak JSON-RPC.
            pass

    async def _send(self, handle: StdioHandle, message: JsonRpcRequest, timeout: float) -> Any:
        if not self.is_alive(handle):
            raise ProcessExitedError(handle.broken or "Backend process is not running")
        if timeout <= 0:
            raise ToolTimeoutError("Deadline passed before the request was sent")

        key = str(message.id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        handle.pending[key] = future
        try:
            try:
                async with handle.write_lock:
                    handle.process.stdin.write(message.to_line())
                    await handle.process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                handle.broken = f"Backend pipe broken: {exc}"
                raise ProcessExitedError(handle.broken) from exc

            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ToolTimeoutError(
                    f"Backend '{handle.descriptor.name}' did not answer in {timeout:.1f}s"
                ) from exc
        finally:
            handle.pending.pop(key, None)

    async def _read_stdout(self, handle: StdioHandle) -> None:
        stdout = handle.process.stdout
        while True:
            try:
                line = await stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                self._break(handle, ProtocolError(f"Oversized backend message: {exc}"))
                return
            if not line:
                break
            if not line.strip():
                continue
            try:
                response = JsonRpcResponse.from_line(line)
            except ProtocolError as exc:
                # Stream is out of sync; nothing pending can be trusted any more.
                self._break(handle, exc)
                return
            if not response.is_response:
                continue
            if response.id is None:
                self._break(handle, ProtocolError(response.error_message or "Uncorrelated error"))
                return
            future = handle.pending.pop(str(response.id), None)
            if future is None or future.done():
                logger.debug(
                    "Response for unknown correlation id",
                    extra={"tool_name": handle.descriptor.name, "correlation_id": response.id},
                )
                continue
            if response.is_error:
                future.set_exception(ToolExecutionError(response.error_message))
            else:
                future.set_result(response.result)

        returncode = await handle.process.wait()
        handle.broken = f"Backend exited with code {returncode}"
        self._fail_pending(handle, ProcessExitedError(handle.broken))
        if not handle.closed:
            logger.warning(
                "Stdio backend exited",
                extra={"tool_name": handle.descriptor.name, "returncode": returncode},
            )

    async def _read_stderr(self, handle: StdioHandle) -> None:
        stderr = handle.process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                return
            logger.debug(
                "backend stderr: %s",
                line.decode("utf-8", errors="replace").rstrip(),
                extra={"tool_name": handle.descriptor.name},
            )

    def _break(self, handle: StdioHandle, error: TransportError) -> None:
        handle.broken = str(error)
        logger.warning(
            "Stdio backend protocol failure: %s", error, extra={"tool_name": handle.descriptor.name}
        )
        self._fail_pending(handle, error)

    @staticmethod
    def _fail_pending(handle: StdioHandle, error: Exception) -> None:
        for future in list(handle.pending.values()):
            if not future.done():
                future.set_exception(type(error)(str(error)))
        handle.pending.clear()
