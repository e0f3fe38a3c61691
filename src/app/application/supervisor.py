from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from src.app.domain.exceptions import (
    BackendUnavailableError,
    CredentialError,
    GatewayError,
    OverloadedError,
    ProcessExitedError,
    ProtocolError,
    ToolExecutionError,
    ToolTimeoutError,
    TransportError,
    UnavailableError,
)
from src.app.domain.models.backend_state import BackendState, BackendStatus
from src.app.domain.models.tool_call import ToolCallRequest
from src.app.domain.models.tool_descriptor import ToolDescriptor, TransportKind
from src.app.domain.repositories import TransportAdapter
from src.app.infrastructure.transports import build_transport
from src.setup.supervisor_config import SupervisorSettings, get_supervisor_settings

logger = logging.getLogger(__name__)

TransportFactory = Callable[[TransportKind, SupervisorSettings], TransportAdapter]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RestartPolicy:
    """Exponential backoff with a cap, jitter and a hard ceiling."""

    base: float
    cap: float
    jitter: float
    max_restarts: int

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> "RestartPolicy":
        return cls(
            base=settings.SUPERVISOR_BACKOFF_BASE_SECONDS,
            cap=settings.SUPERVISOR_BACKOFF_CAP_SECONDS,
            jitter=settings.SUPERVISOR_BACKOFF_JITTER_SECONDS,
            max_restarts=settings.SUPERVISOR_MAX_RESTARTS,
        )

    def delay(self, attempt: int, rng: random.Random) -> float:
        backoff = min(self.base * (2 ** max(attempt, 0)), self.cap)
        return backoff + (rng.uniform(0, self.jitter) if self.jitter > 0 else 0.0)

    def exhausted(self, failures: int) -> bool:
        return failures >= self.max_restarts


@dataclass
class _Pending:
    request: ToolCallRequest
    future: asyncio.Future


class BackendProcess:
    """Lifecycle, queue and dispatch for the backend of one tool.

    State machine::

        (new) -> starting -> ready <-> degraded -> restarting -> ready
                                                          \\-> stopped

    A single dispatcher task pops the queue in FIFO order and hands requests
    to the transport. Requests still queued when the process dies survive the
    restart; requests already handed to the transport fail with the transport
    error. ``stopped`` is terminal until :meth:`reset`.
    """

    def __init__(
        self,
        descriptor: ToolDescriptor,
        transport: TransportAdapter,
        settings: SupervisorSettings,
        *,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.descriptor = descriptor
        self._transport = transport
        self._settings = settings
        self._policy = RestartPolicy.from_settings(settings)
        self._rng = rng or random.Random()
        self._sleep = sleep

        self.state: BackendState | None = None
        self.consecutive_failures = 0
        self.restart_attempts = 0
        self.last_error: str | None = None

        self._handle: Any = None
        self._queue: deque[_Pending] = deque()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._slots = asyncio.Semaphore(descriptor.max_concurrent_calls)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._dispatcher: asyncio.Task | None = None
        self._eager = False
        self._closing = False

    @property
    def tool_name(self) -> str:
        return self.descriptor.name

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    async def enqueue(self, request: ToolCallRequest) -> asyncio.Future:
        """Admit ``request`` or fail fast; never blocks on capacity."""
        async with self._lock:
            if self.state is BackendState.STOPPED or self._closing:
                raise UnavailableError(f"Backend for '{self.tool_name}' is stopped")
            if len(self._queue) >= self._settings.SUPERVISOR_QUEUE_BOUND:
                raise OverloadedError(f"Backend queue for '{self.tool_name}' is full")
            future: asyncio.Future = asyncio.get_running_loop().create_future()
            self._queue.append(_Pending(request=request, future=future))
            self._ensure_dispatcher()
            self._wakeup.set()
        return future

    async def cancel(self, correlation_id: str) -> None:
        async with self._lock:
            for pending in self._queue:
                if pending.request.correlation_id == correlation_id:
                    self._queue.remove(pending)
                    return
        if correlation_id in self._in_flight and self._handle is not None:
            await self._transport.cancel(self._handle, correlation_id)

    def start(self) -> None:
        """Launch eagerly instead of on the first call."""
        self._eager = True
        self._ensure_dispatcher()

    def status(self) -> BackendStatus:
        return BackendStatus(
            tool_name=self.tool_name,
            state=self.state or BackendState.STOPPED,
            queue_depth=len(self._queue),
            in_flight=len(self._in_flight),
            consecutive_failures=self.consecutive_failures,
            restart_attempts=self.restart_attempts,
            last_error=self.last_error,
        )

    async def shutdown(self) -> None:
        self._closing = True
        self._wakeup.set()
        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
        in_flight = list(self._in_flight.values())
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        async with self._lock:
            self._fail_queued_locked(UnavailableError(f"Backend for '{self.tool_name}' shut down"))
        await self._drop_handle()
        self.state = BackendState.STOPPED
        logger.info("Backend shut down", extra={"tool_name": self.tool_name})

    async def reset(self) -> None:
        """Revive a stopped backend; the next call launches it again."""
        await self.shutdown()
        self._closing = False
        self.state = None
        self.consecutive_failures = 0
        self.restart_attempts = 0
        self.last_error = None
        self._wakeup.clear()

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(
                self._dispatch_loop(), name=f"dispatch:{self.tool_name}"
            )

    async def _dispatch_loop(self) -> None:
        if self._eager and not await self._start():
            return
        while True:
            await self._wakeup.wait()
            if self._closing:
                return
            if self.state is None or not self.state.accepts_dispatch:
                if not await self._start():
                    return
                continue
            if not self._transport.is_alive(self._handle):
                await self._handle_transport_failure(
                    self._handle, ProtocolError(self.last_error or "Backend is no longer alive")
                )
                continue

            async with self._lock:
                if not self._queue:
                    self._wakeup.clear()
                    continue

            await self._slots.acquire()
            if self.state is BackendState.DEGRADED:
                # Degraded backends serve one exchange at a time.
                await self._idle.wait()
            if self.state is None or not self.state.accepts_dispatch:
                self._slots.release()
                continue

            async with self._lock:
                if not self._queue:
                    self._wakeup.clear()
                    self._slots.release()
                    continue
                pending = self._queue.popleft()
                if not self._queue:
                    self._wakeup.clear()

            if pending.future.done():
                self._slots.release()
                continue
            if not await self._admit(pending):
                self._slots.release()
                continue

            correlation_id = pending.request.correlation_id
            self._idle.clear()
            self._in_flight[correlation_id] = asyncio.create_task(
                self._exchange(pending, self._handle)
            )

    async def _admit(self, pending: _Pending) -> bool:
        hook = pending.request.before_dispatch
        if hook is None:
            return True
        try:
            await hook()
        except CredentialError as exc:
            logger.info(
                "Dropped queued call whose credential is no longer valid",
                extra={
                    "tool_name": self.tool_name,
                    "correlation_id": pending.request.correlation_id,
                    "error_kind": exc.kind,
                },
            )
            if not pending.future.done():
                pending.future.set_exception(exc)
            return False
        return True

    async def _exchange(self, pending: _Pending, handle: Any) -> None:
        request = pending.request
        try:
            output = await self._transport.exchange(handle, request)
        except ToolExecutionError as exc:
            # The backend answered; it is healthy even though the tool failed.
            self._record_success()
            self._resolve(pending, exc=exc)
        except ToolTimeoutError as exc:
            self._resolve(pending, exc=exc)
            await self._record_failure(handle, exc)
        except ProcessExitedError as exc:
            self._resolve(pending, exc=exc)
            if self._transport.is_alive(handle):
                # Only this call's process died (spawn-per-call backends).
                await self._record_failure(handle, exc)
            else:
                await self._handle_transport_failure(handle, exc)
        except TransportError as exc:
            self._resolve(pending, exc=exc)
            await self._handle_transport_failure(handle, exc)
        except asyncio.CancelledError:
            self._resolve(pending, exc=UnavailableError(f"Backend for '{self.tool_name}' shut down"))
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected transport failure",
                extra={"tool_name": self.tool_name, "correlation_id": request.correlation_id},
            )
            error = ProtocolError(f"Unexpected transport failure: {exc}")
            self._resolve(pending, exc=error)
            await self._handle_transport_failure(handle, error)
        else:
            self._record_success()
            self._resolve(pending, result=output)
        finally:
            self._in_flight.pop(request.correlation_id, None)
            if not self._in_flight:
                self._idle.set()
            self._slots.release()

    async def _start(self) -> bool:
        """Launch (with backoff on retries) until ready or the ceiling is hit."""
        while True:
            if self._policy.exhausted(self.restart_attempts):
                await self._stop()
                return False
            if self.restart_attempts > 0:
                self.state = BackendState.RESTARTING
                delay = self._policy.delay(self.restart_attempts - 1, self._rng)
                logger.info(
                    "Restarting backend after backoff",
                    extra={
                        "tool_name": self.tool_name,
                        "attempt": self.restart_attempts,
                        "delay": round(delay, 3),
                    },
                )
                await self._sleep(delay)
            else:
                self.state = BackendState.STARTING

            await self._drop_handle()
            try:
                self._handle = await self._transport.launch(self.descriptor)
            except GatewayError as exc:
                self._note_launch_failure(exc)
                continue
            except OSError as exc:
                self._note_launch_failure(exc)
                continue

            self.state = BackendState.READY
            self.consecutive_failures = 0
            logger.info("Backend ready", extra={"tool_name": self.tool_name, "state": self.state.value})
            return True

    def _note_launch_failure(self, exc: Exception) -> None:
        self.restart_attempts += 1
        self.last_error = str(exc)
        self._handle = None
        logger.warning(
            "Backend launch failed: %s",
            exc,
            extra={"tool_name": self.tool_name, "attempt": self.restart_attempts},
        )

    async def _stop(self) -> None:
        self.state = BackendState.STOPPED
        await self._drop_handle()
        async with self._lock:
            self._fail_queued_locked(
                BackendUnavailableError(
                    f"Backend for '{self.tool_name}' exceeded {self._policy.max_restarts} restarts"
                )
            )
        logger.error(
            "Backend stopped after reaching the restart ceiling",
            extra={"tool_name": self.tool_name, "attempt": self.restart_attempts},
        )

    async def _record_failure(self, handle: Any, exc: GatewayError) -> None:
        self.consecutive_failures += 1
        self.last_error = str(exc)
        if self.consecutive_failures >= self._settings.SUPERVISOR_RESTART_THRESHOLD:
            await self._handle_transport_failure(handle, exc)
        elif (
            self.consecutive_failures >= self._settings.SUPERVISOR_DEGRADED_THRESHOLD
            and self.state is BackendState.READY
        ):
            self.state = BackendState.DEGRADED
            logger.warning(
                "Backend degraded",
                extra={"tool_name": self.tool_name, "error_kind": exc.kind},
            )

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        self.restart_attempts = 0
        if self.state is BackendState.DEGRADED:
            self.state = BackendState.READY

    async def _handle_transport_failure(self, handle: Any, exc: GatewayError) -> None:
        if handle is None or handle is not self._handle:
            return  # already restarted
        self.consecutive_failures += 1
        self.restart_attempts += 1
        self.last_error = str(exc)
        self.state = BackendState.RESTARTING
        logger.warning(
            "Backend failed, scheduling restart: %s",
            exc,
            extra={"tool_name": self.tool_name, "error_kind": exc.kind},
        )
        await self._drop_handle()
        self._wakeup.set()

    async def _drop_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._transport.terminate(handle)

    def _fail_queued_locked(self, exc: GatewayError) -> None:
        while self._queue:
            pending = self._queue.popleft()
            if not pending.future.done():
                pending.future.set_exception(exc)
        self._wakeup.clear()

    @staticmethod
    def _resolve(pending: _Pending, *, result: Any = None, exc: Exception | None = None) -> None:
        if pending.future.done():
            return
        if exc is not None:
            pending.future.set_exception(exc)
        else:
            pending.future.set_result(result)


class BackendSupervisor:
    """Owns one :class:`BackendProcess` per tool name."""

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        transport_factory: TransportFactory = build_transport,
        *,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_supervisor_settings()
        self._transport_factory = transport_factory
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._backends: dict[str, BackendProcess] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, descriptor: ToolDescriptor, request: ToolCallRequest) -> asyncio.Future:
        backend = await self._backend_for(descriptor)
        return await backend.enqueue(request)

    async def cancel(self, tool_name: str, correlation_id: str) -> None:
        backend = self._backends.get(tool_name)
        if backend is not None:
            await backend.cancel(correlation_id)

    async def start_all(self, descriptors) -> None:
        for descriptor in descriptors:
            backend = await self._backend_for(descriptor)
            backend.start()

    async def retire(self, tool_names) -> None:
        """Shut down backends whose descriptors were removed or changed."""
        async with self._lock:
            retired = [self._backends.pop(name) for name in tool_names if name in self._backends]
        for backend in retired:
            await backend.shutdown()

    async def reset(self, tool_name: str) -> bool:
        backend = self._backends.get(tool_name)
        if backend is None:
            return False
        await backend.reset()
        return True

    def get(self, tool_name: str) -> BackendProcess | None:
        return self._backends.get(tool_name)

    def status(self) -> list[BackendStatus]:
        return [self._backends[name].status() for name in sorted(self._backends)]

    async def shutdown(self) -> None:
        async with self._lock:
            backends = list(self._backends.values())
            self._backends.clear()
        await asyncio.gather(*(backend.shutdown() for backend in backends))

    async def _backend_for(self, descriptor: ToolDescriptor) -> BackendProcess:
        stale: BackendProcess | None = None
        async with self._lock:
            backend = self._backends.get(descriptor.name)
            if backend is not None and backend.descriptor != descriptor:
                stale, backend = backend, None
            if backend is None:
                backend = BackendProcess(
                    descriptor,
                    self._transport_factory(descriptor.transport, self._settings),
                    self._settings,
                    rng=self._rng,
                    sleep=self._sleep,
                )
                self._backends[descriptor.name] = backend
        if stale is not None:
            await stale.shutdown()
        return backend
