"""
Runs task logic in a child process with a scrubbed environment.

The child gets an empty scratch directory, ``PATH`` and nothing else from the
host, plus the task credential and the internal gateway URL. The payload is
written to its stdin as JSON. Every stdout line is a log line except the last
one that parses as a JSON object with an ``ok`` key, which is the terminal
signal.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from src.app.domain.models.credential import Credential
from src.app.domain.models.payloads import SandboxOutcome
from src.app.domain.repositories import SandboxRunner
from src.setup.sandbox_config import SandboxSettings, get_sandbox_settings

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[4]


def parse_terminal_signal(stdout: str) -> tuple[dict[str, Any] | None, list[str]]:
    """Split sandbox stdout into the terminal signal and the log lines."""
    lines = [line for line in stdout.splitlines() if line.strip()]
    for index in range(len(lines) - 1, -1, -1):
        try:
            candidate = json.loads(lines[index])
        except json.JSONDecodeError:
            continue
        if isinstance(candidate, dict) and "ok" in candidate:
            return candidate, lines[:index] + lines[index + 1 :]
    return None, lines


class SubprocessSandbox(SandboxRunner):
    def __init__(self, settings: SandboxSettings | None = None) -> None:
        self._settings = settings or get_sandbox_settings()
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    async def run(self, task_id: str, credential: Credential, payload: Any) -> SandboxOutcome:
        with tempfile.TemporaryDirectory(
            prefix=f"sandbox-{task_id[:8]}-", dir=self._settings.SANDBOX_WORKDIR_ROOT
        ) as workdir:
            process = await asyncio.create_subprocess_exec(
                *self._settings.SANDBOX_COMMAND,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=self._build_environment(task_id, credential),
            )
            self._processes[task_id] = process
            logger.info("Sandbox started", extra={"task_id": task_id, "pid": process.pid})
            try:
                stdout, stderr = await process.communicate(json.dumps(payload).encode("utf-8"))
            finally:
                self._processes.pop(task_id, None)
                if process.returncode is None:
                    process.kill()
                    await process.wait()

        if stderr:
            logger.debug(
                "sandbox stderr: %s",
                stderr.decode("utf-8", errors="replace").rstrip(),
                extra={"task_id": task_id},
            )
        signal, logs = parse_terminal_signal(stdout.decode("utf-8", errors="replace"))
        if signal is None:
            return SandboxOutcome(
                succeeded=False,
                error=f"Sandbox exited with code {process.returncode} without a result",
                logs=logs,
            )
        if signal.get("ok"):
            return SandboxOutcome(succeeded=True, output=signal.get("result"), logs=logs)
        return SandboxOutcome(
            succeeded=False,
            error=str(signal.get("error") or "Sandbox reported a failure"),
            logs=logs,
        )

    async def terminate(self, task_id: str) -> None:
        process = self._processes.pop(task_id, None)
        if process is None or process.returncode is not None:
            return
        process.kill()
        await process.wait()
        logger.info("Sandbox force-terminated", extra={"task_id": task_id})

    def _build_environment(self, task_id: str, credential: Credential) -> dict[str, str]:
        env: dict[str, str] = {"PYTHONPATH": str(_PROJECT_ROOT)}
        host_path = os.environ.get("PATH")
        if host_path:
            env["PATH"] = host_path
        env.update(self._settings.SANDBOX_ENV)
        env["GATEWAY_AUTH_TOKEN"] = credential.token
        env["GATEWAY_INTERNAL_URL"] = self._settings.GATEWAY_INTERNAL_URL
        env["GATEWAY_TASK_ID"] = task_id
        return env
