"""
Default sandbox entry point.

Reads the task payload as JSON from stdin, runs it and prints a final
``{"ok": ..., "result" | "error": ...}`` line. Everything printed before that
line is a log line. Understood payloads:

* ``{"steps": [{"tool": "filesystem.list", "input": {...}}, ...]}``: call
  each tool in order. A failing step is recorded and the next one runs.
* ``"list files"`` / ``"list tools"``: shorthands for ``filesystem.list``
  and ``gateway.list_tools``.
"""

from __future__ import annotations

import json
import sys
from typing import Any

from src.sandbox_runtime.client import GatewayCallError, GatewayClient

SHORTHANDS: dict[str, list[dict[str, Any]]] = {
    "list files": [{"tool": "filesystem.list", "input": {"path": "."}}],
    "list tools": [{"tool": "gateway.list_tools", "input": {}}],
}


def plan(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, str):
        steps = SHORTHANDS.get(payload.strip().lower())
        if steps is None:
            raise ValueError(f"Unrecognized task: {payload[:80]!r}")
        return steps
    if isinstance(payload, dict) and isinstance(payload.get("steps"), list):
        steps = payload["steps"]
        for step in steps:
            if not isinstance(step, dict) or not isinstance(step.get("tool"), str):
                raise ValueError("Each step needs a 'tool' name")
        return steps
    raise ValueError("Task must be a known phrase or an object with 'steps'")


def execute(steps: list[dict[str, Any]], client: GatewayClient) -> list[dict[str, Any]]:
    results = []
    for index, step in enumerate(steps):
        tool = step["tool"]
        print(f"step {index}: calling {tool}", flush=True)
        try:
            output = client.call_tool(tool, step.get("input"), step.get("deadline"))
        except GatewayCallError as exc:
            print(f"step {index}: {tool} failed with {exc.kind}", flush=True)
            results.append({"tool": tool, "ok": False, "error": {"kind": exc.kind, "message": exc.message}})
            continue
        results.append({"tool": tool, "ok": True, "output": output})
    return results


def emit(signal: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(signal, default=str) + "\n")
    sys.stdout.flush()


def main() -> int:
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else None
        steps = plan(payload)
    except ValueError as exc:
        emit({"ok": False, "error": str(exc)})
        return 1

    with GatewayClient() as client:
        results = execute(steps, client)
    emit({"ok": True, "result": {"steps": results}})
    return 0


if __name__ == "__main__":
    sys.exit(main())
