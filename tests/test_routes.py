import importlib
import json
from dataclasses import dataclass
from types import ModuleType

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeClock, StubSandbox, flaky_descriptor, module_descriptor, running_task
from src.app.application.credentials import CredentialIssuer
from src.app.application.orchestrator import TaskOrchestrator
from src.app.application.pii import PiiCensor
from src.app.application.registry import ToolRegistry
from src.app.application.router import ToolCallRouter
from src.app.application.supervisor import BackendSupervisor
from src.app.domain.models.payloads import SandboxOutcome
from src.app.infrastructure.memory.repositories import InMemoryStorageRepository
from src.app.presentation.errors import install_error_handlers
from src.setup.sandbox_config import SandboxSettings

INTERNAL = "/sandbox/internal"


@dataclass
class Gateway:
    client: TestClient
    storage: InMemoryStorageRepository
    issuer: CredentialIssuer
    supervisor: BackendSupervisor
    registry: ToolRegistry
    clock: FakeClock
    internal: ModuleType

    def issue_token(self, task_id: str = "task-1") -> str:
        async def _issue() -> str:
            await running_task(self.storage, task_id)
            credential = await self.issuer.issue(task_id)
            return credential.token

        return self.client.portal.call(_issue)

    def tool_call(self, token, tool_name, payload=None):
        body = {"authToken": token, "toolName": tool_name, "input": payload}
        return self.client.post(f"{INTERNAL}/tool-call", json=body)


@pytest.fixture
def gateway(
    tmp_path,
    monkeypatch: pytest.MonkeyPatch,
    storage,
    issuer,
    clock,
    supervisor_settings,
    router_settings,
):
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    (workspace / "hello.txt").write_text("hi there", encoding="utf-8")

    registry = ToolRegistry(
        [
            module_descriptor(
                "filesystem.list",
                "src.tool_servers.filesystem",
                env={"FILESYSTEM_ROOT": str(workspace)},
            ),
            flaky_descriptor("db.query"),
        ]
    )
    supervisor = BackendSupervisor(
        supervisor_settings.model_copy(
            update={"SUPERVISOR_BACKOFF_BASE_SECONDS": 0.5, "SUPERVISOR_BACKOFF_CAP_SECONDS": 1.0}
        )
    )
    censor = PiiCensor()
    router = ToolCallRouter(
        issuer=issuer,
        registry=registry,
        supervisor=supervisor,
        censor=censor,
        settings=router_settings,
    )

    async def sandbox_behaviour(task_id, credential, payload):
        if payload == "explode":
            raise RuntimeError("sandbox crashed")
        result = await router.route(credential.token, "filesystem.list", {"path": "."})
        return SandboxOutcome(succeeded=True, output=result.output, logs=["listed files"])

    orchestrator = TaskOrchestrator(
        storage=storage,
        issuer=issuer,
        sandbox=StubSandbox(sandbox_behaviour),
        censor=censor,
        settings=SandboxSettings(SANDBOX_TIMEOUT_SECONDS=10),
    )
    bindings = {
        ToolCallRouter: router,
        ToolRegistry: registry,
        BackendSupervisor: supervisor,
        TaskOrchestrator: orchestrator,
    }

    import inject

    monkeypatch.setattr(inject, "instance", lambda interface: bindings[interface])

    routes_module = importlib.import_module("src.app.presentation.routes")
    internal_module = importlib.import_module("src.app.presentation.internal")
    importlib.reload(routes_module)
    importlib.reload(internal_module)

    internal_app = internal_module.create_internal_app()
    internal_app.dependency_overrides[internal_module.require_internal_network] = lambda: None

    app = FastAPI()
    install_error_handlers(app)
    app.include_router(routes_module.router)
    app.mount("/sandbox", internal_app)

    with TestClient(app) as client:
        yield Gateway(client, storage, issuer, supervisor, registry, clock, internal_module)
        client.portal.call(supervisor.shutdown)


def test_submit_task_runs_tool_and_succeeds(gateway: Gateway) -> None:
    response = gateway.client.post("/tasks", json={"user_id": "alice", "task": "list files"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "succeeded"
    assert body["error"] is None
    assert body["result"]["entries"] == [{"name": "hello.txt", "type": "file", "size": 8}]
    assert body["logs"] == ["listed files"]

    fetched = gateway.client.get(f"/tasks/{body['task_id']}", params={"user_id": "alice"})
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "succeeded"


def test_submit_task_internal_error_is_generic(gateway: Gateway) -> None:
    response = gateway.client.post("/tasks", json={"user_id": "alice", "task": "explode"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["error"]["kind"] == "InternalError"
    assert "sandbox crashed" not in response.text


@pytest.mark.parametrize(
    "payload",
    [{"task": "list files"}, {"user_id": "alice"}, {"user_id": "", "task": "x"}, {"user_id": "a", "task": "  "}],
)
def test_submit_task_rejects_missing_fields(gateway: Gateway, payload) -> None:
    response = gateway.client.post("/tasks", json=payload)

    assert response.status_code == 422


def test_task_access_errors(gateway: Gateway) -> None:
    created = gateway.client.post("/tasks", json={"user_id": "alice", "task": "list files"}).json()

    forbidden = gateway.client.get(f"/tasks/{created['task_id']}", params={"user_id": "bob"})
    missing = gateway.client.get("/tasks/nope", params={"user_id": "alice"})
    finished = gateway.client.post(f"/tasks/{created['task_id']}/cancel", params={"user_id": "alice"})

    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["kind"] == "TaskAccessDenied"
    assert missing.status_code == 404
    assert finished.status_code == 409


def test_internal_call_lists_files(gateway: Gateway) -> None:
    token = gateway.issue_token()

    response = gateway.tool_call(token, "filesystem.list", {"path": "."})

    assert response.status_code == 200
    body = response.json()
    assert body["correlation_id"]
    assert body["output"]["entries"][0]["name"] == "hello.txt"


def test_internal_call_missing_fields_is_bad_request(gateway: Gateway) -> None:
    no_token = gateway.client.post(f"{INTERNAL}/tool-call", json={"toolName": "filesystem.list"})
    no_tool = gateway.client.post(f"{INTERNAL}/tool-call", json={"authToken": "abc"})
    bad_deadline = gateway.client.post(
        f"{INTERNAL}/tool-call",
        json={"authToken": "abc", "toolName": "filesystem.list", "deadline": -1},
    )

    for response in (no_token, no_tool, bad_deadline):
        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "BadRequest"


def test_internal_call_with_bad_token_is_unauthorized(gateway: Gateway) -> None:
    response = gateway.tool_call("forged", "filesystem.list", {})

    assert response.status_code == 401
    assert response.json() == {"error": {"kind": "Unauthorized", "message": "Unknown credential."}}


def test_expired_token_is_rejected_without_dispatch(gateway: Gateway) -> None:
    token = gateway.issue_token()
    gateway.clock.advance(3600)

    response = gateway.tool_call(token, "filesystem.list", {"path": "."})

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "Expired"
    assert gateway.client.get("/backends").json() == []


def test_unknown_tool_is_not_found(gateway: Gateway) -> None:
    token = gateway.issue_token()

    response = gateway.tool_call(token, "does-not-exist", {})

    assert response.status_code == 404
    assert response.json()["error"]["kind"] == "UnknownTool"

    # The credential stays usable for the rest of the task.
    assert gateway.tool_call(token, "filesystem.list", {"path": "."}).status_code == 200


def test_backend_crash_restarts_and_recovers(gateway: Gateway) -> None:
    token = gateway.issue_token()

    crashed = gateway.tool_call(token, "db.query", {"crash": True})

    assert crashed.status_code == 502
    assert crashed.json()["error"]["kind"] == "ProcessExited"
    states = {backend["tool_name"]: backend for backend in gateway.client.get("/backends").json()}
    assert states["db.query"]["state"] == "restarting"
    assert states["db.query"]["restart_attempts"] == 1

    recovered = gateway.tool_call(token, "db.query", {"sql": "select 1"})

    assert recovered.status_code == 200
    assert recovered.json()["output"]["rows"] == [[1]]
    states = {backend["tool_name"]: backend for backend in gateway.client.get("/backends").json()}
    assert states["db.query"]["state"] == "ready"


def test_internal_tool_listing_requires_bearer_token(gateway: Gateway) -> None:
    token = gateway.issue_token()

    listed = gateway.client.get(f"{INTERNAL}/tools", headers={"Authorization": f"Bearer {token}"})
    anonymous = gateway.client.get(f"{INTERNAL}/tools")

    assert listed.status_code == 200
    names = [tool["name"] for tool in listed.json()]
    assert names[:2] == ["db.query", "filesystem.list"]
    assert "gateway.list_tools" in names
    assert all("launch" not in tool for tool in listed.json())
    assert anonymous.status_code == 401


def test_internal_surface_rejects_foreign_clients(gateway: Gateway) -> None:
    guarded = gateway.internal.create_internal_app()

    with TestClient(guarded) as client:
        response = client.post("/internal/tool-call", json={"authToken": "a", "toolName": "b"})

    assert response.status_code == 403


def test_health_reports_backends_and_calls(gateway: Gateway) -> None:
    token = gateway.issue_token()
    gateway.tool_call(token, "filesystem.list", {"path": "."})

    health = gateway.client.get("/health").json()

    assert health["status"] == "ok"
    assert health["tools"] == 2
    assert health["backends"][0]["tool_name"] == "filesystem.list"
    assert health["calls"]["successful_calls"] == 1


def test_admin_endpoints_disabled_without_token(gateway: Gateway) -> None:
    response = gateway.client.post("/admin/registry/reload", json={})

    assert response.status_code == 404


def test_admin_reload_swaps_catalog(gateway: Gateway, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADMIN_TOKEN", "s3cret")
    catalog = tmp_path / "catalog.json"
    catalog.write_text(
        json.dumps(
            {
                "tools": [
                    {
                        "name": "filesystem.list",
                        "transport": "stdio",
                        "launch": {"command": "python3", "args": ["-m", "src.tool_servers.filesystem"]},
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    wrong = gateway.client.post(
        "/admin/registry/reload", json={"path": str(catalog)}, headers={"X-Admin-Token": "nope"}
    )
    rejected = gateway.client.post(
        "/admin/registry/reload", json={"path": str(broken)}, headers={"X-Admin-Token": "s3cret"}
    )
    accepted = gateway.client.post(
        "/admin/registry/reload", json={"path": str(catalog)}, headers={"X-Admin-Token": "s3cret"}
    )

    assert wrong.status_code == 403
    assert rejected.status_code == 400
    assert gateway.registry.names() == ["filesystem.list"]
    assert accepted.status_code == 200
    assert accepted.json() == {"added": [], "removed": ["db.query"], "changed": ["filesystem.list"]}


def test_admin_reset_backend(gateway: Gateway, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ADMIN_TOKEN", "s3cret")
    token = gateway.issue_token()
    gateway.tool_call(token, "filesystem.list", {"path": "."})

    reset = gateway.client.post(
        "/admin/backends/filesystem.list/reset", headers={"X-Admin-Token": "s3cret"}
    )
    missing = gateway.client.post("/admin/backends/nope/reset", headers={"X-Admin-Token": "s3cret"})

    assert reset.status_code == 200
    assert reset.json() == {"tool_name": "filesystem.list", "reset": True}
    assert missing.status_code == 404
    assert gateway.tool_call(token, "filesystem.list", {"path": "."}).status_code == 200
