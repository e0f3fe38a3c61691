from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from src.app.application.services import TaskService, ToolService
from src.app.domain.models import BackendStatus, TaskSubmission, TaskView
from src.setup.api_config import get_api_settings
from src.setup.registry_config import get_registry_settings

router = APIRouter(tags=["tasks"])
logger = logging.getLogger(__name__)

# Instantiate services once (simple DI)
_task_service = TaskService()
_tool_service = ToolService()


class ReloadRequest(BaseModel):
    path: str | None = Field(default=None, description="Catalog file; defaults to TOOL_CATALOG_PATH.")


class ReloadResponse(BaseModel):
    added: list[str]
    removed: list[str]
    changed: list[str]


def _require_admin(token: str | None) -> None:
    expected = get_api_settings().ADMIN_TOKEN
    if not expected:
        raise HTTPException(status_code=404, detail="Administrative endpoints are disabled")
    if token is None or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="Invalid admin token")


@router.post(
    "/tasks",
    response_model=TaskView,
    summary="Run a task",
    description=(
        "Runs the task in a sandbox and returns its terminal state. The sandbox may call "
        "registered tools through the internal surface with a credential scoped to this task."
    ),
)
async def submit_task(body: TaskSubmission) -> TaskView:
    return await _task_service.submit(body.user_id, body.task)


@router.get("/tasks/{task_id}", response_model=TaskView, summary="Inspect a task")
async def get_task(task_id: str, user_id: str = Query(..., min_length=1)) -> TaskView:
    return await _task_service.get_task(task_id, user_id)


@router.post("/tasks/{task_id}/cancel", response_model=TaskView, summary="Cancel a running task")
async def cancel_task(task_id: str, user_id: str = Query(..., min_length=1)) -> TaskView:
    return await _task_service.cancel_task(task_id, user_id)


@router.get("/health", tags=["ops"])
async def health() -> dict:
    return _tool_service.health()


@router.get("/backends", response_model=list[BackendStatus], tags=["ops"])
async def backends() -> list[BackendStatus]:
    return _tool_service.backends()


@router.post("/admin/registry/reload", response_model=ReloadResponse, tags=["admin"])
async def reload_registry(
    body: ReloadRequest | None = None,
    x_admin_token: str | None = Header(default=None),
) -> ReloadResponse:
    _require_admin(x_admin_token)
    path = (body.path if body else None) or get_registry_settings().TOOL_CATALOG_PATH
    try:
        changes = await _tool_service.reload_registry(path)
    except (OSError, ValueError, ValidationError) as exc:
        # The previous table stays active.
        logger.warning("Registry reload rejected: %s", exc)
        raise HTTPException(status_code=400, detail=f"Catalog rejected: {exc}") from exc
    return ReloadResponse(**changes)


@router.post("/admin/backends/{tool_name}/reset", tags=["admin"])
async def reset_backend(tool_name: str, x_admin_token: str | None = Header(default=None)) -> dict:
    _require_admin(x_admin_token)
    if not await _tool_service.reset_backend(tool_name):
        raise HTTPException(status_code=404, detail=f"No backend for '{tool_name}'")
    return {"tool_name": tool_name, "reset": True}
