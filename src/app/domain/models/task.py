from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.app.domain.models.task_state import TaskState


class TaskError(BaseModel):
    kind: str = Field(description="Machine-readable error kind.")
    message: str = Field(description="Human-readable description.")


class Task(BaseModel):
    id: str = Field(description="Unique task identifier.")
    user_id: str = Field(description="Owner of the task.")
    payload: Any = Field(description="Task payload as submitted by the user.")
    state: TaskState = Field(default=TaskState.PENDING, description="Lifecycle state.")
    result: Any | None = Field(default=None, description="Sandbox output on success.")
    error: TaskError | None = Field(default=None, description="Failure reason.")
    logs: list[str] = Field(default_factory=list, description="Sandbox log lines.")
    created_at: datetime = Field(description="Submission time.")
    completed_at: datetime | None = Field(
        default=None, description="When the task reached a terminal state."
    )
