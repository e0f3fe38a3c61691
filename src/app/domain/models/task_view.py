from typing import Any

from pydantic import BaseModel, Field

from src.app.domain.models.task import Task, TaskError
from src.app.domain.models.task_state import TaskState


class TaskView(BaseModel):
    """Well-formed task outcome returned to the public caller."""

    task_id: str = Field(description="Unique task identifier.")
    status: TaskState = Field(description="Lifecycle state.")
    result: Any | None = Field(default=None, description="Task output, if succeeded.")
    error: TaskError | None = Field(default=None, description="Failure reason, if failed.")
    logs: list[str] = Field(default_factory=list)

    @classmethod
    def from_task(cls, task: Task) -> "TaskView":
        return cls(
            task_id=task.id,
            status=task.state,
            result=task.result,
            error=task.error,
            logs=task.logs,
        )
