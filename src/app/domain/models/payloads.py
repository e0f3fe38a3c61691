from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskSubmission(BaseModel):
    user_id: str = Field(min_length=1, description="Submitting user.")
    task: Any = Field(description="Opaque task payload handed to the sandbox.")

    @field_validator("task")
    @classmethod
    def _task_not_empty(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("task must not be empty")
        return value


class InternalToolCall(BaseModel):
    """Body of a sandbox → gateway tool call.

    Both fields are optional at the schema level so that a missing value can
    be reported as a client error distinct from a failed authentication.
    """

    auth_token: str | None = Field(default=None, alias="authToken")
    tool_name: str | None = Field(default=None, alias="toolName")
    input: Any = Field(default=None, description="Tool arguments.")
    deadline: float | None = Field(
        default=None, gt=0, description="Seconds the caller is willing to wait."
    )

    model_config = ConfigDict(populate_by_name=True)


class SandboxOutcome(BaseModel):
    """Terminal signal emitted by the sandbox collaborator."""

    succeeded: bool
    output: Any = None
    error: str | None = None
    logs: list[str] = Field(default_factory=list)
