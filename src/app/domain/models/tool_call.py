from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def new_correlation_id() -> str:
    return uuid4().hex


class ToolCallRequest(BaseModel):
    correlation_id: str = Field(default_factory=new_correlation_id)
    tool_name: str
    task_id: str
    input: Any = None
    deadline: float = Field(description="Absolute deadline on the event loop clock.")
    # Re-checked by the supervisor right before the request hits the wire.
    before_dispatch: Callable[[], Awaitable[None]] | None = Field(default=None, exclude=True)

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ToolCallResult(BaseModel):
    correlation_id: str
    tool_name: str
    output: Any = None
