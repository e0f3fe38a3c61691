from src.app.domain.models.backend_state import BackendState, BackendStatus
from src.app.domain.models.credential import Credential
from src.app.domain.models.payloads import InternalToolCall, SandboxOutcome, TaskSubmission
from src.app.domain.models.task import Task, TaskError
from src.app.domain.models.task_state import TaskState
from src.app.domain.models.task_view import TaskView
from src.app.domain.models.tool_call import ToolCallRequest, ToolCallResult
from src.app.domain.models.tool_descriptor import (
    LaunchSpec,
    ToolCatalog,
    ToolDescriptor,
    TransportKind,
)

__all__ = [
    "BackendState",
    "BackendStatus",
    "Credential",
    "InternalToolCall",
    "LaunchSpec",
    "SandboxOutcome",
    "Task",
    "TaskError",
    "TaskState",
    "TaskSubmission",
    "TaskView",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCatalog",
    "ToolDescriptor",
    "TransportKind",
]
