class TaskNotFoundError(Exception):
    """Raised when a task identifier does not exist in the task store."""
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' was not found.")
        self.task_id = task_id


class TaskAccessDeniedError(Exception):
    """Raised when a user attempts to access a task they do not own."""

    def __init__(self, task_id: str, user_id: str) -> None:
        super().__init__(f"User '{user_id}' has no access to task '{task_id}'.")
        self.task_id = task_id
        self.user_id = user_id


class TaskStateError(Exception):
    """Raised on an illegal task state transition."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task '{task_id}' cannot move from '{current}' to '{target}'.")
        self.task_id = task_id
        self.current = current
        self.target = target


class GatewayError(Exception):
    """Base class for errors surfaced to callers of the gateway.

    ``kind`` is the stable, machine-readable name that travels across the
    HTTP boundary; the message is for humans.
    """

    kind = "GatewayError"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class CredentialError(GatewayError):
    kind = "Unauthorized"


class UnauthorizedError(CredentialError):
    kind = "Unauthorized"


class ExpiredError(CredentialError):
    kind = "Expired"


class RevokedError(CredentialError):
    kind = "Revoked"


class UnknownToolError(GatewayError):
    kind = "UnknownTool"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is not registered.")
        self.tool_name = tool_name


class TooManyConcurrentCallsError(GatewayError):
    kind = "TooManyConcurrentCalls"


class OverloadedError(GatewayError):
    """Backend queue is full."""

    kind = "Overloaded"


class UnavailableError(GatewayError):
    """Backend is stopped."""

    kind = "Unavailable"


class BackendUnavailableError(UnavailableError):
    """Queued request failed because its backend hit the restart ceiling."""

    kind = "BackendUnavailable"


class ToolTimeoutError(GatewayError):
    kind = "Timeout"


class TransportError(GatewayError):
    """Failure of the backend exchange itself. Triggers the restart path."""


class ProtocolError(TransportError):
    kind = "ProtocolError"


class ProcessExitedError(TransportError):
    kind = "ProcessExited"


class ToolExecutionError(GatewayError):
    """The backend answered, but with an error object."""

    kind = "ToolError"


class SandboxTimeoutError(GatewayError):
    kind = "SandboxTimeout"


class TaskCancelledError(GatewayError):
    kind = "Cancelled"
