from enum import Enum

from pydantic import BaseModel, Field


class BackendState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    STOPPED = "stopped"

    @property
    def accepts_dispatch(self) -> bool:
        return self in (BackendState.READY, BackendState.DEGRADED)


class BackendStatus(BaseModel):
    """Point-in-time view of one supervised backend."""

    tool_name: str
    state: BackendState
    queue_depth: int = Field(ge=0)
    in_flight: int = Field(ge=0)
    consecutive_failures: int = Field(ge=0)
    restart_attempts: int = Field(ge=0)
    last_error: str | None = None
