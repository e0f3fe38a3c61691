from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TransportKind(str, Enum):
    STDIO = "stdio"
    ONESHOT = "oneshot"


class LaunchSpec(BaseModel):
    command: str = Field(description="Executable to launch.")
    args: list[str] = Field(default_factory=list, description="Command-line arguments.")
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables for the process."
    )
    cwd: str | None = Field(default=None, description="Working directory.")

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


class ToolDescriptor(BaseModel):
    name: str = Field(description="Unique tool name, e.g. 'filesystem.list'.")
    transport: TransportKind = Field(description="Wire transport used by the backend.")
    launch: LaunchSpec = Field(description="How to start the backend process.")
    max_concurrent_calls: int = Field(
        default=1, ge=1, description="In-flight exchanges allowed on one backend."
    )
    description: str = Field(default="", description="Shown to the sandbox on discovery.")
    tags: list[str] = Field(default_factory=list, description="Capability tags.")

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("tool name must not be blank")
        return value

    def public_view(self) -> dict:
        """Descriptor as exposed to sandboxes; launch details stay private."""
        return {
            "name": self.name,
            "description": self.description,
            "tags": list(self.tags),
            "transport": self.transport.value,
            "max_concurrent_calls": self.max_concurrent_calls,
        }


class ToolCatalog(BaseModel):
    """On-disk shape of the tool catalog file."""

    tools: list[ToolDescriptor] = Field(default_factory=list)
