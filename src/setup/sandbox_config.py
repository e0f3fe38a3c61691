import sys

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class SandboxSettings(BaseSettings):
    """Configuration for the subprocess sandbox collaborator."""
    SANDBOX_COMMAND: list[str] = [sys.executable, "-m", "src.sandbox_runtime.runner"]
    SANDBOX_TIMEOUT_SECONDS: float = 60.0
    SANDBOX_WORKDIR_ROOT: str | None = None
    # Extra variables for the sandbox; the host environment is not inherited.
    SANDBOX_ENV: dict[str, str] = {}
    # URL the sandbox uses to reach the internal surface.
    GATEWAY_INTERNAL_URL: str = "http://127.0.0.1:3001/internal/tool-call"

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_sandbox_settings() -> SandboxSettings:
    """Return a fresh sandbox settings instance."""
    return SandboxSettings()
