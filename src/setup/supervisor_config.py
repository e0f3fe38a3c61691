from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class SupervisorSettings(BaseSettings):
    """Configuration for backend process supervision."""
    SUPERVISOR_QUEUE_BOUND: int = 64
    SUPERVISOR_DEGRADED_THRESHOLD: int = 2
    SUPERVISOR_RESTART_THRESHOLD: int = 5
    SUPERVISOR_MAX_RESTARTS: int = 5
    SUPERVISOR_BACKOFF_BASE_SECONDS: float = 0.5
    SUPERVISOR_BACKOFF_CAP_SECONDS: float = 30.0
    SUPERVISOR_BACKOFF_JITTER_SECONDS: float = 0.25
    SUPERVISOR_EAGER_START: bool = False
    SUPERVISOR_TERMINATE_GRACE_SECONDS: float = 5.0

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_supervisor_settings() -> SupervisorSettings:
    """Return a fresh supervisor settings instance."""
    return SupervisorSettings()
