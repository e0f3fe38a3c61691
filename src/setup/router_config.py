from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class RouterSettings(BaseSettings):
    """Limits applied to every internal tool call."""
    ROUTER_MAX_CALLS_PER_TASK: int = 8
    ROUTER_DEFAULT_DEADLINE_SECONDS: float = 30.0
    ROUTER_MAX_DEADLINE_SECONDS: float = 120.0

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_router_settings() -> RouterSettings:
    """Return a fresh router settings instance."""
    return RouterSettings()
