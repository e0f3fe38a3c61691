from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class CredentialSettings(BaseSettings):
    """Lifetime bounds for task-scoped internal tokens."""
    CREDENTIAL_DEFAULT_TTL_SECONDS: float = 300.0
    CREDENTIAL_MAX_TTL_SECONDS: float = 900.0
    CREDENTIAL_REVOKE_DRAIN_SECONDS: float = 5.0

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_credential_settings() -> CredentialSettings:
    """Return a fresh credential settings instance."""
    return CredentialSettings()
