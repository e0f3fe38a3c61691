from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class RegistrySettings(BaseSettings):
    TOOL_CATALOG_PATH: str = "tools.json"

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_registry_settings() -> RegistrySettings:
    return RegistrySettings()
