
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class ApiSettings(BaseSettings):
    APP_NAME: str = "tool-gateway"
    APP_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PUBLIC_PORT: int = 3000
    INTERNAL_HOST: str = "0.0.0.0"
    INTERNAL_PORT: int = 3001
    # Client networks allowed to reach the internal (sandbox-facing) surface.
    INTERNAL_ALLOWED_NETWORKS: list[str] = [
        "127.0.0.0/8",
        "::1/128",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
    ]
    ADMIN_TOKEN: str | None = None
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_api_settings() -> ApiSettings:
    return ApiSettings() # type: ignore[call-arg]
