from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class FilesystemServerSettings(BaseSettings):
    """Root the filesystem tools are confined to."""
    FILESYSTEM_ROOT: str = "."
    FILESYSTEM_MAX_READ_BYTES: int = 1_048_576

    model_config = ConfigDict(env_file=".env", extra="ignore")


class DatabaseServerSettings(BaseSettings):
    DB_PATH: str = "data/gateway.sqlite"
    DB_MAX_ROWS: int = 500

    model_config = ConfigDict(env_file=".env", extra="ignore")


class HttpServerSettings(BaseSettings):
    # Comma separated; an empty list blocks every host.
    HTTP_ALLOWED_HOSTS: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0
    HTTP_MAX_BODY_BYTES: int = 262_144

    model_config = ConfigDict(env_file=".env", extra="ignore")

    @property
    def allowed_hosts(self) -> set[str]:
        return {host.strip().lower() for host in self.HTTP_ALLOWED_HOSTS.split(",") if host.strip()}
