from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class PiiSettings(BaseSettings):
    PII_CENSOR_ENABLED: bool = True

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_pii_settings() -> PiiSettings:
    return PiiSettings()
