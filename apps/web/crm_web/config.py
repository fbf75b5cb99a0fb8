from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    api_base_url: str = "http://localhost:3000"
    request_timeout_seconds: float = 10.0
    login_path: str = "/login"

    model_config = SettingsConfigDict(env_prefix="CRM_WEB_", env_file=".env", extra="ignore", case_sensitive=False)


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()
