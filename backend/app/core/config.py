from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HELIUS_API_BASE = "https://api.helius.xyz/v0"


class Settings(BaseSettings):
    app_env: str = "development"
    jwt_secret: str = "changeme"
    jwt_expires: int = 3600
    database_url: str = "sqlite+aiosqlite:///./indexer.db"

    # 64 hex chars or any passphrase; see app.core.crypto
    encryption_key: str = "change-me-encryption-key"

    helius_api_key: str = ""
    helius_api_base: str = DEFAULT_HELIUS_API_BASE
    helius_webhook_id: str = ""
    webhook_receiver_url: str = ""
    helius_timeout: float = 15.0

    worker_poll_interval: float = 5.0
    max_processing_attempts: int = 3
    shutdown_grace_period: float = 10.0
    stale_processing_seconds: int = 900
    stale_sweep_interval: float = 60.0

    destination_pool_size: int = 5
    destination_pool_timeout: float = 10.0
    destination_idle_timeout: float = 30.0
    destination_connect_timeout: float = 10.0
    destination_command_timeout: float = 30.0
    destination_schema: str | None = "public"

    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    @field_validator("destination_schema", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value: object) -> object:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @property
    def helius_configured(self) -> bool:
        return bool(self.helius_api_key and self.helius_webhook_id and self.webhook_receiver_url)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
