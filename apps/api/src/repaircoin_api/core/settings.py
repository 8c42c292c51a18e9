from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./repaircoin.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Tracing
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_console_exporter_enabled: bool = False

    # Shop-facing API security
    shop_api_key: str = ""

    # Redemption session lifecycle
    redemption_session_pending_ttl_seconds: int = 300
    redemption_session_approved_ttl_seconds: int = 86400
    redemption_session_rate_limit: int = 10
    redemption_session_rate_window_minutes: int = 15

    # Redemption sweep automation
    redemption_sweep_worker_enabled: bool = False
    redemption_sweep_interval_seconds: int = 60
    redemption_sweep_fix_invalid: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
