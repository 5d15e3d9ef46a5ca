from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "racesync"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    storage_backend: Literal["postgres", "memory"] = "postgres"
    operator_api_key: str | None = None
    scheduler_enabled: bool = False
    scheduler_interval_seconds: float = 300.0
    scheduler_lock_key: int = 0x6D635F73
    fetch_max_body_bytes: int = 2 * 1024 * 1024
    fetch_user_agent: str = "racesync/1.0 (+edition-sync)"
    ai_api_key: str | None = None
    ai_model: str | None = None
    ai_base_url: str = "https://api.openai.com/v1"
    ai_enable_rule_gen: bool = False
    ai_snippet_max_chars: int = 80_000
    ai_timeout_seconds: float = 60.0
    otel_enabled: bool = True
    otel_service_name: str = "racesync"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RACESYNC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
