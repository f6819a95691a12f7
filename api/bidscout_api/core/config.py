from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "bidscout-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    ingest_tokens: dict[str, str] = {}
    alert_webhook_url: str | None = None
    alert_timeout_seconds: float = 5.0
    buy_confidence_threshold: int = 3
    matching_listing_window_days: int = 30
    replication_enabled: bool = True
    otel_enabled: bool = True
    otel_service_name: str = "bidscout-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BS_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
