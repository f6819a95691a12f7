from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    upstream_base_url: str = "https://api.apify.com/v2"
    upstream_token: str | None = None
    upstream_timeout_seconds: float = 15.0
    invocation_budget_seconds: float = 25.0
    lease_seconds: int = 60
    lease_claim_mode: Literal["verify", "atomic"] = "atomic"
    page_size: int = 100
    max_attempts: int = 5
    source_filter: str | None = None
    taxonomy_path: str | None = None
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-ingest"
    api_key: str = "local-ingest-key"
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    matching_interval_seconds: float = 600.0
    enrichment_interval_seconds: float = 900.0
    enrichment_batch_size: int = 500
    otel_enabled: bool = True
    otel_service_name: str = "bidscout-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
