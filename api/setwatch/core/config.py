from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "setwatch-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_timeout_minutes: dict[str, int] = Field(
        default_factory=lambda: {
            "capture": 30,
            "enrich": 60,
            "materialize": 30,
            "sanitize": 30,
            "reconcile": 15,
            "analyze": 15,
            "catalog_refresh": 60,
        }
    )
    job_default_timeout_minutes: int = 30
    job_stall_minutes: int = 10
    progress_milestone_interval: int = 10
    progress_time_interval_ms: int = 5000
    reconcile_batch_size: int = 100
    validation_batch_size: int = 50
    job_detail_batch_size: int = 100
    reconciliation_version: str = "1.2.0"
    stage_service_urls: dict[str, str] = Field(default_factory=dict)
    stage_service_timeout_seconds: float = 10.0
    chain_poll_interval_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "setwatch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="SW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
