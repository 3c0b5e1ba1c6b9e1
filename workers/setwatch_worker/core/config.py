from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 10.0
    sweep_interval_seconds: float = 60.0
    stats_interval_seconds: float = 300.0
    max_backoff_seconds: float = 300.0
    stale_alert_threshold: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "setwatch-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="SW_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
