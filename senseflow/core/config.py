from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "https://app.senseflow.io"
    api_key: str = ""
    request_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 300.0
    continue_on_fail: bool = False
    max_concurrency: int = 1
    otel_enabled: bool = True
    otel_service_name: str = "senseflow-orchestrator"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SENSEFLOW_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
