from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "veille-api"
    environment: str = "dev"
    log_level: str = "INFO"
    data_dir: str = "data"
    buffer_dir: str | None = None
    fetch_timeout_seconds: float = 30.0
    fetch_max_bytes: int = 10 * 1024 * 1024
    fetch_user_agent: str = "veille/1.0"
    fetch_max_redirects: int = 5
    scheduler_enabled: bool = True
    scheduler_check_interval_seconds: float = 60.0
    scheduler_max_fail_count: int = 10
    sweeper_interval_seconds: float = 6 * 3600.0
    probe_timeout_seconds: float = 10.0
    worker_concurrency: int = 8
    max_sources_per_dossier: int = 1000
    allow_private_networks: bool = False
    rpc_services_json: str | None = None
    github_api_base_url: str = "https://api.github.com"
    github_token: str | None = None
    max_backoff_seconds: float = 60.0
    otel_enabled: bool = True
    otel_service_name: str = "veille"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="VEILLE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
