from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    rpc_url: str = "http://localhost:8545"
    rpc_timeout_seconds: float = 10.0
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    store_backend: str = "postgres"
    agent_registry_address: str | None = None
    bounty_registry_address: str | None = None
    reputation_registry_address: str | None = None
    start_block: int = 0
    confirmation_depth: int = 2
    backfill_batch_size: int = 1000
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    fetch_max_attempts: int = 5
    baseline_reputation: int = 50
    otel_enabled: bool = True
    otel_service_name: str = "bounty-indexer"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="BI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
