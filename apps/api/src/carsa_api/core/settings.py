from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./carsa.db"

    # Internal API security
    internal_api_key: str = ""

    # Ledger relay
    ledger_gateway_url: str | None = None
    ledger_gateway_api_key: str | None = None
    ledger_confirmation_timeout_seconds: float = 30.0

    # Reward economics
    # 1 token = 10^9 base units and is worth 1,000 fiat units.
    token_exchange_rate: int = Field(default=1_000_000, gt=0)
    max_purchase_amount: int = Field(default=1_000_000_000, gt=0)

    # Idempotency
    idempotency_lease_seconds: int = 120

    # Reconciliation sweep
    reconciliation_worker_enabled: bool = False
    reconciliation_interval_seconds: int = 60
    reconciliation_batch_size: int = 50
    stale_pending_after_seconds: int = 300
    stale_pending_fail_after_seconds: int = 3600

    # Tracing
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    tracing_console_export: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
