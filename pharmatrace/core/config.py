from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # ─────────── APP ───────────
    app_name: str = "Pharma Batch Provenance Tracker"
    environment: str = "dev"
    log_level: str = "INFO"

    # ─────────── API ───────────
    api_prefix: str = "/api/v1"
    request_id_header: str = "X-Request-Id"

    # ─────────── DATABASE ───────────
    database_url: str

    # ─────────── CHAIN TRANSACTION SERVICE ───────────
    chain_tx_service_url: str = "http://localhost:4004/odata/v4/cardano-transaction"
    chain_query_service_url: str = "http://localhost:4004/odata/v4/cardano-odata"
    chain_api_key: Optional[str] = None
    chain_request_timeout_seconds: float = 30.0
    plutus_blueprint_path: str = "contracts/plutus.json"

    # ─────────── RECONCILIATION ───────────
    reconciliation_enabled: bool = True
    reconciliation_interval_seconds: float = 30.0
    reconciliation_initial_delay_seconds: float = 5.0

    # ─────────── LIFECYCLE ───────────
    # When False, a transfer on an asset with no recorded holder skips the
    # holder check (window between mint build and mint confirmation).
    strict_holder_check: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
