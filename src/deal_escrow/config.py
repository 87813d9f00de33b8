"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Settlement switches
(USE_XRPL, AUTOMATIC_DEALS_ACCEPTANCE, SETTLEMENT_SIMULATE) are read once
per process; each deal records the backend it was created with.

Usage:
    from deal_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Deal Escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    page_size: int = 10

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://deal_escrow:deal_escrow_dev"
        "@localhost:5432/deal_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False
    db_create_tables: bool = True

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_dedup_ttl_seconds: int = 86400  # 24 hours

    # --- Auth ---
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24
    cors_allow_origins: list[str] = ["*"]

    # --- Settlement switches ---
    use_xrpl: bool = False
    automatic_deals_acceptance: bool = False
    settlement_simulate: bool = False
    settlement_timeout_seconds: float = 60.0
    settlement_max_attempts: int = 3
    settlement_backoff_max_seconds: float = 10.0
    seed_encryption_key: str = ""

    # --- EVM (Backend A) ---
    blockchain_rpc_url: str = "http://localhost:8545"
    blockchain_private_key: str = ""
    blockchain_chain_id: int | None = None
    deals_manager_contract_address: str = ""
    investment_token_contract_address: str = ""
    investment_token_decimals: int = 18
    vault_lookup_delay_seconds: float = 5.0

    # --- XRPL (Backend B) ---
    xrpl_server_url: str = "https://s.altnet.rippletest.net:51234"
    xrpl_admin_seed: str = ""
    xrpl_currency: str = "USD"
    xrpl_shares_currency: str = "SHRx"
    xrpl_trust_limit: str = "1000000"
    xrpl_activation_drops: int = 0

    # --- Background pollers ---
    poll_interval_seconds: float = 60.0
    deposit_lookback_blocks: int = 100
    deposit_dedup_window: int = 1000
    pollers_enabled: bool = True

    # --- Outbound integrations ---
    finance_app_url: str = ""
    finance_app_api_key: str = ""
    notifications_webhook_url: str = ""
    notifications_timeout_seconds: float = 10.0

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
