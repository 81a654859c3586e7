"""Configuration surface for the settlement engine."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import BitcoinUnits, StellarUnits, Timeouts

DEV_ENCRYPTION_KEY = "velo_dev_only_32_byte_key_0000000"


class PriceFeedSettings(BaseSettings):
    """CoinGecko access limits."""
    base_url: str = "https://api.coingecko.com/api/v3"
    cache_ttl_seconds: float = 30.0
    max_concurrency: int = Field(
        default=2,
        validation_alias=AliasChoices("VELO_PRICE__MAX_CONCURRENCY", "COINGECKO_MAX_CONC"),
    )
    default_backoff_seconds: float = 5.0
    request_timeout_seconds: float = Timeouts.PRICE_FETCH

    model_config = SettingsConfigDict(
        env_prefix="VELO_PRICE__",
        extra="ignore",
        populate_by_name=True,
    )


class VeloSettings(BaseSettings):
    """Main settlement configuration."""

    environment: str = "dev"

    # Key custody: AES-256-CBC secret, hashed before use
    encryption_key: str = Field(
        default=DEV_ENCRYPTION_KEY,
        validation_alias=AliasChoices("VELO_ENCRYPTION_KEY", "ENCRYPTION_KEY"),
    )

    # EVM provider key (Alchemy); public fallbacks are used when empty
    alchemy_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("VELO_ALCHEMY_API_KEY", "ALCHEMY_API_KEY", "ALCHEMY_STARKNET_KEY"),
    )

    # memory:// keeps records in-process, postgresql:// uses asyncpg
    database_url: str = "memory://"

    log_level: str = "INFO"
    log_json: bool = True

    price: PriceFeedSettings = Field(default_factory=PriceFeedSettings)

    btc_fee_rate_sat_per_byte: int = BitcoinUnits.DEFAULT_FEE_RATE
    stellar_base_fee: int = StellarUnits.BASE_FEE_STROOPS

    evm_confirmation_timeout: float = Timeouts.EVM_CONFIRMATION
    starknet_confirmation_timeout: float = Timeouts.STARKNET_CONFIRMATION
    solana_confirmation_timeout: float = Timeouts.SOLANA_CONFIRMATION

    fee_queue_size: int = 1000
    fee_queue_workers: int = 2

    deposit_poll_interval_seconds: float = 300.0

    # Comma-separated in the environment
    enabled_chains: Union[List[str], str] = Field(default_factory=lambda: [
        "ethereum", "usdt_erc20", "bitcoin", "solana", "starknet", "stellar", "polkadot",
    ])

    model_config = SettingsConfigDict(
        env_prefix="VELO_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("enabled_chains", mode="before")
    @classmethod
    def parse_chains(cls, v):
        """Parse comma-separated chains from env var."""
        if isinstance(v, str):
            return [c.strip().lower() for c in v.split(",") if c.strip()]
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str, info) -> str:
        env = (info.data or {}).get("environment", "dev")
        if env != "dev" and v == DEV_ENCRYPTION_KEY:
            raise ValueError("ENCRYPTION_KEY must be set outside dev")
        return v

    @property
    def uses_postgres(self) -> bool:
        return self.database_url.startswith(("postgres://", "postgresql://"))


@lru_cache
def load_settings() -> VeloSettings:
    """Load settings once per process."""
    return VeloSettings()
