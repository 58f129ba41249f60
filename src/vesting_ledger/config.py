"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
vesting ledger, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite allowed for local runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (cache, job locks)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Ledger source (vault factory contract) RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    vault_factory_address: str | None = Field(
        default=None,
        alias="CHAIN_VAULT_FACTORY_ADDRESS",
        description="Address of the vault factory contract that owns every vault",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Per-request RPC timeout",
    )
    confirmations: int = Field(
        default=12,
        alias="CHAIN_CONFIRMATIONS",
        ge=0,
        le=1000,
        description="Ledgers to stay behind the head before ingesting",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class PriceOracleSettings(BaseSettings):
    """Price oracle (CoinGecko-compatible API) settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_ORACLE_", extra="ignore")

    base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="PRICE_ORACLE_BASE_URL",
        description="Price API base URL",
    )
    api_key: SecretStr | None = Field(
        default=None,
        alias="PRICE_ORACLE_API_KEY",
        description="Optional API key sent as x-cg-pro-api-key",
    )
    platform: str = Field(
        default="ethereum",
        alias="PRICE_ORACLE_PLATFORM",
        description="Asset platform used for contract-address lookups",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="PRICE_ORACLE_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="HTTP timeout per request",
    )
    price_cache_ttl_seconds: int = Field(
        default=60,
        alias="PRICE_ORACLE_PRICE_CACHE_TTL_SECONDS",
        ge=0,
        description="How long fetched prices are reused",
    )
    coin_id_cache_ttl_seconds: int = Field(
        default=3600,
        alias="PRICE_ORACLE_COIN_ID_CACHE_TTL_SECONDS",
        ge=0,
        description="How long token-address to coin-id lookups are reused",
    )
    cache_max_entries: int = Field(
        default=10_000,
        alias="PRICE_ORACLE_CACHE_MAX_ENTRIES",
        ge=1,
        description="Upper bound on cached entries (LRU eviction)",
    )


class RetrySettings(BaseSettings):
    """Retry policy for external calls (price oracle, ledger RPC)."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", extra="ignore")

    max_attempts: int = Field(
        default=10,
        alias="RETRY_MAX_ATTEMPTS",
        ge=1,
        le=50,
        description="Total attempts before giving up",
    )
    warn_after: int = Field(
        default=3,
        alias="RETRY_WARN_AFTER",
        ge=1,
        description="Log a warning after this many consecutive failures",
    )
    base_delay_seconds: float = Field(
        default=1.0,
        alias="RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        description="Delay before the first retry (doubles each attempt)",
    )
    max_delay_seconds: float = Field(
        default=60.0,
        alias="RETRY_MAX_DELAY_SECONDS",
        ge=0.0,
        description="Upper bound on a single backoff delay",
    )


class IngestionSettings(BaseSettings):
    """Claim / top-up ingestion settings."""

    model_config = SettingsConfigDict(env_prefix="INGESTION_", extra="ignore")

    service_name: str = Field(
        default="ledger-indexer",
        alias="INGESTION_SERVICE_NAME",
        description="Key of the indexer cursor row",
    )
    large_claim_threshold_usd: Decimal = Field(
        default=Decimal("10000"),
        alias="INGESTION_LARGE_CLAIM_THRESHOLD_USD",
        description="Claims above this USD value raise a large-claim alert",
    )
    price_backfill_batch_size: int = Field(
        default=100,
        alias="INGESTION_PRICE_BACKFILL_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Claims examined per missing-price backfill run",
    )
    organization_webhook_url: str | None = Field(
        default=None,
        alias="INGESTION_ORGANIZATION_WEBHOOK_URL",
        description="Optional URL receiving a POST for every processed claim",
    )
    poll_interval_seconds: int = Field(
        default=15,
        alias="INGESTION_POLL_INTERVAL_SECONDS",
        ge=1,
        description="Delay between ledger polls",
    )
    max_ledgers_per_poll: int = Field(
        default=500,
        alias="INGESTION_MAX_LEDGERS_PER_POLL",
        ge=1,
        description="Upper bound on ledgers fetched in a single poll",
    )
    reorg_depth: int = Field(
        default=20,
        alias="INGESTION_REORG_DEPTH",
        ge=1,
        description="Ledgers discarded when a reorganization is detected",
    )
    event_queue_size: int = Field(
        default=1000,
        alias="INGESTION_EVENT_QUEUE_SIZE",
        ge=1,
        description="Capacity of the side-effect event queue",
    )

    @field_validator("large_claim_threshold_usd")
    @classmethod
    def validate_threshold(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("INGESTION_LARGE_CLAIM_THRESHOLD_USD must be > 0")
        return v


class ReconciliationSettings(BaseSettings):
    """Vault reconciliation job settings."""

    model_config = SettingsConfigDict(env_prefix="RECONCILIATION_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="RECONCILIATION_ENABLED",
        description="Run the periodic vault reconciliation job",
    )
    interval_seconds: int = Field(
        default=6 * 3600,
        alias="RECONCILIATION_INTERVAL_SECONDS",
        ge=60,
        description="Interval between reconciliation runs",
    )
    lock_ttl_seconds: int = Field(
        default=3600,
        alias="RECONCILIATION_LOCK_TTL_SECONDS",
        ge=10,
        description="Expiry of the distributed job lock",
    )


class AlertSettings(BaseSettings):
    """Large-claim alert delivery."""

    model_config = SettingsConfigDict(env_prefix="ALERT_", extra="ignore")

    webhook_url: str | None = Field(
        default=None,
        alias="ALERT_WEBHOOK_URL",
        description="Incoming-webhook URL receiving large-claim alerts",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="ALERT_TIMEOUT_SECONDS",
        gt=0.0,
        description="HTTP timeout for alert delivery",
    )

    @property
    def enabled(self) -> bool:
        return self.webhook_url is not None


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from vesting_ledger.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price_oracle: PriceOracleSettings = Field(
        default_factory=lambda: PriceOracleSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingestion: IngestionSettings = Field(
        default_factory=lambda: IngestionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    reconciliation: ReconciliationSettings = Field(
        default_factory=lambda: ReconciliationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    alert: AlertSettings = Field(
        default_factory=lambda: AlertSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Run without sending alerts or webhooks",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "vault_factory_address": self.chain.vault_factory_address or "(not set)",
                "confirmations": str(self.chain.confirmations),
            },
            "price_oracle": {
                "base_url": self.price_oracle.base_url,
                "api_key": "(set)" if self.price_oracle.api_key else "(not set)",
            },
            "retry": {
                "max_attempts": str(self.retry.max_attempts),
                "warn_after": str(self.retry.warn_after),
            },
            "ingestion": {
                "service_name": self.ingestion.service_name,
                "large_claim_threshold_usd": str(self.ingestion.large_claim_threshold_usd),
                "organization_webhook_url": "(set)"
                if self.ingestion.organization_webhook_url
                else "(not set)",
            },
            "reconciliation": {
                "enabled": str(self.reconciliation.enabled),
                "interval_seconds": str(self.reconciliation.interval_seconds),
            },
            "alert_enabled": str(self.alert.enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    def validate_requirements(
        self, *, command: Literal["run", "reconcile", "rollback", "backfill-prices", "init-db"]
    ) -> None:
        """Validate command-specific requirements.

        A command that needs the ledger source refuses to start without a
        vault factory address.
        """
        if command in ("run", "reconcile") and not self.chain.vault_factory_address:
            raise ValueError("CHAIN_VAULT_FACTORY_ADDRESS is required to read vaults from the ledger")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
