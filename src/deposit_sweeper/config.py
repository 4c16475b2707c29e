"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
deposit sweeper, loading and validating environment variables at startup
and turning them into per-chain runtime configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deposit_sweeper.chain.models import AssetSpec, ChainKind

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

SOLANA_USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOLANA_USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
BASE_USDC_CONTRACT = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"

DEFAULT_SWEEP_THRESHOLDS = "SOL=0.1,ETH=0.01,USDC=10,USDT=10"


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("RPC URL must be an HTTP(S) endpoint")
    return v


def parse_thresholds(raw: str) -> dict[str, Decimal]:
    """Parse ``SYMBOL=amount`` pairs separated by commas.

    Args:
        raw: String such as ``"SOL=0.1,USDC=10"``.

    Returns:
        Mapping of upper-cased asset symbol to minimum sweep amount.

    Raises:
        ValueError: If a pair is malformed or an amount is negative.
    """
    thresholds: dict[str, Decimal] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        symbol, sep, amount = part.partition("=")
        if not sep or not symbol.strip():
            raise ValueError(f"Invalid threshold entry {part!r} (expected SYMBOL=amount)")
        try:
            value = Decimal(amount.strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid threshold amount for {symbol.strip()}: {amount!r}") from e
        if value < 0:
            raise ValueError(f"Threshold for {symbol.strip()} must be >= 0")
        thresholds[symbol.strip().upper()] = value
    return thresholds


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL (or sqlite+aiosqlite) connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings.

    Redis is optional: when unset, sweep locks are process-local and
    block scans are not cached.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (optional)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class KeyVaultSettings(BaseSettings):
    """Master key used to decrypt stored wallet keys."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    encryption_key: SecretStr | None = Field(
        default=None,
        alias="WALLET_ENCRYPTION_KEY",
        description="Master secret for PBKDF2 key derivation of wallet key blobs",
    )


class SolanaSettings(BaseSettings):
    """Solana chain settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    enabled: bool = Field(default=True, alias="SOLANA_ENABLED")
    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Primary Solana RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_FALLBACK_RPC_URL",
        description="Fallback Solana RPC endpoint",
    )
    required_confirmations: int = Field(default=1, alias="SOLANA_REQUIRED_CONFIRMATIONS", ge=1, le=1000)
    poll_interval_seconds: float = Field(default=10.0, alias="SOLANA_POLL_INTERVAL_SECONDS", gt=0)
    signatures_limit: int = Field(
        default=10,
        alias="SOLANA_SIGNATURES_LIMIT",
        ge=1,
        le=1000,
        description="Recent signatures fetched per address per tick",
    )
    max_slots_per_tick: int = Field(default=10_000, alias="SOLANA_MAX_SLOTS_PER_TICK", ge=1)
    initial_lookback_slots: int = Field(default=150, alias="SOLANA_INITIAL_LOOKBACK_SLOTS", ge=0)
    treasury_address: str | None = Field(default=None, alias="SOLANA_TREASURY_ADDRESS")
    sponsor_encrypted_key: SecretStr | None = Field(
        default=None,
        alias="SOLANA_SPONSOR_ENCRYPTED_KEY",
        description="Vault blob of the fee-payer wallet",
    )
    sponsor_min_balance_sol: Decimal = Field(
        default=Decimal("0.01"),
        alias="SOLANA_SPONSOR_MIN_BALANCE_SOL",
        ge=0,
        description="Minimum sponsor balance required before sponsoring a sweep",
    )
    usdc_mint: str = Field(default=SOLANA_USDC_MINT, alias="SOLANA_USDC_MINT")
    usdt_mint: str = Field(default=SOLANA_USDT_MINT, alias="SOLANA_USDT_MINT")
    confirm_timeout_seconds: float = Field(default=60.0, alias="SOLANA_CONFIRM_TIMEOUT_SECONDS", gt=0)

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)


class BaseChainSettings(BaseSettings):
    """Base (EVM L2) chain settings."""

    model_config = SettingsConfigDict(env_prefix="BASE_", extra="ignore")

    enabled: bool = Field(default=True, alias="BASE_ENABLED")
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="BASE_RPC_URL",
        description="Primary Base RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="BASE_FALLBACK_RPC_URL",
        description="Fallback Base RPC endpoint",
    )
    chain_id: int = Field(default=8453, alias="BASE_CHAIN_ID", ge=1)
    required_confirmations: int = Field(default=12, alias="BASE_REQUIRED_CONFIRMATIONS", ge=1, le=1000)
    poll_interval_seconds: float = Field(default=12.0, alias="BASE_POLL_INTERVAL_SECONDS", gt=0)
    max_blocks_per_tick: int = Field(
        default=100,
        alias="BASE_MAX_BLOCKS_PER_TICK",
        ge=1,
        le=10_000,
        description="Upper bound on blocks scanned in one watcher tick",
    )
    initial_lookback_blocks: int = Field(default=100, alias="BASE_INITIAL_LOOKBACK_BLOCKS", ge=0)
    logs_chunk_size_blocks: int = Field(
        default=2_000,
        alias="BASE_LOGS_CHUNK_SIZE_BLOCKS",
        ge=1,
        le=100_000,
        description="Maximum block span per eth_getLogs request",
    )
    treasury_address: str | None = Field(default=None, alias="BASE_TREASURY_ADDRESS")
    sponsor_encrypted_key: SecretStr | None = Field(
        default=None,
        alias="BASE_SPONSOR_ENCRYPTED_KEY",
        description="Vault blob of the gas sponsor wallet",
    )
    usdc_contract: str = Field(default=BASE_USDC_CONTRACT, alias="BASE_USDC_CONTRACT")
    gas_buffer_multiplier: Decimal = Field(
        default=Decimal("2"),
        alias="BASE_GAS_BUFFER_MULTIPLIER",
        ge=1,
        le=10,
        description="Multiplier applied to the estimated gas cost when sponsoring",
    )
    token_transfer_gas: int = Field(
        default=100_000,
        alias="BASE_TOKEN_TRANSFER_GAS",
        ge=21_000,
        description="Fallback gas units for an ERC20 transfer when estimation fails",
    )
    receipt_timeout_seconds: float = Field(default=120.0, alias="BASE_RECEIPT_TIMEOUT_SECONDS", gt=0)

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)


class SweepSettings(BaseSettings):
    """Sweep triggering and watcher concurrency settings."""

    model_config = SettingsConfigDict(env_prefix="SWEEP_", extra="ignore")

    thresholds_raw: str = Field(
        default=DEFAULT_SWEEP_THRESHOLDS,
        alias="SWEEP_THRESHOLDS",
        description="Per-asset minimum sweep amounts, e.g. SOL=0.1,USDC=10",
    )
    address_concurrency: int = Field(
        default=5,
        alias="SWEEP_ADDRESS_CONCURRENCY",
        ge=1,
        le=100,
        description="Concurrent address checks within one watcher tick",
    )
    retry_interval_seconds: float = Field(
        default=300.0,
        alias="SWEEP_RETRY_INTERVAL_SECONDS",
        ge=0,
        description="How often confirmed but unswept deposits are re-offered (0 disables)",
    )
    lock_timeout_seconds: float = Field(
        default=600.0,
        alias="SWEEP_LOCK_TIMEOUT_SECONDS",
        gt=0,
        description="Expiry of the distributed per-chain sweep lock",
    )

    @field_validator("thresholds_raw")
    @classmethod
    def validate_thresholds(cls, v: str) -> str:
        parse_thresholds(v)
        return v

    @property
    def thresholds(self) -> dict[str, Decimal]:
        """Parsed per-asset sweep thresholds."""
        return parse_thresholds(self.thresholds_raw)


@dataclass(frozen=True)
class ChainConfig:
    """Runtime configuration of one watched chain."""

    name: str
    kind: ChainKind
    rpc_url: str
    required_confirmations: int
    poll_interval_seconds: float
    max_blocks_per_tick: int
    initial_lookback: int
    assets: dict[str, AssetSpec]
    treasury_address: str | None
    sponsor_encrypted_key: str | None
    fallback_rpc_url: str | None = None
    chain_id: int | None = None
    extra: dict[str, object] = field(default_factory=dict)


class Settings(BaseSettings):
    """Root application settings.

    Aggregates all configuration groups and provides a single point
    of access for application configuration.

    Example:
        ```python
        from deposit_sweeper.config import get_settings

        settings = get_settings()
        print(settings.base.rpc_url)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

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
    vault: KeyVaultSettings = Field(
        default_factory=lambda: KeyVaultSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    base: BaseChainSettings = Field(
        default_factory=lambda: BaseChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    sweep: SweepSettings = Field(
        default_factory=lambda: SweepSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def chain_configs(self) -> list[ChainConfig]:
        """Build runtime configuration for every enabled chain."""
        configs: list[ChainConfig] = []
        if self.solana.enabled:
            configs.append(
                ChainConfig(
                    name="solana",
                    kind=ChainKind.SOLANA,
                    rpc_url=self.solana.rpc_url,
                    fallback_rpc_url=self.solana.fallback_rpc_url,
                    required_confirmations=self.solana.required_confirmations,
                    poll_interval_seconds=self.solana.poll_interval_seconds,
                    max_blocks_per_tick=self.solana.max_slots_per_tick,
                    initial_lookback=self.solana.initial_lookback_slots,
                    assets={
                        "SOL": AssetSpec(symbol="SOL", decimals=9),
                        "USDC": AssetSpec(symbol="USDC", decimals=6, contract=self.solana.usdc_mint),
                        "USDT": AssetSpec(symbol="USDT", decimals=6, contract=self.solana.usdt_mint),
                    },
                    treasury_address=self.solana.treasury_address,
                    sponsor_encrypted_key=_secret(self.solana.sponsor_encrypted_key),
                    extra={
                        "signatures_limit": self.solana.signatures_limit,
                        "sponsor_min_balance": self.solana.sponsor_min_balance_sol,
                        "confirm_timeout_seconds": self.solana.confirm_timeout_seconds,
                    },
                )
            )
        if self.base.enabled:
            configs.append(
                ChainConfig(
                    name="base",
                    kind=ChainKind.EVM,
                    rpc_url=self.base.rpc_url,
                    fallback_rpc_url=self.base.fallback_rpc_url,
                    chain_id=self.base.chain_id,
                    required_confirmations=self.base.required_confirmations,
                    poll_interval_seconds=self.base.poll_interval_seconds,
                    max_blocks_per_tick=self.base.max_blocks_per_tick,
                    initial_lookback=self.base.initial_lookback_blocks,
                    assets={
                        "ETH": AssetSpec(symbol="ETH", decimals=18),
                        "USDC": AssetSpec(symbol="USDC", decimals=6, contract=self.base.usdc_contract),
                    },
                    treasury_address=self.base.treasury_address,
                    sponsor_encrypted_key=_secret(self.base.sponsor_encrypted_key),
                    extra={
                        "logs_chunk_size_blocks": self.base.logs_chunk_size_blocks,
                        "gas_buffer_multiplier": self.base.gas_buffer_multiplier,
                        "token_transfer_gas": self.base.token_transfer_gas,
                        "receipt_timeout_seconds": self.base.receipt_timeout_seconds,
                    },
                )
            )
        return configs

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "wallet_encryption_key": "(set)" if self.vault.encryption_key else "(not set)",
            "solana": {
                "enabled": str(self.solana.enabled),
                "rpc_url": self.solana.rpc_url,
                "fallback_rpc_url": self.solana.fallback_rpc_url or "(not set)",
                "required_confirmations": str(self.solana.required_confirmations),
                "treasury_address": self.solana.treasury_address or "(not set)",
                "sponsor_key": "(set)" if self.solana.sponsor_encrypted_key else "(not set)",
            },
            "base": {
                "enabled": str(self.base.enabled),
                "rpc_url": self.base.rpc_url,
                "fallback_rpc_url": self.base.fallback_rpc_url or "(not set)",
                "chain_id": str(self.base.chain_id),
                "required_confirmations": str(self.base.required_confirmations),
                "gas_buffer_multiplier": str(self.base.gas_buffer_multiplier),
                "treasury_address": self.base.treasury_address or "(not set)",
                "sponsor_key": "(set)" if self.base.sponsor_encrypted_key else "(not set)",
            },
            "sweep": {
                "thresholds": self.sweep.thresholds_raw,
                "address_concurrency": str(self.sweep.address_concurrency),
                "retry_interval_seconds": str(self.sweep.retry_interval_seconds),
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "init-db", "encrypt-key"]) -> None:
        """Validate command-specific requirements.

        A chain is never started without its treasury address, its sponsor
        key and the vault master key.
        """
        if command in ("run", "encrypt-key") and not self.vault.encryption_key:
            raise ValueError("WALLET_ENCRYPTION_KEY is required")
        if command != "run":
            return

        chains = self.chain_configs()
        if not chains:
            raise ValueError("At least one chain must be enabled (SOLANA_ENABLED / BASE_ENABLED)")
        for chain in chains:
            prefix = chain.name.upper()
            if not chain.treasury_address:
                raise ValueError(f"{prefix}_TREASURY_ADDRESS is required when {prefix}_ENABLED=true")
            if not chain.sponsor_encrypted_key:
                raise ValueError(f"{prefix}_SPONSOR_ENCRYPTED_KEY is required when {prefix}_ENABLED=true")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

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
