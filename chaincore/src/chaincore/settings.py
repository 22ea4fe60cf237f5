"""
Unified settings management for chainbooks components.

This module provides a centralized configuration system using pydantic-settings
that supports:
1. TOML configuration file (~/.chainbooks/config.toml)
2. Environment variables
3. CLI arguments (via typer, handled by the CLI)

Priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file
4. Default values

Usage:
    from chaincore.settings import get_settings

    settings = get_settings()
    print(settings.indexer.mainnet_url)
    print(settings.scan.gap_limit)

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: INDEXER__TIMEOUT, SCAN__GAP_LIMIT, LEDGER__SHORTFALL_POLICY
    - Maps to TOML sections: SCAN__GAP_LIMIT -> [scan] gap_limit
"""

from __future__ import annotations

import os
import sys
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from chaincore.constants import (
    DEFAULT_FETCH_CONCURRENCY,
    DEFAULT_GAP_LIMIT,
    DEFAULT_MAX_ADDRESSES_PER_CHAIN,
    DEFAULT_SCAN_BATCH_SIZE,
    ESPLORA_PAGE_SIZE,
)
from chaincore.models import NetworkType, ShortfallPolicy
from chaincore.paths import get_default_data_dir


class IndexerSettings(BaseModel):
    """Esplora-compatible block explorer API configuration."""

    mainnet_url: str = Field(
        default="https://mempool.space/api",
        description="Indexer API base URL for mainnet",
    )
    testnet_url: str = Field(
        default="https://mempool.space/testnet/api",
        description="Indexer API base URL for testnet",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds",
    )
    page_size: int = Field(
        default=ESPLORA_PAGE_SIZE,
        ge=1,
        description="Transactions per page returned by the indexer",
    )
    page_delay: float = Field(
        default=0.15,
        ge=0.0,
        description="Delay in seconds between paginated requests for one address",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries on 429/503 before giving up",
    )
    backoff_base: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay in seconds for exponential backoff (base * 2^attempt)",
    )
    batch_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Cooldown in seconds a fetch slot is held after each address",
    )
    batch_retry_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Delay before the second pass over rate-limited or timed-out addresses",
    )

    def base_url(self, network: NetworkType) -> str:
        if network == NetworkType.TESTNET:
            return self.testnet_url
        return self.mainnet_url


class ScanSettings(BaseModel):
    """HD wallet address discovery configuration."""

    gap_limit: int = Field(
        default=DEFAULT_GAP_LIMIT,
        ge=1,
        description="Consecutive unused addresses that end a chain scan",
    )
    batch_size: int = Field(
        default=DEFAULT_SCAN_BATCH_SIZE,
        ge=1,
        description="Addresses derived and fetched per batch",
    )
    max_addresses: int = Field(
        default=DEFAULT_MAX_ADDRESSES_PER_CHAIN,
        ge=1,
        description="Hard cap on addresses scanned per chain",
    )
    concurrency: int = Field(
        default=DEFAULT_FETCH_CONCURRENCY,
        ge=1,
        le=10,
        description="Concurrent indexer requests during a batch",
    )


class RatesSettings(BaseModel):
    """BTC/USD exchange rate source configuration."""

    coinbase_url: str = Field(
        default="https://api.coinbase.com/v2/prices/BTC-USD/spot",
        description="Coinbase spot price endpoint (historical via ?date=YYYY-MM-DD)",
    )
    coingecko_url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price",
        description="CoinGecko simple price endpoint (used for today's price)",
    )
    coingecko_api_key: SecretStr | None = Field(
        default=None,
        description="Optional CoinGecko demo API key",
    )
    min_interval: float = Field(
        default=1.2,
        ge=0.0,
        description="Minimum seconds between two rate requests",
    )
    timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Rate request timeout in seconds",
    )


class LedgerSettings(BaseModel):
    """Cost basis ledger configuration."""

    shortfall_policy: ShortfallPolicy = Field(
        default=ShortfallPolicy.REJECT,
        description=(
            "When lots cannot cover a disposal: 'reject' fails the computation, "
            "'zero_basis' treats the uncovered amount as zero cost basis"
        ),
    )
    auto_lots_from_received: bool = Field(
        default=True,
        description="Create a purchase lot for every newly imported received transaction",
    )


class ApiSettings(BaseModel):
    """HTTP API server configuration."""

    host: str = Field(
        default="127.0.0.1",
        description="HTTP server bind address",
    )
    port: int = Field(
        default=8400,
        ge=1,
        le=65535,
        description="HTTP server port",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class ChainbooksSettings(BaseSettings):
    """
    Main chainbooks settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed to the constructor)
    2. Environment variables
    3. TOML config file (~/.chainbooks/config.toml)
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = Field(
        default=None,
        description="Data directory (defaults to ~/.chainbooks)",
    )
    network: NetworkType = Field(
        default=NetworkType.MAINNET,
        description="Default network for new wallets",
    )

    indexer: IndexerSettings = Field(default_factory=IndexerSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    rates: RatesSettings = Field(default_factory=RatesSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customize settings sources and their priority.

        Priority (highest to lowest):
        1. init_settings (CLI arguments passed to constructor)
        2. env_settings (environment variables with __ delimiter)
        3. toml_settings (config.toml file)
        4. defaults (in field definitions)
        """
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            return self.data_dir
        return get_default_data_dir()


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source that reads from a TOML config file.

    The file is $CHAINBOOKS_CONFIG_FILE if set, otherwise config.toml in
    $CHAINBOOKS_DATA_DIR or ~/.chainbooks.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        config_path = get_config_path()

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Tip: Make sure section headers like [scan], [indexer] are uncommented")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return self._config


def get_config_path() -> Path:
    """Get the path to the config file."""
    env_path = os.environ.get("CHAINBOOKS_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    data_dir_env = os.environ.get("CHAINBOOKS_DATA_DIR")
    data_dir = Path(data_dir_env) if data_dir_env else Path.home() / ".chainbooks"
    return data_dir / "config.toml"


def _toml_value(default: Any) -> str | None:
    if isinstance(default, bool):
        return str(default).lower()
    if isinstance(default, Enum):
        return f'"{default.value}"'
    if isinstance(default, str):
        return f'"{default}"'
    if isinstance(default, SecretStr) or default is None:
        return None
    return str(default)


def generate_config_template() -> str:
    """
    Generate a config file template with all settings commented out.

    Users uncomment only what they want to change, so updated defaults
    still reach them on upgrade.
    """
    lines: list[str] = [
        "# chainbooks configuration",
        "#",
        "# All settings are commented out - uncomment to override.",
        "#",
        "# Priority (highest to lowest):",
        "#   1. CLI arguments",
        "#   2. Environment variables (e.g. SCAN__GAP_LIMIT=30)",
        "#   3. This config file",
        "#   4. Built-in defaults",
        "",
        "# Data directory, defaults to ~/.chainbooks or $CHAINBOOKS_DATA_DIR",
        "# data_dir = ",
        "",
        '# network = "mainnet"',
        "",
    ]

    sections: list[tuple[str, type[BaseModel], str]] = [
        ("Indexer Settings", IndexerSettings, "indexer"),
        ("Address Scan Settings", ScanSettings, "scan"),
        ("Exchange Rate Settings", RatesSettings, "rates"),
        ("Ledger Settings", LedgerSettings, "ledger"),
        ("HTTP API Settings", ApiSettings, "api"),
        ("Logging Settings", LoggingSettings, "logging"),
    ]
    for title, model_cls, prefix in sections:
        lines.append(f"# {'=' * 60}")
        lines.append(f"# {title}")
        lines.append(f"# {'=' * 60}")
        lines.append(f"# [{prefix}]")
        lines.append("")
        for field_name, field_info in model_cls.model_fields.items():
            if field_info.description:
                lines.append(f"# {field_info.description}")
            value_str = _toml_value(field_info.default)
            lines.append(f"# {field_name} = {value_str if value_str is not None else ''}")
            lines.append("")

    return "\n".join(lines)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """
    Ensure the config file exists, creating a template if it doesn't.

    Returns:
        Path to the config file.
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = data_dir / "config.toml"
    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


# Global settings instance (lazy-loaded)
_settings: ChainbooksSettings | None = None


def get_settings(**overrides: Any) -> ChainbooksSettings:
    """
    Get the chainbooks settings instance.

    On first call, loads settings from all sources. Subsequent calls
    return the cached instance unless reset_settings() is called.
    """
    global _settings
    if _settings is None or overrides:
        _settings = ChainbooksSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "ChainbooksSettings",
    "IndexerSettings",
    "ScanSettings",
    "RatesSettings",
    "LedgerSettings",
    "ApiSettings",
    "LoggingSettings",
    "get_settings",
    "reset_settings",
    "get_config_path",
    "generate_config_template",
    "ensure_config_file",
]
