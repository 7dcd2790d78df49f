"""
Configuration module for the Vault Keeper.

This module provides utilities for loading, validating, and accessing
configuration settings from YAML files and environment variables.

Values are read from ``config/app.yaml``, deep-merged with the optional
``config/app.<environment>.yaml`` and finally overridden by ``VAULT_KEEPER_*``
environment variables (``__`` separates nested keys, e.g.
``VAULT_KEEPER_SOLANA__RPC_URL``).
"""
import os
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union

import structlog
import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from vault_keeper.core.constants import (
    DEFAULT_ROUTER_PROGRAMS,
    DEFAULT_SLIPPAGE_BPS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    HARVEST_BATCH_LIMIT,
    KEEPER_LOW_BALANCE_LAMPORTS,
    KEEPER_TOP_UP_TARGET_LAMPORTS,
    MAX_REMOTE_ATTEMPTS,
    MAX_SWAP_ATTEMPTS,
    MIN_HOLDER_VALUE_USD,
    POOL_VAULT_SEED,
    RAYDIUM_CPMM_PROGRAM_ID,
    REMOTE_CALL_TIMEOUT_SECONDS,
    REWARD_CHECK_HOUR,
    REWARD_CHECK_MINUTE,
    REWARD_CHECK_WEEKDAY,
    REWARD_WINDOW_TOLERANCE_SECONDS,
)

logger = structlog.get_logger(__name__)

# Type variable for configuration models
T = TypeVar("T", bound=BaseSettings)


class Environment(str, Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    DEVNET = "devnet"
    MAINNET = "mainnet"


class SolanaConfig(BaseModel):
    """Ledger connection and vault program settings."""

    rpc_url: str = "https://api.devnet.solana.com"
    commitment: str = "confirmed"
    vault_program_id: str
    token_mint: str
    keypair_path: Optional[str] = None
    keypair: Optional[SecretStr] = Field(None, description="Base58 secret key, overrides keypair_path")
    compute_unit_limit: int = 400_000
    priority_fee_micro_lamports: int = 10_000
    request_timeout: float = REMOTE_CALL_TIMEOUT_SECONDS


class FeesConfig(BaseModel):
    """Fee decay controller settings."""

    enabled: bool = True


class VenueConfig(BaseModel):
    """A trading venue whose custody account must stay excluded."""

    name: str = "raydium_cpmm"
    program_id: str = RAYDIUM_CPMM_PROGRAM_ID
    pool_id: str
    seed: str = POOL_VAULT_SEED.decode()


class ExclusionsConfig(BaseModel):
    """Exclusion synchronizer settings."""

    enabled: bool = True
    venues: list[VenueConfig] = Field(default_factory=list)
    routers: list[str] = Field(default_factory=lambda: list(DEFAULT_ROUTER_PROGRAMS))


class RewardsConfig(BaseModel):
    """Weekly reward asset selection window."""

    enabled: bool = True
    check_weekday: int = Field(REWARD_CHECK_WEEKDAY, ge=0, le=6)
    check_hour: int = Field(REWARD_CHECK_HOUR, ge=0, le=23)
    check_minute: int = Field(REWARD_CHECK_MINUTE, ge=0, le=59)
    window_tolerance_seconds: int = Field(REWARD_WINDOW_TOLERANCE_SECONDS, ge=0)


class DistributionConfig(BaseModel):
    """Eligibility and distribution settings. The 80/20 split is fixed."""

    enabled: bool = True
    min_holder_value_usd: Decimal = MIN_HOLDER_VALUE_USD
    keeper_low_balance_lamports: int = KEEPER_LOW_BALANCE_LAMPORTS
    keeper_top_up_target_lamports: int = KEEPER_TOP_UP_TARGET_LAMPORTS
    transfer_attempts: int = Field(MAX_REMOTE_ATTEMPTS, ge=1)
    ledger_path: str = "data/undistributed.json"

    @field_validator("keeper_top_up_target_lamports")
    @classmethod
    def validate_top_up_target(cls, value: int, info: Any) -> int:
        low = info.data.get("keeper_low_balance_lamports", KEEPER_LOW_BALANCE_LAMPORTS)
        if value < low:
            raise ValueError("Top-up target must not be below the low-balance threshold")
        return value


class HarvestConfig(BaseModel):
    """Harvest and swap settings."""

    enabled: bool = True
    batch_size: int = Field(HARVEST_BATCH_LIMIT, ge=1, le=HARVEST_BATCH_LIMIT)
    batch_attempts: int = Field(MAX_REMOTE_ATTEMPTS, ge=1)
    slippage_bps: int = Field(DEFAULT_SLIPPAGE_BPS, ge=0, le=10_000)
    max_swap_attempts: int = Field(MAX_SWAP_ATTEMPTS, ge=1)
    harvest_threshold: int = Field(0, ge=0, description="Minimum vault balance before swapping")


class SchedulerConfig(BaseModel):
    """Keeper loop settings."""

    tick_interval_seconds: int = Field(DEFAULT_TICK_INTERVAL_SECONDS, gt=0)


class BirdeyeConfig(BaseModel):
    """Birdeye discovery API settings."""

    enabled: bool = True
    api_key: Optional[SecretStr] = None
    base_url: str = "https://public-api.birdeye.so"
    chain: str = "solana"
    min_request_interval: float = 1.0
    timeout: float = REMOTE_CALL_TIMEOUT_SECONDS
    holders_page_size: int = 100
    max_holders: int = 1000


class StaticDiscoveryConfig(BaseModel):
    """Fixed price and holders, used when Birdeye is disabled (devnet)."""

    price: Decimal = Decimal("0")
    holders: Dict[str, int] = Field(default_factory=dict)
    symbols: Dict[str, str] = Field(default_factory=dict)


class TwitterConfig(BaseModel):
    """Twitter social signal settings."""

    enabled: bool = True
    bearer_token: Optional[SecretStr] = None
    base_url: str = "https://api.twitter.com/2"
    account: str = ""
    timeout: float = REMOTE_CALL_TIMEOUT_SECONDS
    static_symbol: Optional[str] = Field(None, description="Symbol used when Twitter is disabled")


class JupiterConfig(BaseModel):
    """Jupiter swap API settings."""

    base_url: str = "https://quote-api.jup.ag/v6"
    timeout: float = REMOTE_CALL_TIMEOUT_SECONDS


class MonitoringConfig(BaseModel):
    """Prometheus exporter settings."""

    enabled: bool = True
    port: int = 8000


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="VAULT_KEEPER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    app_name: str = "Vault Keeper"
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"
    dry_run: bool = False  # If True, no state-changing transaction is sent

    # Ledger
    solana: SolanaConfig

    # Components
    fees: FeesConfig = Field(default_factory=FeesConfig)
    exclusions: ExclusionsConfig = Field(default_factory=ExclusionsConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    distribution: DistributionConfig = Field(default_factory=DistributionConfig)
    harvest: HarvestConfig = Field(default_factory=HarvestConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    # External services
    birdeye: BirdeyeConfig = Field(default_factory=BirdeyeConfig)
    static_discovery: StaticDiscoveryConfig = Field(default_factory=StaticDiscoveryConfig)
    twitter: TwitterConfig = Field(default_factory=TwitterConfig)
    jupiter: JupiterConfig = Field(default_factory=JupiterConfig)

    # Monitoring
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over the YAML values passed as init kwargs
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def get_config_dir() -> Path:
    """
    Get the configuration directory path.

    Returns:
        Path to the configuration directory
    """
    env_config_dir = os.environ.get("VAULT_KEEPER_CONFIG_DIR")
    if env_config_dir:
        return Path(env_config_dir)

    # Default to config directory in project root
    return Path(__file__).parent.parent.parent / "config"


def get_environment() -> Environment:
    """
    Get the current environment from environment variable or default to development.

    Returns:
        Current environment enum
    """
    env_name = os.environ.get("VAULT_KEEPER_ENVIRONMENT", "development").lower()

    try:
        return Environment(env_name)
    except ValueError:
        logger.warning(f"Invalid environment '{env_name}', using DEVELOPMENT")
        return Environment.DEVELOPMENT


def load_yaml_config(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        file_path: Path to the YAML configuration file

    Returns:
        Dictionary containing configuration values

    Raises:
        FileNotFoundError: If the configuration file doesn't exist
        yaml.YAMLError: If the YAML file is invalid
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError:
        logger.error(f"Error parsing YAML configuration file: {file_path}", exc_info=True)
        raise


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries, with values from override taking precedence.

    Args:
        base: Base dictionary
        override: Dictionary with override values

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(
    config_class: Type[T],
    config_name: str,
    environment: Optional[Environment] = None,
) -> T:
    """
    Load and validate configuration for a specific component.

    Args:
        config_class: Pydantic settings class for configuration validation
        config_name: Name of the configuration file (without extension)
        environment: Environment to load configuration for (default: current environment)

    Returns:
        Validated configuration object

    Raises:
        FileNotFoundError: If the base configuration file doesn't exist
        ValidationError: If the configuration is invalid
    """
    if environment is None:
        environment = get_environment()

    config_dir = get_config_dir()
    base_config_path = config_dir / f"{config_name}.yaml"
    env_config_path = config_dir / f"{config_name}.{environment.value}.yaml"

    try:
        config_data = load_yaml_config(base_config_path)
    except FileNotFoundError:
        logger.error(f"Base configuration file not found: {base_config_path}")
        raise

    if env_config_path.exists():
        config_data = deep_merge(config_data, load_yaml_config(env_config_path))

    try:
        return config_class(**config_data)
    except ValidationError as e:
        logger.error(f"Invalid configuration in {config_name}: {e}")
        raise


def load_app_config() -> AppConfig:
    """
    Load the main application configuration.

    Returns:
        Validated AppConfig object
    """
    return load_config(AppConfig, "app")


_config: Optional[AppConfig] = None


def get_config(reload: bool = False) -> AppConfig:
    """
    Return the application configuration, loading it on first use.

    Args:
        reload: Discard the cached configuration and load it again

    Returns:
        Validated AppConfig object
    """
    global _config
    if _config is None or reload:
        _config = load_app_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration."""
    global _config
    _config = None
