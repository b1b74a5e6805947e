"""
Configuration models for the trading state reconciliation core.

Uses Pydantic for validation. Values come from config.yaml (with ${VAR}
expansion) and can be overridden by TRADESTATE_-prefixed environment
variables, using "__" for nesting:

    TRADESTATE_MUTATIONS__REQUEST_TIMEOUT_SECONDS=10
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional, Tuple, Type

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from tradestate.config.dotenv_loader import load_dotenv_files

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)")


class StoreConfig(BaseSettings):
    """State store configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    initial_sequence: int = Field(default=0, ge=0, description="Starting value of the logical clock")


class RealtimeConfig(BaseSettings):
    """Push event ingestion."""
    model_config = SettingsConfigDict(extra="ignore")

    require_sequence: bool = Field(
        default=False,
        description="Drop events without a server sequence instead of ordering them by arrival",
    )


class MutationsConfig(BaseSettings):
    """Optimistic mutation controller."""
    model_config = SettingsConfigDict(extra="ignore")

    request_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    rollback_target: Literal["snapshot", "latest_known"] = Field(
        default="snapshot",
        description="Revert to the pre-mutation value, or to the latest write shadowed while pending",
    )
    history_size: int = Field(default=200, ge=0, le=10000, description="Settled mutations kept for inspection")


class ReconciliationConfig(BaseSettings):
    """Reconciliation configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = Field(default=True, description="Run periodic snapshot refreshes")
    interval_seconds: float = Field(default=60.0, ge=1, le=3600, description="Refresh every N seconds")
    refresh_on_start: bool = True


class SltpConfig(BaseSettings):
    """Stop-loss / take-profit input handling."""
    model_config = SettingsConfigDict(extra="ignore")

    side_convention: Literal["side_aware", "long_only"] = "side_aware"


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_prefix="TRADESTATE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    mutations: MutationsConfig = Field(default_factory=MutationsConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    sltp: SltpConfig = Field(default_factory=SltpConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # Environment overrides YAML-provided (init) values
        return env_settings, init_settings, file_secret_settings

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Keep original if not set

        config_dict = yaml.safe_load(_ENV_PATTERN.sub(replace_match, raw_content)) or {}
        if not isinstance(config_dict, dict):
            raise ValueError(f"Configuration root must be a mapping: {yaml_path}")

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        return cls(**config_dict)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to a YAML file. If None, uses tradestate/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    return Config.from_yaml(config_path)
