"""
Configuration loader for the OIO trading system.

This module handles loading configuration from:
- Environment variables (and a .env file)
- YAML configuration files
"""

import os
import yaml
from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from oio_trader.core.exceptions import ConfigurationError
from oio_trader.core.utils import parse_timeframe, tick_size_from_digits

# Load environment variables from .env file
load_dotenv()


class StrategySettings(BaseModel):
    """Static parameters of the OIO strategy, validated once at startup."""
    contract_id: str = Field(..., min_length=1)
    timeframe: str = "5m"
    order_tag: str = Field(..., min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    digits: int = Field(default=5, ge=0, le=10)
    tick_size: Optional[Decimal] = Field(default=None, gt=0)
    # Carried for completeness; entries derive their stops from the pattern range.
    stop_loss_ticks: int = Field(default=20, ge=0)
    take_profit_ticks: int = Field(default=30, gt=0)

    @field_validator("timeframe")
    @classmethod
    def validate_timeframe(cls, v):
        parse_timeframe(v)
        return v.strip().lower()

    @model_validator(mode="after")
    def default_tick_size(self):
        if self.tick_size is None:
            self.tick_size = tick_size_from_digits(self.digits)
        return self

    @property
    def take_profit_distance(self) -> Decimal:
        return self.take_profit_ticks * self.tick_size


class ExecutionSettings(BaseModel):
    """Runtime knobs for the paper broker and the bar poller."""
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    bar_history: int = Field(default=10, ge=3)
    trade_allowed: bool = True
    min_stop_distance_ticks: Optional[int] = Field(default=None, ge=0)


class Config:
    """Configuration handler for the OIO trading system."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration from the specified path or default.

        Args:
            config_path: Path to the config directory. If None, uses default.
        """
        if config_path is None:
            # Default to the config directory relative to the project root
            self.config_dir = Path(__file__).parents[2] / "config"
        else:
            self.config_dir = Path(config_path)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        """
        Load a YAML file from the config directory.

        Args:
            filename: Name of the YAML file to load

        Returns:
            Dict containing the parsed YAML contents
        """
        file_path = self.config_dir / filename
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r") as f:
                return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

    def get_api_url(self) -> str:
        """Get the ProjectX Gateway API URL from environment or config."""
        return os.getenv(
            "PROJECTX_API_URL",
            self.settings.get("api", {}).get("url", "https://gateway-api-demo.s2f.projectx.com")
        )

    def get_api_token(self) -> str:
        """Get the ProjectX Gateway API token from environment."""
        token = os.getenv("PROJECTX_API_TOKEN", "").strip()
        if not token:
            token = self.settings.get("api", {}).get("token", "")
        return token

    def get_username(self) -> str:
        """Get the ProjectX username used for key-based login."""
        username = os.getenv("PROJECTX_USERNAME", "").strip()
        if not username:
            username = self.settings.get("api", {}).get("username", "")
        return username

    def get_rtc_market_url(self) -> str:
        """Get the ProjectX RTC market hub URL."""
        url = os.getenv(
            "PROJECTX_RTC_MARKET_URL",
            self.settings.get("api", {}).get("rtc_market_url", "https://gateway-rtc-demo.s2f.projectx.com/hubs/market")
        )
        # Convert HTTPS to WS for WebSocket connection
        return url.replace("https://", "wss://")

    def validate_api_token(self) -> bool:
        """
        Validate the API token format and presence.

        Returns:
            bool: True if token is valid, False otherwise
        """
        token = self.get_api_token()
        if not token:
            return False
        if not isinstance(token, str) or len(token) < 32:
            return False
        return True

    def get_strategy_settings(self) -> StrategySettings:
        """
        Build the validated strategy settings.

        Every key of the ``strategy`` section may be overridden by an
        ``OIO_<KEY>`` environment variable.

        Raises:
            ConfigurationError: If a parameter is missing or invalid
        """
        raw = dict(self.settings.get("strategy") or {})
        for key in StrategySettings.model_fields:
            env_value = os.getenv(f"OIO_{key.upper()}")
            if env_value is not None and env_value.strip() != "":
                raw[key] = env_value.strip()

        try:
            return StrategySettings(**raw)
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid strategy configuration: {e}") from e

    def get_execution_settings(self) -> ExecutionSettings:
        """Returns the validated 'execution' section."""
        try:
            return ExecutionSettings(**(self.settings.get("execution") or {}))
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid execution configuration: {e}") from e

    def get_logging_config(self) -> Dict[str, Any]:
        """Returns the 'logging' section of the config."""
        return self.settings.get("logging") or {}

    def get_status_api_config(self) -> Dict[str, Any]:
        """Returns the 'status_api' section of the config."""
        return self.settings.get("status_api") or {}
