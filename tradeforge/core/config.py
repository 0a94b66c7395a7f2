"""
Configuration Manager - Loads and validates engine configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values so one image can be deployed against
different databases, exchanges and sandboxes.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    env_mappings = {
        "LOG_LEVEL": ("app", "log_level"),
        "LOG_DIR": ("app", "log_dir"),
        "JSON_LOGS": ("app", "json_logs", _as_bool),
        "DB_PATH": ("app", "db_path"),
        "TICK_INTERVAL_SECONDS": ("scheduler", "tick_interval_seconds", float),
        "SCHEDULER_REARM_ON_STARTUP": ("scheduler", "rearm_on_startup", _as_bool),
        "EXCHANGE_TIMEOUT_SECONDS": ("exchange", "timeout_seconds", float),
        "EXCHANGE_USE_SANDBOX": ("exchange", "use_sandbox", _as_bool),
        "BINANCE_BASE_URL": ("exchange", "binance_base_url"),
        "BINANCE_FUTURES_URL": ("exchange", "binance_futures_url"),
        "COINBASE_BASE_URL": ("exchange", "coinbase_base_url"),
        "KRAKEN_BASE_URL": ("exchange", "kraken_base_url"),
        "KRAKEN_FUTURES_URL": ("exchange", "kraken_futures_url"),
        "CAPITAL_COM_BASE_URL": ("exchange", "capital_com_base_url"),
        "VOLATILITY_CHECK_SECONDS": ("engine", "volatility_check_seconds", float),
        "PERFORMANCE_WINDOW_DAYS": ("engine", "performance_window_days", int),
        "BACKTEST_DEFAULT_EXCHANGE": ("backtest", "default_exchange"),
    }

    for env_key, mapping in env_mappings.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            config.setdefault(section, {})[key] = converter(value)
        except (ValueError, TypeError) as e:
            import logging
            logging.getLogger("config").warning(
                "Env %s=%r failed to convert: %s. Using YAML value.",
                env_key, value, e,
            )


# ---------------------------------------------------------------------------
# Pydantic Configuration Models
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "TradeForge Engine"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False
    db_path: str = "data/tradeforge.db"


class SchedulerConfig(BaseModel):
    tick_interval_seconds: float = 60.0
    shutdown_timeout_seconds: float = 15.0
    rearm_on_startup: bool = True

    @field_validator("tick_interval_seconds", "shutdown_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("scheduler intervals must be positive")
        return v


class ExchangeConfig(BaseModel):
    timeout_seconds: float = 20.0
    use_sandbox: bool = False
    # Empty string means "use the gateway's built-in endpoint".
    binance_base_url: str = ""
    binance_futures_url: str = ""
    coinbase_base_url: str = ""
    kraken_base_url: str = ""
    kraken_futures_url: str = ""
    capital_com_base_url: str = ""

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0 or v > 120:
            raise ValueError("timeout_seconds must be between 0 and 120")
        return v

    def base_url_overrides(self, exchange: str) -> Dict[str, str]:
        """Per-gateway URL keyword overrides, skipping unset values."""
        name = exchange.lower()
        if name.startswith("binance"):
            pairs = {"base_url": self.binance_base_url, "futures_url": self.binance_futures_url}
        elif name == "kraken":
            pairs = {"base_url": self.kraken_base_url, "futures_url": self.kraken_futures_url}
        elif name == "coinbase":
            pairs = {"base_url": self.coinbase_base_url}
        elif name == "capital_com":
            pairs = {"base_url": self.capital_com_base_url}
        else:
            pairs = {}
        return {k: v for k, v in pairs.items() if v}


class EngineConfig(BaseModel):
    volatility_check_seconds: float = 300.0
    near_band_tolerance: float = 0.002
    performance_window_days: int = 30
    kline_padding: int = 10
    default_paper_balance: float = 10000.0
    price_precision: int = 8

    @field_validator("performance_window_days")
    @classmethod
    def validate_window(cls, v):
        if v < 1:
            raise ValueError("performance_window_days must be at least 1")
        return v


class BacktestConfig(BaseModel):
    default_exchange: str = "binance"
    default_limit: int = 100


class EngineSettings(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        return {}
    with open(config_file, "r") as f:
        return yaml.safe_load(f) or {}


class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML file, then overlays environment
    variables. Validates all values through Pydantic models.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[EngineSettings] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = "config/config.yaml") -> EngineSettings:
        """Load configuration from YAML + environment variables."""
        load_dotenv()
        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)
        self._config = EngineSettings(**yaml_config)
        return self._config

    @property
    def config(self) -> EngineSettings:
        if self._config is None:
            self.load()
        return self._config

    def reload(self, config_path: str = "config/config.yaml") -> EngineSettings:
        return self.load(config_path)

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("scheduler.tick_interval_seconds") -> 60.0
        """
        obj = self._config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj

    def to_dict(self) -> Dict[str, Any]:
        return self._config.model_dump() if self._config else {}


def get_config() -> EngineSettings:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineSettings:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()
    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return EngineSettings(**yaml_config)
