"""Configuration management for the pre-limit order bot."""

import json
import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


# Status snapshots are never refreshed more often than this
MIN_STATUS_INTERVAL_SECONDS = 10.0

# config.json key names that differ from the settings field names
POLYMARKET_KEY_ALIASES = {
    "proxy_wallet_address": "proxy_wallet",
    "clob_api_url": "clob_http_url",
}


class RiskMode(str, Enum):
    """How a one-sided fill is exited early."""

    PRICE = "price"
    TIME = "time"
    NONE = "none"

    @classmethod
    def parse(cls, value: Any) -> "RiskMode":
        """Parse a configured mode string. Unrecognised values disable early exit."""
        if isinstance(value, RiskMode):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in ("price", "sell_at_danger_price"):
            return cls.PRICE
        if normalized in ("time", "sell_after_danger_time_passed"):
            return cls.TIME
        return cls.NONE


class Timeframe(str, Enum):
    """Market period granularity."""

    M15 = "15m"
    H1 = "1h"

    @property
    def duration_seconds(self) -> int:
        return 900 if self is Timeframe.M15 else 3600

    @classmethod
    def parse(cls, value: Any) -> "Timeframe":
        if isinstance(value, Timeframe):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ConfigError(f"Unknown timeframe: {value!r} (expected 15m or 1h)")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class PolymarketSettings(BaseSettings):
    """Polymarket API and wallet configuration."""

    # Wallet Configuration
    private_key: str = Field(default="", description="Polygon wallet private key")
    proxy_wallet: str = Field(default="", description="Polymarket proxy wallet address")
    signature_type: int = Field(default=1, description="0=EOA, 1=Magic, 2=Browser")

    # API Credentials (derived from private key when absent)
    api_key: Optional[str] = Field(default=None, description="Polymarket API key")
    api_secret: Optional[str] = Field(default=None, description="Polymarket API secret")
    api_passphrase: Optional[str] = Field(default=None, description="Polymarket API passphrase")

    # Network Configuration
    polygon_rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="Polygon RPC URL (used for redemptions)"
    )
    clob_http_url: str = Field(
        default="https://clob.polymarket.com",
        description="CLOB HTTP API URL"
    )
    gamma_api_url: str = Field(
        default="https://gamma-api.polymarket.com",
        description="Gamma API URL for market metadata"
    )
    data_api_url: str = Field(
        default="https://data-api.polymarket.com",
        description="Data API URL for wallet positions"
    )

    http_proxy: Optional[str] = Field(
        default=None,
        description="HTTP proxy URL (e.g., http://gluetun:8888)"
    )

    # Logging / metrics
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Enable JSON structured logging")
    metrics_port: int = Field(default=0, description="Prometheus port, 0 disables")

    model_config = {"env_prefix": "POLYMARKET_"}

    @property
    def has_credentials(self) -> bool:
        """Trading requires a private key; without one the bot only monitors."""
        return bool(self.private_key)


@dataclass
class SignalConfig:
    """Signal heuristics and one-side risk management settings."""

    enabled: bool = True
    stable_min: float = 0.35  # Both sides inside [stable_min, stable_max] = balanced market
    stable_max: float = 0.65
    clear_threshold: float = 0.99  # One side this high near the close = decided market
    clear_remaining_mins: int = 15
    danger_price: float = 0.15  # Matched side at or below this = danger
    danger_time_passed: int = 30  # Minutes a one-sided fill may stay open
    one_side_buy_risk_management: RiskMode = RiskMode.PRICE
    mid_market_enabled: bool = True

    def __post_init__(self):
        self.one_side_buy_risk_management = RiskMode.parse(self.one_side_buy_risk_management)

    @classmethod
    def from_env(cls) -> "SignalConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("SIGNAL_ENABLED", "true"),
            stable_min=float(os.getenv("SIGNAL_STABLE_MIN", "0.35")),
            stable_max=float(os.getenv("SIGNAL_STABLE_MAX", "0.65")),
            clear_threshold=float(os.getenv("SIGNAL_CLEAR_THRESHOLD", "0.99")),
            clear_remaining_mins=int(os.getenv("SIGNAL_CLEAR_REMAINING_MINS", "15")),
            danger_price=float(os.getenv("SIGNAL_DANGER_PRICE", "0.15")),
            danger_time_passed=int(os.getenv("SIGNAL_DANGER_TIME_PASSED", "30")),
            one_side_buy_risk_management=os.getenv("SIGNAL_ONE_SIDE_BUY_RISK_MANAGEMENT", "price"),
            mid_market_enabled=_env_bool("SIGNAL_MID_MARKET_ENABLED", "true"),
        )


@dataclass
class StrategyConfig:
    """Pre-limit strategy configuration."""

    markets: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL", "XRP"])
    timeframe: Timeframe = Timeframe.M15
    price_limit: float = 0.45  # Limit price for both pre-placed BUY orders
    shares: float = 5.0  # Shares per side
    place_order_before_mins: int = 3  # Lead time before the next period opens
    check_interval_ms: int = 2000
    simulation_mode: bool = False  # No real orders; fills inferred from prices
    sell_opposite_above: float = 0.95
    sell_opposite_time_remaining: int = 15  # Minutes
    market_closure_check_interval_seconds: int = 120
    status_interval_seconds: float = 10.0
    exchange_timezone: str = "America/New_York"
    signal: SignalConfig = field(default_factory=SignalConfig)

    def __post_init__(self):
        self.timeframe = Timeframe.parse(self.timeframe)
        self.markets = [m.strip().upper() for m in self.markets if m.strip()]
        if isinstance(self.signal, dict):
            self.signal = _from_dict(SignalConfig, self.signal)

    @property
    def market_duration_seconds(self) -> int:
        return self.timeframe.duration_seconds

    def validate(self) -> None:
        """Raise ConfigError for values the strategy cannot run with."""
        if not 0.0 < self.price_limit < 1.0:
            raise ConfigError(f"price_limit must be in (0, 1), got {self.price_limit}")
        if self.shares <= 0:
            raise ConfigError(f"shares must be positive, got {self.shares}")
        if not self.markets:
            raise ConfigError("At least one market asset is required")
        for name in (
            "place_order_before_mins",
            "check_interval_ms",
            "sell_opposite_time_remaining",
            "market_closure_check_interval_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if not 0.0 < self.sell_opposite_above <= 1.0:
            raise ConfigError(f"sell_opposite_above must be in (0, 1], got {self.sell_opposite_above}")
        if self.status_interval_seconds < MIN_STATUS_INTERVAL_SECONDS:
            raise ConfigError(
                f"status_interval_seconds must be at least {MIN_STATUS_INTERVAL_SECONDS:.0f}, "
                f"got {self.status_interval_seconds}"
            )

    @classmethod
    def from_env(cls) -> "StrategyConfig":
        """Load configuration from environment variables."""
        return cls(
            markets=os.getenv("STRATEGY_MARKETS", "BTC,ETH,SOL,XRP").split(","),
            timeframe=os.getenv("STRATEGY_TIMEFRAME", "15m"),
            price_limit=float(os.getenv("STRATEGY_PRICE_LIMIT", "0.45")),
            shares=float(os.getenv("STRATEGY_SHARES", "5.0")),
            place_order_before_mins=int(os.getenv("STRATEGY_PLACE_ORDER_BEFORE_MINS", "3")),
            check_interval_ms=int(os.getenv("STRATEGY_CHECK_INTERVAL_MS", "2000")),
            simulation_mode=_env_bool("STRATEGY_SIMULATION_MODE", "false"),
            sell_opposite_above=float(os.getenv("STRATEGY_SELL_OPPOSITE_ABOVE", "0.95")),
            sell_opposite_time_remaining=int(os.getenv("STRATEGY_SELL_OPPOSITE_TIME_REMAINING", "15")),
            market_closure_check_interval_seconds=int(
                os.getenv("STRATEGY_MARKET_CLOSURE_CHECK_INTERVAL_SECONDS", "120")
            ),
            status_interval_seconds=float(os.getenv("STRATEGY_STATUS_INTERVAL_SECONDS", "10")),
            exchange_timezone=os.getenv("STRATEGY_EXCHANGE_TIMEZONE", "America/New_York"),
            signal=SignalConfig.from_env(),
        )


def _from_dict(cls, data: Dict[str, Any], base=None):
    """Build (or overlay onto base) a dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    values = {f.name: getattr(base, f.name) for f in fields(cls)} if base is not None else {}
    values.update({k: v for k, v in data.items() if k in known})
    return cls(**values)


def _overlay_polymarket(base: PolymarketSettings, data: Dict[str, Any]) -> PolymarketSettings:
    """Rebuild settings with JSON values on top, validating every field.

    Legacy config.json key names are accepted. Null values and unknown keys
    are ignored.
    """
    overlay = {}
    for key, value in data.items():
        key = POLYMARKET_KEY_ALIASES.get(key, key)
        if key in PolymarketSettings.model_fields and value is not None:
            overlay[key] = value
    try:
        return PolymarketSettings.model_validate({**base.model_dump(), **overlay})
    except ValidationError as e:
        raise ConfigError(f"Invalid polymarket settings: {e}") from e


@dataclass
class AppConfig:
    """Main application configuration."""

    polymarket: PolymarketSettings
    strategy: StrategyConfig

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "AppConfig":
        """Load configuration from the environment, overlaid by an optional JSON file.

        The JSON file uses the shape {"polymarket": {...}, "strategy": {..., "signal": {...}}}.
        """
        from dotenv import load_dotenv
        load_dotenv()

        polymarket = PolymarketSettings()
        strategy = StrategyConfig.from_env()

        if config_path is not None:
            path = Path(config_path)
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            try:
                raw = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {path}: {e}") from e

            if raw.get("polymarket"):
                polymarket = _overlay_polymarket(polymarket, raw["polymarket"])
            strategy_raw = dict(raw.get("strategy") or {})
            signal_raw = strategy_raw.pop("signal", None)
            strategy = _from_dict(StrategyConfig, strategy_raw, base=strategy)
            if signal_raw:
                strategy.signal = _from_dict(SignalConfig, signal_raw, base=strategy.signal)

        strategy.validate()
        return cls(polymarket=polymarket, strategy=strategy)

