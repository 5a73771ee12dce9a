"""Configuration management for the Pyramid Trader controller."""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    app_name: str = Field(default="Pyramid Trader")
    app_version: str = Field(default="1.0.0")

    # Attempt one best-effort flatten when the controller is stopped
    close_on_stop: bool = Field(default=True)


# =============================================================================
# Exchange API Configuration
# =============================================================================


class ExchangeAPIConfig(BaseSettings):
    """Exchange connectivity (any ccxt perpetual-futures exchange)."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    exchange_id: str = Field(default="binanceusdm", validation_alias="EXCHANGE_ID")
    api_key: str = Field(default="", validation_alias="EXCHANGE_API_KEY")
    api_secret: str = Field(default="", validation_alias="EXCHANGE_API_SECRET")
    testnet: bool = Field(default=True, validation_alias="EXCHANGE_TESTNET")

    # Per-request timeout (seconds) and read retry attempts
    timeout: float = Field(default=10.0, validation_alias="EXCHANGE_TIMEOUT")
    retry_attempts: int = Field(default=3, validation_alias="EXCHANGE_RETRY_ATTEMPTS")

    @computed_field
    @property
    def has_credentials(self) -> bool:
        """True when both key and secret look configured."""
        return bool(
            self.api_key
            and self.api_secret
            and not self.api_key.startswith("your_")
            and not self.api_secret.startswith("your_")
        )

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v


# =============================================================================
# Trading Mode Configuration
# =============================================================================


class TradingModeConfig(BaseSettings):
    """Trading mode and instrument settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # paper: public market data, simulated fills; live: real orders
    trading_mode: Literal["paper", "live"] = Field(default="paper")

    symbol: str = Field(default="ETHUSDT")
    ccxt_symbol: str = Field(default="ETH/USDT:USDT")
    leverage: int = Field(default=88)

    quantity_step: Decimal = Field(default=Decimal("0.001"))
    min_quantity: Decimal = Field(default=Decimal("0.001"))
    min_notional: Decimal = Field(default=Decimal("5"))

    enable_auto_trading: bool = Field(default=True)
    paper_starting_balance: Decimal = Field(default=Decimal("100"))

    @field_validator("leverage")
    @classmethod
    def validate_leverage(cls, v):
        if v < 1 or v > 125:
            raise ValueError("leverage must be between 1 and 125")
        return v

    @field_validator("quantity_step", "min_quantity", "min_notional")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Instrument limits must be positive")
        return v


# =============================================================================
# Position Sizing Configuration
# =============================================================================


class PositionSizingConfig(BaseSettings):
    """Entry margin sizing. Margin = min(risk %, fraction cap, per-trade ceiling)."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    base_risk_percent: Decimal = Field(default=Decimal("25"))
    max_margin_fraction: Decimal = Field(default=Decimal("0.5"))
    max_margin_per_trade: Decimal = Field(default=Decimal("10"))
    min_margin: Decimal = Field(default=Decimal("1"))

    # Anti-liquidation: notional <= available * fraction * leverage
    max_position_fraction: Decimal = Field(default=Decimal("0.8"))
    max_position_notional: Decimal = Field(default=Decimal("10000"))

    @field_validator("base_risk_percent")
    @classmethod
    def validate_risk_percent(cls, v):
        if v <= 0 or v > 100:
            raise ValueError("base_risk_percent must be between 0 and 100")
        return v

    @field_validator("max_margin_fraction", "max_position_fraction")
    @classmethod
    def validate_fraction(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Fractions must be between 0 and 1")
        return v


# =============================================================================
# Pyramid Configuration
# =============================================================================


class PyramidConfig(BaseSettings):
    """Pyramiding ladder, stop and exit parameters."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    max_levels: int = Field(default=5)
    min_confluence_to_add: int = Field(default=4)
    min_profit_to_add: Decimal = Field(default=Decimal("0.15"))  # percent
    add_cooldown_seconds: float = Field(default=30.0)

    initial_stop_percent: Decimal = Field(default=Decimal("0.8"))
    take_profit_percent: Decimal = Field(default=Decimal("2.0"))

    position_size_per_level: Decimal = Field(default=Decimal("0.15"))
    max_add_margin: Decimal = Field(default=Decimal("10"))
    min_add_margin: Decimal = Field(default=Decimal("1"))
    min_add_balance: Decimal = Field(default=Decimal("2"))

    # Profit protection: exit on reversal once this % is reached
    profit_protect_percent: Decimal = Field(default=Decimal("0.5"))
    profit_protect_confluence: int = Field(default=4)

    # ATR multipliers for the trailing stop components
    swing_atr_buffer: Decimal = Field(default=Decimal("0.5"))
    atr_stop_multiplier: Decimal = Field(default=Decimal("1.5"))
    ema_atr_buffer: Decimal = Field(default=Decimal("0.3"))
    min_stop_distance_atr: Decimal = Field(default=Decimal("1"))
    default_atr_percent: Decimal = Field(default=Decimal("0.2"))

    fee_rate: Decimal = Field(default=Decimal("0.0006"))

    @field_validator("max_levels")
    @classmethod
    def validate_levels(cls, v):
        if v < 1:
            raise ValueError("max_levels must be at least 1")
        return v


# =============================================================================
# Confluence Configuration
# =============================================================================


class ConfluenceConfig(BaseSettings):
    """Entry threshold and momentum sensitivity."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    min_confluence_to_enter: int = Field(default=4)
    momentum_threshold_percent: Decimal = Field(default=Decimal("0.03"))


# =============================================================================
# Re-entry Configuration
# =============================================================================


class ReentryConfig(BaseSettings):
    """Re-entry gate percentiles over the rolling range."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    range_window_seconds: float = Field(default=300.0)
    long_max_percentile: Decimal = Field(default=Decimal("0.25"))
    short_min_percentile: Decimal = Field(default=Decimal("0.75"))
    tightened_long_max_percentile: Decimal = Field(default=Decimal("0.15"))
    tightened_short_min_percentile: Decimal = Field(default=Decimal("0.85"))
    tighten_after_losses: int = Field(default=2)


# =============================================================================
# Circuit Breaker Configuration
# =============================================================================


class CircuitBreakerConfig(BaseSettings):
    """Hard safety limits. Any breach trips the breaker until manual reset."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    max_daily_loss: Decimal = Field(default=Decimal("50"))
    max_drawdown_percent: Decimal = Field(default=Decimal("10"))
    max_consecutive_losses: int = Field(default=3)
    # Must stay below the 100/leverage percent a fresh fill starts at
    min_liquidation_distance_percent: Decimal = Field(default=Decimal("0.5"))
    max_consecutive_errors: int = Field(default=10)

    # Health turns red at this many consecutive errors
    unhealthy_error_count: int = Field(default=5)

    @field_validator("max_daily_loss", "max_drawdown_percent")
    @classmethod
    def validate_limits(cls, v):
        if v <= 0:
            raise ValueError("Loss limits must be positive")
        return v


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseSettings):
    """Task cadences (seconds) and time-based trading filters."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    price_interval: float = Field(default=3.0)
    balance_interval: float = Field(default=15.0)
    position_interval: float = Field(default=10.0)
    funding_interval: float = Field(default=3600.0)
    heartbeat_interval: float = Field(default=30.0)
    autosave_interval: float = Field(default=60.0)

    max_latency_ms: float = Field(default=1000.0)

    avoid_funding_window: bool = Field(default=True)
    funding_window_minutes: int = Field(default=5)
    funding_period_hours: int = Field(default=8)

    # Optional UTC trading window; wraps midnight when start > end
    trading_hours_enabled: bool = Field(default=False)
    trading_start_hour: int = Field(default=0)
    trading_end_hour: int = Field(default=24)

    @field_validator(
        "price_interval",
        "balance_interval",
        "position_interval",
        "funding_interval",
        "heartbeat_interval",
        "autosave_interval",
    )
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("Intervals must be positive")
        return v


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseSettings):
    """Where persistent state lives."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    data_dir: str = Field(default="data")
    state_file: str = Field(default="trader_state.json")
    trades_file: str = Field(default="trades.ndjson")
    daily_archive_file: str = Field(default="daily_stats.ndjson")
    signal_log_file: str = Field(default="signal_log.json")

    signal_log_size: int = Field(default=200)
    signal_flush_every: int = Field(default=50)
    trade_history_limit: int = Field(default=1000)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: str = Field(default="logs/pyramid_trader.log")


# =============================================================================
# Global Configuration Container
# =============================================================================


class TraderConfig:
    """
    Container for all Pyramid Trader configurations.

    Usage:
        from pyramid_trader.core.config import trader_config

        if trader_config.exchange.has_credentials:
            ...
        leverage = trader_config.trading_mode.leverage

    Individual sections can be overridden for tests:
        TraderConfig(circuit_breaker=CircuitBreakerConfig(max_daily_loss=10))
    """

    def __init__(
        self,
        system: Optional[SystemConfig] = None,
        exchange: Optional[ExchangeAPIConfig] = None,
        trading_mode: Optional[TradingModeConfig] = None,
        position_sizing: Optional[PositionSizingConfig] = None,
        pyramid: Optional[PyramidConfig] = None,
        confluence: Optional[ConfluenceConfig] = None,
        reentry: Optional[ReentryConfig] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
        scheduler: Optional[SchedulerConfig] = None,
        storage: Optional[StorageConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ):
        self.system = system or SystemConfig()
        self.exchange = exchange or ExchangeAPIConfig()
        self.trading_mode = trading_mode or TradingModeConfig()
        self.position_sizing = position_sizing or PositionSizingConfig()
        self.pyramid = pyramid or PyramidConfig()
        self.confluence = confluence or ConfluenceConfig()
        self.reentry = reentry or ReentryConfig()
        self.circuit_breaker = circuit_breaker or CircuitBreakerConfig()
        self.scheduler = scheduler or SchedulerConfig()
        self.storage = storage or StorageConfig()
        self.logging = logging or LoggingConfig()

    @property
    def is_paper_trading(self) -> bool:
        """Check if running in paper trading mode."""
        return self.trading_mode.trading_mode == "paper"

    @property
    def is_live_trading(self) -> bool:
        """Check if running in live trading mode."""
        return self.trading_mode.trading_mode == "live"

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.is_live_trading and not self.exchange.has_credentials:
            issues.append("Live trading requires EXCHANGE_API_KEY and EXCHANGE_API_SECRET")

        sizing = self.position_sizing
        if sizing.min_margin > sizing.max_margin_per_trade:
            issues.append("min_margin must not exceed max_margin_per_trade")

        pyramid = self.pyramid
        if pyramid.take_profit_percent <= pyramid.min_profit_to_add:
            issues.append("take_profit_percent must exceed min_profit_to_add")
        if pyramid.min_add_margin > pyramid.max_add_margin:
            issues.append("min_add_margin must not exceed max_add_margin")

        reentry = self.reentry
        if not (
            0
            <= reentry.tightened_long_max_percentile
            <= reentry.long_max_percentile
            < reentry.short_min_percentile
            <= reentry.tightened_short_min_percentile
            <= 1
        ):
            issues.append("Re-entry percentiles must be ordered within [0, 1]")

        breaker = self.circuit_breaker
        if breaker.unhealthy_error_count > breaker.max_consecutive_errors:
            issues.append("unhealthy_error_count must not exceed max_consecutive_errors")
        # A fresh fill sits about 100/leverage percent from liquidation
        if Decimal(100) / self.trading_mode.leverage <= breaker.min_liquidation_distance_percent:
            issues.append(
                "min_liquidation_distance_percent must be below 100/leverage "
                "or every fill trips the breaker"
            )

        hours = self.scheduler
        if not (0 <= hours.trading_start_hour <= 24 and 0 <= hours.trading_end_hour <= 24):
            issues.append("Trading hours must be within 0-24")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

logging_config = LoggingConfig()
trader_config = TraderConfig(logging=logging_config)


__all__ = [
    "TraderConfig",
    "trader_config",
    "logging_config",
    "SystemConfig",
    "ExchangeAPIConfig",
    "TradingModeConfig",
    "PositionSizingConfig",
    "PyramidConfig",
    "ConfluenceConfig",
    "ReentryConfig",
    "CircuitBreakerConfig",
    "SchedulerConfig",
    "StorageConfig",
    "LoggingConfig",
]
