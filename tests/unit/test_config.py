"""Unit tests for configuration loading and validation."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pyramid_trader.core.config import (
    CircuitBreakerConfig,
    ExchangeAPIConfig,
    PositionSizingConfig,
    PyramidConfig,
    ReentryConfig,
    SchedulerConfig,
    TraderConfig,
    TradingModeConfig,
)


# =============================================================================
# Defaults
# =============================================================================

class TestDefaults:
    """Test the defaults the controller ships with."""

    def test_instrument(self):
        config = TradingModeConfig()
        assert config.trading_mode == "paper"
        assert config.symbol == "ETHUSDT"
        assert config.leverage == 88
        assert config.quantity_step == Decimal("0.001")

    def test_breaker_limits(self):
        config = CircuitBreakerConfig()
        assert config.max_daily_loss == Decimal("50")
        assert config.max_drawdown_percent == Decimal("10")
        assert config.max_consecutive_losses == 3
        assert config.min_liquidation_distance_percent == Decimal("0.5")

    def test_pyramid(self):
        config = PyramidConfig()
        assert config.max_levels == 5
        assert config.initial_stop_percent == Decimal("0.8")
        assert config.take_profit_percent == Decimal("2.0")

    def test_default_config_is_valid(self, test_config):
        result = test_config.validate_configuration()
        assert result == {"valid": True, "issues": []}


# =============================================================================
# Field Validation
# =============================================================================

class TestValidation:
    @pytest.mark.parametrize("leverage", [0, 126])
    def test_leverage_bounds(self, leverage):
        with pytest.raises(ValidationError):
            TradingModeConfig(leverage=leverage)

    def test_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            ExchangeAPIConfig(timeout=0)

    def test_risk_percent_bounds(self):
        with pytest.raises(ValidationError):
            PositionSizingConfig(base_risk_percent=Decimal("150"))

    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            SchedulerConfig(price_interval=0)

    def test_unknown_mode(self):
        with pytest.raises(ValidationError):
            TradingModeConfig(trading_mode="demo")


class TestCredentials:
    """Test credential detection."""

    def test_missing(self):
        assert not ExchangeAPIConfig(api_key="", api_secret="").has_credentials

    def test_placeholder(self):
        config = ExchangeAPIConfig(api_key="your_api_key", api_secret="your_secret")
        assert not config.has_credentials

    def test_present(self):
        assert ExchangeAPIConfig(api_key="abc", api_secret="def").has_credentials

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("EXCHANGE_API_KEY", "env-key")
        monkeypatch.setenv("EXCHANGE_API_SECRET", "env-secret")
        monkeypatch.setenv("EXCHANGE_TESTNET", "false")

        config = ExchangeAPIConfig()
        assert config.api_key == "env-key"
        assert config.has_credentials
        assert config.testnet is False


# =============================================================================
# Cross-field Validation
# =============================================================================

class TestConfigurationIssues:
    def test_live_without_keys(self):
        config = TraderConfig(
            exchange=ExchangeAPIConfig(api_key="", api_secret=""),
            trading_mode=TradingModeConfig(trading_mode="live"),
        )
        result = config.validate_configuration()

        assert config.is_live_trading
        assert not result["valid"]
        assert any("EXCHANGE_API_KEY" in issue for issue in result["issues"])

    def test_take_profit_below_add_threshold(self):
        config = TraderConfig(
            exchange=ExchangeAPIConfig(api_key="", api_secret=""),
            pyramid=PyramidConfig(take_profit_percent=Decimal("0.1")),
        )
        issues = config.validate_configuration()["issues"]
        assert "take_profit_percent must exceed min_profit_to_add" in issues

    def test_unordered_percentiles(self):
        config = TraderConfig(
            exchange=ExchangeAPIConfig(api_key="", api_secret=""),
            reentry=ReentryConfig(long_max_percentile=Decimal("0.9")),
        )
        issues = config.validate_configuration()["issues"]
        assert "Re-entry percentiles must be ordered within [0, 1]" in issues

    def test_liquidation_floor_above_leverage_cushion(self):
        config = TraderConfig(
            exchange=ExchangeAPIConfig(api_key="", api_secret=""),
            trading_mode=TradingModeConfig(leverage=88),
            circuit_breaker=CircuitBreakerConfig(min_liquidation_distance_percent=Decimal("2")),
        )
        issues = config.validate_configuration()["issues"]
        assert any("100/leverage" in issue for issue in issues)

    def test_default_liquidation_floor_fits_default_leverage(self):
        config = TraderConfig(exchange=ExchangeAPIConfig(api_key="", api_secret=""))
        assert config.validate_configuration()["valid"]

    def test_paper_is_default(self):
        config = TraderConfig(exchange=ExchangeAPIConfig(api_key="", api_secret=""))
        assert config.is_paper_trading
        assert not config.is_live_trading
