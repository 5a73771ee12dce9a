"""Pytest fixtures and utilities for the Pyramid Trader test suite."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from pyramid_trader.core.config import (
    CircuitBreakerConfig,
    ExchangeAPIConfig,
    PositionSizingConfig,
    PyramidConfig,
    ReentryConfig,
    SchedulerConfig,
    StorageConfig,
    TraderConfig,
    TradingModeConfig,
)
from pyramid_trader.core.models import (
    BalanceSnapshot,
    FundingSnapshot,
    IndicatorSnapshot,
    PositionSide,
    PositionSnapshot,
    PriceSnapshot,
)
from pyramid_trader.exchange.gateway import ExchangeGateway
from pyramid_trader.storage.state_store import StateStore

# Wednesday, inside the NYSE+London overlap
WEDNESDAY_OVERLAP = datetime(2024, 1, 10, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward by hand."""

    def __init__(self, now: datetime = WEDNESDAY_OVERLAP):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def instrument_config():
    """Paper-mode instrument with default ETHUSDT limits."""
    return TradingModeConfig(trading_mode="paper", leverage=88, paper_starting_balance=Decimal("100"))


@pytest.fixture
def api_config():
    return ExchangeAPIConfig(
        exchange_id="binanceusdm", api_key="", api_secret="", testnet=True, timeout=5.0
    )


@pytest.fixture
def storage_config(tmp_path):
    """Storage rooted in a per-test temporary directory."""
    return StorageConfig(data_dir=str(tmp_path / "data"))


@pytest.fixture
def test_config(api_config, instrument_config, storage_config):
    """Full controller configuration safe for tests."""
    return TraderConfig(
        exchange=api_config,
        trading_mode=instrument_config,
        position_sizing=PositionSizingConfig(),
        pyramid=PyramidConfig(),
        reentry=ReentryConfig(),
        circuit_breaker=CircuitBreakerConfig(),
        scheduler=SchedulerConfig(avoid_funding_window=True, trading_hours_enabled=False),
        storage=storage_config,
    )


# =============================================================================
# Exchange Fixtures
# =============================================================================

def make_ticker_exchange(prices=None):
    """ccxt exchange double returning ``prices`` from successive fetch_ticker calls."""
    exchange = MagicMock()
    exchange.fetch_ticker = AsyncMock(
        side_effect=[{"last": str(p)} for p in (prices or [])]
    )
    exchange.fetch_funding_rate = AsyncMock(
        return_value={"fundingRate": "0.0001", "nextFundingTimestamp": 1704902400000}
    )
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def mock_exchange():
    return make_ticker_exchange()


@pytest.fixture
def paper_gateway(api_config, instrument_config, mock_exchange):
    """Paper gateway backed by a ccxt double for public market data."""
    return ExchangeGateway(api_config, instrument_config, exchange=mock_exchange)


@pytest.fixture
def mock_gateway():
    """Fully mocked gateway for controller tests that script every call."""
    gateway = AsyncMock(spec=ExchangeGateway)
    gateway.has_credentials = True
    gateway.is_paper = True
    gateway.last_latency_ms = 12.0
    gateway.get_price.return_value = PriceSnapshot(price=Decimal("3000"))
    gateway.get_balance.return_value = BalanceSnapshot(total=Decimal("100"), available=Decimal("100"))
    gateway.get_funding_rate.return_value = FundingSnapshot(
        rate=Decimal("0.0001"), next_funding_time=WEDNESDAY_OVERLAP + timedelta(hours=1)
    )
    gateway.get_position.return_value = PositionSnapshot()
    gateway.close_all.return_value = None
    gateway.cancel_all_orders.return_value = True
    return gateway


# =============================================================================
# Controller Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def state_store(storage_config):
    return StateStore(storage_config)


@pytest.fixture
def long_indicators():
    return IndicatorSnapshot(
        ema9=Decimal("3005"),
        ema21=Decimal("3000"),
        ema50=Decimal("2990"),
        atr14=Decimal("6"),
    )


@pytest.fixture
def open_long_position():
    return PositionSnapshot(
        side=PositionSide.LONG,
        size=Decimal("0.3"),
        entry_price=Decimal("3000"),
        mark_price=Decimal("3010"),
        liquidation_price=Decimal("2966"),
        leverage=88,
    )
