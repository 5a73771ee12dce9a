"""Unit tests for the streaming indicators."""
from decimal import Decimal

import pytest

from pyramid_trader.signals.indicators import (
    Bar,
    IndicatorEngine,
    calculate_atr,
    calculate_ema,
    calculate_swing,
)


def D(value) -> Decimal:
    return Decimal(str(value))


# =============================================================================
# EMA Tests
# =============================================================================

class TestCalculateEma:
    """Test calculate_ema."""

    def test_short_history_returns_last_price(self):
        assert calculate_ema([D(1), D(2), D(3)], 9) == D(3)

    def test_empty_history_returns_zero(self):
        assert calculate_ema([], 9) == D(0)

    def test_exact_period_is_simple_average(self):
        prices = [D(p) for p in (1, 2, 3, 4, 5, 6, 7, 8, 9)]
        assert calculate_ema(prices, 9) == D(5)

    def test_constant_series(self):
        prices = [D(100)] * 60
        assert calculate_ema(prices, 21) == D(100)

    def test_weights_recent_prices(self):
        prices = [D(100)] * 9 + [D(110)]
        ema = calculate_ema(prices, 9)
        # multiplier 2/10
        assert ema == D(102)


# =============================================================================
# ATR / Swing Tests
# =============================================================================

class TestCalculateAtr:
    """Test calculate_atr over synthetic bars."""

    def test_needs_two_bars(self):
        assert calculate_atr([]) == D(0)
        assert calculate_atr([Bar(D(10), D(8), D(9))]) == D(0)

    def test_true_range_uses_previous_close(self):
        bars = [
            Bar(high=D(10), low=D(8), close=D(9)),
            Bar(high=D(12), low=D(9), close=D(11)),
            Bar(high=D(11), low=D(10), close=D(10)),
        ]
        # TR: max(3, 3, 0) = 3 and max(1, 0, 1) = 1
        assert calculate_atr(bars) == D(2)

    def test_uses_last_period_ranges(self):
        bars = [Bar(D(100), D(100), D(100))] + [
            Bar(high=D(100 + i), low=D(100), close=D(100)) for i in range(1, 21)
        ]
        atr = calculate_atr(bars, period=14)
        assert atr == sum(D(i) for i in range(7, 21)) / 14


class TestCalculateSwing:
    def test_empty(self):
        assert calculate_swing([]) == (None, None)

    def test_lookback_window(self):
        bars = [Bar(D(200), D(50), D(100))] + [Bar(D(110), D(90), D(100))] * 20
        high, low = calculate_swing(bars, lookback=20)
        assert high == D(110)
        assert low == D(90)


# =============================================================================
# IndicatorEngine Tests
# =============================================================================

class TestIndicatorEngine:
    """Test tick folding and snapshot refresh."""

    def test_builds_bars_from_ticks(self):
        engine = IndicatorEngine(ticks_per_bar=3)
        for price in (100, 102, 99, 101, 104, 100):
            snapshot = engine.update(D(price))

        assert snapshot.bars == 2
        assert snapshot.samples == 6
        assert engine.bars[0].high == D(102)
        assert engine.bars[0].low == D(99)
        assert engine.bars[0].close == D(99)
        assert snapshot.swing_high == D(104)
        assert snapshot.swing_low == D(99)

    def test_atr_after_two_bars(self):
        engine = IndicatorEngine(ticks_per_bar=2)
        for price in (100, 102, 101, 105):
            snapshot = engine.update(D(price))
        # bars: (102,100,102) and (105,101,105); TR = max(4, 3, 1)
        assert snapshot.atr14 == D(4)

    def test_ignores_non_positive_price(self):
        engine = IndicatorEngine()
        first = engine.update(D(100))
        again = engine.update(D(0))

        assert again is first
        assert len(engine.prices) == 1

    def test_history_is_bounded(self):
        engine = IndicatorEngine(max_history=10, max_bars=2, ticks_per_bar=1)
        for i in range(1, 30):
            engine.update(D(i))

        assert len(engine.prices) == 10
        assert len(engine.bars) == 2

    @pytest.mark.parametrize("price", ["3000", "3000.5"])
    def test_emas_equal_price_on_first_tick(self, price):
        snapshot = IndicatorEngine().update(D(price))
        assert snapshot.ema9 == snapshot.ema21 == snapshot.ema50 == snapshot.ema200 == D(price)
