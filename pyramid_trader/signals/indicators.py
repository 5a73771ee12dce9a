"""Streaming price indicators: EMA stack, ATR and swing levels.

Raw ticks are folded into synthetic bars (``TICKS_PER_BAR`` ticks each) so
that ATR and swing levels can be computed from a price-only feed.
"""

from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Deque, List, Optional, Sequence

import structlog

from pyramid_trader.core.models import IndicatorSnapshot

logger = structlog.get_logger(__name__)

MAX_PRICE_HISTORY = 250
TICKS_PER_BAR = 30
MAX_BARS = 100
ATR_PERIOD = 14
SWING_LOOKBACK = 20
EMA_PERIODS = (9, 21, 50, 200)


@dataclass
class Bar:
    """Synthetic OHLC bar built from consecutive ticks."""

    high: Decimal
    low: Decimal
    close: Decimal


def calculate_ema(prices: Sequence[Decimal], period: int) -> Decimal:
    """Calculate Exponential Moving Average seeded with the SMA of the first period."""
    if len(prices) < period:
        return prices[-1] if prices else Decimal("0")

    multiplier = Decimal("2") / (Decimal(str(period)) + Decimal("1"))
    ema = sum(prices[:period]) / period

    for price in prices[period:]:
        ema = (price * multiplier) + (ema * (Decimal("1") - multiplier))

    return ema


def calculate_atr(bars: Sequence[Bar], period: int = ATR_PERIOD) -> Decimal:
    """Mean true range over the last ``min(period, available)`` bars."""
    if len(bars) < 2:
        return Decimal("0")

    tr_values = []
    for i in range(1, len(bars)):
        prev_close = bars[i - 1].close
        tr1 = bars[i].high - bars[i].low
        tr2 = abs(bars[i].high - prev_close)
        tr3 = abs(bars[i].low - prev_close)
        tr_values.append(max(tr1, tr2, tr3))

    window = tr_values[-min(period, len(tr_values)):]
    return sum(window) / len(window)


def calculate_swing(
    bars: Sequence[Bar], lookback: int = SWING_LOOKBACK
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    """Highest high and lowest low over the last ``lookback`` bars."""
    if not bars:
        return None, None
    window = list(bars)[-lookback:]
    return max(b.high for b in window), min(b.low for b in window)


class IndicatorEngine:
    """Keeps price history and bars, recomputing the snapshot on every tick."""

    def __init__(
        self,
        ticks_per_bar: int = TICKS_PER_BAR,
        max_history: int = MAX_PRICE_HISTORY,
        max_bars: int = MAX_BARS,
    ):
        self.ticks_per_bar = ticks_per_bar
        self.prices: Deque[Decimal] = deque(maxlen=max_history)
        self.bars: Deque[Bar] = deque(maxlen=max_bars)
        self._pending: List[Decimal] = []
        self.snapshot = IndicatorSnapshot()

    def update(self, price: Decimal) -> IndicatorSnapshot:
        """Feed one tick and return the refreshed indicators."""
        if price <= 0:
            logger.warning("indicators.invalid_price", price=str(price))
            return self.snapshot

        self.prices.append(price)
        self._pending.append(price)
        if len(self._pending) >= self.ticks_per_bar:
            self.bars.append(
                Bar(high=max(self._pending), low=min(self._pending), close=self._pending[-1])
            )
            self._pending = []

        history = list(self.prices)
        ema9, ema21, ema50, ema200 = (calculate_ema(history, p) for p in EMA_PERIODS)
        swing_high, swing_low = calculate_swing(self.bars)

        self.snapshot = IndicatorSnapshot(
            ema9=ema9,
            ema21=ema21,
            ema50=ema50,
            ema200=ema200,
            atr14=calculate_atr(self.bars),
            swing_high=swing_high,
            swing_low=swing_low,
            samples=len(history),
            bars=len(self.bars),
        )
        return self.snapshot
