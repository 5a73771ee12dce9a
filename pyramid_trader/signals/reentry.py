"""Re-entry gate.

Entries taken near the bottom (long) or top (short) of the recent range
win far more often than mid-range entries, so after the first trade an
entry is vetoed unless price sits in the right zone of the rolling range.
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Optional, Tuple

import structlog

from pyramid_trader.core.config import ReentryConfig
from pyramid_trader.core.models import PositionSide, ReentryState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RollingRange:
    high: Optional[Decimal]
    low: Optional[Decimal]

    @property
    def established(self) -> bool:
        return self.high is not None and self.low is not None and self.high > self.low


@dataclass(frozen=True)
class ReentryDecision:
    allowed: bool
    reason: str
    position_in_range: Optional[Decimal] = None


def _pct(value: Decimal) -> str:
    return f"{(value * 100):.0f}"


def should_enter(
    price: Decimal,
    side: PositionSide,
    rolling_range: RollingRange,
    consecutive_losses: int,
    has_prior_exit: bool,
    config: Optional[ReentryConfig] = None,
) -> ReentryDecision:
    """Decide whether an entry on ``side`` at ``price`` may proceed."""
    config = config or ReentryConfig()

    if not has_prior_exit:
        return ReentryDecision(True, "First trade")

    if not rolling_range.established:
        return ReentryDecision(True, "Range not established")

    high, low = rolling_range.high, rolling_range.low
    position = (price - low) / (high - low)
    range_text = f"Range: ${low}-${high}"

    tightened = consecutive_losses >= config.tighten_after_losses
    if side == PositionSide.LONG:
        limit = (
            config.tightened_long_max_percentile if tightened else config.long_max_percentile
        )
        if position > limit:
            return ReentryDecision(
                False,
                f"LONG blocked: price at {_pct(position)}% of range "
                f"(need bottom {_pct(limit)}%"
                f"{f' after {consecutive_losses} losses' if tightened else ''}). {range_text}",
                position,
            )
        zone = "bottom"
    else:
        limit = (
            config.tightened_short_min_percentile if tightened else config.short_min_percentile
        )
        if position < limit:
            return ReentryDecision(
                False,
                f"SHORT blocked: price at {_pct(position)}% of range "
                f"(need top {_pct(1 - limit)}%"
                f"{f' after {consecutive_losses} losses' if tightened else ''}). {range_text}",
                position,
            )
        zone = "top"

    return ReentryDecision(
        True, f"Entry allowed: price at {_pct(position)}% of range ({zone} zone)", position
    )


class ReentryTracker:
    """Owns the rolling price window and the last-exit bookkeeping."""

    def __init__(self, config: Optional[ReentryConfig] = None, state: Optional[ReentryState] = None):
        self.config = config or ReentryConfig()
        self.state = state or ReentryState()
        self._window: Deque[Tuple[datetime, Decimal]] = deque()

    def update(self, price: Decimal, now: datetime) -> RollingRange:
        """Add a tick and drop samples older than the window."""
        self._window.append((now, price))
        cutoff = now - timedelta(seconds=self.config.range_window_seconds)
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

        high_time, high = max(self._window, key=lambda s: s[1])
        low_time, low = min(self._window, key=lambda s: s[1])
        self.state.recent_high, self.state.recent_high_time = high, high_time
        self.state.recent_low, self.state.recent_low_time = low, low_time
        return RollingRange(high=high, low=low)

    @property
    def rolling_range(self) -> RollingRange:
        return RollingRange(high=self.state.recent_high, low=self.state.recent_low)

    def check(self, price: Decimal, side: PositionSide) -> ReentryDecision:
        return should_enter(
            price,
            side,
            self.rolling_range,
            self.state.consecutive_losses,
            has_prior_exit=self.state.last_exit_time is not None,
            config=self.config,
        )

    def record_exit(
        self,
        price: Decimal,
        pnl_percent: Decimal,
        side: PositionSide,
        now: datetime,
        net_pnl: Optional[Decimal] = None,
    ) -> None:
        """Remember the exit. A loss is judged on net_pnl (after fees) when given."""
        self.state.last_exit_time = now
        self.state.last_exit_price = price
        self.state.last_exit_pnl = pnl_percent
        self.state.last_exit_side = side
        outcome = net_pnl if net_pnl is not None else pnl_percent
        if outcome < 0:
            self.state.consecutive_losses += 1
        else:
            self.state.consecutive_losses = 0

        logger.info(
            "reentry.exit_recorded",
            price=str(price),
            pnl_percent=str(pnl_percent),
            side=side.value,
            consecutive_losses=self.state.consecutive_losses,
        )
