"""Pyramid manager - builds a winning position in levels and trails its stop.

State machine over Flat / Building(level 1..max_levels):

- Entry: ``open_position`` records the first confirmed fill (level 1).
- Add-on: allowed only while in profit, with confluence, EMA alignment,
  free margin and the add cooldown elapsed. ``apply_add`` records the fill.
- Exit: hard stop > take profit > trailing stop > profit protect. Any exit
  overrides an add in the same tick.
- Stops: structural trailing stop from swing low/high, ATR and EMA50. It only
  ever moves in the profit-protecting direction.

The manager never talks to the exchange. The controller executes its
decisions and calls back only once the gateway has confirmed a fill, so a
failed order leaves the ladder untouched.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog

from pyramid_trader.core.config import PyramidConfig
from pyramid_trader.core.models import (
    ExitReason,
    IndicatorSnapshot,
    PositionSide,
    PositionSnapshot,
    PyramidEntry,
    PyramidState,
    Trend,
)

logger = structlog.get_logger(__name__)

# Exchange and ladder sizes may differ by rounding
SIZE_TOLERANCE = Decimal("0.001")


class PyramidAction(str, Enum):
    HOLD = "hold"
    ADD = "add"
    EXIT = "exit"


@dataclass
class PyramidDecision:
    """What to do with the open position on this tick."""

    action: PyramidAction
    pnl_percent: Decimal = Decimal("0")
    exit_reason: Optional[ExitReason] = None
    detail: str = ""
    add_margin: Decimal = Decimal("0")


@dataclass
class ExitResult:
    """P&L breakdown for a full close."""

    gross_pnl: Decimal
    fees: Decimal
    net_pnl: Decimal
    pnl_percent: Decimal


class PyramidManager:
    """Owns :class:`PyramidState` for the single open position."""

    def __init__(self, config: Optional[PyramidConfig] = None, state: Optional[PyramidState] = None):
        self.config = config or PyramidConfig()
        self.state = state or PyramidState(max_levels=self.config.max_levels)
        self.state.max_levels = self.config.max_levels

    # =========================================================================
    # Stop Math
    # =========================================================================

    def effective_atr(self, price: Decimal, indicators: IndicatorSnapshot) -> Decimal:
        """Indicator ATR, or a fixed share of price before any bars exist."""
        if indicators.atr14 > 0:
            return indicators.atr14
        return price * self.config.default_atr_percent / 100

    def calculate_trailing_stop(
        self, side: PositionSide, price: Decimal, indicators: IndicatorSnapshot
    ) -> Decimal:
        """Structural stop for ``side`` at ``price``."""
        cfg = self.config
        atr = self.effective_atr(price, indicators)
        atr_stop_distance = atr * cfg.atr_stop_multiplier
        min_distance = atr * cfg.min_stop_distance_atr

        if side == PositionSide.LONG:
            candidates = [price - atr_stop_distance]
            if indicators.swing_low is not None and indicators.swing_low > 0:
                candidates.append(indicators.swing_low - atr * cfg.swing_atr_buffer)
            if indicators.ema50 > 0:
                candidates.append(indicators.ema50 - atr * cfg.ema_atr_buffer)
            stop = max(candidates)
            if stop > price - min_distance:
                stop = price - min_distance
            if stop <= 0:
                stop = price * (1 - cfg.initial_stop_percent / 100)
            return stop

        candidates = [price + atr_stop_distance]
        if indicators.swing_high is not None and indicators.swing_high > 0:
            candidates.append(indicators.swing_high + atr * cfg.swing_atr_buffer)
        if indicators.ema50 > 0:
            candidates.append(indicators.ema50 + atr * cfg.ema_atr_buffer)
        stop = min(candidates)
        if stop < price + min_distance:
            stop = price + min_distance
        if stop <= 0:
            stop = price * (1 + cfg.initial_stop_percent / 100)
        return stop

    def update_trailing_stop(self, price: Decimal, indicators: IndicatorSnapshot) -> Decimal:
        """Tighten the trailing stop if the new structural stop protects more."""
        state = self.state
        if state.is_flat:
            return state.trailing_stop

        new_stop = self.calculate_trailing_stop(state.side, price, indicators)
        current = state.trailing_stop
        if state.side == PositionSide.LONG:
            improved = current <= 0 or new_stop > current
        else:
            improved = current <= 0 or new_stop < current

        if improved:
            state.trailing_stop = new_stop
            logger.debug(
                "pyramid.trailing_stop_updated",
                side=state.side.value,
                old_stop=str(current),
                new_stop=str(new_stop),
            )
        return state.trailing_stop

    # =========================================================================
    # Ladder Mutation (only after confirmed fills)
    # =========================================================================

    def open_position(
        self,
        side: PositionSide,
        price: Decimal,
        size: Decimal,
        now: datetime,
        indicators: IndicatorSnapshot,
    ) -> PyramidState:
        if not self.state.is_flat:
            raise ValueError("Cannot open: pyramid already has a position")

        state = PyramidState(max_levels=self.config.max_levels, side=side)
        state.entries.append(PyramidEntry(price=price, size=size, timestamp=now))
        state.level = 1
        state.last_add_time = now
        self.state = state
        self._recompute_average()
        state.initial_stop = self._hard_stop_price(side, price)
        state.trailing_stop = self.calculate_trailing_stop(side, price, indicators)

        logger.info(
            "pyramid.opened",
            side=side.value,
            price=str(price),
            size=str(size),
            trailing_stop=str(state.trailing_stop),
        )
        return state

    def apply_add(self, price: Decimal, size: Decimal, now: datetime) -> PyramidState:
        state = self.state
        if state.is_flat:
            raise ValueError("Cannot add: no open position")
        if state.level >= state.max_levels:
            raise ValueError("Cannot add: pyramid at max level")

        state.entries.append(PyramidEntry(price=price, size=size, timestamp=now))
        state.level = len(state.entries)
        state.last_add_time = now
        self._recompute_average()

        logger.info(
            "pyramid.level_added",
            level=state.level,
            price=str(price),
            size=str(size),
            avg_entry=str(state.avg_entry),
            total_size=str(state.total_size),
        )
        return state

    def reset(self) -> None:
        """Return to Flat after a confirmed full close."""
        self.state = PyramidState(max_levels=self.config.max_levels)

    def sync_from_position(
        self, position: PositionSnapshot, indicators: IndicatorSnapshot, now: datetime
    ) -> Optional[str]:
        """Reconcile the ladder with the exchange, which is authoritative.

        Returns a short description of the correction, or None if in sync.
        """
        state = self.state
        if not position.is_open:
            if state.is_flat:
                return None
            logger.warning(
                "pyramid.position_closed_externally",
                level=state.level,
                side=state.side.value,
            )
            self.reset()
            return "reset"

        in_sync = (
            not state.is_flat
            and state.side == position.side
            and abs(state.total_size - position.size) <= SIZE_TOLERANCE
        )
        if in_sync:
            return None

        entry_price = position.entry_price if position.entry_price > 0 else position.mark_price
        adopted = PyramidState(
            max_levels=self.config.max_levels,
            side=position.side,
            level=1,
            entries=[PyramidEntry(price=entry_price, size=position.size, timestamp=now)],
            last_add_time=now,
        )
        self.state = adopted
        self._recompute_average()
        adopted.initial_stop = self._hard_stop_price(position.side, entry_price)
        adopted.trailing_stop = self.calculate_trailing_stop(
            position.side, position.mark_price if position.mark_price > 0 else entry_price, indicators
        )
        logger.warning(
            "pyramid.adopted_exchange_position",
            side=position.side.value,
            size=str(position.size),
            entry_price=str(entry_price),
        )
        return "adopted"

    # =========================================================================
    # Evaluation
    # =========================================================================

    def pnl_percent(self, price: Decimal) -> Decimal:
        state = self.state
        if state.is_flat or state.avg_entry <= 0:
            return Decimal("0")
        if state.side == PositionSide.LONG:
            return (price - state.avg_entry) / state.avg_entry * 100
        return (state.avg_entry - price) / state.avg_entry * 100

    def evaluate(
        self,
        price: Decimal,
        confluence_score: int,
        trend: Trend,
        indicators: IndicatorSnapshot,
        available_balance: Decimal,
        now: datetime,
        trading_allowed: bool = True,
    ) -> PyramidDecision:
        """Decide HOLD, ADD or EXIT for the current tick."""
        state = self.state
        if state.is_flat:
            return PyramidDecision(PyramidAction.HOLD)

        cfg = self.config
        pnl = self.pnl_percent(price)
        if pnl > state.highest_profit:
            state.highest_profit = pnl
        self.update_trailing_stop(price, indicators)

        exit_decision = self._check_exit(price, pnl, confluence_score, trend)
        if exit_decision is not None:
            return exit_decision

        if not trading_allowed:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Trading disabled")
        if state.level >= state.max_levels:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Max level reached")
        if state.last_add_time is not None:
            elapsed = (now - state.last_add_time).total_seconds()
            if elapsed < cfg.add_cooldown_seconds:
                return PyramidDecision(PyramidAction.HOLD, pnl, detail="Add cooldown")
        if available_balance <= cfg.min_add_balance:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Insufficient balance to add")
        if pnl < cfg.min_profit_to_add:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Not enough profit to add")
        if confluence_score < cfg.min_confluence_to_add:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Confluence too low to add")
        if not indicators.ema_aligned(state.side, price):
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="EMA stack not aligned")

        margin = min(available_balance * cfg.position_size_per_level, cfg.max_add_margin)
        if margin < cfg.min_add_margin:
            return PyramidDecision(PyramidAction.HOLD, pnl, detail="Add margin too small")

        return PyramidDecision(
            PyramidAction.ADD,
            pnl,
            detail=f"Add level {state.level + 1}: +{pnl:.2f}% with confluence {confluence_score}",
            add_margin=margin,
        )

    def _check_exit(
        self, price: Decimal, pnl: Decimal, confluence_score: int, trend: Trend
    ) -> Optional[PyramidDecision]:
        cfg = self.config
        state = self.state

        if pnl <= -cfg.initial_stop_percent:
            return PyramidDecision(
                PyramidAction.EXIT, pnl, ExitReason.HARD_STOP, f"Hard stop at {pnl:.2f}%"
            )

        if pnl >= cfg.take_profit_percent:
            return PyramidDecision(
                PyramidAction.EXIT, pnl, ExitReason.TAKE_PROFIT, f"Take profit at {pnl:.2f}%"
            )

        stop = state.trailing_stop
        if stop > 0:
            touched = price <= stop if state.side == PositionSide.LONG else price >= stop
            if touched:
                return PyramidDecision(
                    PyramidAction.EXIT,
                    pnl,
                    ExitReason.TRAILING_STOP,
                    f"Trailing stop {stop:.2f} hit at {price}",
                )

        reversal = (state.side == PositionSide.LONG and trend == Trend.BEARISH) or (
            state.side == PositionSide.SHORT and trend == Trend.BULLISH
        )
        if (
            pnl > cfg.profit_protect_percent
            and reversal
            and confluence_score < cfg.profit_protect_confluence
        ):
            return PyramidDecision(
                PyramidAction.EXIT,
                pnl,
                ExitReason.PROFIT_PROTECT,
                f"Protecting {pnl:.2f}% on momentum reversal",
            )
        return None

    # =========================================================================
    # Exit Accounting
    # =========================================================================

    def calculate_fees(self, exit_price: Decimal, exit_size: Optional[Decimal] = None) -> Decimal:
        """Fee on every entry notional plus the exit notional."""
        if exit_size is None:
            exit_size = self.state.total_size
        entry_notional = sum((e.price * e.size for e in self.state.entries), Decimal("0"))
        return (entry_notional + exit_price * exit_size) * self.config.fee_rate

    def exit_result(self, exit_price: Decimal, exit_size: Optional[Decimal] = None) -> ExitResult:
        state = self.state
        if exit_size is None:
            exit_size = state.total_size
        direction = 1 if state.side == PositionSide.LONG else -1
        gross = (exit_price - state.avg_entry) * exit_size * direction
        fees = self.calculate_fees(exit_price, exit_size)
        return ExitResult(
            gross_pnl=gross,
            fees=fees,
            net_pnl=gross - fees,
            pnl_percent=self.pnl_percent(exit_price),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _recompute_average(self) -> None:
        state = self.state
        total_size = sum((e.size for e in state.entries), Decimal("0"))
        state.total_size = total_size
        if total_size > 0:
            state.avg_entry = sum((e.price * e.size for e in state.entries), Decimal("0")) / total_size
        else:
            state.avg_entry = Decimal("0")

    def _hard_stop_price(self, side: PositionSide, price: Decimal) -> Decimal:
        offset = price * self.config.initial_stop_percent / 100
        return price - offset if side == PositionSide.LONG else price + offset
