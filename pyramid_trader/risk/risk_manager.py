"""Risk supervisor and circuit breaker - THE MOST CRITICAL COMPONENT.

The circuit breaker is a two-state machine: ARMED -> TRIPPED. Any breach of
a hard limit trips it; only an explicit operator reset re-arms it. While
tripped no entries or pyramid adds are permitted, but closes still are.

Entry checks run through a priority-ordered rule registry. The first
blocking rule that fails rejects the entry; a rule that raises rejects it
conservatively.

CRITICAL: Any changes to this file must be reviewed and tested thoroughly.
Incorrect risk controls can lead to catastrophic losses.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog

from pyramid_trader.core.config import (
    CircuitBreakerConfig,
    PositionSizingConfig,
    SchedulerConfig,
    TradingModeConfig,
)
from pyramid_trader.core.errors import InvariantViolation
from pyramid_trader.core.models import (
    PositionSide,
    PositionSnapshot,
    RiskState,
    TripReason,
    utc_now,
)

logger = structlog.get_logger(__name__)

MAX_REJECTIONS_KEPT = 1000


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    Attributes:
        passed: Whether the entry passed all risk checks
        reason: Human-readable explanation if check failed
        risk_level: Severity level of the risk assessment
        rule_triggered: Name of the risk rule that triggered (if any)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    risk_level: str = "normal"
    rule_triggered: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RiskRule:
    """Individual risk rule definition.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Function that performs the validation
        priority: Lower numbers = higher priority (checked first)
        is_blocking: If True, failure stops all further checks
    """
    name: str
    check_fn: Callable[["EntryContext"], RiskCheck]
    priority: int = 100
    is_blocking: bool = True


@dataclass
class EntryContext:
    """Everything the entry rules look at for one candidate entry."""
    now: datetime
    confluence_score: int
    min_confluence: int
    auto_trading_enabled: bool
    has_credentials: bool
    available_balance: Decimal
    position_side: PositionSide = PositionSide.NONE
    next_funding_time: Optional[datetime] = None


class RiskManager:
    """
    Circuit breaker, loss accounting, entry rules and order sizing.

    HARD LIMITS (configurable, defaults shown):
    - Max daily realized loss: $50
    - Max drawdown from high-water mark: 10%
    - Max consecutive losing trades: 3
    - Min liquidation distance: 0.5% of mark
    - Max consecutive API errors: 10

    The supervisor only changes state. Cancelling orders, flattening the
    position and persisting immediately after a trip are carried out by
    the controller.
    """

    def __init__(
        self,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        sizing_config: Optional[PositionSizingConfig] = None,
        instrument_config: Optional[TradingModeConfig] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        state: Optional[RiskState] = None,
    ):
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self.sizing_config = sizing_config or PositionSizingConfig()
        self.instrument_config = instrument_config or TradingModeConfig()
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.state = state or RiskState()

        self._risk_rules: List[RiskRule] = []
        self._register_default_rules()
        self.rejected_entries: List[Dict] = []

    def _register_default_rules(self):
        """Register the entry rules in priority order."""
        self._risk_rules = [
            RiskRule(name="auto_trading", check_fn=self._check_auto_trading, priority=1),
            RiskRule(name="confluence", check_fn=self._check_confluence, priority=2),
            RiskRule(name="existing_position", check_fn=self._check_existing_position, priority=3),
            RiskRule(name="circuit_breaker", check_fn=self._check_circuit_breaker, priority=4),
            RiskRule(name="credentials", check_fn=self._check_credentials, priority=5),
            RiskRule(name="funding_window", check_fn=self._check_funding_window, priority=6),
            RiskRule(name="trading_hours", check_fn=self._check_trading_hours, priority=7),
            RiskRule(name="balance", check_fn=self._check_balance, priority=8),
        ]
        self._risk_rules.sort(key=lambda r: r.priority)

    # =========================================================================
    # Circuit Breaker
    # =========================================================================

    @property
    def is_tripped(self) -> bool:
        return self.state.tripped

    @property
    def can_open(self) -> bool:
        """True when entries and adds are permitted."""
        return not self.state.tripped and self.state.trading_enabled

    @property
    def is_healthy(self) -> bool:
        return (
            not self.state.tripped
            and self.state.consecutive_errors < self.breaker_config.unhealthy_error_count
        )

    def trip(self, reason: TripReason, message: str, now: Optional[datetime] = None) -> bool:
        """Trip the breaker. Returns True only on the ARMED -> TRIPPED edge."""
        if self.state.tripped:
            logger.debug("risk_manager.already_tripped", reason=reason.value, message=message)
            return False

        self.state.tripped = True
        self.state.trip_reason = reason
        self.state.trip_message = message
        self.state.tripped_at = now or utc_now()
        self.state.trading_enabled = False

        logger.critical(
            "risk_manager.circuit_breaker_tripped",
            reason=reason.value,
            message=message,
            tripped_at=self.state.tripped_at.isoformat(),
            daily_loss=str(self.state.daily_loss),
            consecutive_losses=self.state.consecutive_losses,
            drawdown_percent=str(self.state.current_drawdown_percent),
        )
        return True

    def reset(self, authorized_by: Optional[str] = None) -> bool:
        """
        Manually re-arm the circuit breaker.

        WARNING: Use with extreme caution. Verify the issue is resolved
        before resetting.

        Clears the trip, consecutive losses and errors, and the daily loss
        accumulator. Returns True if the breaker was tripped.
        """
        was_tripped = self.state.tripped
        previous_reason = self.state.trip_reason

        self.state.tripped = False
        self.state.trip_reason = None
        self.state.trip_message = None
        self.state.tripped_at = None
        self.state.trading_enabled = True
        self.state.consecutive_losses = 0
        self.state.consecutive_errors = 0
        self.state.consecutive_rejections = 0
        self.state.daily_loss = Decimal("0")

        logger.warning(
            "risk_manager.circuit_breaker_reset",
            was_tripped=was_tripped,
            previous_reason=previous_reason.value if previous_reason else None,
            authorized_by=authorized_by,
            manual_reset=True,
        )
        return was_tripped

    def evaluate(self, position: Optional[PositionSnapshot] = None) -> bool:
        """Check every trip condition. Returns True if this call tripped the breaker."""
        if self.state.tripped:
            return False

        cfg = self.breaker_config
        state = self.state

        if state.daily_loss > cfg.max_daily_loss:
            return self.trip(
                TripReason.DAILY_LOSS,
                f"Daily loss ${state.daily_loss:.2f} exceeds ${cfg.max_daily_loss}",
            )

        if state.current_drawdown_percent > cfg.max_drawdown_percent:
            return self.trip(
                TripReason.DRAWDOWN,
                f"Drawdown {state.current_drawdown_percent:.2f}% exceeds {cfg.max_drawdown_percent}%",
            )

        if state.consecutive_losses >= cfg.max_consecutive_losses:
            return self.trip(
                TripReason.CONSECUTIVE_LOSSES,
                f"{state.consecutive_losses} consecutive losses",
            )

        if position is not None:
            distance = position.liquidation_distance_percent
            if distance is not None and distance < cfg.min_liquidation_distance_percent:
                return self.trip(
                    TripReason.LIQUIDATION_RISK,
                    f"Liquidation distance {distance:.2f}% below {cfg.min_liquidation_distance_percent}%",
                )

        return False

    # =========================================================================
    # Accounting Inputs
    # =========================================================================

    def record_trade_result(self, net_pnl: Decimal) -> None:
        """Fold a closed trade into loss tracking."""
        self.state.daily_realized_pnl += net_pnl
        if net_pnl < 0:
            self.state.daily_loss += abs(net_pnl)
            self.state.consecutive_losses += 1
        else:
            self.state.consecutive_losses = 0

        logger.info(
            "risk_manager.trade_recorded",
            net_pnl=str(net_pnl),
            daily_loss=str(self.state.daily_loss),
            consecutive_losses=self.state.consecutive_losses,
        )

    def record_api_success(self) -> None:
        self.state.consecutive_errors = 0

    def record_api_failure(self, error: str) -> bool:
        """Count a failed read. Returns True if the error ceiling tripped the breaker."""
        self.state.consecutive_errors += 1
        logger.warning(
            "risk_manager.api_error",
            error=error,
            consecutive_errors=self.state.consecutive_errors,
        )
        if self.state.consecutive_errors >= self.breaker_config.max_consecutive_errors:
            return self.trip(
                TripReason.CONSECUTIVE_ERRORS,
                f"{self.state.consecutive_errors} consecutive API errors: {error}",
            )
        return False

    def record_order_success(self) -> None:
        self.state.consecutive_rejections = 0

    def record_order_rejection(self, error: str) -> bool:
        """Count a rejected order against the same ceiling as transport errors.

        Successful reads do not clear this streak, so an order the exchange
        refuses on every tick still reaches the breaker.
        """
        self.state.consecutive_rejections += 1
        logger.warning(
            "risk_manager.order_rejected",
            error=error,
            consecutive_rejections=self.state.consecutive_rejections,
        )
        if self.state.consecutive_rejections >= self.breaker_config.max_consecutive_errors:
            return self.trip(
                TripReason.CONSECUTIVE_ERRORS,
                f"{self.state.consecutive_rejections} consecutive order rejections: {error}",
            )
        return False

    def record_margin_call(self, detail: str = "") -> bool:
        return self.trip(TripReason.MARGIN_CALL, f"Margin call received {detail}".strip())

    def update_equity(self, total_balance: Decimal) -> Decimal:
        """Track the high-water mark and return the current drawdown percent."""
        state = self.state
        if total_balance > state.high_water_mark:
            state.high_water_mark = total_balance
            logger.debug("risk_manager.new_high_water_mark", balance=str(total_balance))

        if state.high_water_mark > 0:
            state.current_drawdown_percent = (
                (state.high_water_mark - total_balance) / state.high_water_mark * 100
            )
        return state.current_drawdown_percent

    def reset_daily(self) -> None:
        """Start a new UTC day. The trip state is left alone."""
        self.state.daily_loss = Decimal("0")
        self.state.daily_realized_pnl = Decimal("0")
        logger.info("risk_manager.daily_reset", tripped=self.state.tripped)

    # =========================================================================
    # Entry Rules
    # =========================================================================

    def check_entry(self, context: EntryContext) -> RiskCheck:
        """
        Validate a candidate entry against all risk rules.

        Rules are evaluated in priority order. If a blocking rule fails,
        subsequent rules are skipped.
        """
        warnings = []
        for rule in self._risk_rules:
            try:
                result = rule.check_fn(context)

                if not result.passed:
                    self._log_entry_rejected(context, rule.name, result.reason)

                    if rule.is_blocking:
                        logger.info(
                            "risk_manager.entry_rejected_blocking",
                            rule=rule.name,
                            reason=result.reason,
                            priority=rule.priority,
                        )
                        return RiskCheck(
                            passed=False,
                            reason=result.reason,
                            risk_level=result.risk_level,
                            rule_triggered=rule.name,
                            metadata=result.metadata,
                        )
                    warnings.append({"rule": rule.name, "reason": result.reason})

            except Exception as e:
                logger.error("risk_manager.rule_error", rule=rule.name, error=str(e))
                # On rule error, be conservative and block
                return RiskCheck(
                    passed=False,
                    reason=f"Risk rule '{rule.name}' encountered an error",
                    risk_level="critical",
                    rule_triggered=rule.name,
                )

        return RiskCheck(
            passed=True,
            risk_level="warning" if warnings else "normal",
            metadata={"warnings": warnings} if warnings else {},
        )

    def _check_auto_trading(self, ctx: EntryContext) -> RiskCheck:
        if not ctx.auto_trading_enabled:
            return RiskCheck(passed=False, reason="Auto-trading disabled")
        return RiskCheck(passed=True)

    def _check_confluence(self, ctx: EntryContext) -> RiskCheck:
        if ctx.confluence_score < ctx.min_confluence:
            return RiskCheck(
                passed=False,
                reason=f"Confluence {ctx.confluence_score} < {ctx.min_confluence} required",
            )
        return RiskCheck(passed=True)

    def _check_existing_position(self, ctx: EntryContext) -> RiskCheck:
        if ctx.position_side != PositionSide.NONE:
            return RiskCheck(
                passed=False, reason=f"Already in {ctx.position_side.value.upper()} position"
            )
        return RiskCheck(passed=True)

    def _check_circuit_breaker(self, ctx: EntryContext) -> RiskCheck:
        if self.state.tripped or not self.state.trading_enabled:
            return RiskCheck(
                passed=False,
                reason="Circuit breaker tripped",
                risk_level="critical",
                metadata={
                    "trip_reason": self.state.trip_reason.value if self.state.trip_reason else None,
                    "trip_message": self.state.trip_message,
                },
            )
        return RiskCheck(passed=True)

    def _check_credentials(self, ctx: EntryContext) -> RiskCheck:
        if not ctx.has_credentials:
            return RiskCheck(passed=False, reason="No API keys configured", risk_level="critical")
        return RiskCheck(passed=True)

    def _check_funding_window(self, ctx: EntryContext) -> RiskCheck:
        if self.in_funding_window(ctx.now, ctx.next_funding_time):
            minutes = (ctx.next_funding_time - ctx.now).total_seconds() / 60
            return RiskCheck(
                passed=False, reason=f"Funding window: {minutes:.1f}m to settlement"
            )
        return RiskCheck(passed=True)

    def _check_trading_hours(self, ctx: EntryContext) -> RiskCheck:
        if not self.within_trading_hours(ctx.now):
            return RiskCheck(passed=False, reason="Outside trading hours")
        return RiskCheck(passed=True)

    def _check_balance(self, ctx: EntryContext) -> RiskCheck:
        if ctx.available_balance < self.sizing_config.min_margin:
            return RiskCheck(
                passed=False,
                reason="Insufficient balance",
                metadata={"available": str(ctx.available_balance)},
            )
        return RiskCheck(passed=True)

    def in_funding_window(self, now: datetime, next_funding_time: Optional[datetime]) -> bool:
        """True within the configured minutes before a funding settlement."""
        cfg = self.scheduler_config
        if not cfg.avoid_funding_window or next_funding_time is None:
            return False
        remaining = next_funding_time - now
        return timedelta(0) < remaining < timedelta(minutes=cfg.funding_window_minutes)

    def within_trading_hours(self, now: datetime) -> bool:
        cfg = self.scheduler_config
        if not cfg.trading_hours_enabled:
            return True
        hour = now.hour
        if cfg.trading_start_hour <= cfg.trading_end_hour:
            return cfg.trading_start_hour <= hour < cfg.trading_end_hour
        return hour >= cfg.trading_start_hour or hour < cfg.trading_end_hour

    # =========================================================================
    # Sizing
    # =========================================================================

    def calculate_entry_margin(self, available_balance: Decimal) -> Decimal:
        """Margin for a new entry, or 0 when it would be below the minimum."""
        cfg = self.sizing_config
        margin = min(
            available_balance * cfg.base_risk_percent / 100,
            available_balance * cfg.max_margin_fraction,
            cfg.max_margin_per_trade,
        )
        if margin < cfg.min_margin:
            return Decimal("0")
        return margin

    def calculate_quantity(
        self,
        margin: Decimal,
        price: Decimal,
        available_balance: Decimal,
        leverage: Optional[int] = None,
    ) -> Decimal:
        """
        Contracts for ``margin`` at ``price``, rounded down to the quantity step.

        Raises:
            InvariantViolation: non-finite or non-positive inputs, quantity or
                notional below exchange minimums, or notional beyond the
                anti-liquidation and absolute size caps.
        """
        inst = self.instrument_config
        leverage = leverage or inst.leverage

        for name, value in (("margin", margin), ("price", price)):
            if not value.is_finite() or value <= 0:
                raise InvariantViolation(f"{name} must be finite and positive, got {value}")

        quantity = (margin * leverage / price).quantize(inst.quantity_step, rounding=ROUND_DOWN)
        if quantity < inst.min_quantity:
            raise InvariantViolation(f"Quantity {quantity} below minimum {inst.min_quantity}")

        notional = quantity * price
        if notional < inst.min_notional:
            raise InvariantViolation(f"Notional ${notional:.2f} below minimum ${inst.min_notional}")

        max_notional = available_balance * self.sizing_config.max_position_fraction * leverage
        if notional > max_notional:
            raise InvariantViolation(
                f"Notional ${notional:.2f} exceeds liquidation-safe ${max_notional:.2f}"
            )
        if notional > self.sizing_config.max_position_notional:
            raise InvariantViolation(
                f"Notional ${notional:.2f} exceeds max position ${self.sizing_config.max_position_notional}"
            )
        return quantity

    def get_status(self) -> Dict[str, Any]:
        state = self.state
        return {
            "tripped": state.tripped,
            "trip_reason": state.trip_reason.value if state.trip_reason else None,
            "trip_message": state.trip_message,
            "tripped_at": state.tripped_at.isoformat() if state.tripped_at else None,
            "trading_enabled": state.trading_enabled,
            "consecutive_losses": state.consecutive_losses,
            "consecutive_errors": state.consecutive_errors,
            "consecutive_rejections": state.consecutive_rejections,
            "daily_loss": str(state.daily_loss),
            "daily_realized_pnl": str(state.daily_realized_pnl),
            "high_water_mark": str(state.high_water_mark),
            "drawdown_percent": str(state.current_drawdown_percent),
            "healthy": self.is_healthy,
            "recent_rejections": len(self.rejected_entries),
        }

    def _log_entry_rejected(self, ctx: EntryContext, rule: str, reason: str):
        """Keep a bounded history of rejected entries for analysis."""
        self.rejected_entries.append(
            {
                "timestamp": ctx.now.isoformat(),
                "confluence_score": ctx.confluence_score,
                "rule_triggered": rule,
                "reason": reason,
            }
        )
        if len(self.rejected_entries) > MAX_REJECTIONS_KEPT:
            self.rejected_entries = self.rejected_entries[-MAX_REJECTIONS_KEPT:]


# === Convenience Functions ===

def create_risk_manager(config=None, state: Optional[RiskState] = None) -> RiskManager:
    """Factory function to create a RiskManager from a TraderConfig."""
    if config is None:
        from pyramid_trader.core.config import trader_config as config
    return RiskManager(
        breaker_config=config.circuit_breaker,
        sizing_config=config.position_sizing,
        instrument_config=config.trading_mode,
        scheduler_config=config.scheduler,
        state=state,
    )
