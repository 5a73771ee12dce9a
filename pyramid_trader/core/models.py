"""Data models for the Pyramid Trader controller.

Everything the controller observes, decides and persists is one of these
pydantic models: exchange snapshots, the pyramid ladder, re-entry and risk
state, daily and lifetime statistics, the signal audit trail and the trade
ledger.

All monetary values use Decimal for precision and are written to JSON as
strings. All timestamps are timezone-aware UTC datetime objects.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    """Position side - long, short, or flat."""
    LONG = "long"
    SHORT = "short"
    NONE = "none"

    @property
    def entry_order_side(self) -> OrderSide:
        """Order side that opens or adds to this position."""
        return OrderSide.BUY if self == PositionSide.LONG else OrderSide.SELL

    @property
    def exit_order_side(self) -> OrderSide:
        """Order side that reduces this position."""
        return OrderSide.SELL if self == PositionSide.LONG else OrderSide.BUY


class Trend(str, Enum):
    """Short-term momentum direction from the confluence scorer."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class SignalAction(str, Enum):
    """What the controller did with a scored signal."""
    SIGNAL_ONLY = "signal_only"           # Below threshold, nothing attempted
    BLOCKED = "blocked"                   # Above threshold, a gate refused
    TRADE_ATTEMPTED = "trade_attempted"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"


class TripReason(str, Enum):
    """Why the circuit breaker tripped."""
    DAILY_LOSS = "daily_loss"
    DRAWDOWN = "drawdown"
    CONSECUTIVE_LOSSES = "consecutive_losses"
    MARGIN_CALL = "margin_call"
    LIQUIDATION_RISK = "liquidation_risk"
    CONSECUTIVE_ERRORS = "consecutive_errors"
    MANUAL = "manual"


class TradeAction(str, Enum):
    """Ledger entry kind."""
    OPEN = "open"
    ADD = "add"
    CLOSE = "close"


class ExitReason(str, Enum):
    """Why the pyramid manager closed a position."""
    HARD_STOP = "hard_stop"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    PROFIT_PROTECT = "profit_protect"
    CIRCUIT_BREAKER = "circuit_breaker"
    EMERGENCY = "emergency"
    SHUTDOWN = "shutdown"


class EngineEvent(str, Enum):
    """Event names pushed to registered listeners."""
    POSITION = "position"
    TRADE = "trade"
    HEALTH = "health"
    PYRAMID = "pyramid"
    SIGNAL = "signal"
    CIRCUIT_BREAKER = "circuit_breaker"
    DAILY_ROLLOVER = "daily_rollover"
    WATCHDOG = "watchdog"


# =============================================================================
# Exchange Snapshots
# =============================================================================

class PriceSnapshot(BaseModel):
    """Last traded price with the time it was fetched."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    price: Decimal = Field(..., gt=0, description="Last price")
    fetched_at: datetime = Field(default_factory=utc_now, description="Fetch time")


class BalanceSnapshot(BaseModel):
    """Futures wallet balance in the quote currency."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total: Decimal = Field(default=Decimal("0"), description="Wallet equity")
    available: Decimal = Field(default=Decimal("0"), description="Free margin")
    unrealized_pnl: Decimal = Field(default=Decimal("0"))
    fetched_at: datetime = Field(default_factory=utc_now)


class PositionSnapshot(BaseModel):
    """Exchange view of the single open position (side NONE when flat)."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    side: PositionSide = Field(default=PositionSide.NONE)
    size: Decimal = Field(default=Decimal("0"), ge=0)
    entry_price: Decimal = Field(default=Decimal("0"))
    mark_price: Decimal = Field(default=Decimal("0"))
    liquidation_price: Optional[Decimal] = Field(default=None)
    unrealized_pnl: Decimal = Field(default=Decimal("0"))
    leverage: Optional[int] = Field(default=None)
    fetched_at: datetime = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        """True if a position exists on the exchange."""
        return self.side != PositionSide.NONE and self.size > 0

    @property
    def liquidation_distance_percent(self) -> Optional[Decimal]:
        """Distance from mark to liquidation as a percent of mark."""
        if not self.is_open or not self.liquidation_price or self.mark_price <= 0:
            return None
        return abs(self.mark_price - self.liquidation_price) / self.mark_price * 100


class FundingSnapshot(BaseModel):
    """Current funding rate and next settlement time."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    rate: Decimal = Field(default=Decimal("0"))
    next_funding_time: Optional[datetime] = Field(default=None)
    fetched_at: datetime = Field(default_factory=utc_now)


class OrderResult(BaseModel):
    """Confirmed fill reported by the gateway."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    order_id: str = Field(default_factory=lambda: str(uuid4()))
    side: OrderSide
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0, description="Average fill price")
    reduce_only: bool = False
    paper_trade: bool = False
    timestamp: datetime = Field(default_factory=utc_now)


# =============================================================================
# Indicator Output
# =============================================================================

class IndicatorSnapshot(BaseModel):
    """Indicator values after the latest tick."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    ema9: Decimal = Decimal("0")
    ema21: Decimal = Decimal("0")
    ema50: Decimal = Decimal("0")
    ema200: Decimal = Decimal("0")
    atr14: Decimal = Decimal("0")
    swing_high: Optional[Decimal] = None
    swing_low: Optional[Decimal] = None
    samples: int = 0
    bars: int = 0

    def ema_aligned(self, side: PositionSide, price: Decimal) -> bool:
        """Price beyond EMA9 and EMA21 with EMA9 on the same side of EMA21."""
        if self.ema9 <= 0 or self.ema21 <= 0:
            return False
        if side == PositionSide.LONG:
            return price > self.ema9 and price > self.ema21 and self.ema9 > self.ema21
        if side == PositionSide.SHORT:
            return price < self.ema9 and price < self.ema21 and self.ema9 < self.ema21
        return False


# =============================================================================
# Pyramid / Re-entry / Risk State
# =============================================================================

class PyramidEntry(BaseModel):
    """One fill on the ladder."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    price: Decimal = Field(..., gt=0)
    size: Decimal = Field(..., gt=0)
    timestamp: datetime = Field(default_factory=utc_now)


class PyramidState(BaseModel):
    """The ladder of fills making up the open position.

    level == 0 iff entries is empty iff there is no open position.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    level: int = Field(default=0, ge=0)
    max_levels: int = Field(default=5, ge=1)
    side: PositionSide = PositionSide.NONE
    entries: List[PyramidEntry] = Field(default_factory=list)
    avg_entry: Decimal = Decimal("0")
    total_size: Decimal = Decimal("0")
    initial_stop: Decimal = Decimal("0")
    trailing_stop: Decimal = Decimal("0")
    highest_profit: Decimal = Decimal("0")  # percent
    last_add_time: Optional[datetime] = None

    @property
    def is_flat(self) -> bool:
        return self.level == 0


class ReentryState(BaseModel):
    """Last exit and the rolling price range used by the re-entry gate."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    last_exit_time: Optional[datetime] = None
    last_exit_price: Optional[Decimal] = None
    last_exit_pnl: Optional[Decimal] = None  # percent
    last_exit_side: Optional[PositionSide] = None
    recent_high: Optional[Decimal] = None
    recent_high_time: Optional[datetime] = None
    recent_low: Optional[Decimal] = None
    recent_low_time: Optional[datetime] = None
    consecutive_losses: int = 0


class RiskState(BaseModel):
    """Circuit breaker and loss accounting."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    tripped: bool = False
    trip_reason: Optional[TripReason] = None
    trip_message: Optional[str] = None
    tripped_at: Optional[datetime] = None
    trading_enabled: bool = True
    consecutive_losses: int = 0
    consecutive_errors: int = 0
    # Rejected orders; only a filled order clears it
    consecutive_rejections: int = 0
    daily_realized_pnl: Decimal = Decimal("0")
    daily_loss: Decimal = Decimal("0")
    high_water_mark: Decimal = Decimal("0")
    current_drawdown_percent: Decimal = Decimal("0")


# =============================================================================
# Statistics & Health
# =============================================================================

class DailyStats(BaseModel):
    """Per-UTC-day trading statistics. Frozen once rolled over."""
    model_config = ConfigDict(json_encoders={Decimal: str}, validate_assignment=True)

    date: str = Field(..., description="UTC date YYYY-MM-DD")
    starting_balance: Decimal = Decimal("0")
    ending_balance: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    largest_win: Decimal = Decimal("0")
    largest_loss: Decimal = Decimal("0")
    max_drawdown: Decimal = Decimal("0")
    funding_paid: Decimal = Decimal("0")
    commission_paid: Decimal = Decimal("0")
    frozen: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        if self.frozen:
            raise ValueError(f"DailyStats for {self.date} is frozen")
        super().__setattr__(name, value)

    @property
    def win_rate(self) -> Decimal:
        """Winning share of closed trades, in percent."""
        if self.total_trades == 0:
            return Decimal("0")
        return Decimal(self.winning_trades) / Decimal(self.total_trades) * 100

    def record_trade(self, net_pnl: Decimal, fees: Decimal) -> None:
        """Fold one closed trade into the day."""
        if self.frozen:
            raise ValueError(f"DailyStats for {self.date} is frozen")
        self.total_trades += 1
        self.realized_pnl += net_pnl
        self.commission_paid += fees
        if net_pnl > 0:
            self.winning_trades += 1
            self.largest_win = max(self.largest_win, net_pnl)
        elif net_pnl < 0:
            self.losing_trades += 1
            self.largest_loss = min(self.largest_loss, net_pnl)

    def freeze(self, ending_balance: Decimal) -> "DailyStats":
        """Return the immutable archived copy of this day."""
        return self.model_copy(update={"ending_balance": ending_balance, "frozen": True})


class PerformanceRecord(BaseModel):
    """Lifetime performance across restarts."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    largest_win: Decimal = Decimal("0")
    largest_loss: Decimal = Decimal("0")

    @property
    def win_rate(self) -> Decimal:
        if self.total_trades == 0:
            return Decimal("0")
        return Decimal(self.winning_trades) / Decimal(self.total_trades) * 100

    def record_trade(self, net_pnl: Decimal, fees: Decimal) -> None:
        self.total_trades += 1
        self.total_pnl += net_pnl
        self.total_fees += fees
        if net_pnl > 0:
            self.winning_trades += 1
            self.largest_win = max(self.largest_win, net_pnl)
        elif net_pnl < 0:
            self.losing_trades += 1
            self.largest_loss = min(self.largest_loss, net_pnl)


class HealthStatus(BaseModel):
    """Connectivity and liveness."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    is_healthy: bool = True
    last_heartbeat: Optional[datetime] = None
    api_latency_ms: float = 0.0
    connected: bool = False
    position_synced: bool = False
    error_count: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    uptime_seconds: float = 0.0
    watchdog_alerts: int = 0


# =============================================================================
# Signal Audit Trail & Trade Ledger
# =============================================================================

class SignalRecord(BaseModel):
    """One scored tick and what the controller did with it."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    price: Decimal
    confluence_score: int
    confluence_factors: List[str] = Field(default_factory=list)
    min_confluence_required: int
    has_position: bool = False
    position_side: PositionSide = PositionSide.NONE
    circuit_breaker_tripped: bool = False
    auto_trading_enabled: bool = True
    has_credentials: bool = True
    available_balance: Decimal = Decimal("0")
    action: SignalAction = SignalAction.SIGNAL_ONLY
    block_reason: Optional[str] = None
    trade_result: Optional[Dict[str, Any]] = None


class SignalStats(BaseModel):
    """Aggregate counters over the signal audit trail."""

    total_signals: int = 0
    signals_above_threshold: int = 0
    trade_attempts: int = 0
    trades_executed: int = 0
    trades_failed: int = 0
    blocked_reasons: Dict[str, int] = Field(default_factory=dict)

    def record_block(self, reason: str) -> None:
        self.blocked_reasons[reason] = self.blocked_reasons.get(reason, 0) + 1


class TradeRecord(BaseModel):
    """One ledger line: an open, an add or a close."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utc_now)
    action: TradeAction
    side: PositionSide
    price: Decimal
    quantity: Decimal
    margin: Decimal = Decimal("0")
    pnl: Optional[Decimal] = None  # net, closes only
    pnl_percent: Optional[Decimal] = None
    fees: Decimal = Decimal("0")
    reason: Optional[str] = None
    pyramid_level: int = 0
    confluence_score: int = 0
    paper_trade: bool = False


# =============================================================================
# Persisted Snapshot
# =============================================================================

class EngineSnapshot(BaseModel):
    """Everything needed to resume after a restart."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    version: int = 1
    risk: RiskState = Field(default_factory=RiskState)
    pyramid: PyramidState = Field(default_factory=PyramidState)
    reentry: ReentryState = Field(default_factory=ReentryState)
    daily_stats: Optional[DailyStats] = None
    performance: PerformanceRecord = Field(default_factory=PerformanceRecord)
    signal_stats: SignalStats = Field(default_factory=SignalStats)
    last_funding_rate: Decimal = Decimal("0")
    next_funding_time: Optional[datetime] = None
    last_save_time: datetime = Field(default_factory=utc_now)

    @field_validator("version")
    @classmethod
    def supported_version(cls, v: int) -> int:
        if v != 1:
            raise ValueError(f"Unsupported snapshot version {v}")
        return v


class OperationResult(BaseModel):
    """Return value of every operational entry point."""

    success: bool
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Factory Functions
# =============================================================================

def create_daily_stats(day: datetime, starting_balance: Decimal) -> DailyStats:
    """Fresh stats for the UTC day containing ``day``."""
    return DailyStats(
        date=day.astimezone(timezone.utc).strftime("%Y-%m-%d"),
        starting_balance=starting_balance,
        ending_balance=starting_balance,
    )


def create_close_record(
    side: PositionSide,
    price: Decimal,
    quantity: Decimal,
    net_pnl: Decimal,
    pnl_percent: Decimal,
    fees: Decimal,
    reason: str,
    pyramid_level: int,
    confluence_score: int,
    paper_trade: bool = False,
) -> TradeRecord:
    """Ledger line for a full close."""
    return TradeRecord(
        action=TradeAction.CLOSE,
        side=side,
        price=price,
        quantity=quantity,
        pnl=net_pnl,
        pnl_percent=pnl_percent,
        fees=fees,
        reason=reason,
        pyramid_level=pyramid_level,
        confluence_score=confluence_score,
        paper_trade=paper_trade,
    )
