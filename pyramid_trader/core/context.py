"""Mutable runtime state of one controller instance.

The controller's task callbacks are the only writers. Persisted parts are
carried in and out through :class:`EngineSnapshot`.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, List, Optional

from pyramid_trader.core.models import (
    BalanceSnapshot,
    DailyStats,
    FundingSnapshot,
    HealthStatus,
    IndicatorSnapshot,
    PerformanceRecord,
    PositionSnapshot,
    SignalRecord,
    SignalStats,
    TradeRecord,
)


@dataclass
class EngineContext:
    """Latest exchange snapshots, statistics and audit buffers."""

    signal_log_size: int = 200
    trade_history_limit: int = 1000

    last_price: Optional[Decimal] = None
    balance: BalanceSnapshot = field(default_factory=BalanceSnapshot)
    position: PositionSnapshot = field(default_factory=PositionSnapshot)
    funding: FundingSnapshot = field(default_factory=FundingSnapshot)
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    last_confluence_score: int = 0
    last_confluence_factors: List[str] = field(default_factory=list)

    daily_stats: Optional[DailyStats] = None
    performance: PerformanceRecord = field(default_factory=PerformanceRecord)
    signal_stats: SignalStats = field(default_factory=SignalStats)
    health: HealthStatus = field(default_factory=HealthStatus)

    signals: Deque[SignalRecord] = field(default_factory=deque, init=False)
    recent_trades: Deque[TradeRecord] = field(default_factory=deque, init=False)
    signals_since_flush: int = 0

    started_at: Optional[datetime] = None
    last_execution_at: Optional[datetime] = None
    _applied: Dict[str, datetime] = field(default_factory=dict)

    def __post_init__(self):
        self.signals = deque(maxlen=self.signal_log_size)
        self.recent_trades = deque(maxlen=self.trade_history_limit)

    def accept(self, kind: str, fetched_at: datetime) -> bool:
        """True if a ``kind`` snapshot fetched at ``fetched_at`` is newer than the applied one."""
        applied = self._applied.get(kind)
        if applied is not None and fetched_at < applied:
            return False
        self._applied[kind] = fetched_at
        return True

    def add_signal(self, record: SignalRecord) -> None:
        self.signals.append(record)
        self.signals_since_flush += 1

    def add_trade(self, trade: TradeRecord) -> None:
        """Newest first."""
        self.recent_trades.appendleft(trade)
