"""Main trading controller - orchestrates all components."""
import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from pyramid_trader.core.config import TraderConfig
from pyramid_trader.core.context import EngineContext
from pyramid_trader.core.errors import (
    AuthenticationFailure,
    GatewayError,
    InvariantViolation,
    TransportError,
)
from pyramid_trader.core.models import (
    EngineEvent,
    EngineSnapshot,
    ExitReason,
    OperationResult,
    PositionSide,
    SignalAction,
    SignalRecord,
    TradeAction,
    TradeRecord,
    TripReason,
    Trend,
    create_close_record,
    create_daily_stats,
    utc_now,
)
from pyramid_trader.core.scheduler import Scheduler
from pyramid_trader.engines.pyramid import PyramidAction, PyramidDecision, PyramidManager
from pyramid_trader.exchange.gateway import ExchangeGateway
from pyramid_trader.risk.risk_manager import EntryContext, RiskManager, create_risk_manager
from pyramid_trader.signals.confluence import ConfluenceResult, ConfluenceScorer
from pyramid_trader.signals.indicators import IndicatorEngine
from pyramid_trader.signals.reentry import ReentryTracker
from pyramid_trader.storage.state_store import StateStore

logger = structlog.get_logger(__name__)

EventCallback = Callable[[EngineEvent, Dict[str, Any]], Union[None, Awaitable[None]]]

CONFLUENCE_RULE = "confluence"
POSITION_RULE = "existing_position"

ORDER_OPERATIONS = frozenset({"open_position", "add_to_position", "close_position"})


class TradingEngine:
    """
    Single-instrument controller.

    Responsibilities:
    - Runs the scheduled jobs (price/decision tick, balance, position,
      funding, heartbeat, watchdog, autosave, daily rollover)
    - Turns each price tick into a scored, audited entry/add/exit decision
    - Executes decisions through the gateway and records confirmed fills
    - Trips the circuit breaker, flattens and persists on any safety breach
    - Reconciles local state against the exchange, which is authoritative

    Every public entry point returns a value and never raises.
    """

    def __init__(
        self,
        config: TraderConfig,
        gateway: ExchangeGateway,
        store: StateStore,
        risk_manager: Optional[RiskManager] = None,
        pyramid: Optional[PyramidManager] = None,
        scorer: Optional[ConfluenceScorer] = None,
        indicator_engine: Optional[IndicatorEngine] = None,
        reentry: Optional[ReentryTracker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.gateway = gateway
        self.store = store
        self.risk_manager = risk_manager or create_risk_manager(config)
        self.pyramid = pyramid or PyramidManager(config.pyramid)
        self.scorer = scorer or ConfluenceScorer(config.confluence.momentum_threshold_percent)
        self.indicator_engine = indicator_engine or IndicatorEngine()
        self.reentry = reentry or ReentryTracker(config.reentry)
        self.clock = clock

        self.context = EngineContext(
            signal_log_size=config.storage.signal_log_size,
            trade_history_limit=config.storage.trade_history_limit,
        )
        self.scheduler = Scheduler()
        self.auto_trading_enabled = config.trading_mode.enable_auto_trading

        self._lock = asyncio.Lock()
        self._callbacks: List[EventCallback] = []
        self._running = False
        self._restored = False

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Operational Surface
    # =========================================================================

    async def start(self) -> OperationResult:
        """Start trading. Refuses while the circuit breaker is tripped."""
        if self._running:
            return OperationResult(success=False, message="Already running")

        logger.info("engine.starting", mode=self.config.trading_mode.trading_mode)
        try:
            self.restore_state()
            if self.risk_manager.is_tripped:
                state = self.risk_manager.state
                logger.error(
                    "engine.start_refused_tripped",
                    reason=state.trip_reason.value if state.trip_reason else None,
                )
                return OperationResult(
                    success=False,
                    message=f"Circuit breaker tripped: {state.trip_message}. Reset required",
                )

            await self.gateway.initialize()
            await self._configure_account()

            now = self.clock()
            self.context.started_at = now
            await self.refresh_balance()
            await self.refresh_position()
            if self.context.daily_stats is None or self.context.daily_stats.date != now.strftime("%Y-%m-%d"):
                await self.rollover_daily_stats()

            self._schedule_jobs()
            self.scheduler.start()
            self._running = True
        except Exception as e:
            logger.error("engine.start_failed", error=str(e), exc_info=True)
            await self.scheduler.stop()
            self.scheduler.clear()
            return OperationResult(success=False, message=f"Start failed: {e}")

        logger.info(
            "engine.started",
            symbol=self.config.trading_mode.symbol,
            balance=str(self.context.balance.total),
            pyramid_level=self.pyramid.state.level,
        )
        await self._emit(EngineEvent.HEALTH, self.context.health.model_dump(mode="json"))
        return OperationResult(success=True, message="Started", data=self.get_status())

    async def stop(self, close_position: Optional[bool] = None) -> OperationResult:
        """Cancel every job, optionally flatten, flush state."""
        if close_position is None:
            close_position = self.config.system.close_on_stop
        logger.info("engine.stopping", close_position=close_position)

        try:
            async with self._lock:
                await self.scheduler.stop()
                self.scheduler.clear()
                self._running = False

                if close_position and not self.pyramid.state.is_flat:
                    result = await self._close_position(
                        ExitReason.SHUTDOWN, "Controller stopped", self.context.last_price
                    )
                    if not result.success:
                        logger.error("engine.shutdown_close_failed", error=result.message)

                self.save_state()
                self._flush_signal_log()
            await self.gateway.close()
        except Exception as e:
            logger.error("engine.stop_error", error=str(e), exc_info=True)
            return OperationResult(success=False, message=f"Stop error: {e}")

        logger.info("engine.stopped")
        return OperationResult(success=True, message="Stopped")

    async def emergency_stop(self, reason: str = "Emergency stop") -> OperationResult:
        """Trip the breaker, cancel orders, flatten, persist and stop."""
        logger.critical("engine.emergency_stop", reason=reason)
        try:
            async with self._lock:
                self.risk_manager.trip(TripReason.MANUAL, reason, now=self.clock())
                await self._emit(EngineEvent.CIRCUIT_BREAKER, self.risk_manager.get_status())
                flattened = await self._de_risk(ExitReason.EMERGENCY)
                self.save_state()
        except Exception as e:
            logger.error("engine.emergency_stop_error", error=str(e), exc_info=True)
            return OperationResult(success=False, message=f"Emergency stop error: {e}")

        if self._running:
            await self.stop(close_position=False)
        return OperationResult(
            success=flattened,
            message="Emergency stop complete" if flattened else "Emergency stop: flatten failed",
        )

    async def reset_circuit_breaker(self, authorized_by: Optional[str] = None) -> OperationResult:
        """Operator re-arm of the circuit breaker."""
        try:
            self.restore_state()
            async with self._lock:
                was_tripped = self.risk_manager.reset(authorized_by=authorized_by)
                self.save_state()
            await self._emit(EngineEvent.CIRCUIT_BREAKER, self.risk_manager.get_status())
        except Exception as e:
            logger.error("engine.reset_error", error=str(e), exc_info=True)
            return OperationResult(success=False, message=f"Reset error: {e}")
        return OperationResult(
            success=True,
            message="Circuit breaker reset" if was_tripped else "Circuit breaker was not tripped",
        )

    async def handle_margin_call(self, detail: str = "") -> OperationResult:
        """Entry point for an exchange margin-call notification."""
        try:
            async with self._lock:
                if self.risk_manager.record_margin_call(detail):
                    await self._on_trip()
        except Exception as e:
            logger.error("engine.margin_call_error", error=str(e), exc_info=True)
            return OperationResult(success=False, message=str(e))
        return OperationResult(success=True, message="Margin call handled")

    def register_event_callback(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def set_auto_trading(self, enabled: bool) -> None:
        self.auto_trading_enabled = enabled
        logger.info("engine.auto_trading_changed", enabled=enabled)

    def get_status(self) -> Dict[str, Any]:
        """Get current controller status."""
        ctx = self.context
        pyramid = self.pyramid.state
        daily = ctx.daily_stats
        return {
            "running": self._running,
            "mode": self.config.trading_mode.trading_mode,
            "symbol": self.config.trading_mode.symbol,
            "auto_trading_enabled": self.auto_trading_enabled,
            "has_credentials": self.gateway.has_credentials,
            "price": str(ctx.last_price) if ctx.last_price is not None else None,
            "balance": {
                "total": str(ctx.balance.total),
                "available": str(ctx.balance.available),
            },
            "position": ctx.position.model_dump(mode="json"),
            "pyramid": pyramid.model_dump(mode="json"),
            "confluence": {
                "score": ctx.last_confluence_score,
                "factors": list(ctx.last_confluence_factors),
            },
            "risk": self.risk_manager.get_status(),
            "health": ctx.health.model_dump(mode="json"),
            "daily_stats": daily.model_dump(mode="json") if daily else None,
            "performance": ctx.performance.model_dump(mode="json"),
            "signal_stats": ctx.signal_stats.model_dump(mode="json"),
            "recent_trades": [t.model_dump(mode="json") for t in list(ctx.recent_trades)[:20]],
            "scheduler": self.scheduler.get_status(),
        }

    # =========================================================================
    # Scheduled Jobs
    # =========================================================================

    def _schedule_jobs(self) -> None:
        cfg = self.config.scheduler
        self.scheduler.add_task("price", self.process_tick, cfg.price_interval)
        self.scheduler.add_task("balance", self.refresh_balance, cfg.balance_interval)
        self.scheduler.add_task("position", self.refresh_position, cfg.position_interval)
        self.scheduler.add_task("funding", self.refresh_funding, cfg.funding_interval)
        self.scheduler.add_task("heartbeat", self.heartbeat, cfg.heartbeat_interval)
        self.scheduler.add_task(
            "watchdog", self.watchdog, cfg.heartbeat_interval * 2, run_immediately=False
        )
        self.scheduler.add_task(
            "autosave", self.autosave, cfg.autosave_interval, run_immediately=False
        )
        self.scheduler.add_daily_task("daily_rollover", self.rollover_daily_stats)

    async def process_tick(self) -> Optional[SignalRecord]:
        """One price/decision pass. Returns the audit record, if any."""
        try:
            snapshot = await self.gateway.get_price()
        except GatewayError as e:
            async with self._lock:
                await self._record_failure("get_price", e)
            return None

        try:
            async with self._lock:
                self._record_success()
                if not self.context.accept("price", snapshot.fetched_at):
                    logger.debug("engine.stale_price_discarded")
                    return None

                now = self.clock()
                price = snapshot.price
                previous = self.context.last_price
                self.context.last_price = price

                indicators = self.indicator_engine.update(price)
                self.context.indicators = indicators
                self.reentry.update(price, now)
                confluence = self.scorer.score(now, previous, price)
                self.context.last_confluence_score = confluence.score
                self.context.last_confluence_factors = list(confluence.factors)

                side_at_start = self.pyramid.state.side
                if not self.pyramid.state.is_flat:
                    await self._manage_position(price, confluence, now)

                record = await self._evaluate_entry(price, confluence, now, side_at_start)
                if self.risk_manager.evaluate(self._open_position_snapshot()):
                    await self._on_trip()
        except Exception as e:
            logger.error("engine.loop_error", job="price", error=str(e), exc_info=True)
            return None

        await self._emit(EngineEvent.SIGNAL, record.model_dump(mode="json"))
        return record

    async def refresh_balance(self) -> None:
        try:
            balance = await self.gateway.get_balance()
        except GatewayError as e:
            async with self._lock:
                await self._record_failure("get_balance", e)
            return

        async with self._lock:
            self._record_success()
            if not self.context.accept("balance", balance.fetched_at):
                return
            self.context.balance = balance
            drawdown = self.risk_manager.update_equity(balance.total)

            daily = self.context.daily_stats
            if daily is not None:
                if daily.starting_balance <= 0:
                    daily.starting_balance = balance.total
                daily.ending_balance = balance.total
                daily.unrealized_pnl = balance.unrealized_pnl
                if drawdown > daily.max_drawdown:
                    daily.max_drawdown = drawdown

            if self.risk_manager.evaluate(self._open_position_snapshot()):
                await self._on_trip()

    async def refresh_position(self) -> None:
        try:
            position = await self.gateway.get_position()
        except GatewayError as e:
            async with self._lock:
                await self._record_failure("get_position", e)
            return

        async with self._lock:
            self._record_success()
            ctx = self.context
            # Snapshots requested before our last fill may not show it yet
            if ctx.last_execution_at is not None and position.fetched_at < ctx.last_execution_at:
                logger.debug("engine.stale_position_discarded")
                return
            if not ctx.accept("position", position.fetched_at):
                return

            ctx.position = position
            ctx.health.position_synced = True
            correction = self.pyramid.sync_from_position(position, ctx.indicators, self.clock())
            if correction:
                await self._emit(EngineEvent.PYRAMID, self.pyramid.state.model_dump(mode="json"))

            if self.risk_manager.is_tripped and position.is_open:
                logger.warning("engine.tripped_position_still_open", size=str(position.size))
                await self._de_risk()
            elif self.risk_manager.evaluate(self._open_position_snapshot()):
                await self._on_trip()

        await self._emit(EngineEvent.POSITION, position.model_dump(mode="json"))

    async def refresh_funding(self) -> None:
        try:
            funding = await self.gateway.get_funding_rate()
        except GatewayError as e:
            async with self._lock:
                await self._record_failure("get_funding_rate", e)
            return

        async with self._lock:
            self._record_success()
            ctx = self.context
            now = self.clock()
            if funding.next_funding_time is None:
                funding.next_funding_time = self._next_funding_boundary(now)

            previous = ctx.funding
            settled = (
                previous.next_funding_time is not None
                and previous.next_funding_time <= now
                and ctx.position.is_open
            )
            if settled and ctx.daily_stats is not None:
                notional = ctx.position.size * ctx.position.mark_price
                direction = 1 if ctx.position.side == PositionSide.LONG else -1
                paid = previous.rate * notional * direction
                ctx.daily_stats.funding_paid += paid
                logger.info("engine.funding_settled", rate=str(previous.rate), paid=str(paid))

            ctx.funding = funding
            logger.debug(
                "engine.funding_updated",
                rate=str(funding.rate),
                next_funding_time=funding.next_funding_time.isoformat(),
            )

    async def heartbeat(self) -> None:
        ctx = self.context
        now = self.clock()
        health = ctx.health
        health.last_heartbeat = now
        health.api_latency_ms = self.gateway.last_latency_ms
        health.consecutive_errors = self.risk_manager.state.consecutive_errors
        health.connected = health.consecutive_errors == 0
        if ctx.started_at is not None:
            health.uptime_seconds = (now - ctx.started_at).total_seconds()
        health.is_healthy = (
            self.risk_manager.is_healthy
            and health.api_latency_ms < self.config.scheduler.max_latency_ms
        )
        logger.debug(
            "engine.heartbeat",
            healthy=health.is_healthy,
            latency_ms=round(health.api_latency_ms, 1),
            errors=health.consecutive_errors,
        )
        await self._emit(EngineEvent.HEALTH, health.model_dump(mode="json"))

    async def watchdog(self) -> bool:
        """Alert when the heartbeat has gone silent. Returns True on alert."""
        health = self.context.health
        limit = timedelta(seconds=self.config.scheduler.heartbeat_interval * 3)
        now = self.clock()
        if health.last_heartbeat is None or now - health.last_heartbeat <= limit:
            return False

        health.watchdog_alerts += 1
        health.is_healthy = False
        logger.error(
            "engine.watchdog_alert",
            last_heartbeat=health.last_heartbeat.isoformat(),
            alerts=health.watchdog_alerts,
        )
        await self._emit(EngineEvent.WATCHDOG, health.model_dump(mode="json"))
        return True

    async def autosave(self) -> None:
        async with self._lock:
            self.save_state()
            self._flush_signal_log()

    async def rollover_daily_stats(self):
        """Freeze and archive the finished UTC day and open a new one."""
        async with self._lock:
            now = self.clock()
            today = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
            current = self.context.daily_stats
            if current is not None and current.date == today:
                return None

            balance = self.context.balance.total
            archived = None
            if current is not None:
                archived = current.freeze(ending_balance=balance)
                self.store.archive_daily_stats(archived)
                self.risk_manager.reset_daily()

            self.context.daily_stats = create_daily_stats(now, balance)
            self.save_state()
            logger.info(
                "engine.daily_rollover",
                new_date=today,
                archived_date=archived.date if archived else None,
            )

        await self._emit(
            EngineEvent.DAILY_ROLLOVER,
            {"date": today, "archived": archived.model_dump(mode="json") if archived else None},
        )
        return archived

    # =========================================================================
    # Decision Pipeline
    # =========================================================================

    async def _evaluate_entry(
        self,
        price: Decimal,
        confluence: ConfluenceResult,
        now: datetime,
        position_side: PositionSide,
    ) -> SignalRecord:
        ctx = self.context
        stats = ctx.signal_stats
        min_confluence = self.config.confluence.min_confluence_to_enter
        available = ctx.balance.available

        record = SignalRecord(
            timestamp=now,
            price=price,
            confluence_score=confluence.score,
            confluence_factors=list(confluence.factors),
            min_confluence_required=min_confluence,
            has_position=position_side != PositionSide.NONE,
            position_side=position_side,
            circuit_breaker_tripped=self.risk_manager.is_tripped,
            auto_trading_enabled=self.auto_trading_enabled,
            has_credentials=self.gateway.has_credentials,
            available_balance=available,
        )
        stats.total_signals += 1
        if confluence.score >= min_confluence:
            stats.signals_above_threshold += 1

        try:
            check = self.risk_manager.check_entry(
                EntryContext(
                    now=now,
                    confluence_score=confluence.score,
                    min_confluence=min_confluence,
                    auto_trading_enabled=self.auto_trading_enabled,
                    has_credentials=self.gateway.has_credentials,
                    available_balance=available,
                    position_side=position_side,
                    next_funding_time=ctx.funding.next_funding_time,
                )
            )
            if not check.passed:
                if (
                    check.rule_triggered in (CONFLUENCE_RULE, POSITION_RULE)
                    or confluence.score < min_confluence
                ):
                    # Managing an open position is not a blocked entry
                    record.action = SignalAction.SIGNAL_ONLY
                else:
                    self._block(record, check.reason)
                return record

            side = PositionSide.SHORT if confluence.trend == Trend.BEARISH else PositionSide.LONG
            gate = self.reentry.check(price, side)
            if not gate.allowed:
                self._block(record, f"SmartEntry: {gate.reason}")
                return record

            margin = self.risk_manager.calculate_entry_margin(available)
            if margin <= 0:
                self._block(record, "Margin too small")
                return record

            try:
                quantity = self.risk_manager.calculate_quantity(margin, price, available)
            except InvariantViolation as e:
                self._block(record, f"Invalid order: {e}")
                return record

            record.action = SignalAction.TRADE_ATTEMPTED
            stats.trade_attempts += 1
            result = await self._open_position(side, quantity, margin, confluence.score, now)
            if result.success:
                record.action = SignalAction.TRADE_EXECUTED
                record.trade_result = result.data
                stats.trades_executed += 1
            else:
                record.action = SignalAction.TRADE_FAILED
                record.block_reason = result.message
                stats.trades_failed += 1
            return record
        finally:
            self._append_signal(record)

    async def _manage_position(
        self, price: Decimal, confluence: ConfluenceResult, now: datetime
    ) -> PyramidDecision:
        decision = self.pyramid.evaluate(
            price=price,
            confluence_score=confluence.score,
            trend=confluence.trend,
            indicators=self.context.indicators,
            available_balance=self.context.balance.available,
            now=now,
            trading_allowed=self.risk_manager.can_open and self.auto_trading_enabled,
        )
        if decision.action == PyramidAction.EXIT:
            logger.info(
                "engine.exit_triggered",
                reason=decision.exit_reason.value,
                detail=decision.detail,
                pnl_percent=str(decision.pnl_percent),
            )
            await self._close_position(decision.exit_reason, decision.detail, price, confluence.score)
        elif decision.action == PyramidAction.ADD:
            await self._add_to_position(decision, price, confluence.score, now)
        return decision

    async def _open_position(
        self,
        side: PositionSide,
        quantity: Decimal,
        margin: Decimal,
        confluence_score: int,
        now: datetime,
    ) -> OperationResult:
        try:
            await self._configure_account()
            fill = await self.gateway.place_market_order(side.entry_order_side, quantity)
        except GatewayError as e:
            await self._record_failure("open_position", e)
            return OperationResult(success=False, message=str(e))

        self._record_success(order=True)
        self.context.last_execution_at = fill.timestamp
        self.pyramid.open_position(side, fill.price, fill.quantity, now, self.context.indicators)
        trade = TradeRecord(
            timestamp=now,
            action=TradeAction.OPEN,
            side=side,
            price=fill.price,
            quantity=fill.quantity,
            margin=margin,
            pyramid_level=1,
            confluence_score=confluence_score,
            paper_trade=fill.paper_trade,
        )
        self._record_trade(trade)
        logger.info(
            "engine.position_opened",
            side=side.value,
            price=str(fill.price),
            quantity=str(fill.quantity),
            margin=str(margin),
        )
        await self._emit(EngineEvent.TRADE, trade.model_dump(mode="json"))
        await self._emit(EngineEvent.PYRAMID, self.pyramid.state.model_dump(mode="json"))
        self.save_state()
        return OperationResult(success=True, message="Opened", data=trade.model_dump(mode="json"))

    async def _add_to_position(
        self, decision: PyramidDecision, price: Decimal, confluence_score: int, now: datetime
    ) -> OperationResult:
        available = self.context.balance.available
        try:
            quantity = self.risk_manager.calculate_quantity(decision.add_margin, price, available)
        except InvariantViolation as e:
            logger.info("engine.add_rejected", reason=str(e))
            return OperationResult(success=False, message=str(e))

        side = self.pyramid.state.side
        try:
            fill = await self.gateway.place_market_order(side.entry_order_side, quantity)
        except GatewayError as e:
            await self._record_failure("add_to_position", e)
            return OperationResult(success=False, message=str(e))

        self._record_success(order=True)
        self.context.last_execution_at = fill.timestamp
        state = self.pyramid.apply_add(fill.price, fill.quantity, now)
        trade = TradeRecord(
            timestamp=now,
            action=TradeAction.ADD,
            side=side,
            price=fill.price,
            quantity=fill.quantity,
            margin=decision.add_margin,
            pyramid_level=state.level,
            confluence_score=confluence_score,
            paper_trade=fill.paper_trade,
        )
        self._record_trade(trade)
        await self._emit(EngineEvent.TRADE, trade.model_dump(mode="json"))
        await self._emit(EngineEvent.PYRAMID, state.model_dump(mode="json"))
        self.save_state()
        return OperationResult(success=True, message=f"Added level {state.level}")

    async def _close_position(
        self,
        reason: ExitReason,
        detail: str,
        price_hint: Optional[Decimal],
        confluence_score: Optional[int] = None,
    ) -> OperationResult:
        """Flatten via the gateway and book the result. State only changes on confirmation."""
        try:
            fill = await self.gateway.close_all()
        except GatewayError as e:
            await self._record_failure("close_position", e)
            return OperationResult(success=False, message=str(e))

        self._record_success(order=True)
        now = self.clock()
        self.context.last_execution_at = fill.timestamp if fill is not None else utc_now()
        pyramid_state = self.pyramid.state

        if fill is None:
            if not pyramid_state.is_flat:
                logger.warning("engine.close_found_no_position", reason=reason.value)
                self.pyramid.reset()
            return OperationResult(success=True, message="Already flat")

        if pyramid_state.is_flat:
            logger.warning("engine.closed_untracked_position", quantity=str(fill.quantity))
            return OperationResult(success=True, message="Closed untracked position")

        result = self.pyramid.exit_result(fill.price, fill.quantity)
        side = pyramid_state.side
        trade = create_close_record(
            side=side,
            price=fill.price,
            quantity=fill.quantity,
            net_pnl=result.net_pnl,
            pnl_percent=result.pnl_percent,
            fees=result.fees,
            reason=f"{reason.value}: {detail}",
            pyramid_level=pyramid_state.level,
            confluence_score=(
                confluence_score if confluence_score is not None else self.context.last_confluence_score
            ),
            paper_trade=fill.paper_trade,
        )
        trade.timestamp = now
        self._record_trade(trade)

        if self.context.daily_stats is not None:
            self.context.daily_stats.record_trade(result.net_pnl, result.fees)
        self.context.performance.record_trade(result.net_pnl, result.fees)
        self.risk_manager.record_trade_result(result.net_pnl)
        self.reentry.record_exit(fill.price, result.pnl_percent, side, now, net_pnl=result.net_pnl)
        self.pyramid.reset()

        logger.info(
            "engine.position_closed",
            reason=reason.value,
            side=side.value,
            price=str(fill.price),
            quantity=str(fill.quantity),
            net_pnl=str(result.net_pnl),
            fees=str(result.fees),
            pnl_percent=str(result.pnl_percent),
        )
        await self._emit(EngineEvent.TRADE, trade.model_dump(mode="json"))
        await self._emit(EngineEvent.PYRAMID, self.pyramid.state.model_dump(mode="json"))
        self.save_state()
        return OperationResult(success=True, message="Closed", data=trade.model_dump(mode="json"))

    # =========================================================================
    # Circuit Breaker Side Effects
    # =========================================================================

    async def _on_trip(self) -> None:
        await self._emit(EngineEvent.CIRCUIT_BREAKER, self.risk_manager.get_status())
        await self._de_risk()
        self.save_state()

    async def _de_risk(self, reason: ExitReason = ExitReason.CIRCUIT_BREAKER) -> bool:
        """Cancel orders and flatten. Best effort; retried on later position ticks."""
        ok = True
        try:
            await self.gateway.cancel_all_orders()
        except GatewayError as e:
            ok = False
            logger.error("engine.cancel_orders_failed", error=str(e))

        if not self.pyramid.state.is_flat or self.context.position.is_open:
            result = await self._close_position(
                reason,
                self.risk_manager.state.trip_message or "Circuit breaker",
                self.context.last_price,
            )
            if not result.success:
                ok = False
                logger.error("engine.force_flat_failed", error=result.message)
        return ok

    # =========================================================================
    # Persistence
    # =========================================================================

    def restore_state(self) -> bool:
        """Load the persisted snapshot once. Returns True if one was found."""
        if self._restored:
            return False
        self._restored = True

        snapshot = self.store.load_snapshot()
        records, stats = self.store.load_signal_log()
        ctx = self.context
        ctx.signals.extend(records)
        for trade in reversed(self.store.read_trades(self.config.storage.trade_history_limit)):
            ctx.add_trade(trade)
        if snapshot is None:
            ctx.signal_stats = stats
            return False

        self.risk_manager.state = snapshot.risk
        self.pyramid.state = snapshot.pyramid
        self.pyramid.state.max_levels = self.config.pyramid.max_levels
        self.reentry.state = snapshot.reentry
        ctx.daily_stats = snapshot.daily_stats
        ctx.performance = snapshot.performance
        ctx.signal_stats = snapshot.signal_stats
        ctx.funding.rate = snapshot.last_funding_rate
        ctx.funding.next_funding_time = snapshot.next_funding_time
        logger.info(
            "engine.state_restored",
            tripped=snapshot.risk.tripped,
            pyramid_level=snapshot.pyramid.level,
            total_trades=snapshot.performance.total_trades,
        )
        return True

    def save_state(self) -> bool:
        snapshot = EngineSnapshot(
            risk=self.risk_manager.state,
            pyramid=self.pyramid.state,
            reentry=self.reentry.state,
            daily_stats=self.context.daily_stats,
            performance=self.context.performance,
            signal_stats=self.context.signal_stats,
            last_funding_rate=self.context.funding.rate,
            next_funding_time=self.context.funding.next_funding_time,
            last_save_time=self.clock(),
        )
        try:
            self.store.save_snapshot(snapshot)
        except OSError as e:
            logger.error("engine.save_state_failed", error=str(e))
            return False
        return True

    def _flush_signal_log(self) -> None:
        try:
            self.store.save_signal_log(list(self.context.signals), self.context.signal_stats)
            self.context.signals_since_flush = 0
        except OSError as e:
            logger.error("engine.signal_log_flush_failed", error=str(e))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _configure_account(self) -> None:
        if not self.gateway.has_credentials:
            return
        await self.gateway.set_isolated_margin()
        await self.gateway.set_leverage(self.config.trading_mode.leverage)

    def _open_position_snapshot(self):
        position = self.context.position
        return position if position.is_open else None

    def _block(self, record: SignalRecord, reason: str) -> None:
        record.action = SignalAction.BLOCKED
        record.block_reason = reason
        self.context.signal_stats.record_block(reason)
        logger.info("engine.signal_blocked", reason=reason, score=record.confluence_score)

    def _append_signal(self, record: SignalRecord) -> None:
        self.context.add_signal(record)
        if self.context.signals_since_flush >= self.config.storage.signal_flush_every:
            self._flush_signal_log()

    def _record_trade(self, trade: TradeRecord) -> None:
        self.context.add_trade(trade)
        try:
            self.store.append_trade(trade)
        except OSError as e:
            logger.error("engine.trade_ledger_write_failed", error=str(e), trade_id=trade.id)

    def _record_success(self, order: bool = False) -> None:
        self.risk_manager.record_api_success()
        if order:
            self.risk_manager.record_order_success()
        health = self.context.health
        health.consecutive_errors = 0
        health.connected = True
        health.api_latency_ms = self.gateway.last_latency_ms

    async def _record_failure(self, operation: str, error: GatewayError) -> None:
        health = self.context.health
        health.error_count += 1
        health.last_error = f"{operation}: {error}"

        if isinstance(error, AuthenticationFailure):
            logger.critical("engine.authentication_failed", operation=operation, error=str(error))
            return
        if isinstance(error, TransportError):
            health.connected = False
            tripped = self.risk_manager.record_api_failure(f"{operation}: {error}")
            health.consecutive_errors = self.risk_manager.state.consecutive_errors
            if tripped:
                await self._on_trip()
            return

        logger.error("engine.exchange_rejected", operation=operation, error=str(error))
        if operation in ORDER_OPERATIONS:
            tripped = self.risk_manager.record_order_rejection(f"{operation}: {error}")
        else:
            tripped = self.risk_manager.record_api_failure(f"{operation}: {error}")
            health.consecutive_errors = self.risk_manager.state.consecutive_errors
        if tripped:
            await self._on_trip()

    def _next_funding_boundary(self, now: datetime) -> datetime:
        period = self.config.scheduler.funding_period_hours
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        slots = now.hour // period + 1
        return start_of_day + timedelta(hours=slots * period)

    async def _emit(self, event: EngineEvent, data: Dict[str, Any]) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("engine.event_callback_error", event_name=event.value, error=str(e))
