"""Comprehensive unit tests for the risk supervisor and circuit breaker."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pyramid_trader.core.config import (
    CircuitBreakerConfig,
    PositionSizingConfig,
    SchedulerConfig,
    TradingModeConfig,
)
from pyramid_trader.core.errors import InvariantViolation
from pyramid_trader.core.models import PositionSide, PositionSnapshot, RiskState, TripReason
from pyramid_trader.risk.risk_manager import EntryContext, RiskManager, RiskRule

NOW = datetime(2024, 1, 10, 15, 0, tzinfo=timezone.utc)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def risk_manager():
    """Create a fresh risk manager for each test."""
    return RiskManager(
        breaker_config=CircuitBreakerConfig(),
        sizing_config=PositionSizingConfig(),
        instrument_config=TradingModeConfig(leverage=88),
        scheduler_config=SchedulerConfig(),
    )


def make_context(**overrides) -> EntryContext:
    values = dict(
        now=NOW,
        confluence_score=6,
        min_confluence=4,
        auto_trading_enabled=True,
        has_credentials=True,
        available_balance=Decimal("100"),
        position_side=PositionSide.NONE,
        next_funding_time=NOW + timedelta(hours=1),
    )
    values.update(overrides)
    return EntryContext(**values)


# =============================================================================
# Entry Rule Tests
# =============================================================================

class TestEntryRules:
    """Test the priority-ordered entry rules."""

    def test_passes_when_everything_is_fine(self, risk_manager):
        check = risk_manager.check_entry(make_context())
        assert check.passed
        assert check.risk_level == "normal"

    def test_rule_order(self, risk_manager):
        risk_manager.trip(TripReason.MANUAL, "test")
        check = risk_manager.check_entry(
            make_context(
                auto_trading_enabled=False,
                confluence_score=1,
                has_credentials=False,
                available_balance=Decimal("0"),
            )
        )
        assert check.reason == "Auto-trading disabled"
        assert check.rule_triggered == "auto_trading"

    def test_confluence_below_threshold(self, risk_manager):
        check = risk_manager.check_entry(make_context(confluence_score=3))
        assert not check.passed
        assert check.reason == "Confluence 3 < 4 required"
        assert check.rule_triggered == "confluence"

    def test_existing_position(self, risk_manager):
        check = risk_manager.check_entry(make_context(position_side=PositionSide.LONG))
        assert check.reason == "Already in LONG position"

    def test_circuit_breaker(self, risk_manager):
        risk_manager.trip(TripReason.DAILY_LOSS, "loss")
        check = risk_manager.check_entry(make_context())
        assert check.reason == "Circuit breaker tripped"
        assert check.risk_level == "critical"

    def test_missing_credentials(self, risk_manager):
        check = risk_manager.check_entry(make_context(has_credentials=False))
        assert check.reason == "No API keys configured"

    def test_funding_window(self, risk_manager):
        check = risk_manager.check_entry(
            make_context(next_funding_time=NOW + timedelta(minutes=3))
        )
        assert not check.passed
        assert check.reason.startswith("Funding window")

    def test_funding_window_disabled(self):
        manager = RiskManager(scheduler_config=SchedulerConfig(avoid_funding_window=False))
        check = manager.check_entry(make_context(next_funding_time=NOW + timedelta(minutes=3)))
        assert check.passed

    def test_trading_hours(self):
        manager = RiskManager(
            scheduler_config=SchedulerConfig(
                trading_hours_enabled=True, trading_start_hour=16, trading_end_hour=20
            )
        )
        check = manager.check_entry(make_context())
        assert check.reason == "Outside trading hours"

    def test_trading_hours_wrap_midnight(self):
        manager = RiskManager(
            scheduler_config=SchedulerConfig(
                trading_hours_enabled=True, trading_start_hour=22, trading_end_hour=6
            )
        )
        assert manager.within_trading_hours(NOW.replace(hour=23))
        assert manager.within_trading_hours(NOW.replace(hour=2))
        assert not manager.within_trading_hours(NOW.replace(hour=12))

    def test_insufficient_balance(self, risk_manager):
        check = risk_manager.check_entry(make_context(available_balance=Decimal("0.5")))
        assert check.reason == "Insufficient balance"

    def test_rule_error_blocks_conservatively(self, risk_manager):
        def broken(ctx):
            raise RuntimeError("boom")

        risk_manager._risk_rules.insert(0, RiskRule(name="broken", check_fn=broken, priority=0))
        check = risk_manager.check_entry(make_context())

        assert not check.passed
        assert check.rule_triggered == "broken"
        assert check.risk_level == "critical"

    def test_rejections_are_bounded(self, risk_manager):
        for _ in range(1100):
            risk_manager.check_entry(make_context(confluence_score=0))
        assert len(risk_manager.rejected_entries) == 1000


# =============================================================================
# Circuit Breaker Tests
# =============================================================================

class TestCircuitBreaker:
    """Test the ARMED -> TRIPPED state machine."""

    def test_trip_edge(self, risk_manager):
        assert risk_manager.trip(TripReason.MANUAL, "first", now=NOW)
        assert not risk_manager.trip(TripReason.DAILY_LOSS, "second")

        state = risk_manager.state
        assert state.trip_reason == TripReason.MANUAL
        assert state.trip_message == "first"
        assert state.tripped_at == NOW
        assert not risk_manager.can_open

    def test_reset_clears_counters(self, risk_manager):
        for _ in range(3):
            risk_manager.record_trade_result(Decimal("-5"))
        assert risk_manager.evaluate()

        assert risk_manager.reset(authorized_by="test")
        state = risk_manager.state
        assert not state.tripped
        assert state.trip_reason is None
        assert state.consecutive_losses == 0
        assert state.daily_loss == Decimal("0")
        assert risk_manager.can_open

    def test_reset_when_armed(self, risk_manager):
        assert not risk_manager.reset()

    def test_daily_loss_limit(self, risk_manager):
        risk_manager.record_trade_result(Decimal("-30"))
        risk_manager.record_trade_result(Decimal("10"))
        assert not risk_manager.evaluate()

        risk_manager.record_trade_result(Decimal("-25"))
        assert risk_manager.evaluate()
        assert risk_manager.state.trip_reason == TripReason.DAILY_LOSS

    def test_consecutive_losses(self, risk_manager):
        risk_manager.record_trade_result(Decimal("-1"))
        risk_manager.record_trade_result(Decimal("-1"))
        assert not risk_manager.evaluate()

        risk_manager.record_trade_result(Decimal("-1"))
        assert risk_manager.evaluate()
        assert risk_manager.state.trip_reason == TripReason.CONSECUTIVE_LOSSES

    def test_win_resets_loss_streak(self, risk_manager):
        risk_manager.record_trade_result(Decimal("-1"))
        risk_manager.record_trade_result(Decimal("2"))
        assert risk_manager.state.consecutive_losses == 0

    def test_drawdown(self, risk_manager):
        risk_manager.update_equity(Decimal("100"))
        assert risk_manager.update_equity(Decimal("95")) == Decimal("5")
        assert not risk_manager.evaluate()

        risk_manager.update_equity(Decimal("89"))
        assert risk_manager.evaluate()
        assert risk_manager.state.trip_reason == TripReason.DRAWDOWN

    def test_liquidation_distance(self, risk_manager):
        position = PositionSnapshot(
            side=PositionSide.LONG,
            size=Decimal("1"),
            entry_price=Decimal("100"),
            mark_price=Decimal("100"),
            liquidation_price=Decimal("99.6"),
        )
        assert risk_manager.evaluate(position)
        assert risk_manager.state.trip_reason == TripReason.LIQUIDATION_RISK

    def test_api_error_ceiling(self, risk_manager):
        for _ in range(9):
            assert not risk_manager.record_api_failure("timeout")
        assert not risk_manager.is_healthy
        assert risk_manager.record_api_failure("timeout")
        assert risk_manager.state.trip_reason == TripReason.CONSECUTIVE_ERRORS

    def test_api_success_resets_errors(self, risk_manager):
        risk_manager.record_api_failure("timeout")
        risk_manager.record_api_success()
        assert risk_manager.state.consecutive_errors == 0

    def test_order_rejection_ceiling(self, risk_manager):
        for _ in range(9):
            assert not risk_manager.record_order_rejection("insufficient margin")
            risk_manager.record_api_success()
        assert risk_manager.state.consecutive_rejections == 9
        assert risk_manager.record_order_rejection("insufficient margin")
        assert risk_manager.state.trip_reason == TripReason.CONSECUTIVE_ERRORS

    def test_filled_order_resets_rejections(self, risk_manager):
        risk_manager.record_order_rejection("bad quantity")
        risk_manager.record_order_success()
        assert risk_manager.state.consecutive_rejections == 0

    def test_margin_call(self, risk_manager):
        assert risk_manager.record_margin_call("maintenance margin")
        assert risk_manager.state.trip_reason == TripReason.MARGIN_CALL

    def test_daily_reset_keeps_trip(self, risk_manager):
        risk_manager.record_trade_result(Decimal("-60"))
        risk_manager.evaluate()
        risk_manager.reset_daily()

        assert risk_manager.state.daily_loss == Decimal("0")
        assert risk_manager.is_tripped

    def test_restored_state(self):
        state = RiskState(tripped=True, trip_reason=TripReason.DRAWDOWN, trading_enabled=False)
        manager = RiskManager(state=state)
        assert manager.is_tripped
        assert not manager.can_open


# =============================================================================
# Sizing Tests
# =============================================================================

class TestSizing:
    """Test margin and quantity calculations."""

    @pytest.mark.parametrize(
        "available,expected",
        [("100", "10"), ("20", "5"), ("3", "0")],
    )
    def test_entry_margin(self, risk_manager, available, expected):
        assert risk_manager.calculate_entry_margin(Decimal(available)) == Decimal(expected)

    def test_quantity_rounds_down_to_step(self, risk_manager):
        quantity = risk_manager.calculate_quantity(Decimal("10"), Decimal("3000"), Decimal("100"))
        assert quantity == Decimal("0.293")

    @pytest.mark.parametrize("margin,price", [("0", "3000"), ("10", "0"), ("-1", "3000"), ("NaN", "3000")])
    def test_invalid_inputs(self, risk_manager, margin, price):
        with pytest.raises(InvariantViolation):
            risk_manager.calculate_quantity(Decimal(margin), Decimal(price), Decimal("100"))

    def test_below_min_notional(self, risk_manager):
        with pytest.raises(InvariantViolation, match="below minimum"):
            risk_manager.calculate_quantity(
                Decimal("0.05"), Decimal("3000"), Decimal("100"), leverage=1
            )

    def test_liquidation_safe_cap(self, risk_manager):
        with pytest.raises(InvariantViolation, match="liquidation-safe"):
            risk_manager.calculate_quantity(Decimal("10"), Decimal("3000"), Decimal("5"))

    def test_absolute_notional_cap(self, risk_manager):
        with pytest.raises(InvariantViolation, match="max position"):
            risk_manager.calculate_quantity(Decimal("200"), Decimal("3000"), Decimal("10000"))

    def test_status(self, risk_manager):
        status = risk_manager.get_status()
        assert status["tripped"] is False
        assert status["healthy"] is True
        assert status["daily_loss"] == "0"
