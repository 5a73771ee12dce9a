"""Unit tests for the re-entry gate."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pyramid_trader.core.config import ReentryConfig
from pyramid_trader.core.models import PositionSide
from pyramid_trader.signals.reentry import ReentryTracker, RollingRange, should_enter

NOW = datetime(2024, 1, 10, 15, 0, tzinfo=timezone.utc)
RANGE = RollingRange(high=Decimal("200"), low=Decimal("100"))


@pytest.fixture
def config():
    return ReentryConfig()


# =============================================================================
# should_enter Tests
# =============================================================================

class TestShouldEnter:
    """Test the zone rules."""

    def test_first_trade_always_allowed(self, config):
        decision = should_enter(Decimal("150"), PositionSide.LONG, RANGE, 0, False, config)
        assert decision.allowed
        assert decision.reason == "First trade"

    def test_flat_range_not_established(self, config):
        flat = RollingRange(high=Decimal("100"), low=Decimal("100"))
        decision = should_enter(Decimal("100"), PositionSide.LONG, flat, 0, True, config)
        assert decision.allowed
        assert decision.reason == "Range not established"

    def test_missing_range_not_established(self, config):
        decision = should_enter(
            Decimal("100"), PositionSide.SHORT, RollingRange(None, None), 0, True, config
        )
        assert decision.allowed

    def test_long_blocked_mid_range(self, config):
        decision = should_enter(Decimal("150"), PositionSide.LONG, RANGE, 0, True, config)

        assert not decision.allowed
        assert decision.reason == (
            "LONG blocked: price at 50% of range (need bottom 25%). Range: $100-$200"
        )
        assert decision.position_in_range == Decimal("0.5")

    def test_long_allowed_in_bottom_zone(self, config):
        decision = should_enter(Decimal("110"), PositionSide.LONG, RANGE, 0, True, config)
        assert decision.allowed
        assert decision.reason == "Entry allowed: price at 10% of range (bottom zone)"

    def test_long_boundary_is_inclusive(self, config):
        decision = should_enter(Decimal("125"), PositionSide.LONG, RANGE, 0, True, config)
        assert decision.allowed

    def test_short_blocked_mid_range(self, config):
        decision = should_enter(Decimal("150"), PositionSide.SHORT, RANGE, 0, True, config)

        assert not decision.allowed
        assert decision.reason == (
            "SHORT blocked: price at 50% of range (need top 25%). Range: $100-$200"
        )

    def test_short_allowed_in_top_zone(self, config):
        decision = should_enter(Decimal("190"), PositionSide.SHORT, RANGE, 0, True, config)
        assert decision.allowed
        assert decision.reason == "Entry allowed: price at 90% of range (top zone)"

    def test_tightens_after_losses(self, config):
        decision = should_enter(Decimal("120"), PositionSide.LONG, RANGE, 2, True, config)

        assert not decision.allowed
        assert decision.reason == (
            "LONG blocked: price at 20% of range (need bottom 15% after 2 losses). "
            "Range: $100-$200"
        )

    def test_tightened_short(self, config):
        decision = should_enter(Decimal("180"), PositionSide.SHORT, RANGE, 3, True, config)
        assert not decision.allowed
        assert "need top 15% after 3 losses" in decision.reason


# =============================================================================
# ReentryTracker Tests
# =============================================================================

class TestReentryTracker:
    """Test the rolling window and exit bookkeeping."""

    def test_window_drops_old_samples(self, config):
        tracker = ReentryTracker(config)
        tracker.update(Decimal("200"), NOW)
        tracker.update(Decimal("150"), NOW + timedelta(seconds=100))
        rolling = tracker.update(Decimal("160"), NOW + timedelta(seconds=301))

        assert rolling.high == Decimal("160")
        assert rolling.low == Decimal("150")
        assert tracker.state.recent_high_time == NOW + timedelta(seconds=301)

    def test_check_before_any_exit(self, config):
        tracker = ReentryTracker(config)
        tracker.update(Decimal("100"), NOW)
        tracker.update(Decimal("200"), NOW + timedelta(seconds=1))

        assert tracker.check(Decimal("200"), PositionSide.LONG).reason == "First trade"

    def test_check_after_exit_uses_range(self, config):
        tracker = ReentryTracker(config)
        tracker.update(Decimal("100"), NOW)
        tracker.update(Decimal("200"), NOW + timedelta(seconds=1))
        tracker.record_exit(Decimal("200"), Decimal("1.2"), PositionSide.LONG, NOW)

        assert not tracker.check(Decimal("200"), PositionSide.LONG).allowed
        assert tracker.check(Decimal("200"), PositionSide.SHORT).allowed

    def test_consecutive_losses(self, config):
        tracker = ReentryTracker(config)
        tracker.record_exit(Decimal("100"), Decimal("-0.5"), PositionSide.LONG, NOW)
        tracker.record_exit(Decimal("100"), Decimal("-0.8"), PositionSide.LONG, NOW)
        assert tracker.state.consecutive_losses == 2

        tracker.record_exit(Decimal("100"), Decimal("0.3"), PositionSide.LONG, NOW)
        assert tracker.state.consecutive_losses == 0
        assert tracker.state.last_exit_pnl == Decimal("0.3")
        assert tracker.state.last_exit_side == PositionSide.LONG

    def test_fee_loss_counts_as_loss(self, config):
        tracker = ReentryTracker(config)
        tracker.record_exit(
            Decimal("3001"), Decimal("0.0333"), PositionSide.LONG, NOW, net_pnl=Decimal("-2.6006")
        )
        assert tracker.state.consecutive_losses == 1
        assert tracker.state.last_exit_pnl == Decimal("0.0333")
