"""Unit tests for confluence scoring."""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pyramid_trader.core.models import Trend
from pyramid_trader.signals.confluence import (
    LONDON,
    SYDNEY,
    ConfluenceScorer,
    MarketClock,
    price_change_percent,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def scorer():
    return ConfluenceScorer(momentum_threshold=Decimal("0.03"))


# =============================================================================
# Session Tests
# =============================================================================

class TestSessions:
    """Test session windows and labels."""

    def test_sydney_wraps_midnight(self):
        assert SYDNEY.contains(23 * 60, 2)
        assert SYDNEY.contains(3 * 60, 2)
        assert not SYDNEY.contains(7 * 60, 2)

    def test_london_close_is_inclusive(self):
        assert LONDON.contains(16 * 60 + 30, 2)
        assert not LONDON.contains(16 * 60 + 31, 2)

    def test_london_closed_on_weekends(self):
        assert not LONDON.contains(10 * 60, 5)

    @pytest.mark.parametrize(
        "now,label",
        [
            (utc(2024, 1, 10, 15, 0), "NYSE+London Overlap"),
            (utc(2024, 1, 10, 18, 0), "NYSE Session"),
            (utc(2024, 1, 10, 9, 30), "London Session"),
            (utc(2024, 1, 13, 3, 0), "Tokyo Session"),
            (utc(2024, 1, 10, 21, 30), "After-Hours"),
        ],
    )
    def test_session_label(self, now, label):
        assert MarketClock(now=now, change_percent=None).session_label() == label

    def test_quarter_end_is_last_three_days(self):
        assert MarketClock(now=utc(2024, 3, 29, 12), change_percent=None).quarter_end
        assert not MarketClock(now=utc(2024, 3, 28, 12), change_percent=None).quarter_end
        assert not MarketClock(now=utc(2024, 4, 29, 12), change_percent=None).quarter_end


# =============================================================================
# Scoring Tests
# =============================================================================

class TestConfluenceScorer:
    """Test the rule table end to end."""

    def test_overlap_on_wednesday(self, scorer):
        result = scorer.score(utc(2024, 1, 10, 15, 0), None, Decimal("100"))

        assert result.score == 13
        assert result.factors == [
            "NYSE+London Overlap",
            "NYSE Open",
            "NYSE Power Hour Open",
            "London Open",
            "Session Overlap",
            "Mid-Week",
        ]
        assert result.trend == Trend.NEUTRAL

    def test_weekend_factor_adds_no_points(self, scorer):
        result = scorer.score(utc(2024, 1, 13, 3, 0), None, None)

        assert result.score == 4
        assert result.factors == ["Tokyo Session", "Asia Active", "Weekend - Lower Vol"]

    def test_early_monday_is_informational(self, scorer):
        result = scorer.score(utc(2024, 1, 15, 3, 0), None, None)

        assert "Early Monday" in result.factors
        assert result.score == 4

    def test_bullish_momentum(self, scorer):
        result = scorer.score(utc(2024, 1, 13, 3, 0), Decimal("100"), Decimal("100.05"))

        assert result.trend == Trend.BULLISH
        assert "Bullish Move" in result.factors
        assert result.score == 6

    def test_bearish_momentum(self, scorer):
        result = scorer.score(utc(2024, 1, 13, 3, 0), Decimal("100"), Decimal("99.9"))

        assert result.trend == Trend.BEARISH
        assert "Bearish Move" in result.factors

    def test_small_move_is_neutral(self, scorer):
        result = scorer.score(utc(2024, 1, 13, 3, 0), Decimal("100"), Decimal("100.02"))
        assert result.trend == Trend.NEUTRAL

    def test_month_turn(self, scorer):
        result = scorer.score(utc(2024, 2, 1, 3, 0), None, None)
        assert "Month End/Start" in result.factors

    def test_naive_datetime_treated_as_utc(self, scorer):
        aware = scorer.score(utc(2024, 1, 10, 15, 0), None, None)
        naive = scorer.score(datetime(2024, 1, 10, 15, 0), None, None)
        assert aware.score == naive.score

    def test_pure_function(self, scorer):
        now = utc(2024, 1, 10, 15, 0)
        first = scorer.score(now, Decimal("100"), Decimal("101"))
        second = scorer.score(now, Decimal("100"), Decimal("101"))
        assert first == second


class TestPriceChangePercent:
    def test_change(self):
        assert price_change_percent(Decimal("100"), Decimal("105")) == Decimal("5")

    @pytest.mark.parametrize(
        "last,price",
        [(None, Decimal("1")), (Decimal("1"), None), (Decimal("0"), Decimal("1"))],
    )
    def test_unusable_inputs(self, last, price):
        assert price_change_percent(last, price) is None
