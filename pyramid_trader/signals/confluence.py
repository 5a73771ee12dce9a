"""Confluence scoring from trading sessions, calendar and short-term momentum.

The score is a pure function of ``(now, last_price, price)``. Each rule in
``CONFLUENCE_RULES`` is a predicate over a :class:`MarketClock` plus a point
weight; rules fire in table order so the factor list is stable.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

import structlog

from pyramid_trader.core.models import Trend

logger = structlog.get_logger(__name__)

DEFAULT_MOMENTUM_THRESHOLD = Decimal("0.03")  # percent
QUARTER_END_MONTHS = (3, 6, 9, 12)


# =============================================================================
# Sessions
# =============================================================================

@dataclass(frozen=True)
class SessionWindow:
    """UTC session in minutes of day. Wraps midnight when start > end."""

    name: str
    start_minute: int
    end_minute: int
    weekdays_only: bool = False
    inclusive_end: bool = False

    def contains(self, minute_of_day: int, weekday: int) -> bool:
        if self.weekdays_only and weekday >= 5:
            return False
        if self.start_minute <= self.end_minute:
            if self.inclusive_end:
                return self.start_minute <= minute_of_day <= self.end_minute
            return self.start_minute <= minute_of_day < self.end_minute
        return minute_of_day >= self.start_minute or minute_of_day < self.end_minute


NYSE = SessionWindow("NYSE", 14 * 60 + 30, 21 * 60, weekdays_only=True)
LONDON = SessionWindow("London", 8 * 60, 16 * 60 + 30, weekdays_only=True, inclusive_end=True)
TOKYO = SessionWindow("Tokyo", 0, 9 * 60)
SYDNEY = SessionWindow("Sydney", 22 * 60, 7 * 60)
PRE_MARKET = SessionWindow("Pre-Market", 5 * 60, 8 * 60, weekdays_only=True)
NYSE_POWER_OPEN = SessionWindow("NYSE Power Hour Open", 14 * 60 + 30, 15 * 60 + 30)
NYSE_POWER_CLOSE = SessionWindow("NYSE Power Hour Close", 20 * 60 + 30, 21 * 60)
LONDON_OPEN = SessionWindow("London Open", 8 * 60, 10 * 60)


@dataclass(frozen=True)
class MarketClock:
    """Everything the rules need to know about one instant and one price move."""

    now: datetime
    change_percent: Optional[Decimal]
    momentum_threshold: Decimal = DEFAULT_MOMENTUM_THRESHOLD

    @property
    def minute_of_day(self) -> int:
        return self.now.hour * 60 + self.now.minute

    @property
    def weekday(self) -> int:
        return self.now.weekday()

    def in_session(self, session: SessionWindow) -> bool:
        return session.contains(self.minute_of_day, self.weekday)

    @property
    def nyse(self) -> bool:
        return self.in_session(NYSE)

    @property
    def london(self) -> bool:
        return self.in_session(LONDON)

    @property
    def tokyo(self) -> bool:
        return self.in_session(TOKYO)

    @property
    def sydney(self) -> bool:
        return self.in_session(SYDNEY)

    @property
    def after_hours(self) -> bool:
        return self.weekday < 5 and not (self.nyse or self.london) and self.now.hour >= 21

    @property
    def pre_market(self) -> bool:
        return self.in_session(PRE_MARKET)

    @property
    def any_major_session(self) -> bool:
        return self.nyse or self.london or self.tokyo or self.sydney

    @property
    def bullish(self) -> bool:
        return self.change_percent is not None and self.change_percent > self.momentum_threshold

    @property
    def bearish(self) -> bool:
        return self.change_percent is not None and self.change_percent < -self.momentum_threshold

    @property
    def quarter_end(self) -> bool:
        if self.now.month not in QUARTER_END_MONTHS:
            return False
        days_in_month = 31 if self.now.month in (3, 12) else 30
        return self.now.day > days_in_month - 3

    def session_label(self) -> str:
        if self.nyse and self.london:
            return "NYSE+London Overlap"
        if self.nyse:
            return "NYSE Session"
        if self.london:
            return "London Session"
        if self.tokyo:
            return "Tokyo Session"
        if self.sydney:
            return "Sydney Session"
        if self.after_hours:
            return "After-Hours"
        if self.pre_market:
            return "Pre-Market"
        return "Off-Hours"


# =============================================================================
# Rule Table
# =============================================================================

@dataclass(frozen=True)
class ConfluenceRule:
    """One scoring rule. ``label`` None means the points are added silently."""

    name: str
    predicate: Callable[[MarketClock], bool]
    weight: int
    label: Optional[str] = None


CONFLUENCE_RULES: Tuple[ConfluenceRule, ...] = (
    ConfluenceRule("major_session", lambda c: c.any_major_session, 2),
    ConfluenceRule("nyse", lambda c: c.nyse, 3, "NYSE Open"),
    ConfluenceRule(
        "nyse_power_open", lambda c: c.nyse and c.in_session(NYSE_POWER_OPEN), 2,
        "NYSE Power Hour Open",
    ),
    ConfluenceRule(
        "nyse_power_close", lambda c: c.nyse and c.in_session(NYSE_POWER_CLOSE), 2,
        "NYSE Power Hour Close",
    ),
    ConfluenceRule("london", lambda c: c.london, 2, "London Open"),
    ConfluenceRule(
        "london_open_volatility", lambda c: c.london and c.in_session(LONDON_OPEN), 1,
        "London Open Volatility",
    ),
    ConfluenceRule("overlap", lambda c: c.nyse and c.london, 3, "Session Overlap"),
    ConfluenceRule("asia", lambda c: c.tokyo, 2, "Asia Active"),
    ConfluenceRule("after_hours", lambda c: c.after_hours, 2, "Clean After-Hours"),
    ConfluenceRule("pre_market", lambda c: c.pre_market, 1, "Pre-Market"),
    ConfluenceRule("bullish_move", lambda c: c.bullish, 2, "Bullish Move"),
    ConfluenceRule("bearish_move", lambda c: c.bearish, 2, "Bearish Move"),
    ConfluenceRule("mid_week", lambda c: c.weekday in (1, 2, 3), 1, "Mid-Week"),
    ConfluenceRule(
        "month_turn", lambda c: c.now.day <= 2 or c.now.day >= 28, 1, "Month End/Start"
    ),
    ConfluenceRule("quarter_end", lambda c: c.quarter_end, 1, "Quarter End"),
    # Informational only: the market trades continuously
    ConfluenceRule("weekend", lambda c: c.weekday >= 5, 0, "Weekend - Lower Vol"),
    ConfluenceRule(
        "early_monday", lambda c: c.weekday == 0 and c.now.hour < 8, 0, "Early Monday"
    ),
)


@dataclass
class ConfluenceResult:
    """Score, ordered factor labels and momentum direction."""

    score: int
    factors: List[str] = field(default_factory=list)
    trend: Trend = Trend.NEUTRAL
    session: str = "Off-Hours"
    change_percent: Optional[Decimal] = None


def price_change_percent(
    last_price: Optional[Decimal], price: Optional[Decimal]
) -> Optional[Decimal]:
    """Percent move from last_price to price, None when either is unusable."""
    if last_price is None or price is None or last_price <= 0 or price <= 0:
        return None
    return (price - last_price) / last_price * 100


class ConfluenceScorer:
    """Scores one instant against :data:`CONFLUENCE_RULES`."""

    def __init__(
        self,
        momentum_threshold: Decimal = DEFAULT_MOMENTUM_THRESHOLD,
        rules: Tuple[ConfluenceRule, ...] = CONFLUENCE_RULES,
    ):
        self.momentum_threshold = momentum_threshold
        self.rules = rules

    def score(
        self,
        now: datetime,
        last_price: Optional[Decimal],
        price: Optional[Decimal],
    ) -> ConfluenceResult:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        clock = MarketClock(
            now=now.astimezone(timezone.utc),
            change_percent=price_change_percent(last_price, price),
            momentum_threshold=self.momentum_threshold,
        )

        session = clock.session_label()
        result = ConfluenceResult(
            score=0, factors=[session], session=session, change_percent=clock.change_percent
        )
        for rule in self.rules:
            if not rule.predicate(clock):
                continue
            result.score += rule.weight
            if rule.label:
                result.factors.append(rule.label)

        if clock.bullish:
            result.trend = Trend.BULLISH
        elif clock.bearish:
            result.trend = Trend.BEARISH

        logger.debug(
            "confluence.scored",
            score=result.score,
            session=session,
            trend=result.trend.value,
        )
        return result
