"""Signal generation: indicators, confluence scoring and the re-entry gate."""

from pyramid_trader.signals.confluence import (
    CONFLUENCE_RULES,
    ConfluenceResult,
    ConfluenceRule,
    ConfluenceScorer,
)
from pyramid_trader.signals.indicators import IndicatorEngine, calculate_atr, calculate_ema
from pyramid_trader.signals.reentry import (
    ReentryDecision,
    ReentryTracker,
    RollingRange,
    should_enter,
)

__all__ = [
    "CONFLUENCE_RULES",
    "ConfluenceResult",
    "ConfluenceRule",
    "ConfluenceScorer",
    "IndicatorEngine",
    "calculate_atr",
    "calculate_ema",
    "ReentryDecision",
    "ReentryTracker",
    "RollingRange",
    "should_enter",
]
