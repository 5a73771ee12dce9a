"""Position management engines."""

from pyramid_trader.engines.pyramid import (
    ExitResult,
    PyramidAction,
    PyramidDecision,
    PyramidManager,
)

__all__ = [
    "ExitResult",
    "PyramidAction",
    "PyramidDecision",
    "PyramidManager",
]
