"""Risk management for the Pyramid Trader.

This module provides:
- Two-state circuit breaker (armed / tripped, manual reset)
- Priority-ordered entry rules
- Margin and quantity sizing with exchange and liquidation guards
"""

from pyramid_trader.risk.risk_manager import (
    EntryContext,
    RiskCheck,
    RiskManager,
    RiskRule,
    create_risk_manager,
)

__all__ = [
    'EntryContext',
    'RiskCheck',
    'RiskManager',
    'RiskRule',
    'create_risk_manager',
]
