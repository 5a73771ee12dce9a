"""Exchange integration module for the Pyramid Trader."""

from pyramid_trader.exchange.gateway import (
    ExchangeGateway,
    RetryConfig,
    create_exchange_gateway,
    with_retry,
)

__all__ = [
    "ExchangeGateway",
    "RetryConfig",
    "create_exchange_gateway",
    "with_retry",
]
