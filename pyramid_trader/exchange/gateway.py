"""Execution gateway for a single perpetual-futures instrument.

Wraps a ccxt async exchange (request signing is handled by ccxt) behind a
small typed interface. Every call is bounded by a timeout, timed for the
health monitor and mapped onto the controller's error taxonomy:

- ccxt.AuthenticationError      -> AuthenticationFailure (credentials invalidated)
- ccxt.NetworkError / timeouts  -> TransportError
- other ccxt errors             -> ExchangeRejection

Read-only calls are retried with exponential backoff. Orders are never
retried inside a call; the controller re-evaluates on the next tick.

In paper mode market data comes from the public API while balance,
position and fills are simulated locally.
"""
import asyncio
import functools
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import ccxt.async_support as ccxt
import structlog

from pyramid_trader.core.config import ExchangeAPIConfig, TradingModeConfig
from pyramid_trader.core.errors import (
    AuthenticationFailure,
    ExchangeRejection,
    TransportError,
)
from pyramid_trader.core.models import (
    BalanceSnapshot,
    FundingSnapshot,
    OrderResult,
    OrderSide,
    PositionSide,
    PositionSnapshot,
    PriceSnapshot,
    utc_now,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

QUOTE_ASSET = "USDT"
PAPER_FEE_RATE = Decimal("0.0006")

# Account-level unrealized PnL in the raw balance payload (binanceusdm)
UNREALIZED_PNL_KEYS = ("totalUnrealizedProfit",)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_BASE_DELAY = 5.0
    RATE_LIMIT_MAX_DELAY = 60.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout),
):
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except ccxt.RateLimitExceeded as e:
                    # Rate limits back off harder than transient network errors
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(
                            RetryConfig.RATE_LIMIT_BASE_DELAY * (2 ** attempt),
                            RetryConfig.RATE_LIMIT_MAX_DELAY,
                        )
                        logger.warning(
                            f"{func.__name__}.rate_limit_hit",
                            attempt=attempt + 1,
                            delay=delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        break
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(base_delay * (exponential_base ** attempt), max_delay)
                        logger.warning(
                            f"{func.__name__}.retry_attempt",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e),
                        )
                        await asyncio.sleep(delay)
                    else:
                        break

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception),
            )
            raise last_exception
        return wrapper
    return decorator


def _decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


def _from_millis(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class ExchangeGateway:
    """Typed, timed and error-mapped access to one perpetual market.

    Attributes:
        exchange: The ccxt async exchange instance
        last_latency_ms: Round-trip time of the most recent call
    """

    def __init__(
        self,
        api_config: Optional[ExchangeAPIConfig] = None,
        instrument_config: Optional[TradingModeConfig] = None,
        exchange: Optional[Any] = None,
    ):
        self.api_config = api_config or ExchangeAPIConfig()
        self.instrument_config = instrument_config or TradingModeConfig()
        self.symbol = self.instrument_config.ccxt_symbol
        self.exchange = exchange
        self.last_latency_ms: float = 0.0
        self._credentials_invalid = False
        self._initialized = exchange is not None

        # Paper trading book
        self._paper_balance = self.instrument_config.paper_starting_balance
        self._paper_position = PositionSnapshot()
        self._last_price: Optional[Decimal] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_paper(self) -> bool:
        return self.instrument_config.trading_mode == "paper"

    @property
    def has_credentials(self) -> bool:
        """Paper mode trades without keys; live mode needs valid ones."""
        if self.is_paper:
            return True
        return self.api_config.has_credentials and not self._credentials_invalid

    async def initialize(self) -> None:
        """Create the ccxt exchange and load markets."""
        if self._initialized:
            return

        exchange_class = getattr(ccxt, self.api_config.exchange_id)
        ccxt_config: Dict[str, Any] = {
            "enableRateLimit": True,
            "timeout": int(self.api_config.timeout * 1000),
            "options": {
                "defaultType": "swap",
                "adjustForTimeDifference": True,
            },
        }
        if not self.is_paper and self.api_config.has_credentials:
            ccxt_config["apiKey"] = self.api_config.api_key
            ccxt_config["secret"] = self.api_config.api_secret

        exchange = exchange_class(ccxt_config)
        if self.api_config.testnet and not self.is_paper:
            exchange.set_sandbox_mode(True)

        try:
            await self._request("load_markets", exchange.load_markets, retry=True)
        except Exception:
            try:
                await exchange.close()
            except Exception as close_error:
                logger.warning("gateway.close_error", error=str(close_error))
            raise

        self.exchange = exchange
        self._initialized = True
        logger.info(
            "gateway.initialized",
            exchange=self.api_config.exchange_id,
            symbol=self.symbol,
            mode=self.instrument_config.trading_mode,
            testnet=self.api_config.testnet,
        )

    async def close(self) -> None:
        """Close the exchange connection."""
        if self.exchange is None:
            return
        try:
            await self.exchange.close()
            logger.info("gateway.closed")
        except Exception as e:
            logger.warning("gateway.close_error", error=str(e))
        finally:
            self._initialized = False

    def invalidate_credentials(self) -> None:
        if not self._credentials_invalid:
            self._credentials_invalid = True
            logger.critical("gateway.credentials_invalidated", exchange=self.api_config.exchange_id)

    # =========================================================================
    # Request Plumbing
    # =========================================================================

    async def _timed_call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(factory(), timeout=self.api_config.timeout)
        except asyncio.TimeoutError as e:
            raise ccxt.RequestTimeout(f"{operation} timed out after {self.api_config.timeout}s") from e
        finally:
            self.last_latency_ms = (time.monotonic() - started) * 1000

    async def _request(
        self, operation: str, factory: Callable[[], Awaitable[T]], retry: bool = False
    ) -> T:
        call = self._timed_call
        if retry:
            call = with_retry(max_retries=self.api_config.retry_attempts)(self._timed_call)

        try:
            return await call(operation, factory)
        except ccxt.AuthenticationError as e:
            self.invalidate_credentials()
            raise AuthenticationFailure(str(e), operation=operation) from e
        except ccxt.NetworkError as e:
            logger.warning("gateway.transport_error", operation=operation, error=str(e))
            raise TransportError(str(e), operation=operation) from e
        except ccxt.BaseError as e:
            logger.warning("gateway.exchange_rejection", operation=operation, error=str(e))
            raise ExchangeRejection(str(e), operation=operation) from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.warning("gateway.malformed_response", operation=operation, error=str(e))
            raise TransportError(f"Malformed response: {e}", operation=operation) from e

    def _require_exchange(self):
        if self.exchange is None:
            raise TransportError("Gateway not initialized", operation="require_exchange")
        return self.exchange

    def _require_credentials(self, operation: str) -> None:
        if not self.has_credentials:
            raise AuthenticationFailure("No valid API credentials", operation=operation)

    # =========================================================================
    # Market Data
    # =========================================================================

    async def get_price(self) -> PriceSnapshot:
        exchange = self._require_exchange()

        async def fetch() -> PriceSnapshot:
            ticker = await exchange.fetch_ticker(self.symbol)
            price = _decimal(ticker["last"])
            if not price.is_finite() or price <= 0:
                raise ValueError(f"invalid last price {ticker['last']!r}")
            return PriceSnapshot(price=price, fetched_at=utc_now())

        snapshot = await self._request("get_price", fetch, retry=True)
        self._last_price = snapshot.price
        if self.is_paper and self._paper_position.is_open:
            self._paper_position = self._paper_position.model_copy(
                update={"mark_price": snapshot.price}
            )
        return snapshot

    async def get_funding_rate(self) -> FundingSnapshot:
        exchange = self._require_exchange()

        async def fetch() -> FundingSnapshot:
            data = await exchange.fetch_funding_rate(self.symbol)
            next_time = _from_millis(data.get("nextFundingTimestamp") or data.get("fundingTimestamp"))
            return FundingSnapshot(
                rate=_decimal(data.get("fundingRate")),
                next_funding_time=next_time,
                fetched_at=utc_now(),
            )

        return await self._request("get_funding_rate", fetch, retry=True)

    # =========================================================================
    # Account State
    # =========================================================================

    async def get_balance(self) -> BalanceSnapshot:
        if self.is_paper:
            return self._paper_balance_snapshot()

        self._require_credentials("get_balance")
        exchange = self._require_exchange()

        async def fetch() -> BalanceSnapshot:
            balance = await exchange.fetch_balance()
            total = _decimal(balance.get("total", {}).get(QUOTE_ASSET))
            free = _decimal(balance.get("free", {}).get(QUOTE_ASSET))
            info = balance.get("info") or {}
            upnl = next((info[key] for key in UNREALIZED_PNL_KEYS if info.get(key) is not None), None)
            if upnl is None:
                # Account payload has no unrealized figure; take it from the open position
                positions = await exchange.fetch_positions([self.symbol])
                upnl = sum(
                    (_decimal(p.get("unrealizedPnl")) for p in positions if p.get("symbol") == self.symbol),
                    Decimal("0"),
                )
            return BalanceSnapshot(
                total=total, available=free, unrealized_pnl=_decimal(upnl), fetched_at=utc_now()
            )

        return await self._request("get_balance", fetch, retry=True)

    async def get_position(self) -> PositionSnapshot:
        if self.is_paper:
            return self._paper_position.model_copy(update={"fetched_at": utc_now()})

        self._require_credentials("get_position")
        exchange = self._require_exchange()

        async def fetch() -> PositionSnapshot:
            positions = await exchange.fetch_positions([self.symbol])
            for raw in positions:
                contracts = _decimal(raw.get("contracts"))
                if raw.get("symbol") != self.symbol or contracts <= 0:
                    continue
                side = PositionSide.LONG if raw.get("side") == "long" else PositionSide.SHORT
                liq = raw.get("liquidationPrice")
                leverage = raw.get("leverage")
                return PositionSnapshot(
                    side=side,
                    size=contracts,
                    entry_price=_decimal(raw.get("entryPrice")),
                    mark_price=_decimal(raw.get("markPrice")),
                    liquidation_price=_decimal(liq) if liq else None,
                    unrealized_pnl=_decimal(raw.get("unrealizedPnl")),
                    leverage=int(leverage) if leverage else None,
                    fetched_at=utc_now(),
                )
            return PositionSnapshot(fetched_at=utc_now())

        return await self._request("get_position", fetch, retry=True)

    # =========================================================================
    # Account Settings
    # =========================================================================

    async def set_isolated_margin(self) -> bool:
        if self.is_paper:
            return True
        self._require_credentials("set_isolated_margin")
        exchange = self._require_exchange()

        async def apply() -> bool:
            try:
                await exchange.set_margin_mode("isolated", self.symbol)
            except ccxt.NoChange:
                logger.debug("gateway.margin_mode_unchanged", symbol=self.symbol)
            return True

        return await self._request("set_isolated_margin", apply)

    async def set_leverage(self, leverage: int) -> bool:
        if self.is_paper:
            return True
        self._require_credentials("set_leverage")
        exchange = self._require_exchange()

        async def apply() -> bool:
            await exchange.set_leverage(leverage, self.symbol)
            return True

        result = await self._request("set_leverage", apply)
        logger.info("gateway.leverage_set", symbol=self.symbol, leverage=leverage)
        return result

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_market_order(
        self, side: OrderSide, quantity: Decimal, reduce_only: bool = False
    ) -> OrderResult:
        """Submit a market order and return the confirmed fill."""
        self._require_credentials("place_market_order")
        if self.is_paper:
            return self._simulate_order(side, quantity, reduce_only)

        exchange = self._require_exchange()

        async def submit() -> OrderResult:
            params = {"reduceOnly": True} if reduce_only else {}
            order = await exchange.create_order(
                self.symbol, "market", side.value, float(quantity), None, params
            )
            fill_price = order.get("average") or order.get("price") or self._last_price
            filled = order.get("filled") or quantity
            return OrderResult(
                order_id=str(order.get("id")),
                side=side,
                quantity=_decimal(filled),
                price=_decimal(fill_price),
                reduce_only=reduce_only,
            )

        result = await self._request("place_market_order", submit)
        logger.info(
            "gateway.order_filled",
            order_id=result.order_id,
            side=side.value,
            quantity=str(result.quantity),
            price=str(result.price),
            reduce_only=reduce_only,
        )
        return result

    async def close_all(self) -> Optional[OrderResult]:
        """Flatten the position with one reduce-only market order."""
        position = await self.get_position()
        if not position.is_open:
            return None
        return await self.place_market_order(
            position.side.exit_order_side, position.size, reduce_only=True
        )

    async def cancel_all_orders(self) -> bool:
        if self.is_paper:
            return True
        self._require_credentials("cancel_all_orders")
        exchange = self._require_exchange()

        async def cancel() -> bool:
            await exchange.cancel_all_orders(self.symbol)
            return True

        return await self._request("cancel_all_orders", cancel)

    # =========================================================================
    # Paper Trading
    # =========================================================================

    def _paper_balance_snapshot(self) -> BalanceSnapshot:
        position = self._paper_position
        used = Decimal("0")
        upnl = Decimal("0")
        if position.is_open:
            leverage = Decimal(self.instrument_config.leverage)
            used = position.entry_price * position.size / leverage
            mark = self._last_price or position.entry_price
            direction = 1 if position.side == PositionSide.LONG else -1
            upnl = (mark - position.entry_price) * position.size * direction
        return BalanceSnapshot(
            total=self._paper_balance + upnl,
            available=self._paper_balance - used,
            unrealized_pnl=upnl,
            fetched_at=utc_now(),
        )

    def _simulate_order(self, side: OrderSide, quantity: Decimal, reduce_only: bool) -> OrderResult:
        """Fill at the last price against the local paper book."""
        if self._last_price is None:
            raise TransportError("No market price for paper fill", operation="place_market_order")
        price = self._last_price
        fee = price * quantity * PAPER_FEE_RATE
        position = self._paper_position
        order_side = PositionSide.LONG if side == OrderSide.BUY else PositionSide.SHORT

        if reduce_only:
            if not position.is_open or position.side == order_side:
                raise ExchangeRejection("Reduce-only order would increase position", operation="paper")
            closed = min(quantity, position.size)
            direction = 1 if position.side == PositionSide.LONG else -1
            self._paper_balance += (price - position.entry_price) * closed * direction
            remaining = position.size - closed
            self._paper_position = (
                position.model_copy(update={"size": remaining}) if remaining > 0 else PositionSnapshot()
            )
        elif position.is_open and position.side != order_side:
            raise ExchangeRejection("Opposite-side order on open position", operation="paper")
        else:
            size = position.size + quantity
            entry = (position.entry_price * position.size + price * quantity) / size
            leverage = Decimal(self.instrument_config.leverage)
            offset = entry / leverage
            liq = entry - offset if order_side == PositionSide.LONG else entry + offset
            self._paper_position = PositionSnapshot(
                side=order_side,
                size=size,
                entry_price=entry,
                mark_price=price,
                liquidation_price=liq,
                leverage=self.instrument_config.leverage,
            )

        self._paper_balance -= fee
        logger.warning(
            "gateway.paper_trade",
            symbol=self.symbol,
            side=side.value,
            quantity=str(quantity),
            price=str(price),
            reduce_only=reduce_only,
        )
        return OrderResult(
            side=side, quantity=quantity, price=price, reduce_only=reduce_only, paper_trade=True
        )


def create_exchange_gateway(config=None) -> ExchangeGateway:
    """Factory function to create a gateway from a TraderConfig."""
    if config is None:
        from pyramid_trader.core.config import trader_config as config
    return ExchangeGateway(api_config=config.exchange, instrument_config=config.trading_mode)
