"""
Pyramid Trader - Main Entry Point

Unattended single-instrument perpetual-futures controller.

Usage:
    # Check configuration
    python main.py --check

    # Run in paper mode (public market data, simulated fills)
    python main.py --mode paper

    # Run against the live exchange (real money)
    python main.py --mode live

    # Show persisted status without connecting
    python main.py --status

    # Re-arm a tripped circuit breaker
    python main.py --reset-circuit-breaker
"""

import argparse
import asyncio
import json
import signal
from typing import Dict, Optional

import structlog

from pyramid_trader.core.config import trader_config
from pyramid_trader.core.engine import TradingEngine
from pyramid_trader.core.models import EngineEvent
from pyramid_trader.exchange.gateway import create_exchange_gateway
from pyramid_trader.storage.state_store import StateStore
from pyramid_trader.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class TradingBot:
    """
    Process wrapper around the controller.

    Wires the gateway, state store and controller together, installs
    SIGINT/SIGTERM handlers and runs until a shutdown is requested. A
    tripped circuit breaker keeps the process up with entries blocked.
    """

    def __init__(self, config=None):
        self.config = config or trader_config
        self.engine: Optional[TradingEngine] = None
        self._shutdown_event = asyncio.Event()

    def build_engine(self) -> TradingEngine:
        self.engine = TradingEngine(
            config=self.config,
            gateway=create_exchange_gateway(self.config),
            store=StateStore(self.config.storage),
        )
        self.engine.register_event_callback(self._on_event)
        return self.engine

    async def run(self) -> int:
        """Run until shutdown. Returns a process exit code."""
        engine = self.engine or self.build_engine()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        result = await engine.start()
        if not result.success:
            logger.error("bot.start_failed", message=result.message)
            print(f"\n✗ {result.message}")
            await engine.gateway.close()
            return 1

        logger.info(
            "bot.running",
            mode=self.config.trading_mode.trading_mode,
            symbol=self.config.trading_mode.symbol,
        )
        try:
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()
        return 0

    async def shutdown(self):
        logger.info("bot.shutting_down")
        if self.engine and self.engine.is_running:
            await self.engine.stop()
        logger.info("bot.shutdown_complete")

    def _signal_handler(self):
        logger.info("bot.shutdown_signal_received")
        self._shutdown_event.set()

    def _on_event(self, event: EngineEvent, data: Dict):
        if event == EngineEvent.CIRCUIT_BREAKER and data.get("tripped"):
            logger.critical(
                "bot.circuit_breaker_tripped",
                reason=data.get("trip_reason"),
                message=data.get("trip_message"),
            )
        elif event == EngineEvent.WATCHDOG:
            logger.error("bot.watchdog_alert", alerts=data.get("watchdog_alerts"))


def print_banner():
    """Print the startup banner."""
    mode = trader_config.trading_mode
    banner = f"""
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║                  PYRAMID TRADER v{trader_config.system.app_version:<8}                        ║
║                                                                  ║
║     Confluence entries | Pyramid adds | Circuit breaker          ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝
  Symbol: {mode.symbol}   Leverage: {mode.leverage}x   Mode: {mode.trading_mode.upper()}
"""
    print(banner)


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = trader_config.validate_configuration()
    warnings = []

    if trader_config.is_live_trading:
        warnings.append("⚠️  Running in LIVE trading mode!")
        warnings.append("   Make sure you have:")
        warnings.append("     - Tested thoroughly in paper mode")
        warnings.append("     - Verified API keys have futures trading permission")
        warnings.append("     - Set appropriate circuit breaker limits in .env")
        if trader_config.exchange.testnet:
            warnings.append("✓ Using exchange testnet")
    else:
        warnings.append("✓ Paper trading: fills are simulated locally")

    if not trader_config.trading_mode.enable_auto_trading:
        warnings.append("⚠️  Auto-trading disabled: signals are recorded only")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "trading_mode": trader_config.trading_mode.trading_mode,
        "exchange": trader_config.exchange.exchange_id,
        "symbol": trader_config.trading_mode.symbol,
    }


def print_status(status: Dict):
    """Print formatted status output."""
    risk = status.get("risk", {})
    pyramid = status.get("pyramid", {})
    daily = status.get("daily_stats") or {}
    performance = status.get("performance", {})
    signals = status.get("signal_stats", {})

    print("\n" + "=" * 60)
    print("              PYRAMID TRADER - STATUS")
    print("=" * 60)

    print(f"\n📊 Mode: {status.get('mode', 'N/A').upper()}   Symbol: {status.get('symbol')}")

    print("\n⛔ Circuit Breaker:")
    print(f"   Tripped: {risk.get('tripped', False)}")
    if risk.get("tripped"):
        print(f"   Reason: {risk.get('trip_reason')} ({risk.get('trip_message')})")
        print(f"   Tripped At: {risk.get('tripped_at')}")
    print(f"   Consecutive Losses: {risk.get('consecutive_losses', 0)}")
    print(f"   Daily Loss: ${risk.get('daily_loss', '0')}")

    print(f"\n📈 Pyramid: level {pyramid.get('level', 0)}/{pyramid.get('max_levels', 0)}")
    if pyramid.get("level"):
        print(f"   Side: {pyramid.get('side')}  Avg Entry: {pyramid.get('avg_entry')}")
        print(f"   Size: {pyramid.get('total_size')}  Trailing Stop: {pyramid.get('trailing_stop')}")

    if daily:
        print(f"\n📅 Today ({daily.get('date')}):")
        print(f"   Trades: {daily.get('total_trades', 0)}  Realized: ${daily.get('realized_pnl', '0')}")
        print(f"   Funding: ${daily.get('funding_paid', '0')}  Fees: ${daily.get('commission_paid', '0')}")

    print("\n💹 Performance:")
    print(f"   Trades: {performance.get('total_trades', 0)}  PnL: ${performance.get('total_pnl', '0')}")

    print("\n📝 Signals:")
    print(f"   Total: {signals.get('total_signals', 0)}  Executed: {signals.get('trades_executed', 0)}")
    for reason, count in sorted(
        signals.get("blocked_reasons", {}).items(), key=lambda item: -item[1]
    )[:5]:
        print(f"   Blocked {count}x: {reason}")

    trades = status.get("recent_trades", [])
    if trades:
        print("\n🧾 Recent Trades:")
        for trade in trades[:5]:
            pnl = trade.get("pnl")
            suffix = f" PnL ${pnl}" if pnl is not None else ""
            print(f"   {trade['action'].upper()} {trade['side']} {trade['quantity']} @ {trade['price']}{suffix}")

    print("\n" + "=" * 60)


async def reset_circuit_breaker() -> int:
    print("\n🚨 CIRCUIT BREAKER RESET")
    print("=" * 60)
    print("WARNING: This re-arms trading after a safety trip!")
    print("Only do this if you understand why it was triggered.")
    print("=" * 60)

    confirm = input("\nType 'RESET' to confirm: ")
    if confirm != "RESET":
        print("Aborted.")
        return 1

    engine = TradingBot().build_engine()
    result = await engine.reset_circuit_breaker(authorized_by="manual_cli")
    print(f"✓ {result.message}" if result.success else f"✗ {result.message}")
    if result.success:
        print("You can now restart the bot normally.")
    return 0 if result.success else 1


async def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Pyramid Trader - unattended perpetual-futures controller"
    )
    parser.add_argument(
        "--mode",
        choices=["paper", "live"],
        help="Trading mode: paper=simulated fills, live=real money",
    )
    parser.add_argument(
        "--no-auto-trading",
        action="store_true",
        help="Record signals without placing entries",
    )
    parser.add_argument("--status", action="store_true", help="Show persisted status and exit")
    parser.add_argument("--json", action="store_true", help="Print --status as JSON")
    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument(
        "--reset-circuit-breaker",
        action="store_true",
        help="Re-arm a tripped circuit breaker (USE WITH CAUTION)",
    )
    args = parser.parse_args()

    setup_logging(trader_config.logging)

    if args.mode:
        trader_config.trading_mode.trading_mode = args.mode
    if args.no_auto_trading:
        trader_config.trading_mode.enable_auto_trading = False

    if not args.check and not args.status:
        print_banner()

    config_check = check_configuration()

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        for warning in config_check["warnings"]:
            print(warning)
        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")
        print(f"\nExchange: {config_check['exchange']}  Symbol: {config_check['symbol']}")
        print(f"Trading Mode: {config_check['trading_mode']}")
        print("\n" + "=" * 60)
        return 0 if config_check["valid"] else 1

    if args.status:
        engine = TradingBot().build_engine()
        engine.restore_state()
        status = engine.get_status()
        if args.json:
            print(json.dumps(status, indent=2, default=str))
        else:
            print_status(status)
        return 0

    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return 1

    if args.reset_circuit_breaker:
        return await reset_circuit_breaker()

    for warning in config_check["warnings"]:
        print(warning)

    bot = TradingBot()
    try:
        return await bot.run()
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


def cli():
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
