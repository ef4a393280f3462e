"""Main entry point for the pre-limit order bot."""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from . import __version__
from .client.exchange import PolymarketExchange
from .client.polymarket import AuthenticationError
from .config import AppConfig, ConfigError
from .metrics import init_metrics
from .settlement import RedemptionReconciler
from .state import TradingLedger
from .strategies.prelimit import PreLimitStrategy

log = structlog.get_logger()


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog over the standard library logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of the console format
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class PreLimitBot:
    """Runs the tick loop and the reconciliation loop side by side."""

    def __init__(self, config: AppConfig, exchange: Optional[PolymarketExchange] = None):
        self.config = config
        self.exchange = exchange or PolymarketExchange(config.polymarket)
        self.ledger = TradingLedger()
        self.strategy = PreLimitStrategy(self.exchange, config, ledger=self.ledger)
        self.reconciler = RedemptionReconciler(self.exchange, self.ledger, config.strategy)
        self._running = False
        self._reconciler_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Connect, authenticate, then run until stopped.

        Raises:
            AuthenticationError: If a private key is configured but rejected
        """
        self._running = True
        init_metrics(
            version=__version__,
            simulation_mode=self.config.strategy.simulation_mode,
            port=self.config.polymarket.metrics_port,
        )

        if not await self.exchange.connect():
            log.warning("CLOB connection check failed, continuing")

        if self.config.polymarket.has_credentials:
            try:
                await self.exchange.authenticate()
            except AuthenticationError as e:
                log.error("Authentication failed", error=str(e))
                raise
        else:
            log.warning("No private key provided. Bot will only be able to monitor markets.")

        self._register_signals()
        self._log_startup_info()

        self._reconciler_task = asyncio.create_task(self.reconciler.run(), name="reconciliation")
        try:
            await self.strategy.start()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop both loops and close the HTTP clients."""
        if not self._running:
            return
        self._running = False

        await self.strategy.stop()
        self.reconciler.stop()
        if self._reconciler_task and not self._reconciler_task.done():
            self._reconciler_task.cancel()
            try:
                await self._reconciler_task
            except asyncio.CancelledError:
                pass

        await self.exchange.close()
        log.info(
            "Pre-limit bot stopped",
            period_profit=f"${await self.ledger.get_period_profit():.2f}",
            total_profit=f"${await self.ledger.get_total_profit():.2f}",
        )

    def _register_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.create_task(self._handle_signal(s)),
            )

    async def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("Received shutdown signal", signal=sig.name)
        await self.stop()

    def _log_startup_info(self) -> None:
        strategy = self.config.strategy
        cost_per_side = strategy.shares * strategy.price_limit
        log.info(
            "Confirming configuration",
            shares_per_side=f"{strategy.shares:.0f}",
            price_per_share=f"${strategy.price_limit:.2f}",
            cost_per_side=f"${cost_per_side:.2f}",
            cost_per_pair=f"${cost_per_side * 2:.2f}",
            total_capital=f"${cost_per_side * 2 * len(strategy.markets):.2f}",
            markets=",".join(strategy.markets),
            timeframe=strategy.timeframe.value,
        )
        if strategy.simulation_mode:
            log.warning(
                "SIMULATION MODE - No real orders will be placed",
                fills_at=f"${strategy.price_limit:.2f} or below",
            )
        if strategy.signal.enabled:
            log.info(
                "Signal-based risk management enabled",
                one_side_mode=strategy.signal.one_side_buy_risk_management.value,
                danger_price=strategy.signal.danger_price,
                danger_time_passed=f"{strategy.signal.danger_time_passed}min",
            )


async def run_redeem_only(
    exchange: PolymarketExchange,
    config: AppConfig,
    condition_id: Optional[str] = None,
) -> int:
    """Redeem one condition, or every redeemable position of the proxy wallet.

    Returns:
        Number of failed redemptions

    Raises:
        ConfigError: If no proxy wallet is configured
    """
    proxy = config.polymarket.proxy_wallet
    if not proxy:
        raise ConfigError("--redeem requires POLYMARKET_PROXY_WALLET")

    log.info("Redeem-only mode", proxy=proxy)
    if condition_id:
        condition_ids: List[str] = [condition_id if condition_id.startswith("0x") else f"0x{condition_id}"]
    else:
        condition_ids = await exchange.get_redeemable_positions(proxy)
        if not condition_ids:
            log.info("No redeemable positions found")
            return 0
        log.info("Found conditions to redeem", count=len(condition_ids))

    succeeded = 0
    failed = 0
    for cid in condition_ids:
        try:
            # Unknown outcome: redeem both index sets, losers pay nothing
            await exchange.redeem_tokens(cid, "", "")
        except Exception as e:
            log.warning("Failed to redeem, skipping", condition_id=cid[:18], error=str(e))
            failed += 1
            continue
        succeeded += 1

    log.info("Redeem complete", succeeded=succeeded, failed=failed)
    return failed


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="prelimit",
        description="Pre-limit hedged order bot for Polymarket Up/Down markets",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON config overlay")
    parser.add_argument("--simulate", action="store_true", help="Force simulation mode")
    parser.add_argument("--redeem", action="store_true", help="Redeem resolved positions and exit")
    parser.add_argument("--condition-id", default=None, help="Redeem only this condition (with --redeem)")
    return parser.parse_args(argv)


async def run_bot(args: argparse.Namespace) -> int:
    config = AppConfig.load(args.config)
    if args.simulate:
        config.strategy.simulation_mode = True
    configure_logging(config.polymarket.log_level, config.polymarket.log_json)
    log.info(
        "Polymarket Pre-Limit Order Bot",
        version=__version__,
        started_at=datetime.now(timezone.utc).isoformat(),
    )

    if args.redeem:
        exchange = PolymarketExchange(config.polymarket)
        try:
            failed = await run_redeem_only(exchange, config, args.condition_id)
        finally:
            await exchange.close()
        return 1 if failed else 0

    bot = PreLimitBot(config)
    try:
        await bot.start()
    finally:
        await bot.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        sys.exit(asyncio.run(run_bot(args)))
    except KeyboardInterrupt:
        log.info("Shutdown complete")
        sys.exit(0)
    except ConfigError as e:
        log.error("Invalid configuration", error=str(e))
        sys.exit(2)
    except AuthenticationError as e:
        log.error("Authentication failed. Please check your credentials.", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
