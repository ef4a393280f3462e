"""Redemption reconciliation for positions held to market resolution.

Each condition id is accounted for at most once: it is claimed in the
closure-checked set before PnL is booked, and a redemption is attempted at
most once, whatever its outcome.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

import structlog

from .metrics import (
    MARKETS_RECONCILED_TOTAL,
    PENDING_RECONCILIATION,
    PERIOD_PROFIT_USD,
    REDEMPTIONS_TOTAL,
    TOTAL_PROFIT_USD,
)
from .state import RegisteredTrade, TradingLedger
from .status import summarize_profit

if TYPE_CHECKING:
    from .client.exchange import PolymarketExchange
    from .config import StrategyConfig

log = structlog.get_logger()

# Ignore dust when deciding which side was actually held
MIN_REDEEM_SHARES = 0.001


@dataclass
class ResolutionResult:
    """Outcome of reconciling one resolved market."""

    condition_id: str
    winner: Optional[str]  # "Up", "Down" or None
    cost: float
    payout: float
    pnl: float
    redeemed: bool = False
    redemption_error: Optional[str] = None


def resolve_trade(trade: RegisteredTrade, winning_token_ids: List[str]) -> ResolutionResult:
    """Compute cost, payout and PnL for a resolved trade."""
    up_wins = trade.up_token_id is not None and trade.up_token_id in winning_token_ids
    down_wins = trade.down_token_id is not None and trade.down_token_id in winning_token_ids

    if up_wins:
        winner, payout = "Up", trade.up_shares * 1.0
    elif down_wins:
        winner, payout = "Down", trade.down_shares * 1.0
    else:
        winner, payout = None, 0.0

    cost = trade.cost
    return ResolutionResult(
        condition_id=trade.condition_id,
        winner=winner,
        cost=cost,
        payout=payout,
        pnl=payout - cost,
    )


class RedemptionReconciler:
    """Books PnL for resolved markets and redeems winning tokens."""

    def __init__(
        self,
        exchange: "PolymarketExchange",
        ledger: TradingLedger,
        config: "StrategyConfig",
        clock: Callable[[], float] = time.time,
    ):
        self.exchange = exchange
        self.ledger = ledger
        self.config = config
        self._clock = clock
        self._running = False

    async def reconcile_once(self) -> List[ResolutionResult]:
        """Reconcile every registered trade whose market has ended and closed.

        A failure on one trade is logged and leaves it for the next cycle; other
        trades are still processed.
        """
        trades = await self.ledger.pending_trades()
        PENDING_RECONCILIATION.set(len(trades))
        if not trades:
            return []

        now = int(self._clock())
        results = []
        for trade in trades:
            if now < trade.market_end:
                continue
            try:
                result = await self._reconcile_trade(trade)
            except Exception as e:
                log.warning(
                    "Failed to reconcile market",
                    condition_id=trade.condition_id[:16],
                    error=str(e),
                )
                continue
            if result is not None:
                results.append(result)
        return results

    async def _reconcile_trade(self, trade: RegisteredTrade) -> Optional[ResolutionResult]:
        if await self.ledger.is_closure_checked(trade.condition_id):
            await self.ledger.remove_trade(trade.condition_id)
            return None

        market = await self.exchange.get_market(trade.condition_id)
        if not market.closed:
            log.debug("Market not closed yet", condition_id=trade.condition_id[:16])
            return None

        # Claim before booking so a concurrent pass cannot account twice
        if not await self.ledger.claim_closure(trade.condition_id):
            await self.ledger.remove_trade(trade.condition_id)
            return None

        result = resolve_trade(trade, market.winning_token_ids())
        total = await self.ledger.book_resolution(result.pnl)
        MARKETS_RECONCILED_TOTAL.labels(winner=result.winner or "unknown").inc()
        TOTAL_PROFIT_USD.set(total)
        PERIOD_PROFIT_USD.set(await self.ledger.get_period_profit())

        log.info(
            "Market resolved",
            condition_id=trade.condition_id[:16],
            winner=result.winner or "Unknown",
            up=f"{trade.up_shares:.2f} @ {trade.up_avg_price:.4f}",
            down=f"{trade.down_shares:.2f} @ {trade.down_avg_price:.4f}",
            cost=f"${result.cost:.2f}",
            payout=f"${result.payout:.2f}",
            pnl=f"${result.pnl:.2f}",
            total_pnl=f"${total:.2f}",
        )

        if not self.config.simulation_mode and result.winner is not None:
            await self._redeem(trade, result)

        await self.ledger.remove_trade(trade.condition_id)
        return result

    async def _redeem(self, trade: RegisteredTrade, result: ResolutionResult) -> None:
        """Single best-effort redemption attempt; failures are logged, never retried."""
        if result.winner == "Up" and trade.up_shares > MIN_REDEEM_SHARES:
            token_id, outcome = trade.up_token_id or "", "Up"
        else:
            token_id, outcome = trade.down_token_id or "", "Down"

        try:
            await self.exchange.redeem_tokens(trade.condition_id, token_id, outcome)
        except Exception as e:
            result.redemption_error = str(e)
            REDEMPTIONS_TOTAL.labels(result="failed").inc()
            log.warning(
                "Redeem failed",
                condition_id=trade.condition_id[:16],
                outcome=outcome,
                error=str(e),
            )
            return
        result.redeemed = True
        REDEMPTIONS_TOTAL.labels(result="success").inc()

    async def run(self) -> None:
        """Reconcile on a fixed interval until stopped."""
        self._running = True
        interval = self.config.market_closure_check_interval_seconds
        log.info("Reconciliation loop started", interval_seconds=interval)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_once()
            except Exception as e:
                log.warning("Error checking market closure", error=str(e))

            total = await self.ledger.get_total_profit()
            period = await self.ledger.get_period_profit()
            if total != 0.0 or period != 0.0:
                log.info("Current Profit", **summarize_profit(period, total))

    def stop(self) -> None:
        self._running = False
