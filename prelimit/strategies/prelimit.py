"""Pre-limit order strategy.

Before each period opens, rest a BUY limit order on both outcomes of the next
market at a price below fair value. If both legs fill the pair costs less than
the $1.00 it pays out. When only one leg fills, the position is exited early
(by price or by elapsed time) to bound the loss; when both fill and one side
is clearly winning late in the period, the losing side is sold.

Per-asset tick:
    1. Pre-placement: inside the lead window before the next period, arm the
       next market with a fresh order pair.
    2. Existing state: refresh fills, sell the opposite side, exit one-sided
       fills, and clear the state once its market has expired.
    3. Mid-market placement: with no state and enough time left, arm the
       current market around its current prices.

The order-state map is written only from this tick. Reconciliation of held
positions runs separately (see settlement.py).
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Tuple

import structlog

from ..client.types import Market, OrderRequest, OrderResponse, OrderSide
from ..config import AppConfig, RiskMode
from ..metrics import (
    EARLY_EXITS_TOTAL,
    ORDER_FILLS_TOTAL,
    ORDERS_PLACED_TOTAL,
    SELL_OPPOSITE_TOTAL,
    TICK_ERRORS_TOTAL,
    TOTAL_PROFIT_USD,
    TRACKED_ORDER_STATES,
)
from ..monitoring.market_finder import MarketDiscovery
from ..risk.mitigation import (
    HoldReason,
    decide_sell_opposite,
    mid_market_prices,
    minutes_remaining,
    position_loss,
    price_indicates_fill,
    round_price,
    time_exit_due,
)
from ..state import OrderState, RegisteredTrade, TradingLedger
from ..status import build_status_snapshot, render_snapshot
from .base import BaseStrategy
from .signals import MarketSignal, evaluate_place_signal, is_danger_signal

if TYPE_CHECKING:
    from ..client.exchange import PolymarketExchange

log = structlog.get_logger()

SIMULATED_ORDER_PREFIX = "SIM-"


@dataclass
class MarketSnapshot:
    """Current prices of a live market."""

    market: Market
    up_token_id: str
    down_token_id: str
    up_price: float
    down_price: float
    time_remaining: int  # Seconds, never negative


def _is_exchange_order_id(order_id: Optional[str]) -> bool:
    return bool(order_id) and not order_id.startswith(SIMULATED_ORDER_PREFIX)


class PreLimitStrategy(BaseStrategy):
    """Hedged pre-limit orders on periodic Up/Down markets."""

    def __init__(
        self,
        exchange: "PolymarketExchange",
        config: AppConfig,
        ledger: Optional[TradingLedger] = None,
        discovery: Optional[MarketDiscovery] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize strategy.

        Args:
            exchange: Polymarket exchange facade
            config: Application configuration
            ledger: Shared bookkeeping, also handed to reconciliation
            discovery: Market discovery (built from config when omitted)
            clock: Returns the current Unix time
        """
        super().__init__(exchange, config)
        self.strategy_config = config.strategy
        self.signal_config = config.strategy.signal
        self.ledger = ledger or TradingLedger()
        self.discovery = discovery or MarketDiscovery(
            exchange,
            timeframe=config.strategy.timeframe,
            tz_name=config.strategy.exchange_timezone,
        )
        self._clock = clock

    @property
    def duration(self) -> int:
        return self.strategy_config.market_duration_seconds

    @property
    def simulation_mode(self) -> bool:
        return self.strategy_config.simulation_mode

    def _now(self) -> int:
        return int(self._clock())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the tick loop and run until stopped."""
        log.info(
            "Starting pre-limit strategy",
            markets=",".join(self.strategy_config.markets),
            timeframe=self.strategy_config.timeframe.value,
            simulation=self.simulation_mode,
        )
        await self.run()

    async def stop(self) -> None:
        self._running = False
        log.info(
            "Stopping pre-limit strategy",
            total_profit=f"${await self.ledger.get_total_profit():.2f}",
        )

    async def run(self) -> None:
        """Tick loop: status every status interval, then every asset, then sleep."""
        self._running = True
        await self._log_status()
        last_status = self._clock()

        while self._running:
            now = self._clock()
            if now - last_status >= self.strategy_config.status_interval_seconds:
                await self._log_status()
                last_status = now

            await self.process_markets()
            await asyncio.sleep(self.strategy_config.check_interval_ms / 1000)

    async def _log_status(self) -> None:
        try:
            await self.display_market_status()
        except Exception as e:
            log.warning("Error displaying market status", error=str(e))

    async def process_markets(self) -> None:
        """One pass over every tracked asset, in configured order.

        A failure on one asset is logged and never stops the others.
        """
        current_period = self.discovery.current_period_start(now=self._now())
        for asset in self.strategy_config.markets:
            try:
                await self.process_asset(asset, current_period)
            except Exception as e:
                TICK_ERRORS_TOTAL.labels(asset=asset).inc()
                log.error("Error processing asset", asset=asset, error=str(e))

        states = await self.ledger.order_states()
        TRACKED_ORDER_STATES.set(len(states))

    async def get_total_profit(self) -> float:
        return await self.ledger.get_total_profit()

    async def get_period_profit(self) -> float:
        return await self.ledger.get_period_profit()

    # =========================================================================
    # Per-asset tick
    # =========================================================================

    async def process_asset(self, asset: str, current_period: int) -> None:
        """Advance one asset's order pair by one tick."""
        now = self._now()
        next_period = current_period + self.duration
        time_until_next = next_period - now
        window_open = time_until_next <= self.strategy_config.place_order_before_mins * 60

        state = await self.ledger.get_order_state(asset)

        if window_open:
            next_prepared = state is not None and state.expiry == next_period + self.duration
            one_side_open = state is not None and state.needs_danger_handling
            if not next_prepared and not one_side_open:
                if await self._place_next_period(asset, current_period, next_period, state):
                    return

        if state is not None:
            await self._process_state(asset, state)
        elif not window_open and self.signal_config.mid_market_enabled:
            await self._place_mid_market(asset, current_period)

    async def _place_next_period(
        self,
        asset: str,
        current_period: int,
        next_period: int,
        previous: Optional[OrderState],
    ) -> bool:
        """Arm the next period's market. Returns True when a new pair was recorded."""
        signal = await self.get_place_signal(asset, current_period)
        if signal is not MarketSignal.GOOD:
            if signal is MarketSignal.BAD:
                log.info("Bad signal for current market, skipping pre-orders", asset=asset)
            return False

        market = await self.discovery.find_market(asset, next_period)
        if market is None:
            log.debug(
                "Next market not available yet",
                asset=asset,
                slug=self.discovery.slug(asset, next_period),
            )
            return False

        log.info(
            "Preparing orders for next market",
            asset=asset,
            starts_in=f"{next_period - self._now()}s",
        )
        up_token_id, down_token_id = await self.discovery.get_market_tokens(market.condition_id)
        price = self.strategy_config.price_limit
        state = await self._place_pair(
            asset,
            market.condition_id,
            up_token_id,
            down_token_id,
            up_price=price,
            down_price=price,
            period_start=next_period,
            placement="pre_limit",
        )
        await self._retire_replaced_state(previous)
        await self.ledger.put_order_state(state)
        return True

    async def _place_mid_market(self, asset: str, current_period: int) -> None:
        """Arm the current market around its live prices."""
        remaining = current_period + self.duration - self._now()
        min_remaining = self.signal_config.danger_time_passed * 60
        if remaining <= min_remaining:
            log.debug(
                "Skipping mid-market orders, too little time left",
                asset=asset,
                remaining=f"{remaining}s",
                required=f"{min_remaining}s",
            )
            return

        snapshot = await self.get_market_snapshot(asset, current_period)
        if snapshot is None:
            return
        signal = evaluate_place_signal(
            self.signal_config,
            snapshot.up_price,
            snapshot.down_price,
            snapshot.time_remaining,
        )
        if signal is not MarketSignal.GOOD:
            return

        up_order_price, down_order_price = mid_market_prices(snapshot.up_price, snapshot.down_price)
        log.info(
            "Good signal, placing mid-market orders",
            asset=asset,
            up_order=f"${up_order_price:.2f}",
            down_order=f"${down_order_price:.2f}",
            up_price=f"${snapshot.up_price:.2f}",
            down_price=f"${snapshot.down_price:.2f}",
        )
        state = await self._place_pair(
            asset,
            snapshot.market.condition_id,
            snapshot.up_token_id,
            snapshot.down_token_id,
            up_price=up_order_price,
            down_price=down_order_price,
            period_start=current_period,
            placement="mid_market",
        )
        await self.ledger.put_order_state(state)

    async def _place_pair(
        self,
        asset: str,
        condition_id: str,
        up_token_id: str,
        down_token_id: str,
        up_price: float,
        down_price: float,
        period_start: int,
        placement: str,
    ) -> OrderState:
        """Place both BUY legs and build their order state.

        If the second leg fails the first is cancelled and the error propagates,
        so no half-armed pair is ever recorded.
        """
        up_price = round_price(up_price)
        down_price = round_price(down_price)

        up_order = await self.place_limit_order(up_token_id, OrderSide.BUY, up_price)
        try:
            down_order = await self.place_limit_order(down_token_id, OrderSide.BUY, down_price)
        except Exception:
            await self._cancel_order(asset, up_order.order_id, "Up")
            raise

        ORDERS_PLACED_TOTAL.labels(asset=asset, side="up", placement=placement).inc()
        ORDERS_PLACED_TOTAL.labels(asset=asset, side="down", placement=placement).inc()

        return OrderState(
            asset=asset,
            condition_id=condition_id,
            up_token_id=up_token_id,
            down_token_id=down_token_id,
            up_order_id=up_order.order_id,
            down_order_id=down_order.order_id,
            up_order_price=up_price,
            down_order_price=down_price,
            expiry=period_start + self.duration,
            order_placed_at=self._now(),
            market_period_start=period_start,
        )

    async def _retire_replaced_state(self, previous: Optional[OrderState]) -> None:
        """A fully hedged pair replaced before expiry is still held to resolution."""
        if previous is None or self.simulation_mode:
            return
        if previous.both_matched and not previous.merged and not previous.risk_sold:
            await self._register(RegisteredTrade.holding_both(previous, self.strategy_config.shares, self.duration))

    async def place_limit_order(self, token_id: str, side: OrderSide, price: float) -> OrderResponse:
        """Place one limit order, or fake it in simulation mode."""
        price = round_price(price)
        shares = self.strategy_config.shares
        if self.simulation_mode:
            log.info(
                "SIMULATION: would place order",
                side=side.value,
                token_id=token_id[:16] + "...",
                shares=shares,
                price=f"${price:.2f}",
            )
            return OrderResponse(
                order_id=f"{SIMULATED_ORDER_PREFIX}{side.value}-{self._now()}",
                status="SIMULATED",
                message="Order simulated (not placed)",
            )

        response = await self.exchange.place_order(
            OrderRequest(token_id=token_id, side=side, size=shares, price=price)
        )
        self.log_trade(side.value, {"token_id": token_id[:16] + "...", "price": price, "size": shares})
        return response

    # =========================================================================
    # Existing state
    # =========================================================================

    async def _process_state(self, asset: str, state: OrderState) -> None:
        try:
            await self.check_order_matches(state)

            if state.both_matched and not state.merged:
                await self._sell_opposite(asset, state)

            if state.only_one_matched and state.one_side_matched_at is None:
                state.one_side_matched_at = self._now()

            if state.needs_danger_handling:
                await self._exit_one_side(asset, state)
        finally:
            await self._store_or_expire(asset, state)

    async def _store_or_expire(self, asset: str, state: OrderState) -> None:
        if self._now() <= state.expiry:
            await self.ledger.put_order_state(state)
            return

        if not self.simulation_mode and state.both_matched and not state.merged and not state.risk_sold:
            await self._register(RegisteredTrade.holding_both(state, self.strategy_config.shares, self.duration))
        log.info("Market expired, clearing state", asset=asset, condition_id=state.condition_id[:16])
        await self.ledger.remove_order_state(asset)

    async def _register(self, trade: RegisteredTrade) -> None:
        if await self.ledger.register_trade(trade):
            log.info(
                "Registered position for redemption when market resolves",
                condition_id=trade.condition_id[:20],
                up_shares=trade.up_shares,
                down_shares=trade.down_shares,
            )

    async def check_order_matches(self, state: OrderState) -> None:
        """Refresh fill flags for an order pair.

        Live mode asks the exchange first and falls back to price inference if
        that fails. Nothing is checked before the pair's market has started.
        """
        if self._now() < state.market_period_start:
            log.debug(
                "Market not started yet",
                asset=state.asset,
                market_period=state.market_period_start,
            )
            return

        if (
            not self.simulation_mode
            and _is_exchange_order_id(state.up_order_id)
            and _is_exchange_order_id(state.down_order_id)
        ):
            try:
                up_filled, down_filled = await self.exchange.are_both_orders_filled(
                    state.up_order_id, state.down_order_id
                )
            except Exception as e:
                log.debug("API fill check failed, falling back to price inference", asset=state.asset, error=str(e))
            else:
                self._apply_fills(state, up_filled, down_filled, source="api")
                return

        up_price, down_price = await asyncio.gather(
            self._sell_price(state.up_token_id),
            self._sell_price(state.down_token_id),
        )
        up_filled = up_price is not None and price_indicates_fill(up_price, state.up_order_price)
        down_filled = down_price is not None and price_indicates_fill(down_price, state.down_order_price)
        self._apply_fills(state, up_filled, down_filled, source="price")

    def _apply_fills(self, state: OrderState, up_filled: bool, down_filled: bool, source: str) -> None:
        for side, filled, already in (
            ("Up", up_filled, state.up_matched),
            ("Down", down_filled, state.down_matched),
        ):
            if filled and not already:
                ORDER_FILLS_TOTAL.labels(asset=state.asset, side=side.lower(), source=source).inc()
                log.info(
                    "Order filled",
                    asset=state.asset,
                    side=side,
                    source=source,
                    simulation=self.simulation_mode,
                )
        state.mark_matched(up=up_filled, down=down_filled)

    async def _sell_opposite(self, asset: str, state: OrderState) -> None:
        """Both legs filled: sell the losing side once the winner is clear late in the period."""
        up_price, down_price = await asyncio.gather(
            self._sell_price(state.up_token_id),
            self._sell_price(state.down_token_id),
        )
        up_price = up_price or 0.0
        down_price = down_price or 0.0

        market_end = state.market_period_start + self.duration
        minutes_left = minutes_remaining(market_end, self._now())
        decision = decide_sell_opposite(
            up_price,
            down_price,
            threshold=self.strategy_config.sell_opposite_above,
            minutes_left=minutes_left,
            required_minutes=self.strategy_config.sell_opposite_time_remaining,
        )
        if not decision.sell:
            if decision.hold_reason is HoldReason.TOO_EARLY:
                log.debug(
                    "Winner above threshold but too early, holding both",
                    asset=asset,
                    winner=decision.winner,
                    price=f"${decision.winner_price:.2f}",
                    minutes_left=minutes_left,
                )
            return

        if decision.loser == "Down":
            token_id, purchase_price, sell_price = state.down_token_id, state.down_order_price, down_price
        else:
            token_id, purchase_price, sell_price = state.up_token_id, state.up_order_price, up_price

        log.info(
            "Both filled and winner clear, selling losing side",
            asset=asset,
            winner=decision.winner,
            winner_price=f"${decision.winner_price:.2f}",
            minutes_left=minutes_left,
            selling=decision.loser,
        )
        if await self._sell_at_market(asset, token_id, decision.loser):
            await self._book_loss(asset, decision.loser, purchase_price, sell_price)

        state.merged = True
        SELL_OPPOSITE_TOTAL.labels(asset=asset).inc()
        if not self.simulation_mode:
            await self._register(
                RegisteredTrade.holding_winner(state, decision.winner, self.strategy_config.shares, self.duration)
            )

    async def _exit_one_side(self, asset: str, state: OrderState) -> None:
        """Exactly one leg filled: sell it early when the configured risk mode says so."""
        mode = self.signal_config.one_side_buy_risk_management
        if state.up_matched:
            side, token_id, purchase_price, other_side, other_order_id = (
                "Up", state.up_token_id, state.up_order_price, "Down", state.down_order_id
            )
        else:
            side, token_id, purchase_price, other_side, other_order_id = (
                "Down", state.down_token_id, state.down_order_price, "Up", state.up_order_id
            )

        sell_price = None
        if mode is RiskMode.PRICE:
            sell_price = await self._sell_price(token_id)
            exit_due = sell_price is not None and is_danger_signal(self.signal_config, sell_price)
            reason = "Danger signal (price collapsed)"
        elif mode is RiskMode.TIME:
            exit_due = time_exit_due(state.one_side_matched_at, self._now(), self.signal_config.danger_time_passed)
            reason = f"Danger time passed ({self.signal_config.danger_time_passed}min since match)"
        else:
            return

        if not exit_due:
            return

        if not self.simulation_mode and state.up_order_id and state.down_order_id:
            try:
                up_filled, down_filled = await self.exchange.are_both_orders_filled(
                    state.up_order_id, state.down_order_id
                )
            except Exception as e:
                log.warning("Failed to verify order status, proceeding with danger sell", asset=asset, error=str(e))
            else:
                if up_filled and down_filled:
                    log.info("Danger signal but both orders filled (verified via API), skipping sell", asset=asset)
                    self._apply_fills(state, True, True, source="api")
                    return

        log.warning(
            "One-sided fill, selling matched side",
            asset=asset,
            reason=reason,
            selling=side,
            cancelling=other_side,
        )
        if sell_price is None:
            sell_price = await self._sell_price(token_id)

        if await self._sell_at_market(asset, token_id, side):
            if self.simulation_mode:
                log.warning("SIMULATION: would cancel order", asset=asset, side=other_side, order_id=other_order_id)
            else:
                await self._cancel_order(asset, other_order_id, other_side)
            await self._book_loss(asset, side, purchase_price, sell_price or 0.0)

        state.mark_risk_sold()
        EARLY_EXITS_TOTAL.labels(asset=asset, reason=mode.value).inc()

    async def _sell_at_market(self, asset: str, token_id: str, side: str) -> bool:
        """Market-sell a side's shares. Returns False if the sale failed."""
        shares = self.strategy_config.shares
        if self.simulation_mode:
            log.info("SIMULATION: would sell at market", asset=asset, side=side, shares=shares)
            return True
        try:
            await self.exchange.place_market_order(token_id, shares, OrderSide.SELL.value)
        except Exception as e:
            log.error("Failed to sell token", asset=asset, side=side, error=str(e))
            return False
        self.log_trade("SELL", {"asset": asset, "side": side, "size": shares})
        return True

    async def _book_loss(self, asset: str, side: str, purchase_price: float, sell_price: float) -> None:
        loss = position_loss(purchase_price, sell_price, self.strategy_config.shares)
        total = await self.ledger.book_loss(loss)
        TOTAL_PROFIT_USD.set(total)
        log.info(
            "Sold position",
            asset=asset,
            side=side,
            sell_price=f"${sell_price:.4f}",
            purchase_price=f"${purchase_price:.2f}",
            loss=f"${loss:.2f}",
            total_profit=f"${total:.2f}",
        )

    async def _cancel_order(self, asset: str, order_id: Optional[str], side: str) -> None:
        """Best-effort cancel; failures are logged."""
        if not _is_exchange_order_id(order_id):
            return
        try:
            await self.exchange.cancel_order(order_id)
        except Exception as e:
            log.error("Failed to cancel order", asset=asset, side=side, order_id=order_id, error=str(e))
            return
        log.info("Cancelled order", asset=asset, side=side, order_id=order_id)

    # =========================================================================
    # Market data
    # =========================================================================

    async def _sell_price(self, token_id: str) -> Optional[float]:
        """Current SELL price, or None when it cannot be fetched."""
        try:
            return await self.exchange.get_price(token_id, OrderSide.SELL.value)
        except Exception as e:
            log.debug("Failed to get price", token_id=token_id[:16], error=str(e))
            return None

    async def get_market_snapshot(self, asset: str, period_start: int) -> Optional[MarketSnapshot]:
        """Prices and time left for an asset's open market in the given period."""
        market = await self.discovery.find_market(asset, period_start)
        if market is None:
            return None
        try:
            up_token_id, down_token_id = await self.discovery.get_market_tokens(market.condition_id)
        except Exception as e:
            log.debug("Failed to get market tokens", asset=asset, error=str(e))
            return None

        up_price, down_price = await asyncio.gather(
            self._sell_price(up_token_id),
            self._sell_price(down_token_id),
        )
        if up_price is None or down_price is None:
            return None

        time_remaining = max(period_start + self.duration - self._now(), 0)
        return MarketSnapshot(market, up_token_id, down_token_id, up_price, down_price, time_remaining)

    async def get_place_signal(self, asset: str, period_start: int) -> MarketSignal:
        snapshot = await self.get_market_snapshot(asset, period_start)
        if snapshot is None:
            return MarketSignal.UNKNOWN
        return evaluate_place_signal(
            self.signal_config,
            snapshot.up_price,
            snapshot.down_price,
            snapshot.time_remaining,
        )

    # =========================================================================
    # Status
    # =========================================================================

    async def display_market_status(self) -> None:
        """Log a status snapshot. Reads prices only; order state is never touched."""
        now = self._now()
        current_period = self.discovery.current_period_start(now=now)
        states = await self.ledger.order_states()

        quotes = {}
        for asset in self.strategy_config.markets:
            quotes[asset] = await self._quote(asset, states.get(asset), current_period)

        rows = build_status_snapshot(
            self.strategy_config.markets,
            states,
            quotes,
            now=now,
            current_period=current_period,
            duration=self.duration,
        )
        for line in render_snapshot(rows, await self.ledger.get_total_profit()):
            log.info(line)

    async def _quote(
        self,
        asset: str,
        state: Optional[OrderState],
        current_period: int,
    ) -> Tuple[Optional[float], Optional[float]]:
        if state is not None:
            return tuple(
                await asyncio.gather(
                    self._sell_price(state.up_token_id),
                    self._sell_price(state.down_token_id),
                )
            )
        snapshot = await self.get_market_snapshot(asset, current_period)
        if snapshot is None:
            return None, None
        return snapshot.up_price, snapshot.down_price
