"""In-memory bookkeeping shared by the tick loop and the reconciliation loop.

Ownership:
    - orders (OrderState per asset): written only by the strategy tick.
    - trades (RegisteredTrade per condition): registered by the tick, consumed
      only by reconciliation.
    - closure_checked and the resolution PnL: written only by reconciliation.

Each structure has its own asyncio.Lock. Locks are held for dictionary
operations only, never across an exchange call.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set

import structlog

log = structlog.get_logger()


@dataclass
class OrderState:
    """Lifecycle record of one asset's order pair."""

    asset: str
    condition_id: str
    up_token_id: str
    down_token_id: str
    up_order_id: Optional[str]
    down_order_id: Optional[str]
    up_order_price: float
    down_order_price: float
    expiry: int
    order_placed_at: int
    market_period_start: int
    up_matched: bool = False
    down_matched: bool = False
    merged: bool = False
    risk_sold: bool = False
    one_side_matched_at: Optional[int] = None

    @property
    def both_matched(self) -> bool:
        return self.up_matched and self.down_matched

    @property
    def only_one_matched(self) -> bool:
        return self.up_matched != self.down_matched

    @property
    def needs_danger_handling(self) -> bool:
        """Exactly one side filled and the position has not been exited."""
        return self.only_one_matched and not self.merged and not self.risk_sold

    def mark_matched(self, up: bool = False, down: bool = False) -> None:
        """Set fill flags. Flags only ever go from False to True."""
        self.up_matched = self.up_matched or up
        self.down_matched = self.down_matched or down

    def mark_risk_sold(self) -> None:
        self.risk_sold = True
        self.merged = True

    def copy(self) -> "OrderState":
        return replace(self)


@dataclass
class RegisteredTrade:
    """A position held to resolution, awaiting reconciliation."""

    condition_id: str
    period_timestamp: int
    market_duration_secs: int
    up_token_id: Optional[str]
    down_token_id: Optional[str]
    up_shares: float
    down_shares: float
    up_avg_price: float
    down_avg_price: float

    @property
    def market_end(self) -> int:
        return self.period_timestamp + self.market_duration_secs

    @property
    def cost(self) -> float:
        return self.up_shares * self.up_avg_price + self.down_shares * self.down_avg_price

    @classmethod
    def holding_winner(cls, state: OrderState, winner: str, shares: float, duration: int) -> "RegisteredTrade":
        """Only the winning side remains after the losing side was sold."""
        up_wins = winner == "Up"
        return cls(
            condition_id=state.condition_id,
            period_timestamp=state.market_period_start,
            market_duration_secs=duration,
            up_token_id=state.up_token_id,
            down_token_id=state.down_token_id,
            up_shares=shares if up_wins else 0.0,
            down_shares=0.0 if up_wins else shares,
            up_avg_price=state.up_order_price if up_wins else 0.0,
            down_avg_price=0.0 if up_wins else state.down_order_price,
        )

    @classmethod
    def holding_both(cls, state: OrderState, shares: float, duration: int) -> "RegisteredTrade":
        return cls(
            condition_id=state.condition_id,
            period_timestamp=state.market_period_start,
            market_duration_secs=duration,
            up_token_id=state.up_token_id,
            down_token_id=state.down_token_id,
            up_shares=shares,
            down_shares=shares,
            up_avg_price=state.up_order_price,
            down_avg_price=state.down_order_price,
        )


class TradingLedger:
    """Shared state container with one lock per structure."""

    def __init__(self):
        self._orders: Dict[str, OrderState] = {}
        self._trades: Dict[str, RegisteredTrade] = {}
        self._closure_checked: Set[str] = set()
        self._total_profit: float = 0.0
        self._period_profit: float = 0.0

        self.orders_lock = asyncio.Lock()
        self.trades_lock = asyncio.Lock()
        self.closure_lock = asyncio.Lock()
        self.profit_lock = asyncio.Lock()

    # =========================================================================
    # Order states
    # =========================================================================

    async def get_order_state(self, asset: str) -> Optional[OrderState]:
        """A private copy of the asset's state; write it back with put_order_state."""
        async with self.orders_lock:
            state = self._orders.get(asset)
            return state.copy() if state else None

    async def put_order_state(self, state: OrderState) -> None:
        """Replace the asset's state. There is at most one state per asset."""
        async with self.orders_lock:
            self._orders[state.asset] = state

    async def remove_order_state(self, asset: str) -> Optional[OrderState]:
        async with self.orders_lock:
            return self._orders.pop(asset, None)

    async def order_states(self) -> Dict[str, OrderState]:
        async with self.orders_lock:
            return {asset: s.copy() for asset, s in self._orders.items()}

    # =========================================================================
    # Registered trades
    # =========================================================================

    async def register_trade(self, trade: RegisteredTrade) -> bool:
        """Register a position for reconciliation.

        Returns:
            False if the condition is already registered or already reconciled
        """
        async with self.closure_lock:
            if trade.condition_id in self._closure_checked:
                return False
        async with self.trades_lock:
            if trade.condition_id in self._trades:
                return False
            self._trades[trade.condition_id] = trade
            return True

    async def pending_trades(self) -> List[RegisteredTrade]:
        async with self.trades_lock:
            return list(self._trades.values())

    async def remove_trade(self, condition_id: str) -> Optional[RegisteredTrade]:
        async with self.trades_lock:
            return self._trades.pop(condition_id, None)

    # =========================================================================
    # Closure-checked set
    # =========================================================================

    async def is_closure_checked(self, condition_id: str) -> bool:
        async with self.closure_lock:
            return condition_id in self._closure_checked

    async def claim_closure(self, condition_id: str) -> bool:
        """Mark a condition reconciled. Returns False if it already was."""
        async with self.closure_lock:
            if condition_id in self._closure_checked:
                return False
            self._closure_checked.add(condition_id)
            return True

    @property
    def closure_checked(self) -> Set[str]:
        return set(self._closure_checked)

    # =========================================================================
    # Profit accumulators
    # =========================================================================

    async def book_loss(self, loss: float) -> float:
        """Subtract an early-exit loss from the all-time total. Returns the new total."""
        async with self.profit_lock:
            self._total_profit -= loss
            return self._total_profit

    async def book_resolution(self, pnl: float) -> float:
        """Add resolved PnL to both accumulators. Returns the new total."""
        async with self.profit_lock:
            self._total_profit += pnl
            self._period_profit += pnl
            return self._total_profit

    async def get_total_profit(self) -> float:
        async with self.profit_lock:
            return self._total_profit

    async def get_period_profit(self) -> float:
        async with self.profit_lock:
            return self._period_profit
