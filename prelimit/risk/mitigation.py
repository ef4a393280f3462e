"""Pure risk decisions for a pair of Up/Down limit orders.

Nothing here performs I/O; the strategy gathers prices and times and acts on
the returned decisions.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Tuple

MIN_PRICE = 0.01
MAX_PRICE = 0.99
FILL_TOLERANCE = 0.001
# The two mid-market legs are priced to sum to this
MID_MARKET_PAIR_TOTAL = 0.98


def round_price(price: float) -> float:
    """Round to the nearest cent and clamp to the tradeable range [0.01, 0.99]."""
    rounded = float(Decimal(str(price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    return min(max(rounded, MIN_PRICE), MAX_PRICE)


def mid_market_prices(up_price: float, down_price: float) -> Tuple[float, float]:
    """(up_order_price, down_order_price) for a mid-market pair.

    The cheaper side is bid at its current price and the other side at the
    remainder of the pair total.
    """
    if up_price <= down_price:
        return round_price(up_price), round_price(MID_MARKET_PAIR_TOTAL - up_price)
    return round_price(MID_MARKET_PAIR_TOTAL - down_price), round_price(down_price)


def price_indicates_fill(price: float, limit: float) -> bool:
    """A resting BUY is treated as filled once the market trades at or through its limit."""
    return price <= limit or abs(price - limit) < FILL_TOLERANCE


def minutes_remaining(market_end: int, now: int) -> int:
    """Whole minutes left until market_end."""
    return (market_end - now) // 60


def position_loss(purchase_price: float, sell_price: float, shares: float) -> float:
    """Loss from selling shares below their purchase price (negative = gain)."""
    return (purchase_price - sell_price) * shares


def time_exit_due(one_side_matched_at: Optional[int], now: int, danger_minutes: int) -> bool:
    """True once a one-sided fill has been open for danger_minutes or longer."""
    if one_side_matched_at is None:
        return False
    return now - one_side_matched_at >= danger_minutes * 60


class HoldReason(str, Enum):
    BELOW_THRESHOLD = "below_threshold"
    TOO_EARLY = "too_early"


@dataclass
class SellOppositeDecision:
    """What to do once both legs are filled."""

    sell: bool
    winner: Optional[str] = None  # "Up" or "Down"
    loser: Optional[str] = None
    winner_price: float = 0.0
    hold_reason: Optional[HoldReason] = None


def decide_sell_opposite(
    up_price: float,
    down_price: float,
    threshold: float,
    minutes_left: int,
    required_minutes: int,
) -> SellOppositeDecision:
    """Sell the losing side when the other side is priced as a near-certain winner
    and the period is close enough to its end.

    Up is checked before Down when both exceed the threshold.
    """
    if up_price >= threshold:
        winner, loser, winner_price = "Up", "Down", up_price
    elif down_price >= threshold:
        winner, loser, winner_price = "Down", "Up", down_price
    else:
        return SellOppositeDecision(sell=False, hold_reason=HoldReason.BELOW_THRESHOLD)

    if minutes_left <= required_minutes:
        return SellOppositeDecision(sell=True, winner=winner, loser=loser, winner_price=winner_price)
    return SellOppositeDecision(
        sell=False,
        winner=winner,
        loser=loser,
        winner_price=winner_price,
        hold_reason=HoldReason.TOO_EARLY,
    )
