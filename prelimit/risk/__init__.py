"""Risk mitigation decisions."""

from .mitigation import (
    HoldReason,
    SellOppositeDecision,
    decide_sell_opposite,
    minutes_remaining,
    mid_market_prices,
    position_loss,
    price_indicates_fill,
    round_price,
    time_exit_due,
)

__all__ = [
    "HoldReason",
    "SellOppositeDecision",
    "decide_sell_opposite",
    "minutes_remaining",
    "mid_market_prices",
    "position_loss",
    "price_indicates_fill",
    "round_price",
    "time_exit_due",
]
