"""Placement and danger signals derived from current outcome prices."""

from enum import Enum

from ..config import SignalConfig


class MarketSignal(str, Enum):
    """Verdict on whether to arm a new order pair."""

    GOOD = "good"
    BAD = "bad"
    UNKNOWN = "unknown"


def _valid_price(price: float) -> bool:
    return 0.0 < price <= 1.0


def evaluate_place_signal(
    config: SignalConfig,
    up_price: float,
    down_price: float,
    time_remaining: int,
) -> MarketSignal:
    """Judge the current market before placing orders.

    Good when the market is balanced (both sides inside the stable band) or
    already decided (one side at the clear threshold close to the end).

    Args:
        config: Signal configuration
        up_price: Current Up sell price
        down_price: Current Down sell price
        time_remaining: Seconds left in the current market
    """
    if not config.enabled:
        return MarketSignal.GOOD
    if not (_valid_price(up_price) and _valid_price(down_price)):
        return MarketSignal.UNKNOWN

    stable = all(config.stable_min <= p <= config.stable_max for p in (up_price, down_price))
    if stable:
        return MarketSignal.GOOD

    near_close = time_remaining <= config.clear_remaining_mins * 60
    if near_close and max(up_price, down_price) >= config.clear_threshold:
        return MarketSignal.GOOD

    return MarketSignal.BAD


def is_danger_signal(config: SignalConfig, price: float) -> bool:
    """True when a one-sided holding has collapsed to the danger price."""
    return config.enabled and price <= config.danger_price
