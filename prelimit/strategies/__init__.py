"""Trading strategies."""

from .base import BaseStrategy
from .prelimit import PreLimitStrategy
from .signals import MarketSignal, evaluate_place_signal, is_danger_signal

__all__ = [
    "BaseStrategy",
    "MarketSignal",
    "PreLimitStrategy",
    "evaluate_place_signal",
    "is_danger_signal",
]
