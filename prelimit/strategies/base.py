"""Base strategy class for the order bot."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

import structlog

from ..config import AppConfig

if TYPE_CHECKING:
    from ..client.exchange import PolymarketExchange

log = structlog.get_logger()


class BaseStrategy(ABC):
    """Abstract base class for trading strategies."""

    def __init__(
        self,
        exchange: "PolymarketExchange",
        config: AppConfig,
    ):
        """Initialize strategy.

        Args:
            exchange: Polymarket exchange facade
            config: Application configuration
        """
        self.exchange = exchange
        self.config = config
        self._running = False

    @property
    def name(self) -> str:
        """Strategy name."""
        return self.__class__.__name__

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def start(self) -> None:
        """Start the strategy and run until stopped."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the strategy."""

    @abstractmethod
    async def process_markets(self) -> None:
        """Run one pass over every tracked market."""

    def log_trade(
        self,
        action: str,
        details: Dict[str, Any],
    ) -> None:
        """Log a trade action.

        Args:
            action: Trade action (e.g., "BUY", "SELL")
            details: Trade details
        """
        log.info(
            f"{self.name} trade",
            action=action,
            **details,
        )
