"""Polymarket CLOB client wrapper."""

import asyncio
from typing import Any, Dict, Optional, Tuple

import structlog
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, MarketOrderArgs, OrderArgs, OrderType
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from ..config import PolymarketSettings
from .types import Market, OrderRequest, OrderResponse, OrderSide

log = structlog.get_logger()

POLYGON_CHAIN_ID = 137


class ExchangeError(Exception):
    """A CLOB request failed."""


class AuthenticationError(ExchangeError):
    """API credentials could not be derived or were rejected."""


class PolymarketClient:
    """Async wrapper around the synchronous py-clob-client.

    Every call runs in a worker thread so the event loop stays free while the
    request is in flight.
    """

    def __init__(self, settings: PolymarketSettings):
        """Initialize the Polymarket client.

        Args:
            settings: Polymarket configuration settings
        """
        self.settings = settings
        self._client: Optional[ClobClient] = None
        self._connected = False
        self._authenticated = False

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._connected and self._client is not None

    def _ensure_connected(self) -> None:
        """Ensure client is connected, raise if not."""
        if not self.is_connected:
            raise ExchangeError("Client not connected. Call connect() first.")

    async def _call(self, description: str, func, *args, **kwargs) -> Any:
        self._ensure_connected()
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ExchangeError:
            raise
        except Exception as e:
            raise ExchangeError(f"{description} failed: {e}") from e

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> bool:
        """Establish connection to Polymarket CLOB.

        Returns:
            True if connection successful
        """
        return await asyncio.to_thread(self._connect_sync)

    def _connect_sync(self) -> bool:
        try:
            self._client = ClobClient(
                host=self.settings.clob_http_url,
                key=self.settings.private_key or None,
                chain_id=POLYGON_CHAIN_ID,
                signature_type=self.settings.signature_type,
                funder=self.settings.proxy_wallet or None,
            )

            if self.settings.api_key:
                creds = ApiCreds(
                    api_key=self.settings.api_key,
                    api_secret=self.settings.api_secret,
                    api_passphrase=self.settings.api_passphrase,
                )
                self._client.set_api_creds(creds)
                self._authenticated = True

            self._client.get_ok()
            self._connected = True
            log.info("Connected to Polymarket CLOB", host=self.settings.clob_http_url)
            return True

        except Exception as e:
            log.error("Failed to connect to Polymarket", error=str(e))
            self._connected = False
            return False

    async def authenticate(self) -> None:
        """Derive (or create) L2 API credentials from the private key.

        Raises:
            AuthenticationError: If no private key is configured or derivation fails
        """
        if not self.settings.private_key:
            raise AuthenticationError("No private key configured")
        if self._authenticated:
            return

        def derive() -> ApiCreds:
            creds = self._client.create_or_derive_api_creds()
            self._client.set_api_creds(creds)
            return creds

        try:
            await self._call("Credential derivation", derive)
        except ExchangeError as e:
            raise AuthenticationError(str(e)) from e

        self._authenticated = True
        log.info("Derived API credentials successfully")

    async def disconnect(self) -> None:
        """Disconnect from Polymarket."""
        self._connected = False
        self._authenticated = False
        self._client = None
        log.info("Disconnected from Polymarket CLOB")

    # =========================================================================
    # L0 Methods (Public, no auth required)
    # =========================================================================

    async def get_market(self, condition_id: str) -> Market:
        """Get specific market by condition ID."""
        raw = await self._call("get_market", self._client.get_market, condition_id)
        return Market.from_clob(raw)

    async def get_price(self, token_id: str, side: str = "SELL") -> float:
        """Get current price for a token.

        Args:
            token_id: Outcome token ID
            side: "BUY" or "SELL"

        Returns:
            Current price (0.0 to 1.0)

        Raises:
            ExchangeError: If the request fails or the price is unparseable
        """
        raw = await self._call("get_price", self._client.get_price, token_id, side.upper())
        value = raw.get("price") if isinstance(raw, dict) else raw
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ExchangeError(f"Unparseable price for {token_id[:16]}: {raw!r}")

    # =========================================================================
    # L2 Methods (Authenticated, requires API credentials)
    # =========================================================================

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_not_exception_type(AuthenticationError),
        reraise=True,
    )
    async def place_order(self, request: OrderRequest) -> OrderResponse:
        """Place a GTC limit order."""
        log.info(
            "Placing limit order",
            token_id=request.token_id[:16] + "...",
            side=request.side.value,
            price=f"{request.price:.2f}",
            size=request.size,
        )
        order_args = OrderArgs(
            token_id=request.token_id,
            price=request.price,
            size=request.size,
            side=request.side.value,
        )
        order_type = OrderType.FOK if request.order_type == "FOK" else OrderType.GTC

        def submit() -> Dict[str, Any]:
            # create_order only signs; the order executes once posted
            signed_order = self._client.create_order(order_args)
            return self._client.post_order(signed_order, order_type)

        result = await self._call("place_order", submit)
        response = OrderResponse.from_api(result or {})
        if not result or result.get("success") is False or not response.order_id:
            raise ExchangeError(f"Order rejected: {result}")
        log.info("Order posted", order_id=response.order_id, status=response.status)
        return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def place_market_order(
        self,
        token_id: str,
        size: float,
        side: str,
        limit: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Execute a fill-or-kill market order.

        Args:
            token_id: Outcome token ID
            size: Shares for SELL, dollars for BUY
            side: "BUY" or "SELL"
            limit: Optional worst acceptable price
        """
        side = OrderSide(side.upper())
        log.info(
            "Placing market order",
            token_id=token_id[:16] + "...",
            side=side.value,
            size=size,
            limit=limit,
        )
        kwargs = {"token_id": token_id, "amount": size, "side": side.value}
        if limit is not None:
            kwargs["price"] = limit
        order_args = MarketOrderArgs(**kwargs)

        def submit() -> Dict[str, Any]:
            signed_order = self._client.create_market_order(order_args)
            return self._client.post_order(signed_order, OrderType.FOK)

        result = await self._call("place_market_order", submit)
        if not result or result.get("success") is False:
            raise ExchangeError(f"Market order rejected: {result}")
        log.info("Market order posted", result=result)
        return result

    async def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """Cancel an open order."""
        log.info("Cancelling order", order_id=order_id)
        return await self._call("cancel_order", self._client.cancel, order_id)

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        """Get an order's current state."""
        return await self._call("get_order", self._client.get_order, order_id)

    async def is_order_filled(self, order_id: str) -> bool:
        """An order is filled once it is MATCHED or its matched size covers its original size."""
        order = await self.get_order(order_id)
        if not order:
            raise ExchangeError(f"Order {order_id} not found")
        status = str(order.get("status", "")).upper()
        if status in ("MATCHED", "FILLED"):
            return True
        try:
            original = float(order.get("original_size") or 0)
            matched = float(order.get("size_matched") or 0)
        except (TypeError, ValueError):
            return False
        return original > 0 and matched >= original

    async def are_both_orders_filled(self, up_order_id: str, down_order_id: str) -> Tuple[bool, bool]:
        """Check both legs of a pair concurrently."""
        up_filled, down_filled = await asyncio.gather(
            self.is_order_filled(up_order_id),
            self.is_order_filled(down_order_id),
        )
        return up_filled, down_filled
