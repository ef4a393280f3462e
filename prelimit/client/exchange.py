"""Single exchange facade over the CLOB, Gamma/Data API and CTF clients."""

from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..config import PolymarketSettings
from .ctf import CTFClient, CTFError, index_sets_for_outcome
from .gamma import GammaClient
from .polymarket import PolymarketClient
from .types import Market, OrderRequest, OrderResponse

log = structlog.get_logger()


class PolymarketExchange:
    """Everything the strategy needs from Polymarket, behind one object."""

    def __init__(
        self,
        settings: PolymarketSettings,
        clob: Optional[PolymarketClient] = None,
        gamma: Optional[GammaClient] = None,
        ctf: Optional[CTFClient] = None,
    ):
        self.settings = settings
        self.clob = clob or PolymarketClient(settings)
        self.gamma = gamma or GammaClient(
            base_url=settings.gamma_api_url,
            data_api_url=settings.data_api_url,
            http_proxy=settings.http_proxy,
        )
        if ctf is None and settings.private_key:
            ctf = CTFClient(rpc_url=settings.polygon_rpc_url, private_key=settings.private_key)
        self.ctf = ctf

    async def connect(self) -> bool:
        return await self.clob.connect()

    async def authenticate(self) -> None:
        await self.clob.authenticate()

    async def close(self) -> None:
        await self.gamma.close()
        await self.clob.disconnect()

    async def get_market(self, condition_id: str) -> Market:
        return await self.clob.get_market(condition_id)

    async def get_market_by_slug(self, slug: str) -> Market:
        return await self.gamma.get_market_by_slug(slug)

    async def get_price(self, token_id: str, side: str = "SELL") -> float:
        return await self.clob.get_price(token_id, side)

    async def place_order(self, request: OrderRequest) -> OrderResponse:
        return await self.clob.place_order(request)

    async def place_market_order(
        self,
        token_id: str,
        size: float,
        side: str,
        limit: Optional[float] = None,
    ) -> Dict[str, Any]:
        return await self.clob.place_market_order(token_id, size, side, limit)

    async def cancel_order(self, order_id: str) -> Dict[str, Any]:
        return await self.clob.cancel_order(order_id)

    async def are_both_orders_filled(self, up_order_id: str, down_order_id: str) -> Tuple[bool, bool]:
        return await self.clob.are_both_orders_filled(up_order_id, down_order_id)

    async def redeem_tokens(self, condition_id: str, token_id: str, outcome: str) -> str:
        """Redeem a resolved condition.

        Returns:
            Transaction hash

        Raises:
            CTFError: If no signer is configured or the redemption fails
        """
        if self.ctf is None:
            raise CTFError("Redemption requires a private key")
        result = await self.ctf.redeem_positions(condition_id, index_sets_for_outcome(outcome))
        if not result.success:
            error = result.error or "Redemption failed"
            if result.tx_hash:
                error = f"{error} (tx {result.tx_hash})"
            raise CTFError(error)
        log.info(
            "Redeemed position",
            condition_id=condition_id[:16] + "...",
            token_id=token_id[:16] + "..." if token_id else None,
            outcome=outcome,
            tx_hash=result.tx_hash,
        )
        return result.tx_hash

    async def get_redeemable_positions(self, wallet_address: str) -> List[str]:
        return await self.gamma.get_redeemable_positions(wallet_address)
