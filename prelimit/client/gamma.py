"""Gamma and Data API clients for market metadata and wallet positions."""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from .types import Market

log = structlog.get_logger()


class MarketNotFoundError(LookupError):
    """No market exists for the requested slug."""


class GammaClient:
    """Client for Polymarket's Gamma API (market metadata) and Data API (positions)."""

    def __init__(
        self,
        base_url: str = "https://gamma-api.polymarket.com",
        data_api_url: str = "https://data-api.polymarket.com",
        http_proxy: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the Gamma client.

        Args:
            base_url: Gamma API base URL
            data_api_url: Data API base URL (wallet positions)
            http_proxy: Optional HTTP proxy URL (e.g., http://gluetun:8888)
            client: Optional preconfigured httpx client
        """
        self.base_url = base_url.rstrip("/")
        self.data_api_url = data_api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0, proxy=http_proxy)

        if http_proxy:
            log.info("GammaClient using HTTP proxy", proxy=http_proxy)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def get_market_by_slug(self, slug: str) -> Market:
        """Get a market by its slug.

        Raises:
            MarketNotFoundError: If no market has this slug
            httpx.HTTPError: On transport or server errors
        """
        response = await self._client.get(
            f"{self.base_url}/markets",
            params={"slug": slug},
        )
        response.raise_for_status()
        data = response.json()
        markets: List[Dict[str, Any]] = data if isinstance(data, list) else [data]
        for raw in markets:
            if raw and raw.get("slug", slug) == slug and raw.get("conditionId"):
                return Market.from_gamma(raw)
        raise MarketNotFoundError(f"No market with slug {slug}")

    async def get_redeemable_positions(self, wallet_address: str) -> List[str]:
        """Condition IDs the wallet holds redeemable positions in.

        Returns:
            Unique condition IDs, in the order the API lists them
        """
        response = await self._client.get(
            f"{self.data_api_url}/positions",
            params={"user": wallet_address, "redeemable": "true", "limit": 500},
        )
        response.raise_for_status()
        condition_ids: List[str] = []
        for position in response.json() or []:
            condition_id = position.get("conditionId")
            if condition_id and condition_id not in condition_ids:
                condition_ids.append(condition_id)
        return condition_ids
