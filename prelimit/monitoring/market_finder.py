"""Market discovery for periodic Up/Down markets.

Period boundaries are computed in the exchange's local calendar (US Eastern)
and expressed as Unix timestamps. All functions here are pure apart from
MarketDiscovery, which talks to the exchange.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from ..config import Timeframe

if TYPE_CHECKING:
    from ..client.exchange import PolymarketExchange
    from ..client.types import Market

log = structlog.get_logger()

EXCHANGE_TIMEZONE = "America/New_York"

ASSET_TO_SLUG = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "xrp",
}


class MarketDiscoveryError(LookupError):
    """A market lacks one of its outcome tokens."""


def period_start(
    timestamp: float,
    timeframe: Timeframe = Timeframe.M15,
    tz_name: str = EXCHANGE_TIMEZONE,
) -> int:
    """Floor a timestamp to the start of its market period.

    15m periods start at :00, :15, :30 and :45; hourly periods on the hour,
    both in the exchange-local calendar.
    """
    local = datetime.fromtimestamp(int(timestamp), tz=ZoneInfo(tz_name))
    if timeframe is Timeframe.M15:
        floored = local.replace(minute=(local.minute // 15) * 15, second=0, microsecond=0)
    else:
        floored = local.replace(minute=0, second=0, microsecond=0)
    return int(floored.timestamp())


def current_period_start(
    timeframe: Timeframe = Timeframe.M15,
    tz_name: str = EXCHANGE_TIMEZONE,
    now: Optional[float] = None,
) -> int:
    """Start of the period containing now."""
    if now is None:
        now = datetime.now(timezone.utc).timestamp()
    return period_start(now, timeframe, tz_name)


def build_15m_slug(asset: str, period_start_ts: int) -> str:
    """15m market slug, e.g. btc-updown-15m-1760000400."""
    return f"{asset.lower()}-updown-15m-{period_start_ts}"


def build_1h_slug(asset: str, period_start_ts: int, tz_name: str = EXCHANGE_TIMEZONE) -> str:
    """Hourly market slug, e.g. bitcoin-up-or-down-october-18-3pm-et."""
    asset_slug = ASSET_TO_SLUG.get(asset.upper(), asset.lower())
    local = datetime.fromtimestamp(period_start_ts, tz=ZoneInfo(tz_name))
    hour12 = local.hour % 12 or 12
    am_pm = "am" if local.hour < 12 else "pm"
    month = local.strftime("%B").lower()
    return f"{asset_slug}-up-or-down-{month}-{local.day}-{hour12}{am_pm}-et"


def build_slug(
    asset: str,
    period_start_ts: int,
    timeframe: Timeframe = Timeframe.M15,
    tz_name: str = EXCHANGE_TIMEZONE,
) -> str:
    if timeframe is Timeframe.M15:
        return build_15m_slug(asset, period_start_ts)
    return build_1h_slug(asset, period_start_ts, tz_name)


def classify_outcome(outcome: str) -> Optional[str]:
    """Map an outcome label to "UP" or "DOWN"."""
    label = outcome.strip().upper()
    if "UP" in label or label == "1":
        return "UP"
    if "DOWN" in label or label == "0":
        return "DOWN"
    return None


def split_market_tokens(market: "Market") -> Tuple[str, str]:
    """(up_token_id, down_token_id) for a market.

    Raises:
        MarketDiscoveryError: If either side is absent
    """
    up_token = None
    down_token = None
    for token in market.tokens:
        side = classify_outcome(token.outcome)
        if side == "UP":
            up_token = token.token_id
        elif side == "DOWN":
            down_token = token.token_id

    if not up_token:
        raise MarketDiscoveryError(f"Up token not found for {market.condition_id[:16]}")
    if not down_token:
        raise MarketDiscoveryError(f"Down token not found for {market.condition_id[:16]}")
    return up_token, down_token


class MarketDiscovery:
    """Resolves asset + period to a live market and its outcome tokens."""

    def __init__(
        self,
        exchange: "PolymarketExchange",
        timeframe: Timeframe = Timeframe.M15,
        tz_name: str = EXCHANGE_TIMEZONE,
    ):
        self.exchange = exchange
        self.timeframe = timeframe
        self.tz_name = tz_name

    def slug(self, asset: str, period_start_ts: int) -> str:
        return build_slug(asset, period_start_ts, self.timeframe, self.tz_name)

    def current_period_start(self, now: Optional[float] = None) -> int:
        return current_period_start(self.timeframe, self.tz_name, now)

    async def find_market(self, asset: str, period_start_ts: int) -> Optional["Market"]:
        """The open market for an asset's period, or None if missing or closed."""
        slug = self.slug(asset, period_start_ts)
        try:
            market = await self.exchange.get_market_by_slug(slug)
        except Exception as e:
            log.debug("Failed to find market", slug=slug, error=str(e))
            return None
        if not market.is_open:
            log.debug("Market not open", slug=slug, active=market.active, closed=market.closed)
            return None
        return market

    async def get_market_tokens(self, condition_id: str) -> Tuple[str, str]:
        """(up_token_id, down_token_id) from the CLOB market record."""
        market = await self.exchange.get_market(condition_id)
        return split_market_tokens(market)
