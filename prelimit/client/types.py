"""Polymarket types shared by the clients and the strategy."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderSide(str, Enum):
    """Side of an order (buy or sell)."""

    BUY = "BUY"
    SELL = "SELL"


@dataclass
class MarketToken:
    """One outcome token of a market."""

    token_id: str
    outcome: str
    price: Optional[float] = None
    winner: bool = False


@dataclass
class Market:
    """A two-outcome market as reported by the CLOB or Gamma API."""

    condition_id: str
    slug: str = ""
    question: str = ""
    active: bool = True
    closed: bool = False
    tokens: List[MarketToken] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.active and not self.closed

    def winning_token_ids(self) -> List[str]:
        return [t.token_id for t in self.tokens if t.winner]

    @classmethod
    def from_clob(cls, raw: Dict[str, Any]) -> "Market":
        """Parse a CLOB /markets/{condition_id} payload."""
        tokens = [
            MarketToken(
                token_id=str(t.get("token_id", "")),
                outcome=str(t.get("outcome", "")),
                price=_to_float(t.get("price")),
                winner=bool(t.get("winner", False)),
            )
            for t in raw.get("tokens") or []
        ]
        return cls(
            condition_id=raw.get("condition_id", ""),
            slug=raw.get("market_slug", ""),
            question=raw.get("question", ""),
            active=bool(raw.get("active", False)),
            closed=bool(raw.get("closed", False)),
            tokens=tokens,
        )

    @classmethod
    def from_gamma(cls, raw: Dict[str, Any]) -> "Market":
        """Parse a Gamma /markets payload.

        Gamma encodes outcomes and token ids as JSON strings.
        """
        outcomes = _json_list(raw.get("outcomes"))
        token_ids = _json_list(raw.get("clobTokenIds"))
        prices = _json_list(raw.get("outcomePrices"))
        tokens = []
        for i, token_id in enumerate(token_ids):
            tokens.append(
                MarketToken(
                    token_id=str(token_id),
                    outcome=str(outcomes[i]) if i < len(outcomes) else "",
                    price=_to_float(prices[i]) if i < len(prices) else None,
                )
            )
        return cls(
            condition_id=raw.get("conditionId", ""),
            slug=raw.get("slug", ""),
            question=raw.get("question", ""),
            active=bool(raw.get("active", False)),
            closed=bool(raw.get("closed", False)),
            tokens=tokens,
        )


@dataclass
class OrderRequest:
    """A limit order to place on the CLOB."""

    token_id: str
    side: OrderSide
    size: float
    price: float
    order_type: str = "GTC"


@dataclass
class OrderResponse:
    """Result of an order placement."""

    order_id: Optional[str]
    status: str
    message: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "OrderResponse":
        return cls(
            order_id=raw.get("orderID") or raw.get("orderId") or raw.get("id"),
            status=str(raw.get("status", "")).upper(),
            message=raw.get("errorMsg") or None,
        )


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _json_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []
