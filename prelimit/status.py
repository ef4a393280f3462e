"""Read-only status snapshots for operators.

Building a snapshot never touches order state; fill detection happens only in
the strategy tick.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .state import OrderState

Quote = Tuple[Optional[float], Optional[float]]


@dataclass(frozen=True)
class AssetStatus:
    """One line of the status display."""

    asset: str
    market_period: int
    seconds_remaining: int
    up_price: Optional[float]
    down_price: Optional[float]
    has_orders: bool
    up_matched: bool = False
    down_matched: bool = False
    merged: bool = False
    risk_sold: bool = False

    @property
    def time_label(self) -> str:
        remaining = max(self.seconds_remaining, 0)
        return f"{remaining // 60}m {remaining % 60}s"

    @property
    def orders_label(self) -> str:
        if not self.has_orders:
            return "No orders"
        up = "✓" if self.up_matched else "⏳"
        down = "✓" if self.down_matched else "⏳"
        label = f"Up:{up} Down:{down}"
        if self.risk_sold:
            label += " (risk sold)"
        elif self.merged:
            label += " (merged)"
        return label


def _price_label(price: Optional[float]) -> str:
    return f"${price:.2f}" if price is not None else "N/A"


def build_status_snapshot(
    assets: Iterable[str],
    states: Mapping[str, OrderState],
    quotes: Mapping[str, Quote],
    now: int,
    current_period: int,
    duration: int,
) -> List[AssetStatus]:
    """Project order states and quotes into display rows, in asset order."""
    rows = []
    for asset in assets:
        up_price, down_price = quotes.get(asset, (None, None))
        state = states.get(asset)
        if state is None:
            rows.append(
                AssetStatus(
                    asset=asset,
                    market_period=current_period,
                    seconds_remaining=current_period + duration - now,
                    up_price=up_price,
                    down_price=down_price,
                    has_orders=False,
                )
            )
            continue
        rows.append(
            AssetStatus(
                asset=asset,
                market_period=state.market_period_start,
                seconds_remaining=state.market_period_start + duration - now,
                up_price=up_price,
                down_price=down_price,
                has_orders=True,
                up_matched=state.up_matched,
                down_matched=state.down_matched,
                merged=state.merged,
                risk_sold=state.risk_sold,
            )
        )
    return rows


def render_status_line(row: AssetStatus) -> str:
    return (
        f"{row.asset} | Up: {_price_label(row.up_price)} | Down: {_price_label(row.down_price)} "
        f"| Time: {row.time_label} | Orders: {row.orders_label} | Market: {row.market_period}"
    )


def render_snapshot(rows: Iterable[AssetStatus], total_profit: float) -> List[str]:
    lines = [f"Market Status Update | Total Profit: ${total_profit:.2f}"]
    lines.extend(render_status_line(row) for row in rows)
    return lines


def summarize_profit(period_profit: float, total_profit: float) -> Dict[str, str]:
    return {"period": f"${period_profit:.2f}", "total": f"${total_profit:.2f}"}
