"""Prometheus metrics for the pre-limit order bot."""

from prometheus_client import Counter, Gauge, Info, start_http_server

# Bot info
BOT_INFO = Info("prelimit_bot", "Pre-limit order bot information")

# Order lifecycle
ORDERS_PLACED_TOTAL = Counter(
    "prelimit_orders_placed_total",
    "Limit orders placed",
    ["asset", "side", "placement"],
)

ORDER_FILLS_TOTAL = Counter(
    "prelimit_order_fills_total",
    "Order legs detected as filled",
    ["asset", "side", "source"],
)

EARLY_EXITS_TOTAL = Counter(
    "prelimit_early_exits_total",
    "One-sided positions exited early",
    ["asset", "reason"],
)

SELL_OPPOSITE_TOTAL = Counter(
    "prelimit_sell_opposite_total",
    "Losing sides sold after both legs filled",
    ["asset"],
)

TICK_ERRORS_TOTAL = Counter(
    "prelimit_tick_errors_total",
    "Errors while processing an asset tick",
    ["asset"],
)

# Reconciliation
MARKETS_RECONCILED_TOTAL = Counter(
    "prelimit_markets_reconciled_total",
    "Resolved markets reconciled",
    ["winner"],
)

REDEMPTIONS_TOTAL = Counter(
    "prelimit_redemptions_total",
    "Redemption attempts",
    ["result"],
)

# P&L
TOTAL_PROFIT_USD = Gauge(
    "prelimit_total_profit_usd",
    "All-time realized profit in USD",
)

PERIOD_PROFIT_USD = Gauge(
    "prelimit_period_profit_usd",
    "Realized profit from resolved markets in USD",
)

TRACKED_ORDER_STATES = Gauge(
    "prelimit_tracked_order_states",
    "Assets with a live order pair",
)

PENDING_RECONCILIATION = Gauge(
    "prelimit_pending_reconciliation",
    "Positions waiting for market resolution",
)


def init_metrics(version: str, simulation_mode: bool, port: int = 0) -> None:
    """Set bot info and start the exposition endpoint when a port is given."""
    BOT_INFO.info({
        "version": version,
        "simulation_mode": str(simulation_mode).lower(),
    })
    if port > 0:
        start_http_server(port)
