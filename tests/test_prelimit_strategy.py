"""Tests for the per-asset tick of PreLimitStrategy.

Covers:
- Pre-placement for the next period (and when it is skipped)
- Sell-opposite once both legs fill
- One-sided early exits by price and by time, live and simulated
- Expiry and registration for reconciliation
- Mid-market placement
- Failure isolation between assets
"""

import asyncio

import pytest

from prelimit.client.types import OrderSide
from prelimit.state import OrderState
from tests.fixtures.mock_exchange import DURATION, PERIOD

NEXT_PERIOD = PERIOD + DURATION


def state_for(market, period_start=PERIOD, **overrides) -> OrderState:
    """OrderState for a mock market's tokens with live-looking order ids."""
    up_token, down_token = market.tokens[0].token_id, market.tokens[1].token_id
    values = dict(
        asset="BTC",
        condition_id=market.condition_id,
        up_token_id=up_token,
        down_token_id=down_token,
        up_order_id="up-order",
        down_order_id="down-order",
        up_order_price=0.45,
        down_order_price=0.45,
        expiry=period_start + DURATION,
        order_placed_at=period_start - 120,
        market_period_start=period_start,
    )
    values.update(overrides)
    return OrderState(**values)


# =============================================================================
# Step 1: pre-placement
# =============================================================================

class TestPrePlacement:

    @pytest.mark.asyncio
    async def test_places_pair_for_next_period(self, strategy, exchange, ledger, clock):
        """Lead time 3min, good signal, limit 0.45, 5 shares."""
        clock.set(NEXT_PERIOD - 120)
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        next_market = exchange.add_market("BTC", NEXT_PERIOD)

        await strategy.process_asset("BTC", PERIOD)

        assert len(exchange.placed_orders) == 2
        for order, token in zip(exchange.placed_orders, next_market.tokens):
            assert order.token_id == token.token_id
            assert order.side is OrderSide.BUY
            assert order.price == 0.45
            assert order.size == 5.0

        state = await ledger.get_order_state("BTC")
        assert state.condition_id == next_market.condition_id
        assert state.expiry == NEXT_PERIOD + DURATION
        assert state.market_period_start == NEXT_PERIOD
        assert state.order_placed_at == NEXT_PERIOD - 120
        assert (state.up_order_id, state.down_order_id) == ("order-1", "order-2")
        assert not (state.up_matched or state.down_matched or state.merged or state.risk_sold)

    @pytest.mark.asyncio
    async def test_simulation_fakes_orders(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(simulation_mode=True))
        clock.set(NEXT_PERIOD - 120)
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        exchange.add_market("BTC", NEXT_PERIOD)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.call_count("place_order") == 0
        state = await ledger.get_order_state("BTC")
        assert state.up_order_id.startswith("SIM-BUY-")
        assert state.down_order_id.startswith("SIM-BUY-")

    @pytest.mark.asyncio
    async def test_bad_signal_skips(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 120)
        exchange.add_market("BTC", PERIOD, up_price=0.80, down_price=0.20)
        exchange.add_market("BTC", NEXT_PERIOD)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        assert await ledger.get_order_state("BTC") is None

    @pytest.mark.asyncio
    async def test_unknown_signal_skips(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 120)
        exchange.add_market("BTC", NEXT_PERIOD)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        assert await ledger.get_order_state("BTC") is None

    @pytest.mark.asyncio
    async def test_next_market_missing(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 120)
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        assert await ledger.get_order_state("BTC") is None

    @pytest.mark.asyncio
    async def test_outside_lead_window_does_nothing(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 181)
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        exchange.add_market("BTC", NEXT_PERIOD)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []

    @pytest.mark.asyncio
    async def test_next_period_already_prepared(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 60)
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        next_market = exchange.add_market("BTC", NEXT_PERIOD)
        await ledger.put_order_state(state_for(next_market, period_start=NEXT_PERIOD))

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        # Fills are not checked before the market opens
        assert exchange.call_count("are_both_orders_filled") == 0

    @pytest.mark.asyncio
    async def test_open_one_sided_fill_blocks_pre_placement(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 120)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        exchange.add_market("BTC", NEXT_PERIOD)
        await ledger.put_order_state(state_for(market, up_matched=True, one_side_matched_at=PERIOD + 10))
        exchange.set_fills("up-order", True)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        state = await ledger.get_order_state("BTC")
        assert state.condition_id == market.condition_id
        assert state.up_matched and not state.risk_sold

    @pytest.mark.asyncio
    async def test_hedged_pair_replaced_before_expiry_is_registered(self, strategy, exchange, ledger, clock):
        clock.set(NEXT_PERIOD - 120)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        next_market = exchange.add_market("BTC", NEXT_PERIOD)
        await ledger.put_order_state(state_for(market, up_matched=True, down_matched=True))

        await strategy.process_asset("BTC", PERIOD)

        assert (await ledger.get_order_state("BTC")).condition_id == next_market.condition_id
        trades = await ledger.pending_trades()
        assert [t.condition_id for t in trades] == [market.condition_id]
        assert trades[0].up_shares == trades[0].down_shares == 5.0


# =============================================================================
# Step 2: both legs filled
# =============================================================================

class TestSellOpposite:

    @pytest.mark.asyncio
    async def test_sells_losing_side_late_in_period(self, strategy, exchange, ledger, clock):
        """Both filled at 0.45, Up at 0.97 with 10min left sells Down."""
        clock.set(PERIOD + DURATION - 600)
        market = exchange.add_market("BTC", PERIOD, up_price=0.97, down_price=0.03)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)
        exchange.set_fills("down-order", True)

        await strategy.process_asset("BTC", PERIOD)

        down_token = market.tokens[1].token_id
        assert exchange.market_orders == [(down_token, 5.0, "SELL")]
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.03) * 5)
        assert await ledger.get_period_profit() == 0.0

        state = await ledger.get_order_state("BTC")
        assert state.both_matched and state.merged
        assert not state.risk_sold

        trades = await ledger.pending_trades()
        assert len(trades) == 1
        assert trades[0].up_shares == 5.0
        assert trades[0].down_shares == 0.0
        assert trades[0].up_avg_price == 0.45

    @pytest.mark.asyncio
    async def test_holds_when_too_early(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(sell_opposite_time_remaining=10))
        clock.set(PERIOD + 60)
        market = exchange.add_market("BTC", PERIOD, up_price=0.97, down_price=0.03)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)
        exchange.set_fills("down-order", True)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        state = await ledger.get_order_state("BTC")
        assert state.both_matched and not state.merged

    @pytest.mark.asyncio
    async def test_holds_both_below_threshold(self, strategy, exchange, ledger, clock):
        clock.set(PERIOD + DURATION - 300)
        market = exchange.add_market("BTC", PERIOD, up_price=0.60, down_price=0.40)
        await ledger.put_order_state(state_for(market, up_matched=True, down_matched=True))
        exchange.set_fills("up-order", True)
        exchange.set_fills("down-order", True)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        assert not (await ledger.get_order_state("BTC")).merged
        assert await ledger.pending_trades() == []

    @pytest.mark.asyncio
    async def test_simulation_books_loss_without_selling(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(simulation_mode=True))
        clock.set(PERIOD + DURATION - 300)
        market = exchange.add_market("BTC", PERIOD, up_price=0.04, down_price=0.96)
        await ledger.put_order_state(
            state_for(market, up_order_id="SIM-BUY-1", down_order_id="SIM-BUY-2", up_matched=True, down_matched=True)
        )

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.04) * 5)
        assert (await ledger.get_order_state("BTC")).merged
        assert await ledger.pending_trades() == []


# =============================================================================
# Step 2: one-sided early exit
# =============================================================================

class TestDangerExit:

    @pytest.mark.asyncio
    async def test_price_mode_sells_matched_side_and_cancels_other(self, strategy, exchange, ledger, clock):
        market = exchange.add_market("BTC", PERIOD, up_price=0.10, down_price=0.88)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)

        await strategy.process_asset("BTC", PERIOD)

        up_token = market.tokens[0].token_id
        assert exchange.market_orders == [(up_token, 5.0, "SELL")]
        assert exchange.cancelled == ["down-order"]
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.10) * 5)

        state = await ledger.get_order_state("BTC")
        assert state.risk_sold and state.merged
        assert state.one_side_matched_at == PERIOD + 60
        assert await ledger.pending_trades() == []

    @pytest.mark.asyncio
    async def test_price_mode_holds_above_danger(self, strategy, exchange, ledger, clock):
        market = exchange.add_market("BTC", PERIOD, up_price=0.30, down_price=0.70)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        state = await ledger.get_order_state("BTC")
        assert state.needs_danger_handling

    @pytest.mark.asyncio
    async def test_verification_aborts_exit_when_both_filled(self, strategy, exchange, ledger, clock):
        market = exchange.add_market("BTC", PERIOD, up_price=0.10, down_price=0.88)
        await ledger.put_order_state(state_for(market))
        exchange.queue_fill_results((True, False), (True, True))

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        assert exchange.cancelled == []
        state = await ledger.get_order_state("BTC")
        assert state.both_matched
        assert not state.merged and not state.risk_sold

    @pytest.mark.asyncio
    async def test_failed_sale_still_marks_exit(self, strategy, exchange, ledger, clock):
        market = exchange.add_market("BTC", PERIOD, up_price=0.10, down_price=0.88)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)
        exchange.fail("place_market_order")

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.cancelled == []
        assert await ledger.get_total_profit() == 0.0
        state = await ledger.get_order_state("BTC")
        assert state.risk_sold and state.merged

    @pytest.mark.asyncio
    async def test_cancel_failure_is_not_fatal(self, strategy, exchange, ledger, clock):
        market = exchange.add_market("BTC", PERIOD, up_price=0.88, down_price=0.05)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("down-order", True)
        exchange.fail("cancel_order")

        await strategy.process_asset("BTC", PERIOD)

        state = await ledger.get_order_state("BTC")
        assert state.risk_sold and state.merged
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.05) * 5)

    @pytest.mark.asyncio
    async def test_time_mode_in_simulation(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(
            simulation_mode=True,
            signal=dict(one_side_buy_risk_management="time", danger_time_passed=5),
        ))
        market = exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)
        await ledger.put_order_state(state_for(market, up_order_id="SIM-BUY-1", down_order_id="SIM-BUY-2"))

        await strategy.process_asset("BTC", PERIOD)
        state = await ledger.get_order_state("BTC")
        assert state.up_matched and not state.down_matched
        assert state.one_side_matched_at == PERIOD + 60

        clock.advance(299)
        await strategy.process_asset("BTC", PERIOD)
        assert not (await ledger.get_order_state("BTC")).risk_sold

        clock.advance(1)
        await strategy.process_asset("BTC", PERIOD)
        state = await ledger.get_order_state("BTC")
        assert state.risk_sold and state.merged
        assert exchange.market_orders == []
        assert exchange.cancelled == []
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.40) * 5)

    @pytest.mark.asyncio
    async def test_time_mode_live_sells_after_danger_time(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(one_side_buy_risk_management="time", danger_time_passed=5)))
        market = exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)

        await strategy.process_asset("BTC", PERIOD)
        assert (await ledger.get_order_state("BTC")).one_side_matched_at == PERIOD + 60

        clock.advance(299)
        await strategy.process_asset("BTC", PERIOD)
        assert exchange.market_orders == []

        clock.advance(1)
        await strategy.process_asset("BTC", PERIOD)

        up_token = market.tokens[0].token_id
        assert exchange.market_orders == [(up_token, 5.0, "SELL")]
        assert exchange.cancelled == ["down-order"]
        assert await ledger.get_total_profit() == pytest.approx(-(0.45 - 0.40) * 5)
        state = await ledger.get_order_state("BTC")
        assert state.risk_sold and state.merged

    @pytest.mark.asyncio
    async def test_time_mode_live_verification_aborts_exit(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(one_side_buy_risk_management="time", danger_time_passed=5)))
        market = exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)
        await ledger.put_order_state(state_for(market, up_matched=True, one_side_matched_at=PERIOD - 300))
        exchange.queue_fill_results((True, False), (True, True))

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.call_count("are_both_orders_filled") == 2
        assert exchange.market_orders == []
        assert exchange.cancelled == []
        state = await ledger.get_order_state("BTC")
        assert state.both_matched
        assert not state.merged and not state.risk_sold

    @pytest.mark.asyncio
    async def test_no_exit_when_mode_disabled(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(one_side_buy_risk_management="hold")))
        market = exchange.add_market("BTC", PERIOD, up_price=0.01, down_price=0.99)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.market_orders == []
        assert (await ledger.get_order_state("BTC")).needs_danger_handling


# =============================================================================
# Step 2: expiry
# =============================================================================

class TestExpiry:

    @pytest.mark.asyncio
    async def test_hedged_pair_registered_at_expiry(self, strategy, exchange, ledger, clock):
        clock.set(PERIOD + DURATION + 1)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        await ledger.put_order_state(state_for(market))
        exchange.set_fills("up-order", True)
        exchange.set_fills("down-order", True)

        await strategy.process_asset("BTC", NEXT_PERIOD)

        assert await ledger.get_order_state("BTC") is None
        trades = await ledger.pending_trades()
        assert len(trades) == 1
        assert trades[0].cost == pytest.approx(4.50)
        assert trades[0].market_end == PERIOD + DURATION

    @pytest.mark.asyncio
    async def test_state_kept_until_strictly_after_expiry(self, strategy, exchange, ledger, clock):
        clock.set(PERIOD + DURATION)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        await ledger.put_order_state(state_for(market))

        await strategy.process_asset("BTC", NEXT_PERIOD)

        assert await ledger.get_order_state("BTC") is not None

    @pytest.mark.asyncio
    async def test_simulation_does_not_register(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(simulation_mode=True))
        clock.set(PERIOD + DURATION + 1)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        await ledger.put_order_state(state_for(market, up_matched=True, down_matched=True))

        await strategy.process_asset("BTC", NEXT_PERIOD)

        assert await ledger.get_order_state("BTC") is None
        assert await ledger.pending_trades() == []

    @pytest.mark.asyncio
    async def test_risk_sold_state_cleared_without_registration(self, strategy, exchange, ledger, clock):
        clock.set(PERIOD + DURATION + 1)
        market = exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)
        await ledger.put_order_state(
            state_for(market, up_matched=True, down_matched=True, merged=True, risk_sold=True)
        )
        exchange.set_fills("up-order", True)
        exchange.set_fills("down-order", True)

        await strategy.process_asset("BTC", NEXT_PERIOD)

        assert await ledger.get_order_state("BTC") is None
        assert await ledger.pending_trades() == []


# =============================================================================
# Step 3: mid-market placement
# =============================================================================

class TestMidMarket:

    @pytest.mark.asyncio
    async def test_places_around_current_prices(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(danger_time_passed=5)))
        market = exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)

        await strategy.process_asset("BTC", PERIOD)

        assert [o.price for o in exchange.placed_orders] == [0.40, 0.58]
        state = await ledger.get_order_state("BTC")
        assert state.condition_id == market.condition_id
        assert (state.up_order_price, state.down_order_price) == (0.40, 0.58)
        assert state.market_period_start == PERIOD
        assert state.expiry == PERIOD + DURATION

    @pytest.mark.asyncio
    async def test_skipped_with_too_little_time(self, strategy, exchange, ledger, clock):
        """Default danger time (30min) exceeds what a 15m period has left."""
        exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        assert exchange.call_count("get_market_by_slug") == 0

    @pytest.mark.asyncio
    async def test_requires_more_than_danger_time_left(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(danger_time_passed=5)))
        exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)

        clock.set(PERIOD + DURATION - 300)
        await strategy.process_asset("BTC", PERIOD)
        assert exchange.placed_orders == []

        clock.set(PERIOD + DURATION - 301)
        await strategy.process_asset("BTC", PERIOD)
        assert len(exchange.placed_orders) == 2

    @pytest.mark.asyncio
    async def test_disabled(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(danger_time_passed=5, mid_market_enabled=False)))
        exchange.add_market("BTC", PERIOD, up_price=0.40, down_price=0.60)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []

    @pytest.mark.asyncio
    async def test_bad_signal(self, make_config, make_strategy, exchange, ledger, clock):
        strategy = make_strategy(make_config(signal=dict(danger_time_passed=5)))
        exchange.add_market("BTC", PERIOD, up_price=0.90, down_price=0.10)

        await strategy.process_asset("BTC", PERIOD)

        assert exchange.placed_orders == []
        assert await ledger.get_order_state("BTC") is None


# =============================================================================
# Orchestration
# =============================================================================

class TestProcessMarkets:

    @pytest.mark.asyncio
    async def test_failed_leg_cancels_first_and_other_assets_continue(
        self, make_config, make_strategy, exchange, ledger, clock
    ):
        strategy = make_strategy(make_config(markets=["BTC", "ETH"]))
        clock.set(NEXT_PERIOD - 120)
        for asset in ("BTC", "ETH"):
            exchange.add_market(asset, PERIOD, up_price=0.50, down_price=0.50)
        btc_next = exchange.add_market("BTC", NEXT_PERIOD)
        exchange.add_market("ETH", NEXT_PERIOD)
        exchange.fail_orders_for(btc_next.tokens[1].token_id)

        await strategy.process_markets()

        assert exchange.cancelled == ["order-1"]
        assert await ledger.get_order_state("BTC") is None
        eth_state = await ledger.get_order_state("ETH")
        assert eth_state is not None
        assert eth_state.market_period_start == NEXT_PERIOD

    @pytest.mark.asyncio
    async def test_run_stops(self, make_config, make_strategy, exchange, clock):
        strategy = make_strategy(make_config(check_interval_ms=0))
        exchange.add_market("BTC", PERIOD, up_price=0.50, down_price=0.50)

        task = asyncio.create_task(strategy.run())
        for _ in range(5):
            await asyncio.sleep(0)
        await strategy.stop()
        await asyncio.wait_for(task, timeout=1)

        assert not strategy.is_running
        # Initial status snapshot looked up the current market
        assert exchange.call_count("get_market_by_slug") >= 1
