"""Shared pytest fixtures for pre-limit bot tests.

This file provides common fixtures used across all test modules:
- Mock exchange and clock
- Configuration factory
- Strategy, ledger and reconciler wired to the mocks
"""

from typing import Callable

import pytest

from prelimit.config import AppConfig, PolymarketSettings, SignalConfig, StrategyConfig
from prelimit.settlement import RedemptionReconciler
from prelimit.state import TradingLedger
from prelimit.strategies.prelimit import PreLimitStrategy
from tests.fixtures.mock_exchange import PERIOD, FakeClock, MockExchange


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    """Clock parked one minute into PERIOD."""
    return FakeClock(PERIOD + 60)


@pytest.fixture
def exchange() -> MockExchange:
    """Create a fresh MockExchange for each test."""
    mock = MockExchange()
    yield mock
    mock.reset()


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def make_config() -> Callable[..., AppConfig]:
    """Factory for AppConfig with a single BTC market and overridable fields.

    Keyword arguments go to StrategyConfig; pass signal=dict(...) for SignalConfig.
    """

    def _make(signal=None, **overrides) -> AppConfig:
        strategy_values = {"markets": ["BTC"], "simulation_mode": False}
        strategy_values.update(overrides)
        strategy = StrategyConfig(**strategy_values)
        if signal:
            strategy.signal = SignalConfig(**signal)
        strategy.validate()
        return AppConfig(polymarket=PolymarketSettings(private_key=""), strategy=strategy)

    return _make


@pytest.fixture
def config(make_config) -> AppConfig:
    return make_config()


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def ledger() -> TradingLedger:
    return TradingLedger()


@pytest.fixture
def make_strategy(exchange, ledger, clock) -> Callable[[AppConfig], PreLimitStrategy]:
    def _make(app_config: AppConfig) -> PreLimitStrategy:
        return PreLimitStrategy(exchange, app_config, ledger=ledger, clock=clock)

    return _make


@pytest.fixture
def strategy(make_strategy, config) -> PreLimitStrategy:
    return make_strategy(config)


@pytest.fixture
def make_reconciler(exchange, ledger, clock) -> Callable[[AppConfig], RedemptionReconciler]:
    def _make(app_config: AppConfig) -> RedemptionReconciler:
        return RedemptionReconciler(exchange, ledger, app_config.strategy, clock=clock)

    return _make
