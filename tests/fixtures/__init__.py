"""Test fixtures for the pre-limit order bot tests.

This package provides:
- MockExchange, a controllable exchange test double
- FakeClock, an injectable clock for period arithmetic
"""

from .mock_exchange import DURATION, PERIOD, FakeClock, MethodCall, MockExchange

__all__ = ["DURATION", "PERIOD", "FakeClock", "MethodCall", "MockExchange"]
