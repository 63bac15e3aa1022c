"""Test helpers for spot-autopilot test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    FixedClock,
    flat_then_declining,
    make_candles,
    trending,
)
from tests.helpers.oracle_stubs import decision_json, recommendations_json, reflection_json

__all__ = [
    "FakeExchange",
    "FixedClock",
    "decision_json",
    "flat_then_declining",
    "make_candles",
    "recommendations_json",
    "reflection_json",
    "trending",
]
