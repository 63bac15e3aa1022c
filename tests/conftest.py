"""
Pytest configuration and fixtures for spot-autopilot tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from datetime import datetime, timezone

import pytest

from tests.helpers import FakeExchange, FixedClock


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from pathlib import Path

    from infra.metrics import MetricsRecorder

    # CRITICAL: Cleanup lock file before test (prevents "instance already running" errors)
    lock_file = Path("data/spot-autopilot.pid")
    if lock_file.exists():
        lock_file.unlink()

    # CRITICAL: Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()
    if lock_file.exists():
        lock_file.unlink()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def state_store(tmp_path, clock):
    from infra.state_store import StateStore

    return StateStore(state_file=str(tmp_path / "state.json"), clock=clock)


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def policy():
    return {
        "risk": {
            "max_trade_usd": 20.0,
            "daily_loss_limit_usd": 10.0,
            "max_positions": 5,
            "concentration_limit_pct": 50.0,
        },
        "decision": {"confidence_threshold": 70.0, "reflection_enabled": True},
        "circuit_breakers": {
            "max_consecutive_errors": 3,
            "cooldown_seconds": 1800,
            "volatility_threshold_pct": 5.0,
            "volatility_interval": "5m",
        },
    }
