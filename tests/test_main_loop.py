"""
Tests for TradingLoop wiring and the command-line entry point.

The Binance connector is replaced with FakeExchange and the oracle with
the scripted mock provider, so nothing here touches the network.
"""
import os
from unittest.mock import patch

import pytest
import yaml

from core.exceptions import ConfigurationError
from runner import main_loop
from runner.main_loop import TradingLoop
from tests.helpers import FakeExchange


@pytest.fixture
def config_dir(tmp_path):
    app = {
        "app": {"mode": "paper", "pairs": ["BTCUSDT", "ETHUSDT"]},
        "model": {"spec": "mock:scripted"},
        "state": {
            "state_file": str(tmp_path / "data" / "state.json"),
            "log_dir": str(tmp_path / "logs"),
            "recommendations_file": str(tmp_path / "logs" / "recs.jsonl"),
            "lock_dir": str(tmp_path / "data"),
        },
        "control_api": {"enabled": False},
        "logging": {"file": str(tmp_path / "logs" / "bot.log")},
    }
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(app))
    (tmp_path / "policy.yaml").write_text(yaml.safe_dump({"risk": {"max_trade_usd": 15}}))
    return tmp_path


@pytest.fixture
def fake_exchange():
    exchange = FakeExchange()
    with patch("runner.main_loop.BinanceExchange", return_value=exchange):
        yield exchange


@pytest.fixture
def no_signals(monkeypatch):
    monkeypatch.setattr(main_loop.signal, "signal", lambda *args: None)


def _loop(config_dir, **kwargs):
    kwargs.setdefault("env", {})
    kwargs.setdefault("acquire_lock", False)
    return TradingLoop(config_dir=str(config_dir), configure_logging=False, **kwargs)


def test_wiring_follows_config(config_dir, fake_exchange):
    loop = _loop(config_dir)
    assert loop.mode == "PAPER"
    assert loop.scheduler.pairs == ["BTCUSDT", "ETHUSDT"]
    assert loop.executor.max_trade_usd == 15.0
    assert loop.risk_engine.max_trade_usd == 15.0
    assert loop.decision_engine.exchange is fake_exchange
    assert loop.control_server is None


def test_invalid_config_aborts(tmp_path, fake_exchange):
    (tmp_path / "app.yaml").write_text(yaml.safe_dump({"app": {"mode": "margin"}}))
    (tmp_path / "policy.yaml").write_text("{}")
    with pytest.raises(ConfigurationError):
        _loop(tmp_path)


def test_run_once_evaluates_held_symbols(config_dir, fake_exchange):
    loop = _loop(config_dir)
    with loop.state_store.transaction() as state:
        state["positions"]["BTCUSDT"] = {"quantity": 0.001, "avg_price": 40000.0}

    summary = loop.run_once()

    assert summary["fast"] == {"BTCUSDT": "hold"}
    assert summary["rebalance_trades"] == []
    assert summary["state"]["open_positions"] == 1
    assert [e["status"] for e in loop.trade_log.read()] == ["decision"]


def test_check_passes_in_paper_mode(config_dir, fake_exchange):
    assert _loop(config_dir).check() == []


def test_check_reports_problems(config_dir, fake_exchange):
    env = {"TRADING_MODE": "testnet", "BINANCE_API_KEY": "k", "BINANCE_API_SECRET": "s"}
    loop = _loop(config_dir, env=env)
    fake_exchange.fail["ping"] = RuntimeError("down")
    fake_exchange.fail["get_account_balances"] = main_loop.ExchangeError("Unauthorized", status=401)
    problems = loop.check()
    assert "Exchange ping failed" in problems
    assert any(p.startswith("Account check failed") for p in problems)


def test_persisted_emergency_stop_keeps_scheduler_down(config_dir, fake_exchange, no_signals):
    loop = _loop(config_dir)
    loop.state_store.set_emergency_stop(True)
    loop.request_shutdown()
    with patch.object(loop.scheduler, "start") as start:
        loop.run_forever()
    start.assert_not_called()


def test_run_forever_returns_on_shutdown(config_dir, fake_exchange, no_signals):
    loop = _loop(config_dir)
    loop.request_shutdown()
    loop.run_forever()
    assert not loop.scheduler.is_running()


def test_single_instance_lock(config_dir, fake_exchange):
    lock_file = config_dir / "data" / "spot-autopilot.pid"
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    # a live process that is not us
    lock_file.write_text(str(os.getppid()))
    with pytest.raises(ConfigurationError, match="already running"):
        _loop(config_dir, acquire_lock=True)

    lock_file.write_text("not-a-pid")
    loop = _loop(config_dir, acquire_lock=True)
    assert lock_file.read_text() == str(os.getpid())
    loop.close()
    assert not lock_file.exists()


def test_main_exit_codes(config_dir, fake_exchange):
    assert main_loop.main(["--check", "--config-dir", str(config_dir)]) == 0
    assert main_loop.main(["--once", "--config-dir", str(config_dir)]) == 0
    assert main_loop.main(["--check", "--config-dir", str(config_dir / "missing")]) == 2
