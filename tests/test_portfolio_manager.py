"""Tests for the rebalance pass: recommendation filtering and max-position rejection."""
from unittest.mock import MagicMock

import pytest

from ai.model_client import MockClient
from analytics.trade_log import RecommendationLog
from core.portfolio_manager import MAX_POSITIONS_REASON, PortfolioManager
from tests.helpers import FakeExchange, recommendations_json


@pytest.fixture
def rec_log(tmp_path):
    return RecommendationLog(path=str(tmp_path / "portfolio-recommendations.jsonl"))


def _manager(exchange, state_store, rec_log, reply, **kwargs):
    client = MockClient(replies=[reply])
    manager = PortfolioManager(
        exchange, client, state_store, recommendation_log=rec_log,
        max_positions=kwargs.pop("max_positions", 5), max_trade_usd=20.0,
        watchlist=["BTCUSDT", "ETHUSDT"], **kwargs,
    )
    return manager, client


def _hold_positions(state_store, count):
    symbols = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "XRPUSDT", "ADAUSDT"][:count]
    with state_store.transaction() as state:
        for symbol in symbols:
            state["positions"][symbol] = {"quantity": 1.0, "avg_price": 10.0}
    return symbols


def test_buy_rejected_at_max_positions(state_store, rec_log):
    exchange = MagicMock(wraps=FakeExchange())
    _hold_positions(state_store, 5)
    reply = recommendations_json(
        {"symbol": "DOGEUSDT", "action": "BUY", "amount": 10, "reasoning": "breakout"}
    )
    manager, _ = _manager(exchange, state_store, rec_log, reply)

    accepted = manager.consult()

    assert accepted == []
    assert [r.symbol for r in manager.last_rejected] == ["DOGEUSDT"]
    exchange.place_market_order.assert_not_called()
    entries = rec_log.read_recent()
    assert len(entries) == 1
    assert entries[0]["executed"] is False
    assert entries[0]["reason"] == MAX_POSITIONS_REASON == "max positions reached"


def test_buy_into_held_symbol_also_rejected_at_max(state_store, rec_log, exchange):
    _hold_positions(state_store, 5)
    reply = recommendations_json({"symbol": "BTCUSDT", "action": "BUY", "amount": 5})
    manager, _ = _manager(exchange, state_store, rec_log, reply)
    assert manager.consult() == []
    assert len(manager.last_rejected) == 1


def test_new_buys_in_one_reply_count_toward_max(state_store, rec_log, exchange):
    _hold_positions(state_store, 4)
    reply = recommendations_json(
        {"symbol": "DOGEUSDT", "action": "BUY", "amount": 10},
        {"symbol": "ADAUSDT", "action": "BUY", "amount": 10},
        {"symbol": "LINKUSDT", "action": "BUY", "amount": 10},
        {"symbol": "BTCUSDT", "action": "SELL", "amount": 10},
    )
    manager, _ = _manager(exchange, state_store, rec_log, reply)

    accepted = manager.consult()

    assert [(r.symbol, r.action) for r in accepted] == [("DOGEUSDT", "BUY"), ("BTCUSDT", "SELL")]
    assert [r.symbol for r in manager.last_rejected] == ["ADAUSDT", "LINKUSDT"]
    assert [e["reason"] for e in rec_log.read_recent()] == [MAX_POSITIONS_REASON] * 2


def test_sell_allowed_at_max_positions(state_store, rec_log, exchange):
    _hold_positions(state_store, 5)
    reply = recommendations_json({"symbol": "BTCUSDT", "action": "SELL", "amount": 15})
    manager, _ = _manager(exchange, state_store, rec_log, reply)
    accepted = manager.consult()
    assert len(accepted) == 1
    assert accepted[0].action == "SELL"


def test_filtering_rules(state_store, rec_log, exchange):
    reply = recommendations_json(
        {"symbol": "BTCUSDT", "action": "HOLD", "amount": 10},
        {"symbol": "", "action": "BUY", "amount": 10},
        {"symbol": "USDCUSDT", "action": "BUY", "amount": 10},
        {"symbol": "ETHUSDT", "action": "STAKE", "amount": 10},
        {"symbol": "sol", "action": "buy", "amount": 500, "reasoning": "oversold"},
        {"symbol": "ETHUSDT", "action": "SELL"},
    )
    manager, _ = _manager(exchange, state_store, rec_log, reply)
    accepted = manager.consult()

    assert [(r.symbol, r.action) for r in accepted] == [("SOLUSDT", "BUY"), ("ETHUSDT", "SELL")]
    # clamped to the per-trade cap
    assert accepted[0].amount_usd == 20.0
    assert accepted[0].reasoning == "oversold"
    # missing amount defaults to the cap
    assert accepted[1].amount_usd == 20.0
    assert accepted[1].reasoning == "No reasoning provided"
    assert manager.last_rejected == []


def test_recommendation_executes_with_full_confidence(state_store, rec_log, exchange):
    reply = recommendations_json({"symbol": "ETHUSDT", "action": "BUY", "amount": 12})
    manager, _ = _manager(exchange, state_store, rec_log, reply)
    decision = manager.consult()[0].to_decision()
    assert decision.confidence == 100.0
    assert decision.size_usd == 12


@pytest.mark.parametrize("reply", ["no idea", '{"symbol": "BTCUSDT"}', ConnectionError("down")])
def test_oracle_problems_yield_no_recommendations(state_store, rec_log, exchange, reply):
    manager, _ = _manager(exchange, state_store, rec_log, reply)
    assert manager.consult() == []


def test_prompt_lists_holdings_and_cash(state_store, rec_log):
    exchange = FakeExchange(prices={"BTCUSDT": 50000.0}, balances={"USDT": 250.0, "USDC": 50.0})
    with state_store.transaction() as state:
        state["positions"]["BTCUSDT"] = {"quantity": 0.001, "avg_price": 40000.0}
    manager, client = _manager(exchange, state_store, rec_log, "[]")
    manager.consult()
    prompt = client.calls[0][0]
    assert "BTCUSDT: 0.00100000" in prompt
    assert "+25.0%" in prompt
    assert "$300.00" in prompt
    assert "Maximum 5 open positions" in prompt


def test_unpriced_holding_still_listed(state_store, rec_log):
    exchange = FakeExchange(prices={})
    with state_store.transaction() as state:
        state["positions"]["XYZUSDT"] = {"quantity": 2.0, "avg_price": 1.5}
    manager, client = _manager(exchange, state_store, rec_log, "[]")
    manager.consult()
    assert "live price unavailable" in client.calls[0][0]
