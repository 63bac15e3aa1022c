"""
Tests for the Scheduler: gate ordering, fill persistence, circuit breaking,
the rebalance path and coordinator lifecycle.
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from ai.model_client import MockClient
from ai.schemas import PortfolioRecommendation, TradingDecision
from analytics.trade_log import RecommendationLog, TradeLog
from core.decision_engine import DecisionEngine
from core.exceptions import ExchangeUnavailable
from core.execution import ExecutionEngine
from core.portfolio_manager import PortfolioManager
from core.risk import CircuitBreakerBoard, RiskEngine
from infra.events import EventBus
from runner import scheduler as sched
from runner.scheduler import Scheduler
from tests.helpers import FakeExchange, decision_json, recommendations_json, reflection_json


class Harness:
    """Real components wired around a FakeExchange and a scripted oracle."""

    def __init__(self, tmp_path, state_store, policy, mode="TESTNET", prices=None, balances=None):
        self.exchange = FakeExchange(prices=prices, balances=balances)
        self.client = MockClient()
        self.state_store = state_store
        self.events = EventBus()
        self.seen = []
        self.events.subscribe("*", lambda topic, payload: self.seen.append((topic, payload)))
        self.trade_log = TradeLog(log_dir=str(tmp_path / "logs"), mode=mode.lower())
        self.rec_log = RecommendationLog(path=str(tmp_path / "logs" / "recs.jsonl"))
        self.breakers = CircuitBreakerBoard(threshold=3, cooldown_seconds=1800)
        self.decision_engine = DecisionEngine(self.exchange, self.client, confidence_threshold=70, max_trade_usd=20)
        self.portfolio_manager = PortfolioManager(
            self.exchange, self.client, state_store, recommendation_log=self.rec_log,
            max_positions=5, max_trade_usd=20, watchlist=["BTCUSDT", "ETHUSDT"],
        )
        self.scheduler = Scheduler(
            state_store,
            RiskEngine(policy, exchange=self.exchange),
            self.decision_engine,
            ExecutionEngine(self.exchange, mode=mode, max_trade_usd=20),
            portfolio_manager=self.portfolio_manager,
            trade_log=self.trade_log,
            recommendation_log=self.rec_log,
            events=self.events,
            breakers=self.breakers,
            fast_interval_s=3600,
            slow_interval_s=3600,
            mode=mode,
            pairs=["BTCUSDT", "ETHUSDT"],
        )

    def hold(self, symbol, quantity, avg_price):
        with self.state_store.transaction() as state:
            state["positions"][symbol] = {"quantity": quantity, "avg_price": avg_price}

    def topics(self, topic):
        return [payload for t, payload in self.seen if t == topic]


@pytest.fixture
def h(tmp_path, state_store, policy):
    return Harness(tmp_path, state_store, policy)


class TestFastCycle:
    def test_only_held_symbols_are_evaluated(self, h):
        assert h.scheduler.run_fast_cycle() == {}
        assert h.client.calls == []

        h.hold("ETHUSDT", 0.01, 2000.0)
        outcomes = h.scheduler.run_fast_cycle()
        assert list(outcomes) == ["ETHUSDT"]
        assert outcomes["ETHUSDT"] == sched.HOLD

    def test_executed_buy_is_persisted_before_next_symbol(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.hold("ETHUSDT", 0.01, 2000.0)
        h.client.queue(decision_json("BUY", 85, 20), reflection_json(True))

        outcomes = h.scheduler.run_fast_cycle()

        assert outcomes == {"BTCUSDT": sched.EXECUTED, "ETHUSDT": sched.HOLD}
        pos = h.state_store.load()["positions"]["BTCUSDT"]
        assert pos["quantity"] == pytest.approx(0.001 + 20 / 50000)
        assert pos["avg_price"] == pytest.approx((40 + 20) / (0.001 + 20 / 50000))
        assert h.exchange.orders[0]["side"] == "BUY"
        assert h.exchange.orders[0]["client_order_id"].startswith("autopilot_")

        trades = h.topics("trade")
        assert trades[0]["executed"] is True
        assert [d["action"] for d in h.topics("decision")] == ["BUY", "HOLD"]
        statuses = [e["status"] for e in h.trade_log.read()]
        assert statuses == ["decision", "executed", "decision"]

    def test_below_threshold_is_not_traded(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.client.queue(decision_json("SELL", 60, 10))
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.BELOW_THRESHOLD
        assert h.exchange.orders == []

    def test_oversize_decision_never_reaches_exchange(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.client.queue(decision_json("BUY", 95, 250), reflection_json(True))

        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.REJECTED
        assert h.exchange.orders == []
        skips = [e for e in h.trade_log.read() if e["status"] == "skipped"]
        assert skips[0]["gate"] == "trade_size_cap"
        # a gate rejection is not a failure
        assert h.breakers.get("BTCUSDT").errors == 0

    def test_sell_realizes_pnl(self, h):
        h.hold("ETHUSDT", 0.01, 1800.0)
        h.client.queue(decision_json("SELL", 90, 20), reflection_json(True))
        assert h.scheduler.evaluate_symbol("ETHUSDT") == sched.EXECUTED
        state = h.state_store.load()
        # 20 USD at 2000 = 0.01 ETH, the whole position
        assert "ETHUSDT" not in state["positions"]
        assert state["cumulative_pnl"] == pytest.approx(2.0)

    def test_oversized_sell_is_clamped_to_held_value(self, h):
        # 0.001 ETH at 2000 is a $2 position
        h.hold("ETHUSDT", 0.001, 2000.0)
        h.client.queue(decision_json("SELL", 90, 20), reflection_json(True))

        assert h.scheduler.evaluate_symbol("ETHUSDT") == sched.EXECUTED
        assert [o["quote_amount"] for o in h.exchange.orders] == [2.0]
        trade = h.topics("trade")[-1]
        assert trade["size_usd"] == 2.0
        assert trade["quantity"] == pytest.approx(0.001)
        state = h.state_store.load()
        assert "ETHUSDT" not in state["positions"]
        assert state["cumulative_pnl"] == pytest.approx(0.0)
        executed = [e for e in h.trade_log.read() if e["status"] == "executed"]
        assert executed[0]["size_usd"] == 2.0

    def test_unpriceable_sell_is_rejected(self, h):
        h.hold("ETHUSDT", 0.001, 2000.0)
        # the price feed drops after the decision was made
        h.scheduler.decision_engine.evaluate = MagicMock(
            return_value=TradingDecision(action="SELL", confidence=90, reasoning="exit", size_usd=20)
        )
        h.exchange.fail["get_price"] = ExchangeUnavailable("timeout")

        assert h.scheduler.evaluate_symbol("ETHUSDT") == sched.REJECTED
        assert h.exchange.orders == []
        skips = [e for e in h.trade_log.read() if e["status"] == "skipped"]
        assert skips[-1]["gate"] == "oversell"

    def test_stop_flag_set_during_decision_blocks_execution(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        store = h.state_store

        class StopDuringReflection(MockClient):
            def complete(self, prompt, system_prompt=None, timeout=30.0):
                if self.calls:
                    store.set_emergency_stop(True)
                return super().complete(prompt, system_prompt, timeout)

        h.decision_engine.model_client = StopDuringReflection(
            replies=[decision_json("BUY", 90, 10), reflection_json(True)]
        )
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.REJECTED
        assert h.exchange.orders == []
        assert h.topics("skip")[-1]["gate"] == "emergency_stop"


class TestEmergencyStop:
    def test_zero_trades_while_flag_set(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.hold("ETHUSDT", 0.01, 2000.0)
        h.client.default_reply = decision_json("BUY", 99, 20)
        h.state_store.set_emergency_stop(True)

        for _ in range(5):
            h.scheduler.run_fast_cycle()
            h.scheduler.run_slow_cycle()

        assert h.exchange.orders == []
        assert h.client.calls == []
        assert {s["gate"] for s in h.topics("skip")} == {"emergency_stop"}

        h.state_store.set_emergency_stop(False)
        h.client.queue(decision_json("BUY", 99, 20), reflection_json(True))
        h.scheduler.evaluate_symbol("BTCUSDT")
        assert len(h.exchange.orders) == 1


class TestDailyLossLimit:
    def test_loss_beyond_limit_halts_the_day(self, h):
        # 20 USD at 2000 = 0.01 ETH sold against a 3200 entry -> -12
        h.hold("ETHUSDT", 0.1, 3200.0)
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.client.queue(
            decision_json("HOLD", 10, 0),
            decision_json("SELL", 90, 20), reflection_json(True),
        )
        h.scheduler.run_fast_cycle()
        state = h.state_store.load()
        assert state["daily_pnl"] == pytest.approx(-12.0)
        assert state["daily_loss_count"] == 1

        calls_before = len(h.client.calls)
        orders_before = len(h.exchange.orders)
        h.client.default_reply = decision_json("BUY", 99, 20)
        outcomes = h.scheduler.run_fast_cycle()

        assert set(outcomes.values()) == {sched.SKIPPED}
        assert len(h.client.calls) == calls_before
        assert len(h.exchange.orders) == orders_before
        assert all(s["gate"] == "daily_loss_limit" for s in h.topics("skip"))


class TestCircuitBreaker:
    def test_three_failures_suppress_symbol(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.exchange.fail["get_ticker"] = ExchangeUnavailable("timeout")

        for _ in range(3):
            assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.ERROR
        assert h.breakers.is_open("BTCUSDT")
        assert h.state_store.load()["error_counts"]["BTCUSDT"] == 3
        assert h.topics("error")[-1]["tripped"] is True

        # recovered exchange does not matter while the breaker is open
        del h.exchange.fail["get_ticker"]
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.SKIPPED
        assert h.client.calls == []

    def test_success_resets_counts(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.exchange.fail["get_klines"] = ExchangeUnavailable("timeout")
        h.scheduler.evaluate_symbol("BTCUSDT")
        h.scheduler.evaluate_symbol("BTCUSDT")
        assert h.breakers.get("BTCUSDT").errors == 2

        del h.exchange.fail["get_klines"]
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.HOLD
        assert h.breakers.get("BTCUSDT").errors == 0
        assert "BTCUSDT" not in h.state_store.load()["error_counts"]

    def test_cooldown_expiry_allows_evaluation(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        long_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        for _ in range(3):
            h.breakers.record_failure("BTCUSDT", long_ago)
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.HOLD
        assert h.breakers.get("BTCUSDT").errors == 0

    def test_oracle_timeout_counts_as_failure(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.client.queue(TimeoutError("oracle timeout"))
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.ERROR
        assert h.breakers.get("BTCUSDT").errors == 1
        errors = [e for e in h.trade_log.read() if e["status"] == "error"]
        assert "oracle timeout" in errors[0]["error"]

    def test_order_failure_counts_as_failure(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.exchange.fail["place_market_order"] = ExchangeUnavailable("503")
        h.client.queue(decision_json("BUY", 90, 10), reflection_json(True))
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.NOT_EXECUTED
        assert h.breakers.get("BTCUSDT").errors == 1
        assert h.state_store.load()["positions"]["BTCUSDT"]["quantity"] == 0.001

    def test_malformed_reply_is_a_successful_hold(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.client.queue("nonsense")
        assert h.scheduler.evaluate_symbol("BTCUSDT") == sched.HOLD
        assert h.breakers.get("BTCUSDT").errors == 0


class TestSlowCycle:
    def test_recommendation_opens_new_position(self, h):
        h.client.queue(recommendations_json(
            {"symbol": "ETHUSDT", "action": "BUY", "amount": 15, "reasoning": "rotation"},
        ))
        results = h.scheduler.run_slow_cycle()

        assert len(results) == 1 and results[0].executed
        assert h.state_store.load()["positions"]["ETHUSDT"]["quantity"] == pytest.approx(15 / 2000)
        entries = h.rec_log.read_recent()
        assert entries[-1]["executed"] is True
        assert entries[-1]["order_id"] == results[0].order_id
        assert h.topics("recommendation")[-1]["executed"] is True

    def test_sell_without_position_is_rejected(self, h):
        h.client.queue(recommendations_json({"symbol": "BTCUSDT", "action": "SELL", "amount": 10}))
        assert h.scheduler.run_slow_cycle() == []
        assert h.exchange.orders == []
        entry = h.rec_log.read_recent()[-1]
        assert entry["executed"] is False
        assert "No BTCUSDT position" in entry["reason"]

    def test_concentration_blocks_recommendation(self, tmp_path, state_store, policy):
        h = Harness(tmp_path, state_store, policy, balances={"USDT": 10.0, "BTC": 0.001})
        h.client.queue(recommendations_json({"symbol": "BTCUSDT", "action": "BUY", "amount": 20}))
        assert h.scheduler.run_slow_cycle() == []
        assert h.exchange.orders == []
        assert "portfolio" in h.rec_log.read_recent()[-1]["reason"]

    def test_max_positions_rejection_published(self, h):
        for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "XRPUSDT"):
            h.hold(symbol, 1.0, 1.0)
        h.client.queue(recommendations_json({"symbol": "DOGEUSDT", "action": "BUY", "amount": 10}))
        h.scheduler.run_slow_cycle()
        assert h.exchange.orders == []
        assert h.topics("recommendation")[-1]["reason"] == "max positions reached"

    def test_max_positions_rechecked_between_buys(self, tmp_path, state_store, policy):
        prices = {s: 1.0 for s in ("BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT",
                                   "XRPUSDT", "ADAUSDT", "DOGEUSDT")}
        h = Harness(tmp_path, state_store, policy, prices=prices)
        for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT"):
            h.hold(symbol, 1.0, 1.0)
        # three new-symbol BUYs arrive already accepted
        h.portfolio_manager.consult = MagicMock(return_value=[
            PortfolioRecommendation(symbol=s, action="BUY", amount_usd=10.0)
            for s in ("XRPUSDT", "ADAUSDT", "DOGEUSDT")
        ])

        results = h.scheduler.run_slow_cycle()

        assert [o["symbol"] for o in h.exchange.orders] == ["XRPUSDT"]
        assert len(results) == 1
        assert len(h.state_store.load()["positions"]) == 5
        rejected = [p for p in h.topics("recommendation") if not p["executed"]]
        assert [p["symbol"] for p in rejected] == ["ADAUSDT", "DOGEUSDT"]
        assert {p["reason"] for p in rejected} == {"max positions reached"}

    def test_consult_failure_is_contained(self, h):
        h.portfolio_manager.consult = MagicMock(side_effect=RuntimeError("boom"))
        assert h.scheduler.run_slow_cycle() == []
        assert h.topics("cycle")[-1]["status"] == "error"


class TestLifecycle:
    def test_start_stop_restart(self, h):
        slow_done = threading.Event()
        h.events.subscribe("cycle", lambda t, p: p.get("kind") == "slow" and slow_done.set())

        assert h.scheduler.start() is True
        assert h.scheduler.start() is False
        assert slow_done.wait(5)
        assert h.scheduler.is_running()

        assert h.scheduler.stop(timeout=5) is True
        assert not h.scheduler.is_running()
        assert h.scheduler.stop() is False

        slow_done.clear()
        assert h.scheduler.start() is True
        assert slow_done.wait(5)
        h.scheduler.stop(timeout=5)
        assert len(h.topics("loop.start")) == 2
        assert len(h.topics("loop.stop")) == 2

    def test_no_new_symbol_after_stop(self, h):
        h.hold("BTCUSDT", 0.001, 40000.0)
        h.hold("ETHUSDT", 0.01, 2000.0)
        evaluated = []

        def evaluate(symbol, position=None):
            evaluated.append(symbol)
            h.scheduler.stop(timeout=0)
            return TradingDecision.hold("wait")

        engine = MagicMock(confidence_threshold=70, last_latency_ms=None)
        engine.evaluate.side_effect = evaluate
        h.scheduler.decision_engine = engine

        h.scheduler.start()
        h.scheduler._thread.join(5)
        assert evaluated == ["BTCUSDT"]
        assert not h.scheduler.is_running()

    def test_run_forever_returns_on_shutdown(self, h):
        shutdown = threading.Event()
        runner = threading.Thread(target=h.scheduler.run_forever, args=(shutdown, 0.05))
        runner.start()
        shutdown.set()
        runner.join(5)
        assert not runner.is_alive()
        assert not h.scheduler.is_running()

    def test_snapshot_shape(self, h):
        snap = h.scheduler.snapshot()
        assert snap["running"] is False
        assert snap["pairs"] == ["BTCUSDT", "ETHUSDT"]
        assert snap["circuit_breakers"] == {}
