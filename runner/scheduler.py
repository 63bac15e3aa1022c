"""
spot-autopilot Runner: Scheduler

One coordinator thread owns both cadences:

- fast cycle: re-evaluate every held symbol, one at a time
- slow cycle: whole-portfolio rebalance (the only path that opens new positions)

Both cycles also hold the cycle lock, so a manual run_fast_cycle() from the
CLI or a test can never interleave with the coordinator. Every state write
goes through StateStore.transaction().
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ai.schemas import PortfolioRecommendation, TradingDecision
from core.exceptions import StatePersistenceError, StaleStateError
from core.execution import TradeResult
from core.portfolio_manager import MAX_POSITIONS_REASON
from core.risk import CircuitBreakerBoard, RiskCheckResult
from infra.alerting import AlertSeverity
from infra.events import EventBus

logger = logging.getLogger(__name__)

# Outcomes returned by evaluate_symbol()
SKIPPED = "skipped"
HOLD = "hold"
BELOW_THRESHOLD = "below_threshold"
REJECTED = "rejected"
EXECUTED = "executed"
NOT_EXECUTED = "not_executed"
ERROR = "error"


class Scheduler:
    """Drives the fast and slow cycles on a single coordinator thread."""

    def __init__(self, state_store, risk_engine, decision_engine, executor,
                 portfolio_manager=None, trade_log=None, recommendation_log=None,
                 events: Optional[EventBus] = None,
                 breakers: Optional[CircuitBreakerBoard] = None,
                 fast_interval_s: float = 300.0, slow_interval_s: float = 3600.0,
                 mode: str = "PAPER", pairs: Optional[Sequence[str]] = None,
                 alert_service=None):
        self.state_store = state_store
        self.risk_engine = risk_engine
        self.decision_engine = decision_engine
        self.executor = executor
        self.portfolio_manager = portfolio_manager
        self.trade_log = trade_log
        self.recommendation_log = recommendation_log
        self.events = events or EventBus()
        self.breakers = breakers or CircuitBreakerBoard()
        self.fast_interval_s = float(fast_interval_s)
        self.slow_interval_s = float(slow_interval_s)
        self.mode = mode.upper()
        self.pairs: List[str] = list(pairs or [])
        self.alert_service = alert_service

        self._stop_event = threading.Event()
        self._cycle_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_fast_cycle: Optional[datetime] = None
        self.last_slow_cycle: Optional[datetime] = None

    # Lifecycle

    def start(self) -> bool:
        """Start the coordinator. Returns False if it was already running."""
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                if not self._stop_event.is_set():
                    return False
                # A previous stop() is still draining its in-flight cycle
                self._thread.join()
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="spot-autopilot-coordinator", daemon=True
            )
            self._thread.start()

        logger.info(
            f"Scheduler started ({self.mode}): fast every {self.fast_interval_s:.0f}s, "
            f"rebalance every {self.slow_interval_s:.0f}s, pairs {', '.join(self.pairs) or '-'}"
        )
        self.events.publish("loop.start", mode=self.mode)
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop both cadences.

        The symbol being evaluated right now runs to completion; nothing new
        starts afterwards. Waits up to `timeout` seconds for the coordinator
        (None waits indefinitely, 0 does not wait). Returns False if the
        scheduler was not running.
        """
        with self._state_lock:
            thread = self._thread
            if thread is None or self._stop_event.is_set():
                return False
            self._stop_event.set()

        if thread is not threading.current_thread() and timeout != 0:
            thread.join(timeout)
        logger.info("Scheduler stopped")
        self.events.publish("loop.stop", mode=self.mode)
        return True

    def is_running(self) -> bool:
        thread = self._thread
        return bool(thread and thread.is_alive() and not self._stop_event.is_set())

    def run_forever(self, shutdown: threading.Event, poll_seconds: float = 1.0) -> None:
        """
        Block until `shutdown` is set, then stop the coordinator.

        The scheduler may be stopped and restarted in the meantime (emergency
        stop from the control surface); only `shutdown` ends this call.
        """
        self.start()
        while not shutdown.wait(poll_seconds):
            pass
        self.stop()

    def _run(self) -> None:
        next_fast = next_slow = time.monotonic()
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_fast:
                self._guarded(self.run_fast_cycle, "fast")
                next_fast = time.monotonic() + self.fast_interval_s
            if self._stop_event.is_set():
                break
            if now >= next_slow:
                self._guarded(self.run_slow_cycle, "slow")
                next_slow = time.monotonic() + self.slow_interval_s
            self._stop_event.wait(max(0.0, min(next_fast, next_slow) - time.monotonic()))

    def _guarded(self, cycle, kind: str) -> None:
        try:
            cycle()
        except Exception as e:
            logger.exception(f"Unhandled error in {kind} cycle: {e}")
            self.events.publish("cycle", kind=kind, status="error", error=str(e))

    # Fast cycle

    def run_fast_cycle(self) -> Dict[str, str]:
        """Re-evaluate every held symbol sequentially. Returns symbol -> outcome."""
        with self._cycle_lock:
            started = time.perf_counter()
            held = sorted((self.state_store.load().get("positions") or {}).keys())
            outcomes: Dict[str, str] = {}
            if not held:
                logger.info("Fast cycle: no open positions")

            for symbol in held:
                if self._stop_event.is_set():
                    logger.info("Stop requested, ending fast cycle early")
                    break
                outcomes[symbol] = self.evaluate_symbol(symbol)

            self.last_fast_cycle = datetime.now(timezone.utc)
            self._publish_cycle("fast", started, evaluated=len(outcomes))
            return outcomes

    def evaluate_symbol(self, symbol: str) -> str:
        """
        Full pipeline for one symbol: gates 1-4, decision, gates 5-7,
        execution and persistence. Never raises.
        """
        state = self.state_store.load()
        pre = self.risk_engine.check_pre_trade(symbol, state, self.breakers)
        if not pre.approved:
            self._skip(symbol, pre)
            return SKIPPED

        try:
            position = (state.get("positions") or {}).get(symbol)
            decision = self.decision_engine.evaluate(symbol, position)
            self._publish_decision(symbol, decision)
            outcome, result = self._act(symbol, decision)
        except Exception as e:
            logger.error(f"{symbol} evaluation failed: {e}")
            self._record_failure(symbol, str(e))
            return ERROR

        if outcome == NOT_EXECUTED:
            # Order placement failures count toward the breaker like any other I/O failure
            self._record_failure(symbol, result.error or "order not executed", log_entry=False)
            return outcome

        self._record_success(symbol)
        return outcome

    def _act(self, symbol: str, decision: TradingDecision):
        if not decision.is_actionable:
            return HOLD, None

        threshold = self.decision_engine.confidence_threshold
        if decision.confidence < threshold:
            logger.info(
                f"{symbol} {decision.action} confidence {decision.confidence:.0f} "
                f"below threshold {threshold:.0f}, not trading"
            )
            return BELOW_THRESHOLD, None

        state = self.state_store.load()
        gate = self._post_decision_gates(symbol, decision, state)
        if not gate.approved:
            self._skip(symbol, gate, decision)
            return REJECTED, None
        decision = self._resized(decision, gate)

        result = self.executor.execute(symbol, decision)
        self._record_trade(symbol, result)
        if result.executed:
            self._persist_fill(symbol, result)
        return (EXECUTED if result.executed else NOT_EXECUTED), result

    @staticmethod
    def _resized(decision: TradingDecision, gate: RiskCheckResult) -> TradingDecision:
        if gate.size_usd is None or gate.size_usd == decision.size_usd:
            return decision
        return replace(decision, size_usd=gate.size_usd)

    def _post_decision_gates(self, symbol: str, decision: TradingDecision,
                             state: Dict[str, Any]) -> RiskCheckResult:
        # The stop flag may have been set while the oracle was thinking
        gate = self.risk_engine.check_global(state)
        if not gate.approved:
            return gate
        return self.risk_engine.check_trade(symbol, decision.action, decision.size_usd, state)

    # Slow cycle

    def run_slow_cycle(self) -> List[TradeResult]:
        """Consult the portfolio manager and execute accepted recommendations."""
        with self._cycle_lock:
            started = time.perf_counter()
            results: List[TradeResult] = []
            if self.portfolio_manager is None:
                return results

            gate = self.risk_engine.check_global(self.state_store.load())
            if not gate.approved:
                logger.info(f"Rebalance skipped: {gate.reason}")
                self.events.publish("skip", symbol="*", gate=gate.gate, reason=gate.reason)
                self._publish_cycle("slow", started, status="skipped")
                return results

            try:
                recommendations = self.portfolio_manager.consult()
            except Exception as e:
                logger.error(f"Portfolio consult failed: {e}")
                self._publish_cycle("slow", started, status="error")
                return results

            for rec in self.portfolio_manager.last_rejected:
                self.events.publish(
                    "recommendation", symbol=rec.symbol, action=rec.action,
                    amount_usd=rec.amount_usd, executed=False, reason=MAX_POSITIONS_REASON,
                )

            logger.info(f"Rebalance: {len(recommendations)} recommendation(s) to act on")
            for rec in recommendations:
                if self._stop_event.is_set():
                    logger.info("Stop requested, ending rebalance early")
                    break
                result = self._execute_recommendation(rec)
                if result is not None:
                    results.append(result)

            self.last_slow_cycle = datetime.now(timezone.utc)
            self._publish_cycle("slow", started, recommendations=len(recommendations))
            return results

    def _execute_recommendation(self, rec: PortfolioRecommendation) -> Optional[TradeResult]:
        decision = rec.to_decision()
        state = self.state_store.load()
        positions = state.get("positions") or {}
        if (rec.action == "BUY" and self.portfolio_manager is not None
                and len(positions) >= self.portfolio_manager.max_positions):
            logger.info(f"Recommendation BUY {rec.symbol} blocked: {MAX_POSITIONS_REASON}")
            self._reject_recommendation(rec, MAX_POSITIONS_REASON)
            return None
        gate = self._post_decision_gates(rec.symbol, decision, state)
        if not gate.approved:
            logger.info(f"Recommendation {rec.action} {rec.symbol} blocked: {gate.reason}")
            self._reject_recommendation(rec, gate.reason or gate.gate or "blocked")
            return None
        decision = self._resized(decision, gate)

        result = self.executor.execute(rec.symbol, decision)
        if not result.executed:
            self._reject_recommendation(rec, result.error or "execution failed")
            self._record_trade(rec.symbol, result)
            return result

        try:
            self._persist_fill(rec.symbol, result)
        except (ValueError, StaleStateError, StatePersistenceError) as e:
            # The order went through; record it as executed even though state lags
            logger.error(f"Recommendation {rec.action} {rec.symbol} executed but fill not applied: {e}")
        self._record_trade(rec.symbol, result)

        if self.recommendation_log is not None:
            self.recommendation_log.log_executed(rec, result.order_id, result.avg_price)
        self.events.publish(
            "recommendation", symbol=rec.symbol, action=rec.action,
            amount_usd=rec.amount_usd, executed=True, order_id=result.order_id,
        )
        return result

    def _reject_recommendation(self, rec: PortfolioRecommendation, reason: str) -> None:
        if self.recommendation_log is not None:
            self.recommendation_log.log_rejected(rec, reason)
        self.events.publish(
            "recommendation", symbol=rec.symbol, action=rec.action,
            amount_usd=rec.amount_usd, executed=False, reason=reason,
        )

    # Persistence and bookkeeping

    def _persist_fill(self, symbol: str, result: TradeResult) -> float:
        """Apply an executed fill and save before anything else happens."""
        for attempt in (1, 2):
            try:
                with self.state_store.transaction() as state:
                    realized = self.state_store.apply_fill(
                        state, symbol, result.side, result.quantity, result.avg_price
                    )
                break
            except StaleStateError as e:
                if attempt == 2:
                    self._alert_persistence(symbol, result, e)
                    raise
                logger.warning(f"State changed underneath fill for {symbol}, retrying: {e}")
            except StatePersistenceError as e:
                self._alert_persistence(symbol, result, e)
                raise

        if result.side == "SELL":
            logger.info(f"{symbol} SELL realized P&L ${realized:.2f}")
        return realized

    def _alert_persistence(self, symbol: str, result: TradeResult, error: Exception) -> None:
        logger.critical(
            f"Fill for {symbol} (order {result.order_id}) executed but NOT persisted: {error}"
        )
        if self.alert_service is not None:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL,
                title="State persistence failed after fill",
                message=f"{result.side} {symbol} order {result.order_id} not recorded",
                context={"error": str(error), "quantity": result.quantity, "price": result.avg_price},
            )

    def _record_trade(self, symbol: str, result: TradeResult) -> None:
        if self.trade_log is not None:
            self.trade_log.log_execution(symbol, result)
        self.events.publish(
            "trade", symbol=symbol, action=result.side, executed=result.executed,
            size_usd=result.decision.size_usd, order_id=result.order_id,
            price=result.avg_price, quantity=result.quantity, error=result.error, mode=result.mode,
        )

    def _record_success(self, symbol: str) -> None:
        self.breakers.record_success(symbol)
        try:
            with self.state_store.transaction() as state:
                self.state_store.reset_error_count(state, symbol)
                self.state_store.touch_check_time(state, symbol)
        except (StaleStateError, StatePersistenceError) as e:
            logger.error(f"Could not persist check time for {symbol}: {e}")

    def _record_failure(self, symbol: str, error: str, log_entry: bool = True) -> None:
        tripped = self.breakers.record_failure(symbol)
        try:
            with self.state_store.transaction() as state:
                self.state_store.increment_error_count(state, symbol)
                self.state_store.touch_check_time(state, symbol)
        except (StaleStateError, StatePersistenceError) as e:
            logger.error(f"Could not persist error count for {symbol}: {e}")

        if log_entry and self.trade_log is not None:
            self.trade_log.log_error(symbol, error)
        self.events.publish("error", symbol=symbol, error=error, tripped=tripped)

        if tripped and self.alert_service is not None:
            record = self.breakers.get(symbol)
            self.alert_service.notify(
                severity=AlertSeverity.WARNING,
                title=f"Circuit breaker tripped for {symbol}",
                message=f"{record.errors} consecutive failures; last: {error}",
                context={"skip_until": record.skip_until.isoformat() if record.skip_until else None},
            )

    def _skip(self, symbol: str, gate: RiskCheckResult,
              decision: Optional[TradingDecision] = None) -> None:
        logger.info(f"{symbol} skipped by {gate.gate}: {gate.reason}")
        if self.trade_log is not None:
            self.trade_log.log_skip(symbol, gate.gate or "unknown", gate.reason or "", decision)
        self.events.publish("skip", symbol=symbol, gate=gate.gate, reason=gate.reason)

    def _publish_decision(self, symbol: str, decision: TradingDecision) -> None:
        if self.trade_log is not None:
            self.trade_log.log_decision(symbol, decision)
        self.events.publish(
            "decision", symbol=symbol, action=decision.action, confidence=decision.confidence,
            size_usd=decision.size_usd, reasoning=decision.reasoning,
            latency_ms=getattr(self.decision_engine, "last_latency_ms", None),
        )

    def _publish_cycle(self, kind: str, started: float, status: str = "ok", **extra: Any) -> None:
        state = self.state_store.load()
        self.events.publish(
            "cycle", kind=kind, status=status,
            duration_seconds=time.perf_counter() - started,
            daily_pnl=state.get("daily_pnl", 0.0),
            open_positions=len(state.get("positions") or {}),
            **extra,
        )

    # Runtime configuration

    def set_pairs(self, pairs: Sequence[str]) -> None:
        self.pairs = list(pairs)
        if self.portfolio_manager is not None:
            self.portfolio_manager.watchlist = list(pairs)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "mode": self.mode,
            "pairs": list(self.pairs),
            "fast_interval_seconds": self.fast_interval_s,
            "slow_interval_seconds": self.slow_interval_s,
            "last_fast_cycle": self.last_fast_cycle.isoformat() if self.last_fast_cycle else None,
            "last_slow_cycle": self.last_slow_cycle.isoformat() if self.last_slow_cycle else None,
            "circuit_breakers": self.breakers.snapshot(),
        }
