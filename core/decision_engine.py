"""
spot-autopilot Core: Decision Engine

Per-symbol decision pipeline:
market snapshot -> indicator features -> oracle decision -> reflection pass.

Market data failures and oracle call failures raise DecisionError so the
scheduler can count them against the symbol's circuit breaker. A reply
that cannot be parsed is not a failure: it becomes a HOLD.
"""

import logging
import time
from typing import Any, Dict, Optional

from ai.model_client import ModelClient
from ai.prompts import (
    DECISION_SYSTEM_PROMPT,
    REFLECTION_SYSTEM_PROMPT,
    build_decision_prompt,
    build_reflection_prompt,
)
from ai.response_parser import parse_decision, parse_reflection
from ai.schemas import Malformed, MarketSnapshot, TradingDecision
from core import indicators
from core.exceptions import DecisionError

logger = logging.getLogger(__name__)


class DecisionEngine:
    def __init__(self, exchange, model_client: ModelClient, confidence_threshold: float = 70.0,
                 max_trade_usd: float = 20.0, timeout_s: float = 30.0,
                 kline_interval: str = "1h", kline_limit: int = 200,
                 reflection_enabled: bool = True):
        self.exchange = exchange
        self.model_client = model_client
        self.confidence_threshold = float(confidence_threshold)
        self.max_trade_usd = float(max_trade_usd)
        self.timeout_s = float(timeout_s)
        self.kline_interval = kline_interval
        self.kline_limit = int(kline_limit)
        self.reflection_enabled = reflection_enabled
        self.last_latency_ms: Optional[float] = None

    def build_snapshot(self, symbol: str,
                       position: Optional[Dict[str, Any]] = None) -> MarketSnapshot:
        """Fetch ticker + candles and compute the feature set. All-or-nothing."""
        try:
            ticker = self.exchange.get_ticker(symbol)
        except Exception as e:
            raise DecisionError(symbol, "ticker", e) from e
        try:
            candles = self.exchange.get_klines(symbol, self.kline_interval, self.kline_limit)
        except Exception as e:
            raise DecisionError(symbol, "klines", e) from e

        closes = [c.close for c in candles]
        macd_result = indicators.macd(closes)
        snapshot = MarketSnapshot(
            symbol=symbol,
            price=ticker.last_price,
            change_24h_pct=ticker.price_change_pct,
            rsi=indicators.rsi(closes, 14),
            sma20=indicators.sma(closes, 20),
            sma50=indicators.sma(closes, 50),
            sma200=indicators.sma(closes, 200),
            macd_histogram=macd_result.histogram,
            momentum=indicators.momentum(closes, 14),
            candles=len(closes),
        )
        if position:
            snapshot.position_quantity = float(position.get("quantity", 0) or 0)
            snapshot.position_avg_price = float(position.get("avg_price", 0) or 0)
        return snapshot

    def _ask(self, prompt: str, system_prompt: str) -> str:
        start = time.perf_counter()
        try:
            return self.model_client.complete(prompt, system_prompt=system_prompt, timeout=self.timeout_s)
        finally:
            self.last_latency_ms = (time.perf_counter() - start) * 1000

    def evaluate(self, symbol: str, position: Optional[Dict[str, Any]] = None) -> TradingDecision:
        """
        Produce a decision for one symbol.

        Raises:
            DecisionError: market data or oracle call failed
        """
        snapshot = self.build_snapshot(symbol, position)
        prompt = build_decision_prompt(snapshot, self.confidence_threshold, self.max_trade_usd)

        try:
            reply = self._ask(prompt, DECISION_SYSTEM_PROMPT)
        except Exception as e:
            raise DecisionError(symbol, "oracle", e) from e

        parsed = parse_decision(reply)
        if isinstance(parsed, Malformed):
            logger.warning(f"Unparseable decision for {symbol}: {parsed.reason}")
            return TradingDecision.hold(f"Failed to parse LLM response: {parsed.reason}")

        decision = parsed.value
        logger.info(
            f"{symbol} decision: {decision.action} ${decision.size_usd:.2f} "
            f"(confidence {decision.confidence:.0f}) - {decision.reasoning}"
        )

        if (self.reflection_enabled and decision.action != "HOLD"
                and decision.confidence >= self.confidence_threshold):
            return self.reflect(snapshot, decision)
        return decision

    def reflect(self, snapshot: MarketSnapshot, decision: TradingDecision) -> TradingDecision:
        """
        Second-opinion pass. Only an explicit `approved: false` overrides the
        decision; a failed call or unparseable reply keeps it (fail-open).
        """
        prompt = build_reflection_prompt(snapshot, decision)
        try:
            reply = self._ask(prompt, REFLECTION_SYSTEM_PROMPT)
        except Exception as e:
            logger.warning(f"Reflection for {snapshot.symbol} failed, keeping decision: {e}")
            return decision

        parsed = parse_reflection(reply)
        if isinstance(parsed, Malformed):
            logger.warning(
                f"Unparseable reflection for {snapshot.symbol} ({parsed.reason}), keeping decision"
            )
            return decision

        verdict = parsed.value
        if verdict.approved:
            return decision

        logger.info(f"Reflection rejected {decision.action} {snapshot.symbol}: {verdict.reason}")
        return TradingDecision(
            action="HOLD",
            confidence=decision.confidence,
            reasoning=f"Rejected: {verdict.reason}",
            size_usd=0.0,
        )

    def get_signals(self, symbol: str) -> Dict[str, Any]:
        """Indicator snapshot for the control surface; no oracle call."""
        return self.build_snapshot(symbol).to_dict()
