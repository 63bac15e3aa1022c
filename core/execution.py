"""
spot-autopilot Core: Execution Engine

Turns an approved decision into a market order (TESTNET/LIVE) or a
simulated fill (PAPER). execute() never raises: every failure comes back
as a TradeResult with executed=False and an error string.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ai.schemas import TradingDecision

logger = logging.getLogger(__name__)

MODES = ("PAPER", "TESTNET", "LIVE")


@dataclass
class TradeResult:
    """Result of a trade attempt"""
    decision: TradingDecision
    executed: bool
    mode: str
    order_id: Optional[str] = None
    avg_price: Optional[float] = None
    quantity: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def side(self) -> str:
        return self.decision.action

    def to_dict(self) -> dict:
        return {
            **self.decision.to_dict(),
            "executed": self.executed,
            "mode": self.mode,
            "order_id": self.order_id,
            "price": self.avg_price,
            "quantity": self.quantity,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class ExecutionEngine:
    """
    Order execution engine.

    Safety:
    - Hard per-trade cap checked here as well as in the gate chain
    - PAPER mode never touches order endpoints
    - A result is only `executed` with a positive fill price and quantity
    """

    def __init__(self, exchange, mode: str = "PAPER", max_trade_usd: float = 20.0,
                 client_order_prefix: str = "autopilot"):
        mode = (mode or "PAPER").upper()
        if mode not in MODES:
            raise ValueError(f"Invalid mode: {mode}")
        self.exchange = exchange
        self.mode = mode
        self.max_trade_usd = float(max_trade_usd)
        self.client_order_prefix = client_order_prefix
        logger.info(f"Initialized ExecutionEngine (mode={mode}, max_trade=${self.max_trade_usd:.2f})")

    def generate_client_order_id(self, symbol: str, side: str, size_usd: float,
                                 timestamp: Optional[datetime] = None) -> str:
        """
        Deterministic client order ID.

        Same symbol/side/size within the same minute yields the same ID. The
        ID is never resubmitted; after a timeout it is only used to look the
        order up, since Binance accepts a reused ID once the first order filled.
        """
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        ts_minute = timestamp.replace(second=0, microsecond=0).isoformat()
        input_str = f"{symbol}|{side.upper()}|{round(size_usd, 2)}|{ts_minute}"
        hash_hex = hashlib.sha256(input_str.encode("utf-8")).hexdigest()[:16]
        return f"{self.client_order_prefix}_{hash_hex}"

    def execute(self, symbol: str, decision: TradingDecision) -> TradeResult:
        """
        Execute a decision.

        Returns:
            TradeResult; executed=False for HOLD, non-positive size, sizes
            above the cap, or any exchange failure
        """
        if decision.action == "HOLD" or decision.size_usd <= 0:
            return TradeResult(decision=decision, executed=False, mode=self.mode,
                               error="nothing to execute")

        if decision.size_usd > self.max_trade_usd:
            logger.error(
                f"Refusing {decision.action} {symbol} ${decision.size_usd:.2f}: "
                f"exceeds hard cap ${self.max_trade_usd:.2f}"
            )
            return TradeResult(
                decision=decision, executed=False, mode=self.mode,
                error=f"size ${decision.size_usd:.2f} exceeds cap ${self.max_trade_usd:.2f}",
            )

        if self.mode == "PAPER":
            return self._execute_paper(symbol, decision)
        return self._execute_exchange(symbol, decision)

    def _execute_paper(self, symbol: str, decision: TradingDecision) -> TradeResult:
        """Simulate a full fill at the current price."""
        logger.info(f"PAPER: Simulating {decision.action} ${decision.size_usd:.2f} of {symbol}")
        try:
            price = float(self.exchange.get_price(symbol))
        except Exception as e:
            logger.error(f"Paper execution failed for {symbol}: {e}")
            return TradeResult(decision=decision, executed=False, mode=self.mode, error=str(e))

        if price <= 0:
            return TradeResult(decision=decision, executed=False, mode=self.mode,
                               error=f"invalid price {price}")

        return TradeResult(
            decision=decision,
            executed=True,
            mode=self.mode,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            avg_price=price,
            quantity=decision.size_usd / price,
        )

    def _execute_exchange(self, symbol: str, decision: TradingDecision) -> TradeResult:
        client_order_id = self.generate_client_order_id(symbol, decision.action, decision.size_usd)
        try:
            fill = self.exchange.place_market_order(
                symbol, decision.action, decision.size_usd, client_order_id=client_order_id
            )
        except Exception as e:
            logger.error(f"{self.mode} {decision.action} {symbol} failed: {e}")
            return TradeResult(decision=decision, executed=False, mode=self.mode, error=str(e))

        if not fill.avg_price or fill.avg_price <= 0 or fill.executed_qty <= 0:
            logger.warning(f"{self.mode} order {fill.order_id} for {symbol} did not fill ({fill.status})")
            return TradeResult(
                decision=decision, executed=False, mode=self.mode, order_id=fill.order_id,
                error=f"order not filled (status={fill.status})",
            )

        logger.info(
            f"{self.mode}: {decision.action} {fill.executed_qty:.8f} {symbol} "
            f"@ ${fill.avg_price:.4f} (order {fill.order_id})"
        )
        return TradeResult(
            decision=decision,
            executed=True,
            mode=self.mode,
            order_id=fill.order_id,
            avg_price=fill.avg_price,
            quantity=fill.executed_qty,
        )
