"""
spot-autopilot Core: Risk Engine

Hard safety gates evaluated around every decision.
NO component (oracle, rebalance pass, or control surface) can bypass these.

Pre-decision chain (cheap, run before the oracle is consulted):
1. Emergency stop
2. Daily loss limit
3. Per-symbol circuit breaker
4. Volatility spike

Post-decision chain (run on an actionable decision):
5. Trade size cap
6. No position to sell
7. Oversell (a SELL is clamped to the held value)
8. Concentration
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.exceptions import ExchangeError
from infra.alerting import AlertSeverity
from infra.symbols import DEFAULT_QUOTE, STABLECOINS, base_asset

logger = logging.getLogger(__name__)


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = field(default_factory=list)
    size_usd: Optional[float] = None  # set when an approved trade was resized

    @property
    def gate(self) -> Optional[str]:
        return self.violated_checks[0] if self.violated_checks else None


APPROVED = RiskCheckResult(approved=True)


@dataclass
class CircuitBreakerRecord:
    errors: int = 0
    skip_until: Optional[datetime] = None


class CircuitBreakerBoard:
    """
    Per-symbol consecutive-failure tracker.

    After `threshold` consecutive failures a symbol is skipped for
    `cooldown_seconds`. Any success resets the record. State is in-memory
    and owned by the scheduler; a restart starts every symbol closed.
    """

    def __init__(self, threshold: int = 3, cooldown_seconds: float = 1800.0):
        self.threshold = max(1, int(threshold))
        self.cooldown = timedelta(seconds=float(cooldown_seconds))
        self._records: Dict[str, CircuitBreakerRecord] = {}
        self._lock = threading.Lock()

    def record_success(self, symbol: str) -> None:
        with self._lock:
            self._records[symbol] = CircuitBreakerRecord()

    def record_failure(self, symbol: str, now: Optional[datetime] = None) -> bool:
        """Count a failure. Returns True when this failure tripped the breaker."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            record = self._records.setdefault(symbol, CircuitBreakerRecord())
            record.errors += 1
            if record.errors >= self.threshold:
                record.skip_until = now + self.cooldown
                logger.warning(
                    f"Circuit breaker OPEN for {symbol}: {record.errors} consecutive errors, "
                    f"skipping until {record.skip_until.isoformat()}"
                )
                return True
            return False

    def is_open(self, symbol: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            record = self._records.get(symbol)
            return bool(record and record.skip_until and now < record.skip_until)

    def get(self, symbol: str) -> CircuitBreakerRecord:
        with self._lock:
            record = self._records.get(symbol, CircuitBreakerRecord())
            return CircuitBreakerRecord(record.errors, record.skip_until)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                symbol: {
                    "errors": record.errors,
                    "skip_until": record.skip_until.isoformat() if record.skip_until else None,
                }
                for symbol, record in self._records.items()
            }


class RiskEngine:
    """
    Enforces hard safety gates from policy.yaml.

    Every check returns a RiskCheckResult and never raises. Checks that
    need market data fail open when the data is unavailable; the cap and
    flag checks do not depend on external data.
    """

    def __init__(self, policy: Dict, exchange=None, alert_service=None):
        self.policy = policy
        self.risk_config = policy.get("risk", {})
        self.circuit_breakers_config = policy.get("circuit_breakers", {})
        self.exchange = exchange
        self.alert_service = alert_service

        self.max_trade_usd = float(self.risk_config.get("max_trade_usd", 20.0))
        self.daily_loss_limit_usd = float(self.risk_config.get("daily_loss_limit_usd", 10.0))
        self.concentration_limit = float(self.risk_config.get("concentration_limit_pct", 50.0)) / 100.0
        self.volatility_threshold_pct = float(
            self.circuit_breakers_config.get("volatility_threshold_pct", 5.0)
        )
        self.volatility_interval = self.circuit_breakers_config.get("volatility_interval", "5m")
        self._daily_stop_alerted: Optional[str] = None

        logger.info(
            "Initialized RiskEngine (max_trade=$%.2f, daily_loss_limit=$%.2f, concentration=%.0f%%)",
            self.max_trade_usd, self.daily_loss_limit_usd, self.concentration_limit * 100,
        )

    # Pre-decision chain

    def check_pre_trade(self, symbol: str, state: Dict[str, Any],
                        breakers: Optional[CircuitBreakerBoard] = None,
                        now: Optional[datetime] = None) -> RiskCheckResult:
        """Gates 1-4, first rejection wins."""
        for result in (
            self._check_emergency_stop(state),
            self._check_daily_loss(state),
        ):
            if not result.approved:
                return result

        if breakers is not None:
            result = self._check_circuit_breaker(symbol, breakers, now)
            if not result.approved:
                return result

        return self._check_volatility(symbol)

    def check_global(self, state: Dict[str, Any]) -> RiskCheckResult:
        """Gates 1-2 only; used before the rebalance pass."""
        result = self._check_emergency_stop(state)
        if not result.approved:
            return result
        return self._check_daily_loss(state)

    def _check_emergency_stop(self, state: Dict[str, Any]) -> RiskCheckResult:
        if state.get("emergency_stop"):
            return RiskCheckResult(
                approved=False,
                reason="Emergency stop active - trading halted",
                violated_checks=["emergency_stop"],
            )
        return APPROVED

    def _check_daily_loss(self, state: Dict[str, Any]) -> RiskCheckResult:
        daily_pnl = float(state.get("daily_pnl", 0.0) or 0.0)
        if daily_pnl < -self.daily_loss_limit_usd:
            reason = (
                f"Daily loss limit hit: ${daily_pnl:.2f} < -${self.daily_loss_limit_usd:.2f}"
            )
            self._alert_daily_stop(state, reason)
            return RiskCheckResult(approved=False, reason=reason, violated_checks=["daily_loss_limit"])
        return APPROVED

    def _alert_daily_stop(self, state: Dict[str, Any], reason: str) -> None:
        day = state.get("last_daily_reset")
        if not self.alert_service or self._daily_stop_alerted == day:
            return
        self._daily_stop_alerted = day
        logger.error(reason)
        self.alert_service.notify(
            severity=AlertSeverity.CRITICAL,
            title="Daily loss limit hit",
            message=reason,
            context={"daily_pnl": state.get("daily_pnl"), "date": day},
        )

    def _check_circuit_breaker(self, symbol: str, breakers: CircuitBreakerBoard,
                               now: Optional[datetime]) -> RiskCheckResult:
        if breakers.is_open(symbol, now):
            record = breakers.get(symbol)
            return RiskCheckResult(
                approved=False,
                reason=f"Circuit breaker open for {symbol} until {record.skip_until.isoformat()}",
                violated_checks=["circuit_breaker"],
            )
        return APPROVED

    def _check_volatility(self, symbol: str) -> RiskCheckResult:
        """Skip the symbol when the last short candle moved more than the threshold."""
        if self.exchange is None:
            return APPROVED
        try:
            candles = self.exchange.get_klines(symbol, self.volatility_interval, 2)
        except ExchangeError as e:
            logger.warning(f"Volatility check for {symbol} failed open: {e}")
            return APPROVED
        if len(candles) < 2 or candles[-2].close <= 0:
            return APPROVED

        change_pct = abs(candles[-1].close / candles[-2].close - 1) * 100
        if change_pct > self.volatility_threshold_pct:
            return RiskCheckResult(
                approved=False,
                reason=(
                    f"Volatility spike on {symbol}: {change_pct:.2f}% in one "
                    f"{self.volatility_interval} candle (> {self.volatility_threshold_pct:.1f}%)"
                ),
                violated_checks=["volatility"],
            )
        return APPROVED

    # Post-decision chain

    def check_trade(self, symbol: str, action: str, size_usd: float,
                    state: Dict[str, Any]) -> RiskCheckResult:
        """Gates 5-8, first rejection wins."""
        result = self._check_trade_size(symbol, size_usd)
        if not result.approved:
            return result
        if action == "SELL":
            result = self._check_has_position(symbol, state)
            if not result.approved:
                return result
            return self._check_sell_size(symbol, size_usd, state)
        if action == "BUY":
            return self._check_concentration(symbol, size_usd)
        return APPROVED

    def _check_trade_size(self, symbol: str, size_usd: float) -> RiskCheckResult:
        if size_usd > self.max_trade_usd:
            return RiskCheckResult(
                approved=False,
                reason=f"{symbol} size ${size_usd:.2f} exceeds cap ${self.max_trade_usd:.2f}",
                violated_checks=["trade_size_cap"],
            )
        return APPROVED

    def _check_has_position(self, symbol: str, state: Dict[str, Any]) -> RiskCheckResult:
        position = (state.get("positions") or {}).get(symbol)
        if not position or float(position.get("quantity", 0) or 0) <= 0:
            return RiskCheckResult(
                approved=False,
                reason=f"No {symbol} position to sell",
                violated_checks=["no_position"],
            )
        return APPROVED

    def _check_sell_size(self, symbol: str, size_usd: float, state: Dict[str, Any]) -> RiskCheckResult:
        """
        Clamp a SELL to the current value of the tracked position.

        The order is sized in quote currency, so an oversized SELL would
        otherwise sell coins the bot does not track. Returns the clamped
        size in `size_usd`; rejects when the position cannot be priced.
        """
        if self.exchange is None:
            return APPROVED
        quantity = float(state["positions"][symbol].get("quantity", 0) or 0)
        try:
            price = float(self.exchange.get_price(symbol))
        except ExchangeError as e:
            return RiskCheckResult(
                approved=False,
                reason=f"Cannot price {symbol} position to size SELL: {e}",
                violated_checks=["oversell"],
            )
        held_value = math.floor(round(quantity * price * 100, 6)) / 100
        if size_usd <= held_value:
            return APPROVED
        if held_value <= 0:
            return RiskCheckResult(
                approved=False,
                reason=f"{symbol} position worth ${quantity * price:.4f} is too small to sell",
                violated_checks=["oversell"],
            )
        logger.info(
            f"Clamping SELL {symbol} ${size_usd:.2f} to held value ${held_value:.2f} "
            f"({quantity:.8f} @ ${price:.4f})"
        )
        return RiskCheckResult(
            approved=True,
            reason=f"SELL clamped to held value ${held_value:.2f}",
            size_usd=held_value,
        )

    def _check_concentration(self, symbol: str, size_usd: float) -> RiskCheckResult:
        """
        Reject a BUY that would put more than the limit of total value in one asset.

        Total value counts stablecoins 1:1 and prices every other balance;
        balances that cannot be priced are left out of the total.
        """
        if self.exchange is None:
            return APPROVED
        try:
            balances = self.exchange.get_account_balances()
        except ExchangeError as e:
            logger.warning(f"Concentration check for {symbol} failed open: {e}")
            return APPROVED

        target = base_asset(symbol)
        total = 0.0
        asset_value = 0.0
        for asset, balance in balances.items():
            amount = balance.total
            if amount <= 0:
                continue
            if asset in STABLECOINS:
                value = amount
            else:
                try:
                    value = amount * self.exchange.get_price(f"{asset}{DEFAULT_QUOTE}")
                except ExchangeError:
                    logger.debug(f"Unpriceable balance {asset} excluded from total")
                    continue
            total += value
            if asset == target:
                asset_value = value

        denominator = total + size_usd
        if denominator <= 0:
            return APPROVED
        share = (asset_value + size_usd) / denominator
        if share > self.concentration_limit:
            return RiskCheckResult(
                approved=False,
                reason=(
                    f"{target} would be {share * 100:.1f}% of portfolio "
                    f"(limit {self.concentration_limit * 100:.0f}%)"
                ),
                violated_checks=["concentration"],
            )
        return APPROVED
