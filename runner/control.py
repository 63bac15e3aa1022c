"""
spot-autopilot Runner: Control Service

Operator-facing operations behind the HTTP control surface. Every write
goes through the state store's transaction(), so a control request can
never clobber a fill the scheduler is persisting.
"""

import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from infra.alerting import AlertSeverity
from infra.symbols import STABLECOINS, split_symbol

logger = logging.getLogger(__name__)

RUNTIME_KEYS = ("pairs", "fast_interval_seconds", "confidence_threshold")

# Env-style names accepted by update_runtime_config()
RUNTIME_KEY_ALIASES = {
    "BOT_PAIRS": "pairs",
    "BOT_CHECK_INTERVAL_MS": "fast_interval_seconds",
    "BOT_CONFIDENCE_THRESHOLD": "confidence_threshold",
}

MIN_FAST_INTERVAL_SECONDS = 10.0


class ControlService:
    def __init__(self, scheduler, state_store, exchange, decision_engine,
                 trade_log, recommendation_log, alert_service=None, version: str = "0.3.0"):
        self.scheduler = scheduler
        self.state_store = state_store
        self.exchange = exchange
        self.decision_engine = decision_engine
        self.trade_log = trade_log
        self.recommendation_log = recommendation_log
        self.alert_service = alert_service
        self.version = version
        self._started_at = time.monotonic()

    def get_health(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "status": "ok",
            "version": self.version,
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_status(self) -> Dict[str, Any]:
        state = self.state_store.load()
        positions = state.get("positions") or {}
        snapshot = self.scheduler.snapshot()
        monitored = list(snapshot["pairs"])
        monitored += [s for s in sorted(positions) if s not in monitored]
        return {
            "running": snapshot["running"],
            "emergency_stop": bool(state.get("emergency_stop")),
            "mode": snapshot["mode"],
            "monitored_symbols": monitored,
            "open_positions": len(positions),
            "daily_pnl": state.get("daily_pnl", 0.0),
            "cumulative_pnl": state.get("cumulative_pnl", 0.0),
            "daily_loss_count": state.get("daily_loss_count", 0),
            "last_updated": state.get("last_updated"),
            "last_fast_cycle": snapshot["last_fast_cycle"],
            "last_slow_cycle": snapshot["last_slow_cycle"],
            "fast_interval_seconds": snapshot["fast_interval_seconds"],
            "confidence_threshold": self.decision_engine.confidence_threshold,
            "circuit_breakers": snapshot["circuit_breakers"],
        }

    def get_portfolio(self) -> Dict[str, Any]:
        """Exchange balances. Raises ExchangeError when the exchange is unreachable."""
        balances = self.exchange.get_account_balances()
        return {
            "balances": [
                {"asset": b.asset, "free": b.free, "locked": b.locked, "total": b.total}
                for _, b in sorted(balances.items())
            ],
            "stable_cash_usd": sum(b.total for a, b in balances.items() if a in STABLECOINS),
        }

    def get_open_positions(self) -> List[Dict[str, Any]]:
        """Tracked positions marked to market; falls back to avg price when unpriced."""
        rows = []
        for symbol, pos in sorted((self.state_store.load().get("positions") or {}).items()):
            quantity = float(pos.get("quantity", 0) or 0)
            avg_price = float(pos.get("avg_price", 0) or 0)
            priced = True
            try:
                price = float(self.exchange.get_price(symbol))
            except Exception as e:
                logger.debug(f"Price for {symbol} unavailable: {e}")
                price, priced = avg_price, False
            pnl = (price - avg_price) * quantity
            rows.append({
                "symbol": symbol,
                "base_asset": split_symbol(symbol)[0],
                "quantity": quantity,
                "avg_price": avg_price,
                "current_price": price,
                "priced": priced,
                "value_usd": price * quantity,
                "unrealized_pnl": pnl,
                "unrealized_pnl_pct": ((price / avg_price - 1) * 100) if avg_price > 0 else 0.0,
            })
        return rows

    def get_trade_history(self, day: Optional[str] = None) -> Dict[str, Any]:
        """Trade log for a UTC date (YYYY-MM-DD, default today). Raises ValueError on a bad date."""
        parsed = date.fromisoformat(day) if day else None
        entries = self.trade_log.read(parsed)
        return {"date": (parsed or datetime.now(timezone.utc).date()).isoformat(), "trades": entries}

    def get_recommendation_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.recommendation_log.read_recent(limit)

    def get_signals(self, symbol: str) -> Dict[str, Any]:
        return self.decision_engine.get_signals(symbol.strip().upper())

    def set_emergency_stop(self, active: bool) -> Dict[str, Any]:
        """Persist the flag first, then stop or restart the scheduler."""
        self.state_store.set_emergency_stop(active)
        if active:
            self.scheduler.stop(timeout=0)
        else:
            self.scheduler.start()

        if self.alert_service is not None:
            self.alert_service.notify(
                severity=AlertSeverity.CRITICAL if active else AlertSeverity.WARNING,
                title="Emergency stop activated" if active else "Emergency stop cleared",
                message="Trading halted by operator" if active else "Trading resumed by operator",
            )
        return {"emergency_stop": bool(active), "running": self.scheduler.is_running()}

    def get_emergency_stop(self) -> Dict[str, Any]:
        return {
            "emergency_stop": bool(self.state_store.get("emergency_stop", False)),
            "running": self.scheduler.is_running(),
        }

    def update_runtime_config(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a subset of runtime settings.

        Only pairs, fast_interval_seconds and confidence_threshold may be
        changed (env-style names are accepted too). Other keys are ignored
        and reported back.

        Raises:
            ValueError: an allowed key carries an invalid value
        """
        applied: Dict[str, Any] = {}
        ignored: List[str] = []
        for raw_key, value in (updates or {}).items():
            key = RUNTIME_KEY_ALIASES.get(raw_key, raw_key)
            if key not in RUNTIME_KEYS:
                ignored.append(raw_key)
                continue
            if raw_key == "BOT_CHECK_INTERVAL_MS":
                value = float(value) / 1000.0
            applied[key] = self._apply(key, value)

        if applied:
            logger.info(f"Runtime config updated: {applied}")
        if ignored:
            logger.warning(f"Ignored runtime config keys: {ignored}")
        return {"applied": applied, "ignored": ignored}

    def _apply(self, key: str, value: Any) -> Any:
        if key == "pairs":
            if isinstance(value, str):
                value = value.split(",")
            pairs = []
            for raw in value or []:
                pair = str(raw).strip().upper()
                if pair and pair not in pairs:
                    pairs.append(pair)
            if not pairs:
                raise ValueError("pairs must contain at least one symbol")
            self.scheduler.set_pairs(pairs)
            return pairs

        if key == "fast_interval_seconds":
            seconds = float(value)
            if seconds < MIN_FAST_INTERVAL_SECONDS:
                raise ValueError(f"fast_interval_seconds must be >= {MIN_FAST_INTERVAL_SECONDS:.0f}")
            self.scheduler.fast_interval_s = seconds
            return seconds

        threshold = float(value)
        if not 0 <= threshold <= 100:
            raise ValueError("confidence_threshold must be between 0 and 100")
        self.decision_engine.confidence_threshold = threshold
        return threshold
