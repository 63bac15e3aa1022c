"""
spot-autopilot Analytics: Trade and Recommendation Logs

Append-only JSONL audit trails.

- TradeLog: one file per UTC date (trades-YYYY-MM-DD.jsonl) holding every
  decision, execution, gate skip and error for the per-symbol loop.
- RecommendationLog: portfolio-recommendations.jsonl holding every
  rebalance recommendation with its executed/rejected outcome.
"""

import json
import logging
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug(f"Skipping corrupt line in {path}")
    return entries


class _JsonlWriter:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._lock = threading.Lock()

    def _append(self, path: Path, entry: Dict[str, Any]) -> Dict[str, Any]:
        record = {"timestamp": self._clock().isoformat(), **entry}
        try:
            with self._lock, open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError as e:
            # Audit trail loss must not take down the trading loop
            logger.error(f"Failed to append to {path}: {e}")
        return record


class TradeLog(_JsonlWriter):
    """
    Per-symbol decision/execution trail.

    Entry fields: timestamp, pair, action, confidence, reasoning, size_usd,
    executed, status, mode and optionally order_id, price, quantity, error.
    """

    def __init__(self, log_dir: str = "logs", mode: str = "paper",
                 clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.mode = mode
        logger.info(f"Initialized TradeLog at {self.log_dir}")

    def path_for(self, day: Optional[date] = None) -> Path:
        day = day or self._clock().date()
        return self.log_dir / f"trades-{day.isoformat()}.jsonl"

    def _write(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        entry.setdefault("mode", self.mode)
        return self._append(self.path_for(), entry)

    def log_decision(self, pair: str, decision: Any) -> Dict[str, Any]:
        return self._write({
            "pair": pair,
            "status": "decision",
            **decision.to_dict(),
            "executed": False,
        })

    def log_execution(self, pair: str, result: Any) -> Dict[str, Any]:
        entry = {
            "pair": pair,
            "status": "executed" if result.executed else "not_executed",
            **result.decision.to_dict(),
            "executed": result.executed,
            "mode": result.mode,
        }
        if result.order_id:
            entry["order_id"] = result.order_id
        if result.avg_price:
            entry["price"] = result.avg_price
        if result.quantity:
            entry["quantity"] = result.quantity
        if result.error:
            entry["error"] = result.error
        return self._write(entry)

    def log_skip(self, pair: str, gate: str, reason: str,
                 decision: Optional[Any] = None) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"pair": pair, "status": "skipped", "gate": gate, "reason": reason}
        if decision is not None:
            entry.update(decision.to_dict())
        entry["executed"] = False
        return self._write(entry)

    def log_error(self, pair: str, error: str) -> Dict[str, Any]:
        return self._write({
            "pair": pair,
            "status": "error",
            "action": "HOLD",
            "confidence": 0,
            "reasoning": "",
            "size_usd": 0,
            "executed": False,
            "error": error,
        })

    def read(self, day: Optional[date] = None) -> List[Dict[str, Any]]:
        """All entries for a UTC date (default: today), oldest first."""
        return _read_jsonl(self.path_for(day))


class RecommendationLog(_JsonlWriter):
    """Rebalance recommendation outcomes."""

    def __init__(self, path: str = "logs/portfolio-recommendations.jsonl",
                 clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _entry(self, rec: Any, executed: bool, reason: Optional[str] = None,
               **extra: Any) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "symbol": rec.symbol,
            "action": rec.action,
            "amount_usd": rec.amount_usd,
            "reasoning": rec.reasoning,
            "executed": executed,
        }
        if reason:
            entry["reason"] = reason
        entry.update({k: v for k, v in extra.items() if v is not None})
        return entry

    def log_executed(self, rec: Any, order_id: Optional[str] = None,
                     price: Optional[float] = None) -> Dict[str, Any]:
        return self._append(self.path, self._entry(rec, True, order_id=order_id, price=price))

    def log_rejected(self, rec: Any, reason: str) -> Dict[str, Any]:
        return self._append(self.path, self._entry(rec, False, reason))

    def read_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent `limit` entries, oldest first."""
        entries = _read_jsonl(self.path)
        return entries[-limit:] if limit > 0 else []
