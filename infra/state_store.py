"""
spot-autopilot Infrastructure: State Store

Persistent bot state with atomic, version-guarded writes.
Positions, P&L accounting, per-symbol error counts and the emergency-stop
flag all live in one JSON document.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from core.exceptions import StatePersistenceError, StaleStateError

logger = logging.getLogger(__name__)

# Quantities at or below this are treated as a closed position
DUST_QUANTITY = Decimal("0.00000001")

DEFAULT_STATE = {
    "version": 0,  # incremented on every successful save
    "positions": {},  # symbol -> {quantity, avg_price}
    "last_check_times": {},  # symbol -> ISO time of last evaluation
    "cumulative_pnl": 0.0,
    "daily_pnl": 0.0,
    "daily_loss_count": 0,
    "last_daily_reset": None,  # YYYY-MM-DD (UTC)
    "error_counts": {},  # symbol -> consecutive failures
    "emergency_stop": False,
    "last_updated": None,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


class StateStore:
    """
    Persistent state storage using JSON file.

    Features:
    - Atomic writes (temp file + os.replace)
    - Optimistic version guard against lost updates
    - Daily P&L reset once per UTC date
    - transaction() for serialized read-modify-write
    """

    SAVE_ATTEMPTS = 3
    SAVE_BACKOFF_SECONDS = 0.05

    def __init__(self, state_file: Optional[str] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: data/bot_state.json)
            clock: Callable returning an aware UTC datetime (tests inject this)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/bot_state.json"))

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        logger.info(f"Initialized StateStore at {self.state_file}")

    def _defaults(self) -> Dict[str, Any]:
        return copy.deepcopy(DEFAULT_STATE)

    def _read_disk(self) -> Optional[Dict[str, Any]]:
        if not self.state_file.exists():
            return None
        with open(self.state_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("state file is not a JSON object")
        return data

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Missing or unreadable files yield defaults. A corrupt file is logged
        and replaced on the next save.

        Returns:
            State dict with defaults merged and the daily reset applied
        """
        try:
            data = self._read_disk()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load state, using defaults: {e}")
            data = None

        if data is None:
            state = self._defaults()
        else:
            state = {**self._defaults(), **data}
        return self._auto_reset(state)

    def _disk_version(self) -> Optional[int]:
        try:
            data = self._read_disk()
        except (OSError, ValueError):
            return None
        if data is None:
            return None
        return int(data.get("version", 0) or 0)

    def save(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """
        Save state to file atomically.

        Refuses the write with StaleStateError when the file on disk has a
        different version than the one this state was loaded with.

        Returns:
            The saved state (version incremented, last_updated stamped)
        """
        with self._lock:
            loaded_version = int(state.get("version", 0) or 0)
            disk_version = self._disk_version()
            if disk_version is not None and disk_version != loaded_version:
                logger.warning(
                    f"Refusing stale state write (loaded v{loaded_version}, disk v{disk_version})"
                )
                raise StaleStateError(loaded_version, disk_version)

            to_write = self._auto_reset(dict(state))
            to_write["version"] = loaded_version + 1
            to_write["last_updated"] = self._clock().isoformat()

            last_error: Optional[Exception] = None
            for attempt in range(1, self.SAVE_ATTEMPTS + 1):
                try:
                    self._write_atomic(to_write)
                    break
                except (OSError, TypeError, ValueError) as e:
                    last_error = e
                    logger.warning(
                        f"State save attempt {attempt}/{self.SAVE_ATTEMPTS} failed: {e}"
                    )
                    time.sleep(self.SAVE_BACKOFF_SECONDS * attempt)
            else:
                logger.critical(f"State could not be persisted to {self.state_file}: {last_error}")
                raise StatePersistenceError(str(last_error))

            state.clear()
            state.update(to_write)
            logger.debug(f"Saved state v{to_write['version']}")
            return state

    def _write_atomic(self, state: Dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".state_",
            suffix=".json.tmp"
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            os.replace(temp_path, self.state_file)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """
        Serialized read-modify-write.

            with store.transaction() as state:
                store.apply_fill(state, "BTCUSDT", "BUY", 0.001, 60000)

        The state is saved only if the block exits without an exception.
        """
        with self._lock:
            state = self.load()
            yield state
            self.save(state)

    def _auto_reset(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Zero the daily accumulators once per UTC calendar date."""
        today = self._clock().date().isoformat()
        last_reset = state.get("last_daily_reset")
        if last_reset != today:
            logger.info(f"Resetting daily counters (last reset: {last_reset})")
            state["daily_pnl"] = 0.0
            state["daily_loss_count"] = 0
            state["last_daily_reset"] = today
        return state

    # Mutators operate on a loaded state dict; callers persist via transaction()

    def apply_fill(self, state: Dict[str, Any], symbol: str, side: str,
                   quantity: float, price: float) -> float:
        """
        Apply an executed fill to the position table.

        BUY blends into the average entry price. SELL realizes P&L against
        the average price before reducing, clamps to the held quantity and
        removes the position when it reaches dust.

        Returns:
            Realized P&L (0.0 for BUY)

        Raises:
            ValueError: non-positive quantity/price, unknown side, or SELL
                without a tracked position
        """
        qty_dec = _dec(quantity)
        price_dec = _dec(price)
        if qty_dec <= 0 or price_dec <= 0:
            raise ValueError(f"fill for {symbol} needs positive quantity and price")

        positions = state.setdefault("positions", {})
        side_upper = (side or "").upper()

        if side_upper == "BUY":
            pos = positions.get(symbol)
            if pos:
                old_qty = _dec(pos.get("quantity", 0))
                old_avg = _dec(pos.get("avg_price", price_dec))
                new_qty = old_qty + qty_dec
                new_avg = (old_qty * old_avg + qty_dec * price_dec) / new_qty
                pos["quantity"] = float(new_qty)
                pos["avg_price"] = float(new_avg)
                logger.debug(
                    "Added to %s position: %.8f @ $%.8f, new avg: $%.8f, total qty: %.8f",
                    symbol, float(qty_dec), float(price_dec), float(new_avg), float(new_qty),
                )
            else:
                positions[symbol] = {"quantity": float(qty_dec), "avg_price": float(price_dec)}
                logger.info("Opened %s position: %.8f @ $%.8f", symbol, float(qty_dec), float(price_dec))
            return 0.0

        if side_upper != "SELL":
            raise ValueError(f"Unknown side: {side}")

        pos = positions.get(symbol)
        held = _dec(pos.get("quantity", 0)) if pos else Decimal("0")
        if held <= 0:
            raise ValueError(f"SELL for {symbol} without a tracked position")

        avg = _dec(pos.get("avg_price", 0))
        sell_qty = min(qty_dec, held)
        if qty_dec > held:
            logger.warning(
                "SELL %s qty %.8f exceeds held %.8f; clamping", symbol, float(qty_dec), float(held)
            )
        realized = float((price_dec - avg) * sell_qty)
        remaining = held - sell_qty

        if remaining <= DUST_QUANTITY:
            positions.pop(symbol, None)
            logger.info("Closed %s position, realized P&L $%.4f", symbol, realized)
        else:
            pos["quantity"] = float(remaining)
            logger.info(
                "Reduced %s position to %.8f, realized P&L $%.4f", symbol, float(remaining), realized
            )

        self.record_trade_pnl(state, realized)
        return realized

    def record_trade_pnl(self, state: Dict[str, Any], pnl: float) -> None:
        state["cumulative_pnl"] = float(_dec(state.get("cumulative_pnl", 0)) + _dec(pnl))
        state["daily_pnl"] = float(_dec(state.get("daily_pnl", 0)) + _dec(pnl))
        if pnl < 0:
            state["daily_loss_count"] = int(state.get("daily_loss_count", 0)) + 1

    def increment_error_count(self, state: Dict[str, Any], symbol: str) -> int:
        counts = state.setdefault("error_counts", {})
        counts[symbol] = int(counts.get(symbol, 0)) + 1
        return counts[symbol]

    def reset_error_count(self, state: Dict[str, Any], symbol: str) -> None:
        state.setdefault("error_counts", {}).pop(symbol, None)

    def touch_check_time(self, state: Dict[str, Any], symbol: str) -> None:
        state.setdefault("last_check_times", {})[symbol] = self._clock().isoformat()

    def set_emergency_stop(self, active: bool) -> Dict[str, Any]:
        with self.transaction() as state:
            state["emergency_stop"] = bool(active)
        logger.warning(f"Emergency stop {'SET' if active else 'CLEARED'}")
        return state

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)
