"""
spot-autopilot Core: Portfolio Manager

Whole-portfolio rebalance pass. The only path allowed to open positions
in symbols that are not already held.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from ai.model_client import ModelClient
from ai.prompts import PORTFOLIO_SYSTEM_PROMPT, build_portfolio_prompt, format_position_line
from ai.response_parser import parse_recommendations
from ai.schemas import Malformed, PortfolioRecommendation
from infra.symbols import STABLECOINS, is_stablecoin, split_symbol, to_pair

logger = logging.getLogger(__name__)

MAX_POSITIONS_REASON = "max positions reached"


class PortfolioManager:
    def __init__(self, exchange, model_client: ModelClient, state_store, recommendation_log=None,
                 max_positions: int = 5, max_trade_usd: float = 20.0,
                 watchlist: Optional[Sequence[str]] = None, timeout_s: float = 60.0):
        self.exchange = exchange
        self.model_client = model_client
        self.state_store = state_store
        self.recommendation_log = recommendation_log
        self.max_positions = int(max_positions)
        self.max_trade_usd = float(max_trade_usd)
        self.watchlist = list(watchlist or [])
        self.timeout_s = float(timeout_s)
        self.last_rejected: List[PortfolioRecommendation] = []

    def _position_lines(self, positions: Dict[str, Dict[str, Any]]) -> List[str]:
        lines = []
        for symbol, pos in sorted(positions.items()):
            quantity = float(pos.get("quantity", 0) or 0)
            avg_price = float(pos.get("avg_price", 0) or 0)
            try:
                price = float(self.exchange.get_ticker(symbol).last_price)
            except Exception as e:
                logger.debug(f"Pricing {symbol} for portfolio summary failed: {e}")
                lines.append(f"- {symbol}: {quantity:.8f} @ ${avg_price:,.4f} (avg entry, live price unavailable)")
                continue
            lines.append(format_position_line(symbol, quantity, price, avg_price))
        return lines

    def _stable_cash(self) -> Optional[float]:
        try:
            balances = self.exchange.get_account_balances()
        except Exception as e:
            logger.debug(f"Balances unavailable for portfolio summary: {e}")
            return None
        return sum(b.total for asset, b in balances.items() if asset in STABLECOINS)

    def consult(self) -> List[PortfolioRecommendation]:
        """
        Ask the oracle for rebalance actions and filter them.

        Returns:
            Executable recommendations. Rejections are written to the
            recommendation log and kept on `last_rejected`. Any oracle
            failure yields an empty list.
        """
        self.last_rejected = []
        state = self.state_store.load()
        positions = state.get("positions", {}) or {}

        prompt = build_portfolio_prompt(
            self._position_lines(positions),
            self._stable_cash() if self.exchange is not None else None,
            self.watchlist,
            self.max_positions,
            self.max_trade_usd,
        )
        try:
            reply = self.model_client.complete(
                prompt, system_prompt=PORTFOLIO_SYSTEM_PROMPT, timeout=self.timeout_s
            )
        except Exception as e:
            logger.error(f"Portfolio consult failed: {e}")
            return []

        parsed = parse_recommendations(reply)
        if isinstance(parsed, Malformed):
            logger.warning(f"Unparseable portfolio recommendations: {parsed.reason}")
            return []

        return self._filter(parsed.value, held=set(positions))

    def _filter(self, raw: List[Dict[str, Any]], held: Set[str]) -> List[PortfolioRecommendation]:
        # New symbols accepted earlier in this reply count toward the limit
        open_symbols = set(held)
        accepted: List[PortfolioRecommendation] = []
        for item in raw:
            action = str(item.get("action", "")).strip().upper()
            if action == "HOLD":
                continue
            symbol = str(item.get("symbol") or "").strip().upper()
            if not symbol or is_stablecoin(symbol):
                logger.debug(f"Dropping recommendation with symbol {symbol!r}")
                continue
            if action not in ("BUY", "SELL"):
                logger.warning(f"Dropping recommendation for {symbol} with action {action!r}")
                continue

            _, quote = split_symbol(symbol)
            if not quote:
                symbol = to_pair(symbol)

            amount = item.get("amount", item.get("amount_usd"))
            try:
                amount = float(amount) if amount else 0.0
            except (TypeError, ValueError):
                amount = 0.0
            amount_usd = min(amount if amount > 0 else self.max_trade_usd, self.max_trade_usd)

            reasoning = item.get("reasoning")
            rec = PortfolioRecommendation(
                symbol=symbol,
                action=action,
                amount_usd=amount_usd,
                reasoning=reasoning if isinstance(reasoning, str) and reasoning else "No reasoning provided",
            )

            if action == "BUY" and len(open_symbols) >= self.max_positions:
                logger.info(
                    f"Cannot add {symbol} - max positions ({self.max_positions}) reached"
                )
                self.last_rejected.append(rec)
                if self.recommendation_log is not None:
                    self.recommendation_log.log_rejected(rec, MAX_POSITIONS_REASON)
                continue

            if action == "BUY":
                open_symbols.add(symbol)
            accepted.append(rec)
        return accepted
