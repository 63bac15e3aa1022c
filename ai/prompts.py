"""Prompt builders for the decision, reflection and rebalance passes."""

import math
from typing import Iterable, List, Optional

from ai.schemas import MarketSnapshot, TradingDecision

DECISION_SYSTEM_PROMPT = (
    "You are a disciplined crypto spot trader. You respond with a single JSON "
    "object and nothing else."
)

REFLECTION_SYSTEM_PROMPT = (
    "You are a risk reviewer. You double-check a proposed trade for mistakes "
    "and respond with a single JSON object."
)

PORTFOLIO_SYSTEM_PROMPT = (
    "You are a crypto portfolio manager. You respond with a JSON array only."
)


def _fmt(value: float, digits: int = 2) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "n/a"
    return f"{value:,.{digits}f}"


def build_decision_prompt(snapshot: MarketSnapshot, confidence_threshold: float,
                          max_trade_usd: float) -> str:
    lines = [
        f"Analyze {snapshot.symbol} and decide whether to BUY, SELL or HOLD.",
        "",
        "=== Market Data ===",
        f"Price: ${_fmt(snapshot.price, 4)}",
        f"24h Change: {_fmt(snapshot.change_24h_pct)}%",
        f"RSI(14): {_fmt(snapshot.rsi)}",
        f"SMA20: ${_fmt(snapshot.sma20, 4)}",
        f"SMA50: ${_fmt(snapshot.sma50, 4)}",
        f"SMA200: ${_fmt(snapshot.sma200, 4)}",
        f"MACD Histogram: {_fmt(snapshot.macd_histogram, 6)}",
        f"Momentum (14h): {_fmt(snapshot.momentum, 4)}",
        "",
        "=== Current Position ===",
    ]
    if snapshot.position_quantity:
        avg = snapshot.position_avg_price or 0.0
        pnl_pct = ((snapshot.price - avg) / avg * 100) if avg > 0 else 0.0
        lines.append(
            f"Holding {snapshot.position_quantity:.8f} @ ${_fmt(avg, 4)} "
            f"(unrealized {pnl_pct:+.1f}%)"
        )
    else:
        lines.append("No position")

    lines.extend([
        "",
        "=== Rules ===",
        f"- Only trade when confidence >= {confidence_threshold:.0f}",
        f"- size_usd must be between 0 and {max_trade_usd:.2f}",
        "- Consider BUY when RSI < 40 and trend is supportive",
        "- Consider SELL when RSI > 60 or the position is losing momentum",
        "- size_usd must be 0 for HOLD",
        "- You can only SELL what is currently held",
        "",
        "Respond with JSON only:",
        '{"action": "BUY" | "SELL" | "HOLD", "confidence": 0-100, '
        f'"reasoning": "short explanation", "size_usd": 0-{max_trade_usd:.0f}}}',
    ])
    return "\n".join(lines)


def build_reflection_prompt(snapshot: MarketSnapshot, decision: TradingDecision) -> str:
    return "\n".join([
        f"A trading model proposed the following for {snapshot.symbol}:",
        f"Action: {decision.action}",
        f"Size: ${decision.size_usd:.2f}",
        f"Confidence: {decision.confidence:.0f}",
        f"Reasoning: {decision.reasoning}",
        "",
        f"Market: price ${_fmt(snapshot.price, 4)}, RSI {_fmt(snapshot.rsi)}, "
        f"24h change {_fmt(snapshot.change_24h_pct)}%, "
        f"MACD histogram {_fmt(snapshot.macd_histogram, 6)}",
        "",
        "Check the reasoning against the data. Reject if the reasoning contradicts "
        "the indicators or the trade is reckless.",
        "",
        'Respond with JSON only: {"approved": true | false, "reason": "short explanation"}',
    ])


def format_position_line(symbol: str, quantity: float, price: float, avg_price: float) -> str:
    value = quantity * price
    pnl_pct = ((price - avg_price) / avg_price * 100) if avg_price > 0 else 0.0
    return f"- {symbol}: {quantity:.8f} @ ${price:,.4f} (${value:,.2f}, {pnl_pct:+.1f}%)"


def build_portfolio_prompt(position_lines: List[str], cash_usd: Optional[float],
                           watchlist: Iterable[str], max_positions: int,
                           max_trade_usd: float) -> str:
    holdings = "\n".join(position_lines) if position_lines else "- none"
    cash = f"${cash_usd:,.2f}" if cash_usd is not None else "unknown"
    return "\n".join([
        "Review the portfolio and recommend rebalancing actions.",
        "",
        "=== Holdings ===",
        holdings,
        f"Stablecoin cash: {cash}",
        "",
        "=== Candidates ===",
        ", ".join(watchlist) or "none",
        "",
        "=== Constraints ===",
        f"- Maximum {max_positions} open positions",
        f"- Maximum ${max_trade_usd:.2f} per trade",
        "- Do not recommend stablecoins",
        "- Prefer HOLD when nothing is compelling",
        "",
        "Respond with a JSON array only:",
        '[{"symbol": "BTCUSDT", "action": "BUY" | "SELL" | "HOLD", '
        '"amount": usd_amount, "reasoning": "short explanation"}]',
    ])
