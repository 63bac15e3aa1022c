"""
Reasoning-oracle schemas and data structures.

Defines the contract between the decision pipeline and the LLM layer.
Oracle output is untrusted text; it only becomes one of these types after
passing through ai.response_parser.
"""

from dataclasses import dataclass
from typing import Generic, Literal, Optional, TypeVar, Union

Action = Literal["BUY", "SELL", "HOLD"]
VALID_ACTIONS = ("BUY", "SELL", "HOLD")

T = TypeVar("T")


@dataclass(frozen=True)
class TradingDecision:
    """Bounded action for one symbol."""
    action: Action
    confidence: float      # 0-100
    reasoning: str
    size_usd: float        # 0 for HOLD

    @classmethod
    def hold(cls, reasoning: str, confidence: float = 0.0) -> "TradingDecision":
        return cls(action="HOLD", confidence=confidence, reasoning=reasoning, size_usd=0.0)

    @property
    def is_actionable(self) -> bool:
        return self.action != "HOLD" and self.size_usd > 0

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "size_usd": self.size_usd,
        }


@dataclass(frozen=True)
class ReflectionVerdict:
    approved: bool
    reason: str = ""


@dataclass
class PortfolioRecommendation:
    """Whole-portfolio action proposed by the rebalance pass."""
    symbol: str
    action: Literal["BUY", "SELL"]
    amount_usd: float
    reasoning: str = "No reasoning provided"

    def to_decision(self) -> TradingDecision:
        # Recommendations carry no confidence score; the rebalance pass is
        # already gated by the oracle's own selectivity.
        return TradingDecision(
            action=self.action,
            confidence=100.0,
            reasoning=self.reasoning,
            size_usd=self.amount_usd,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Malformed:
    raw_text: str
    reason: str


Parsed = Union[Ok[T], Malformed]


@dataclass
class MarketSnapshot:
    """Features the decision prompt is built from."""
    symbol: str
    price: float
    change_24h_pct: float
    rsi: float
    sma20: float
    sma50: float
    sma200: float
    macd_histogram: float
    momentum: float
    candles: int = 0
    position_quantity: Optional[float] = None
    position_avg_price: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "change_24h_pct": self.change_24h_pct,
            "rsi": self.rsi,
            "sma20": self.sma20,
            "sma50": self.sma50,
            "sma200": self.sma200,
            "macd_histogram": self.macd_histogram,
            "momentum": self.momentum,
            "candles": self.candles,
        }
