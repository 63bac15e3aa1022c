"""Symbol utilities for Binance-style concatenated pairs (BTCUSDT).

Single source of truth for splitting pairs into base/quote and for the
stablecoin set that is valued 1:1 in USD and never traded as a position.
"""

from __future__ import annotations

from typing import Optional, Tuple

DEFAULT_QUOTE = "USDT"

STABLECOINS = frozenset({"USDT", "USDC", "BUSD", "DAI", "TUSD", "FDUSD"})

# Longest suffix first so "FDUSD" wins over "USD"-like matches.
QUOTE_SUFFIXES: Tuple[str, ...] = ("FDUSD", "USDT", "USDC", "BUSD", "TUSD", "DAI", "BTC", "ETH", "BNB")


def split_symbol(symbol: Optional[str]) -> Tuple[str, str]:
    """Split `BTCUSDT` into `("BTC", "USDT")`.

    A bare asset (`BTC`) is returned with an empty quote.
    """

    if not symbol:
        return "", ""
    ticker = symbol.strip().upper().replace("-", "").replace("/", "")
    for suffix in QUOTE_SUFFIXES:
        if ticker.endswith(suffix) and len(ticker) > len(suffix):
            return ticker[: -len(suffix)], suffix
    return ticker, ""


def base_asset(symbol: Optional[str]) -> str:
    return split_symbol(symbol)[0]


def to_pair(asset: str, quote: str = DEFAULT_QUOTE) -> str:
    """`BTC` -> `BTCUSDT`; already-qualified pairs pass through unchanged."""

    base, existing_quote = split_symbol(asset)
    if existing_quote:
        return base + existing_quote
    return f"{base}{quote}"


def is_stablecoin(symbol: Optional[str]) -> bool:
    """True for a bare stablecoin ticker or a pair whose base is a stablecoin."""

    if not symbol:
        return False
    ticker = symbol.strip().upper()
    if ticker in STABLECOINS:
        return True
    base, quote = split_symbol(ticker)
    return bool(quote) and base in STABLECOINS


__all__ = [
    "DEFAULT_QUOTE",
    "STABLECOINS",
    "split_symbol",
    "base_asset",
    "to_pair",
    "is_stablecoin",
]
