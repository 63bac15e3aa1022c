"""
spot-autopilot Core: Exchange Connector (Binance Spot)

Market data, balances and market-order execution against the Binance
spot REST API (testnet or production). Signed endpoints use HMAC-SHA256
over the query string.
"""

import hashlib
import hmac
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.exceptions import (
    AuthenticationError,
    ExchangeError,
    ExchangeUnavailable,
    RateLimitError,
)

logger = logging.getLogger(__name__)

TESTNET_BASE = "https://testnet.binance.vision/api"
PRODUCTION_BASE = "https://api.binance.com/api"

# Binance error codes that mean the key or signature is unusable
AUTH_ERROR_CODES = {-1022, -2014, -2015}

PLACEHOLDER_KEYS = {"", "your_key_here", "your_secret_here"}


@dataclass
class Ticker24h:
    symbol: str
    last_price: float
    price_change_pct: float


@dataclass
class OHLCV:
    """Candlestick data"""
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class Balance:
    asset: str
    free: float
    locked: float

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass
class OrderFill:
    order_id: str
    status: str
    executed_qty: float
    cumulative_quote_qty: float
    avg_price: Optional[float]


class BinanceExchange:
    """
    Binance spot REST connector.

    Supports:
    - Market data (24h ticker, last price, klines)
    - Account data (balances)
    - Market orders sized in quote currency
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 testnet: bool = True, timeout_s: float = 10.0, max_retries: int = 3,
                 session: Optional[requests.Session] = None):
        self.api_key = "" if (api_key or "") in PLACEHOLDER_KEYS else api_key
        self.api_secret = "" if (api_secret or "") in PLACEHOLDER_KEYS else api_secret
        self.testnet = testnet
        self.base_url = TESTNET_BASE if testnet else PRODUCTION_BASE
        self.timeout_s = timeout_s
        self.max_retries = max(1, int(max_retries))
        self._session = session or requests.Session()
        logger.info(
            f"Initialized BinanceExchange (testnet={testnet}, credentials={self.has_credentials})"
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _sign(self, params: Dict[str, Any]) -> str:
        query = urlencode(params)
        signature = hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    @staticmethod
    def _raise_for_payload(response: requests.Response, endpoint: str) -> None:
        status = response.status_code
        code = None
        msg = response.text
        try:
            payload = response.json()
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("msg", msg)
        except ValueError:
            pass

        if status in (429, 418):
            raise RateLimitError(f"Rate limited on {endpoint}: {msg}", code=code, status=status)
        if status in (401, 403) or code in AUTH_ERROR_CODES:
            raise AuthenticationError(f"Unauthorized on {endpoint}: {msg}", code=code, status=status)
        raise ExchangeError(f"Binance error {status} on {endpoint}: {msg}", code=code, status=status)

    def _req(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
             signed: bool = False, retry: bool = True) -> Any:
        """
        Make HTTP request to Binance with exponential backoff.

        Retries on:
        - 429/418 (rate limit)
        - 5xx (server errors)
        - Network errors (timeout, connection)

        Does NOT retry on other 4xx responses.

        With retry=False a single attempt is made, and a timeout, network
        error or 5xx raises ExchangeUnavailable straight away. Order
        placement uses this: the exchange may have accepted the request.
        """
        if signed and not self.has_credentials:
            raise AuthenticationError(f"{endpoint} requires API credentials")

        url = self.base_url + endpoint
        attempts = self.max_retries if retry else 1
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            headers = {}
            if signed:
                query_params = dict(params or {})
                query_params["timestamp"] = int(time.time() * 1000)
                query_params.setdefault("recvWindow", 5000)
                full_url = f"{url}?{self._sign(query_params)}"
                headers["X-MBX-APIKEY"] = self.api_key
            elif params:
                full_url = f"{url}?{urlencode(params)}"
            else:
                full_url = url

            try:
                response = self._session.request(
                    method, full_url, headers=headers, timeout=self.timeout_s
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{attempts}"
                )
                last_exception = e
            else:
                if response.status_code < 400:
                    return response.json()

                status_code = response.status_code
                if 400 <= status_code < 500 and status_code not in (429, 418):
                    logger.error(f"Binance client error: {status_code} - {response.text}")
                    self._raise_for_payload(response, endpoint)

                if status_code in (429, 418):
                    logger.warning(
                        f"Rate limited ({status_code}) on {endpoint}, "
                        f"attempt {attempt + 1}/{attempts}"
                    )
                else:
                    logger.warning(
                        f"Server error ({status_code}) on {endpoint}, "
                        f"attempt {attempt + 1}/{attempts}"
                    )
                try:
                    self._raise_for_payload(response, endpoint)
                except ExchangeError as e:
                    last_exception = e

            if attempt < attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        if not retry:
            # 429/418 means the request was refused, anything else leaves the outcome unknown
            if isinstance(last_exception, RateLimitError):
                raise last_exception
            raise ExchangeUnavailable(
                f"{method} {endpoint} outcome unknown: {last_exception}",
                status=getattr(last_exception, "status", None),
            )

        logger.error(f"All {attempts} retries exhausted for {endpoint}")
        if isinstance(last_exception, ExchangeError):
            raise last_exception
        raise ExchangeUnavailable(f"Request to {endpoint} failed: {last_exception}")

    # Market data

    def get_ticker(self, symbol: str) -> Ticker24h:
        data = self._req("GET", "/v3/ticker/24hr", {"symbol": symbol})
        return Ticker24h(
            symbol=symbol,
            last_price=float(data["lastPrice"]),
            price_change_pct=float(data["priceChangePercent"]),
        )

    def get_price(self, symbol: str) -> float:
        data = self._req("GET", "/v3/ticker/price", {"symbol": symbol})
        return float(data["price"])

    def get_klines(self, symbol: str, interval: str = "1h", limit: int = 200) -> List[OHLCV]:
        """
        Get historical candlesticks.

        Args:
            symbol: e.g. "BTCUSDT"
            interval: Binance interval string ("1m", "5m", "1h", "1d", ...)
            limit: Number of candles (max 1000)

        Returns:
            List of OHLCV candles (oldest to newest)
        """
        logger.debug(f"Fetching klines for {symbol} ({interval}, limit={limit})")
        rows = self._req(
            "GET", "/v3/klines", {"symbol": symbol, "interval": interval, "limit": min(limit, 1000)}
        )
        # [openTime, open, high, low, close, volume, closeTime, ...]
        candles = [
            OHLCV(
                symbol=symbol,
                timestamp=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in rows
        ]
        candles.sort(key=lambda c: c.timestamp)
        return candles

    # Account

    def get_account_balances(self) -> Dict[str, Balance]:
        """Non-zero balances keyed by asset."""
        data = self._req("GET", "/v3/account", signed=True)
        balances: Dict[str, Balance] = {}
        for row in data.get("balances", []):
            free = float(row.get("free", 0) or 0)
            locked = float(row.get("locked", 0) or 0)
            if free <= 0 and locked <= 0:
                continue
            balances[row["asset"]] = Balance(asset=row["asset"], free=free, locked=locked)
        return balances

    # Execution

    def place_market_order(self, symbol: str, side: str, quote_amount: float,
                           client_order_id: Optional[str] = None) -> OrderFill:
        """
        Submit a market order sized in quote currency (quoteOrderQty).

        Returns the fill summary; avg_price is None when nothing executed.
        """
        side = side.upper()
        if side not in ("BUY", "SELL"):
            raise ValueError(f"Invalid side: {side}")
        if quote_amount <= 0:
            raise ValueError(f"quote_amount must be positive, got {quote_amount}")

        params = {
            "symbol": symbol,
            "side": side,
            "type": "MARKET",
            "quoteOrderQty": f"{quote_amount:.2f}",
            "newOrderRespType": "FULL",
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        logger.info(f"Placing MARKET {side} {symbol} quoteOrderQty={params['quoteOrderQty']}")
        try:
            data = self._req("POST", "/v3/order", params, signed=True, retry=False)
        except ExchangeUnavailable as e:
            # Never resend: the order may have filled before the connection dropped
            if not client_order_id:
                raise
            data = self._lookup_order(symbol, client_order_id)
            if data is None:
                raise
            logger.warning(f"Order {client_order_id} placement errored ({e}) but exchange has it")
        return self._to_fill(data)

    def _lookup_order(self, symbol: str, client_order_id: str) -> Optional[Dict[str, Any]]:
        """Order as the exchange recorded it, or None when unknown (-2013) or unreachable."""
        try:
            return self._req(
                "GET", "/v3/order", {"symbol": symbol, "origClientOrderId": client_order_id},
                signed=True,
            )
        except ExchangeError as e:
            logger.warning(f"Lookup of order {client_order_id} failed: {e}")
            return None

    @staticmethod
    def _to_fill(data: Dict[str, Any]) -> OrderFill:
        executed_qty = float(data.get("executedQty", 0) or 0)
        cumulative_quote = float(data.get("cummulativeQuoteQty", 0) or 0)
        avg_price = cumulative_quote / executed_qty if executed_qty > 0 else None
        return OrderFill(
            order_id=str(data.get("orderId", "")),
            status=str(data.get("status", "UNKNOWN")),
            executed_qty=executed_qty,
            cumulative_quote_qty=cumulative_quote,
            avg_price=avg_price,
        )

    # Connectivity

    def ping(self) -> bool:
        try:
            self._req("GET", "/v3/ping")
            return True
        except ExchangeError as e:
            logger.warning(f"Binance ping failed: {e}")
            return False

    def get_server_time(self) -> int:
        """Exchange clock in epoch milliseconds."""
        return int(self._req("GET", "/v3/time")["serverTime"])
