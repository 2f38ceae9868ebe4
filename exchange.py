"""
Binance spot REST client.

Covers the handful of endpoints the monitors depend on:
- Historical klines:      GET  /api/v3/klines
- Instrument metadata:    GET  /api/v3/exchangeInfo   (LOT_SIZE step size)
- Account balances:       GET  /api/v3/account        (signed)
- Order submission:       POST /api/v3/order          (signed)

Signed calls append ``timestamp``/``recvWindow`` and an HMAC-SHA256 signature of
the query string, with the API key in the ``X-MBX-APIKEY`` header.
"""

import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from errors import ExchangeError
from models import SymbolInfo

logger = logging.getLogger(__name__)

BINANCE_REST_URL = "https://api.binance.com"

# Positions inside a kline array
KLINE_OPEN_TIME = 0
KLINE_CLOSE = 4
KLINE_CLOSE_TIME = 6


def format_quantity(quantity: Decimal) -> str:
    """Plain decimal string without exponent, as Binance expects."""
    text = format(quantity, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


class BinanceClient:
    """
    Thin async wrapper around the Binance spot REST API.

    The ``httpx.AsyncClient`` is owned by the caller, which lets tests plug in
    an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: str = BINANCE_REST_URL,
        recv_window_ms: int = 5000,
    ):
        self.http = http
        self.api_key = api_key
        self.api_secret = (api_secret or "").encode()
        self.base_url = base_url.rstrip("/")
        self.recv_window_ms = recv_window_ms

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       signed: bool = False) -> Any:
        params = dict(params or {})
        headers = {}
        if signed:
            if not self.api_key or not self.api_secret:
                raise ExchangeError("Binance API key/secret not configured")
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.recv_window_ms
            query = urlencode(params)
            signature = hmac.new(self.api_secret, query.encode(), hashlib.sha256).hexdigest()
            params["signature"] = signature
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        try:
            resp = await self.http.request(method, url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ExchangeError(f"Binance {method} {path} failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = resp.text
        if resp.status_code >= 400:
            msg = payload.get("msg") if isinstance(payload, dict) else payload
            raise ExchangeError(
                f"Binance {method} {path} {resp.status_code}: {msg}",
                status_code=resp.status_code,
                payload=payload,
            )
        return payload

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[List[Any]]:
        data = await self._request(
            "GET", "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": limit},
        )
        if not isinstance(data, list):
            raise ExchangeError(f"Unexpected klines payload for {symbol}", payload=data)
        return data

    async def get_closed_closes(self, symbol: str, interval: str, limit: int,
                                now_ms: Optional[int] = None) -> List[float]:
        """Close prices of fully elapsed klines, oldest first.

        The last kline returned by Binance is usually still open; it is dropped
        so the live stream does not count it twice.
        """
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        closes = []
        for k in await self.get_klines(symbol, interval, limit):
            try:
                if int(k[KLINE_CLOSE_TIME]) > now_ms:
                    continue
                closes.append(float(k[KLINE_CLOSE]))
            except (IndexError, TypeError, ValueError) as exc:
                raise ExchangeError(f"Malformed kline for {symbol}: {k!r}") from exc
        return closes

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        data = await self._request("GET", "/api/v3/exchangeInfo", {"symbol": symbol.upper()})
        try:
            info = data["symbols"][0]
            lot = next(f for f in info["filters"] if f["filterType"] == "LOT_SIZE")
            return SymbolInfo(
                symbol=info["symbol"],
                base_asset=info["baseAsset"],
                quote_asset=info["quoteAsset"],
                step_size=Decimal(lot["stepSize"]),
                min_qty=Decimal(lot.get("minQty", "0")),
            )
        except (KeyError, IndexError, StopIteration, TypeError) as exc:
            raise ExchangeError(f"No LOT_SIZE metadata for {symbol}", payload=data) from exc

    async def get_step_size(self, symbol: str) -> Decimal:
        return (await self.get_symbol_info(symbol)).step_size

    # ------------------------------------------------------------------
    # account / trading
    # ------------------------------------------------------------------

    async def get_balances(self) -> Dict[str, Decimal]:
        """Free balance per asset."""
        data = await self._request("GET", "/api/v3/account", signed=True)
        try:
            return {b["asset"]: Decimal(b["free"]) for b in data["balances"]}
        except (KeyError, TypeError) as exc:
            raise ExchangeError("Malformed account payload", payload=data) from exc

    async def place_order(self, symbol: str, side: str, quantity: Decimal,
                          price: Optional[Decimal] = None) -> Dict[str, Any]:
        """MARKET order, or LIMIT GTC when ``price`` is given."""
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "quantity": format_quantity(Decimal(quantity)),
            "newOrderRespType": "FULL",
        }
        if price is None:
            params["type"] = "MARKET"
        else:
            params["type"] = "LIMIT"
            params["timeInForce"] = "GTC"
            params["price"] = format_quantity(Decimal(price))
        logger.info("Submitting %s %s %s qty=%s", params["type"], params["side"],
                    params["symbol"], params["quantity"])
        return await self._request("POST", "/api/v3/order", params, signed=True)

    async def market_buy(self, symbol: str, quantity: Decimal) -> Dict[str, Any]:
        return await self.place_order(symbol, "BUY", quantity)

    async def market_sell(self, symbol: str, quantity: Decimal) -> Dict[str, Any]:
        return await self.place_order(symbol, "SELL", quantity)
