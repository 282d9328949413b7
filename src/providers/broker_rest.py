import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

import upstox_client
from dateutil import parser

from src.engine.errors import QuoteFetchError
from src.models.candle_models import Candle, Quote
from src.utils.orders_enum import PRODUCT_TYPES, Product, Validity
from src.utils.time_utils import IST, now_ist

logger = logging.getLogger("broker_rest")


class MarketDataProvider(Protocol):
    async def fetch_quotes(self, symbols: Sequence[str]) -> Dict[str, Quote]:
        ...

    async def fetch_historical_candles(self, symbol: str, timeframe: str, from_date: date, to_date: date) -> List[Candle]:
        ...


class OrderGateway(Protocol):
    async def place_order(self, payload: dict) -> Dict[str, Any]:
        ...


def parse_candle(raw: Sequence[Any]) -> Candle:
    """[ts, open, high, low, close, volume, ...] -> Candle with an IST-aware timestamp."""
    ts = raw[0]
    if isinstance(ts, str):
        ts = parser.isoparse(ts)
    if ts.tzinfo is None:
        ts = IST.localize(ts)
    return Candle(
        timestamp=ts.astimezone(IST),
        open=float(raw[1]),
        high=float(raw[2]),
        low=float(raw[3]),
        close=float(raw[4]),
        volume=int(raw[5]) if len(raw) > 5 and raw[5] is not None else 0,
    )


class UpstoxMarketData:
    """Quotes, historical candles and order placement over the Upstox REST SDK.

    The SDK is blocking, so every call runs in the default executor.
    Symbols are Upstox instrument keys (e.g. NSE_FO|43919).
    """

    def __init__(self, access_token: str, api_key: str = "", product_type: str = "INTRADAY", order_tag: str = "hma-monitor"):
        self.api_key = api_key
        self.access_token = access_token
        self.product_type = product_type
        self.order_tag = order_tag

        self.configuration = upstox_client.Configuration()
        self.configuration.access_token = access_token or api_key
        api_client = upstox_client.ApiClient(self.configuration)
        self.login_api = upstox_client.LoginApi(api_client)
        self.order_api = upstox_client.OrderApi(api_client)
        self.historical_api = upstox_client.HistoryV3Api(api_client)
        self.quote_api = upstox_client.MarketQuoteV3Api(api_client)
        logger.info("Upstox API clients initialized")

    async def ping(self) -> bool:
        """Test connection to Upstox API."""
        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: self.login_api.get_profile())
            logger.info("Upstox connection successful: %s", response.data.user_name)
            return True
        except Exception as e:
            logger.error("Connection failed: %s", e)
            return False

    async def fetch_quotes(self, symbols: Sequence[str]) -> Dict[str, Quote]:
        """One bulk LTP request for all `symbols`; symbols without a price are left out."""
        if not symbols:
            return {}
        keys = ",".join(symbols)
        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: self.quote_api.get_ltp(instrument_key=keys))
        except Exception as e:
            raise QuoteFetchError(f"LTP request failed for {keys}: {e}") from e

        now = now_ist()
        quotes: Dict[str, Quote] = {}
        data = response.data or {}
        for response_key, md in data.items():
            token = getattr(md, "instrument_token", None) or response_key
            symbol = self._match_symbol(token, response_key, symbols)
            ltp = getattr(md, "last_price", None)
            if symbol is None or ltp is None:
                continue
            quotes[symbol] = Quote(symbol=symbol, ltp=float(ltp), timestamp=now)
        missing = [s for s in symbols if s not in quotes]
        if missing:
            logger.debug("No quote returned for %s", ", ".join(missing))
        return quotes

    @staticmethod
    def _match_symbol(token: str, response_key: str, requested: Sequence[str]) -> Optional[str]:
        # response keys use ':' where request keys use '|'
        for candidate in (token, response_key, response_key.replace(":", "|")):
            if candidate in requested:
                return candidate
        return None

    async def fetch_historical_candles(self, symbol: str, timeframe: str, from_date: date, to_date: date) -> List[Candle]:
        interval, unit = self._convert_interval(timeframe)
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self.historical_api.get_historical_candle_data1(
                symbol,
                unit,
                interval,
                to_date=to_date.strftime("%Y-%m-%d"),
                from_date=from_date.strftime("%Y-%m-%d"),
            )
        )
        candles = []
        if response.data and response.data.candles:
            candles = [parse_candle(row) for row in response.data.candles]
        # API returns newest first
        candles.sort(key=lambda c: c.timestamp)
        logger.debug("Fetched %d %s candles for %s (%s..%s)", len(candles), timeframe, symbol, from_date, to_date)
        return candles

    async def place_order(self, payload: dict) -> Dict[str, Any]:
        """Place an order using Upstox API."""
        try:
            body = upstox_client.PlaceOrderRequest(
                quantity=payload.get("quantity", 1),
                product=self._convert_product(payload.get("product", self.product_type)),
                validity=payload.get("validity", Validity.DAY.value),
                price=payload.get("price", 0.0),
                tag=payload.get("tag", self.order_tag),
                instrument_token=payload.get("symbol"),
                order_type=self._convert_order_type(payload.get("type", "MARKET")),
                transaction_type=self._convert_side(payload.get("side", "BUY")),
                disclosed_quantity=0,
                trigger_price=payload.get("trigger_price", 0.0),
                is_amo=False
            )
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(None, lambda: self.order_api.place_order(body))
            if response.data:
                order_id = response.data.order_id
                logger.info("Order placed successfully: %s", order_id)
                return {
                    "order_id": order_id,
                    "status": "placed",
                    "symbol": payload.get("symbol"),
                    "side": payload.get("side"),
                    "quantity": payload.get("quantity")
                }
            logger.error("No order data in response")
            return {"error": "No order data"}
        except Exception as e:
            logger.error("Error placing order: %s", e)
            return {"error": str(e)}

    async def close(self):
        """Close any resources."""

    def _convert_interval(self, interval: str) -> tuple:
        """Convert interval format to Upstox interval and unit."""
        interval_map = {
            "1m": (1, "minutes"),
            "3m": (3, "minutes"),
            "5m": (5, "minutes"),
            "15m": (15, "minutes"),
            "30m": (30, "minutes"),
            "1h": (1, "hours"),
            "1d": (1, "days")
        }
        return interval_map.get(interval, (5, "minutes"))

    def _convert_product(self, product_type: str) -> str:
        product = PRODUCT_TYPES.get((product_type or "").upper(), Product.I)
        return product.value

    def _convert_order_type(self, order_type: str) -> str:
        if order_type.upper() == "LIMIT":
            return "LIMIT"
        return "MARKET"

    def _convert_side(self, side: str) -> str:
        return "BUY" if side.upper() == "BUY" else "SELL"
