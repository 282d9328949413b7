import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger("paper_broker")


@dataclass
class SimFill:
    order_id: str
    symbol: str
    side: str
    quantity: int
    price: float
    tag: str = ""


class PaperBroker:
    """Order gateway for PAPER mode: every order fills at the payload price.

    Keeps the same place_order(payload) contract as the live broker so the
    execution service does not care which one it talks to.
    """

    def __init__(self, slippage: float = 0.0, reject_symbols: Optional[List[str]] = None):
        self.slippage = slippage
        self.reject_symbols = set(reject_symbols or [])
        self.fills: List[SimFill] = []
        self._ids = itertools.count(1)

    async def place_order(self, payload: dict) -> Dict[str, Any]:
        symbol = payload.get("symbol")
        if symbol in self.reject_symbols:
            logger.info("Paper order rejected for %s", symbol)
            return {"error": f"Paper order rejected for {symbol}"}
        side = payload.get("side", "BUY")
        price = float(payload.get("price") or 0.0)
        fill = price + (self.slippage if side == "BUY" else -self.slippage)
        order_id = f"PAPER-{next(self._ids):06d}"
        self.fills.append(SimFill(order_id, symbol, side, int(payload.get("quantity", 0)), fill, payload.get("tag", "")))
        logger.info("Paper %s %s x%s filled at %.2f (%s)", side, symbol, payload.get("quantity"), fill, order_id)
        return {
            "order_id": order_id,
            "status": "placed",
            "symbol": symbol,
            "side": side,
            "quantity": payload.get("quantity"),
            "fill_price": fill,
        }
