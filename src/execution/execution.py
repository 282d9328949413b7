import logging
import time
from typing import Optional

from src.engine.errors import OrderValidationError
from src.engine.rate_limiter import ApiRateLimiter
from src.models.order_models import OrderRequest, OrderResult, ValidationResult
from src.utils.instruments import LotSizeResolver, is_well_formed_symbol
from src.utils.orders_enum import PRODUCT_TYPES, OrderMethod, OrderSide, Validity

logger = logging.getLogger("executor")


class OrderExecutionService:
    """Builds, validates and submits entry/exit orders.

    `broker` is anything with an async place_order(payload) -> dict, either the
    live Upstox gateway or the paper broker.
    """

    def __init__(self, broker, lot_sizes: Optional[LotSizeResolver] = None, product_type: str = "INTRADAY",
                 tag_prefix: str = "hma-monitor", trading_mode: str = "PAPER",
                 rate_limiter: Optional[ApiRateLimiter] = None):
        self.broker = broker
        self.lot_sizes = lot_sizes or LotSizeResolver()
        self.product_type = product_type
        self.tag_prefix = tag_prefix
        self.trading_mode = trading_mode
        self.rate_limiter = rate_limiter

    def make_tag(self, side: str) -> str:
        return f"{self.tag_prefix}-{side}-{int(time.time() * 1000)}"

    def format_order(self, symbol: str, lots: int, side: str, method: str = "MARKET", limit_price: float = 0.0,
                     product_type: Optional[str] = None, tag: Optional[str] = None) -> OrderRequest:
        side = str(getattr(side, "value", side)).upper()
        method = str(getattr(method, "value", method)).upper()
        quantity = self.lot_sizes.quantity_for_symbol(symbol, lots)
        return OrderRequest(
            symbol=symbol,
            quantity=quantity,
            side=side,
            method=method,
            product_type=(product_type or self.product_type).upper(),
            limit_price=float(limit_price or 0.0),
            tag=tag or self.make_tag(side),
            lots=int(lots),
        )

    def validate(self, order: OrderRequest) -> ValidationResult:
        errors = []
        if not order.symbol:
            errors.append("Symbol is required")
        elif not is_well_formed_symbol(order.symbol):
            errors.append(f"Symbol {order.symbol} is not in EXCHANGE:NAME form")
        if order.quantity <= 0:
            errors.append("Quantity must be greater than 0")
        if order.side not in (OrderSide.BUY.value, OrderSide.SELL.value):
            errors.append("Side must be BUY or SELL")
        if order.method not in (OrderMethod.MARKET.value, OrderMethod.LIMIT.value):
            errors.append("Order type must be MARKET or LIMIT")
        if order.product_type not in PRODUCT_TYPES:
            errors.append(f"Invalid product type. Must be one of: {', '.join(PRODUCT_TYPES)}")
        if order.method == OrderMethod.LIMIT.value and order.limit_price <= 0:
            errors.append("Limit price must be greater than 0 for LIMIT orders")
        if order.validity not in (v.value for v in Validity):
            errors.append("Validity must be DAY or IOC")
        return ValidationResult(valid=not errors, errors=errors)

    def prepare(self, symbol: str, lots: int, side: str, method: str = "MARKET", limit_price: float = 0.0) -> OrderRequest:
        """format_order + validate; raises OrderValidationError listing every problem."""
        order = self.format_order(symbol, lots, side, method, limit_price=limit_price)
        result = self.validate(order)
        if not result.valid:
            problems = "; ".join(result.errors)
            raise OrderValidationError(f"Invalid {order.side} order for {symbol}: {problems}", result.errors)
        return order

    async def submit(self, order: OrderRequest) -> OrderResult:
        """Forward to the broker; never raises, failures come back as ok=False."""
        logger.info("Placing %s order: %s", self.trading_mode, self.order_summary(order))
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        try:
            resp = await self.broker.place_order(order.to_payload())
        except Exception as e:
            logger.exception("Order submission failed for %s", order.symbol)
            return OrderResult(ok=False, message=str(e))
        if not isinstance(resp, dict) or resp.get("error"):
            message = resp.get("error") if isinstance(resp, dict) else "Unexpected broker response"
            logger.error("Order rejected for %s: %s", order.symbol, message)
            return OrderResult(ok=False, message=message)
        return OrderResult(
            ok=True,
            order_id=resp.get("order_id"),
            message=resp.get("status", "placed"),
            fill_price=resp.get("fill_price"),
        )

    def order_summary(self, order: OrderRequest) -> str:
        price = f" @ {order.limit_price:.2f}" if order.method == OrderMethod.LIMIT.value else ""
        return f"{order.side} {order.quantity} ({order.lots} lots) {order.symbol} {order.method}{price} [{order.product_type}] tag={order.tag}"
