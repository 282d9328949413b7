from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class OrderRequest:
    symbol: str
    quantity: int
    side: str  # 'BUY' or 'SELL'
    method: str  # 'MARKET' or 'LIMIT'
    product_type: str
    limit_price: float
    tag: str
    lots: int = 0
    validity: str = "DAY"
    stop_price: float = 0.0

    def to_payload(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.method,
            "quantity": self.quantity,
            "price": self.limit_price,
            "trigger_price": self.stop_price,
            "product": self.product_type,
            "validity": self.validity,
            "tag": self.tag,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class OrderResult:
    ok: bool
    order_id: Optional[str] = None
    message: str = ""
    fill_price: Optional[float] = None


@dataclass
class TradeLogEntry:
    """A BUY/SELL record written to the trade log."""
    id: str
    timestamp: datetime
    symbol: str
    action: str  # 'BUY' or 'SELL'
    quantity: int
    price: float
    order_type: str
    status: str  # 'PENDING', 'COMPLETED' or 'REJECTED'
    pnl: Optional[float] = None
    remarks: str = ""
    trading_mode: str = "PAPER"

    def to_dict(self):
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "price": self.price,
            "order_type": self.order_type,
            "status": self.status,
            "pnl": self.pnl,
            "remarks": self.remarks,
            "trading_mode": self.trading_mode,
        }
