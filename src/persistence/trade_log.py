import logging
import uuid
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Protocol

from src.engine.errors import PersistenceError
from src.models.order_models import TradeLogEntry
from src.persistence.db import Database
from src.utils.time_utils import IST, now_ist, parse_iso

logger = logging.getLogger("trade_log")


class TradeLogSink(Protocol):
    async def record(self, data: Dict) -> TradeLogEntry:
        ...

    async def entries_for_day(self, day: date) -> List[TradeLogEntry]:
        ...


def build_entry(data: Dict, trading_mode: str, clock: Callable[[], datetime] = now_ist) -> TradeLogEntry:
    """Assign id and timestamp to a raw BUY/SELL record."""
    return TradeLogEntry(
        id=str(uuid.uuid4()),
        timestamp=clock(),
        symbol=data["symbol"],
        action=data["action"],
        quantity=int(data.get("quantity", 0)),
        price=float(data.get("price", 0.0)),
        order_type=data.get("order_type", "MARKET"),
        status=data.get("status", "COMPLETED"),
        pnl=data.get("pnl"),
        remarks=data.get("remarks", ""),
        trading_mode=data.get("trading_mode", trading_mode),
    )


class InMemoryTradeLogSink:
    def __init__(self, trading_mode: str = "PAPER", clock: Callable[[], datetime] = now_ist):
        self.trading_mode = trading_mode
        self.clock = clock
        self.entries: List[TradeLogEntry] = []

    async def record(self, data: Dict) -> TradeLogEntry:
        entry = build_entry(data, self.trading_mode, self.clock)
        self.entries.append(entry)
        logger.info("Trade logged: %s %s x%d @ %.2f (%s)", entry.action, entry.symbol, entry.quantity, entry.price, entry.remarks)
        return entry

    async def entries_for_day(self, day: date) -> List[TradeLogEntry]:
        return [e for e in self.entries if e.timestamp.astimezone(IST).date() == day]


class DatabaseTradeLogSink:
    def __init__(self, db: Database, trading_mode: str = "PAPER", clock: Callable[[], datetime] = now_ist):
        self.db = db
        self.trading_mode = trading_mode
        self.clock = clock

    async def record(self, data: Dict) -> TradeLogEntry:
        entry = build_entry(data, self.trading_mode, self.clock)
        row = entry.to_dict()
        row["ts"] = row.pop("timestamp")
        row["trade_date"] = entry.timestamp.astimezone(IST).date().isoformat()
        try:
            await self.db.insert_trade_log(row)
        except Exception as e:
            raise PersistenceError(f"Could not write trade log for {entry.symbol}: {e}") from e
        logger.info("Trade logged: %s %s x%d @ %.2f (%s)", entry.action, entry.symbol, entry.quantity, entry.price, entry.remarks)
        return entry

    async def entries_for_day(self, day: date) -> List[TradeLogEntry]:
        rows = await self.db.trade_logs_for_day(day.isoformat())
        return [self._from_row(r) for r in rows]

    @staticmethod
    def _from_row(row: Dict) -> TradeLogEntry:
        return TradeLogEntry(
            id=row["id"],
            timestamp=parse_iso(row["ts"]),
            symbol=row["symbol"],
            action=row["action"],
            quantity=row.get("quantity") or 0,
            price=row.get("price") or 0.0,
            order_type=row.get("order_type") or "MARKET",
            status=row.get("status") or "COMPLETED",
            pnl=row.get("pnl"),
            remarks=row.get("remarks") or "",
            trading_mode=row.get("trading_mode") or "PAPER",
        )


def format_pnl(pnl: Optional[float]) -> str:
    if pnl is None:
        return "-"
    return f"₹{pnl:.2f}"
