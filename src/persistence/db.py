import logging
from typing import Dict, List, Optional

from sqlalchemy import (Column, Float, Integer, MetaData, String, Table, Text,
                        create_engine, text)

logger = logging.getLogger("database")

metadata = MetaData()

# One row per state key; payload is the JSON snapshot as written by the adapter.
monitor_state = Table(
    'monitor_state', metadata,
    Column('key', String, primary_key=True),
    Column('payload', Text, nullable=False),
    Column('saved_at', String),  # ISO8601 with offset, kept as received
)

# Timestamps stored as ISO strings so the +05:30 offset survives sqlite round trips.
trade_logs = Table(
    'trade_logs', metadata,
    Column('id', String, primary_key=True),
    Column('ts', String, nullable=False),
    Column('trade_date', String, index=True),  # IST calendar day, YYYY-MM-DD
    Column('symbol', String, nullable=False),
    Column('action', String, nullable=False),
    Column('quantity', Integer),
    Column('price', Float),
    Column('order_type', String),
    Column('status', String),
    Column('pnl', Float),
    Column('remarks', Text),
    Column('trading_mode', String),
)


class Database:
    def __init__(self, url: str):
        self.url = url
        self.engine = None
        self._connected = False

        try:
            self.engine = create_engine(url)
            metadata.create_all(self.engine)
            logger.info("Database engine created successfully")
        except Exception as e:
            logger.warning("Database creation failed: %s", e)
            self.engine = None

    @property
    def connected(self) -> bool:
        return self._connected and self.engine is not None

    async def connect(self):
        if not self.engine:
            logger.warning("Database not available")
            return

        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self._connected = True
            logger.info("Database connected successfully")
        except Exception as e:
            logger.error("Database connection failed: %s", e)
            self._connected = False

    async def disconnect(self):
        self._connected = False
        if self.engine is not None:
            self.engine.dispose()
        logger.info("Database disconnected")

    def _require(self):
        if not self.connected:
            raise RuntimeError("Database not connected")

    # ---------------- monitor state -----------------
    async def save_state(self, key: str, payload: str, saved_at: Optional[str] = None):
        self._require()
        try:
            with self.engine.begin() as conn:
                conn.execute(monitor_state.delete().where(monitor_state.c.key == key))
                conn.execute(monitor_state.insert().values(key=key, payload=payload, saved_at=saved_at))
        except Exception as e:
            logger.error("Failed to save state %s: %s", key, e)
            raise

    async def load_state(self, key: str) -> Optional[str]:
        self._require()
        try:
            with self.engine.connect() as conn:
                row = conn.execute(monitor_state.select().where(monitor_state.c.key == key)).first()
            return row._mapping['payload'] if row else None
        except Exception as e:
            logger.error("Failed to load state %s: %s", key, e)
            raise

    async def delete_state(self, key: str):
        self._require()
        try:
            with self.engine.begin() as conn:
                conn.execute(monitor_state.delete().where(monitor_state.c.key == key))
        except Exception as e:
            logger.error("Failed to delete state %s: %s", key, e)
            raise

    # ---------------- trade log -----------------
    async def insert_trade_log(self, row: Dict):
        self._require()
        try:
            with self.engine.begin() as conn:
                conn.execute(trade_logs.insert().values(**row))
        except Exception as e:
            logger.error("Failed to insert trade log %s: %s", row.get('id'), e)
            raise

    async def trade_logs_for_day(self, trade_date: str) -> List[Dict]:
        self._require()
        try:
            query = trade_logs.select().where(trade_logs.c.trade_date == trade_date).order_by(trade_logs.c.ts)
            with self.engine.connect() as conn:
                rows = conn.execute(query).fetchall()
            return [dict(r._mapping) for r in rows]
        except Exception as e:
            logger.error("Failed to load trade logs for %s: %s", trade_date, e)
            return []
