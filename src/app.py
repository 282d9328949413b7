import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from src.config import settings
from src.api.dependencies.services import service_registry
from src.api.router import api_router
from src.api.state.startup import record_startup_event
from src.engine.candle_store import CandleStore
from src.engine.rate_limiter import ApiRateLimiter
from src.execution.execution import OrderExecutionService
from src.execution.simulator import PaperBroker
from src.persistence.db import Database
from src.persistence.monitor_state import (DatabaseStateStore, JsonFileStateStore,
                                           MonitorStatePersistence)
from src.persistence.trade_log import DatabaseTradeLogSink
from src.providers.broker_rest import UpstoxMarketData
from src.services.monitoring_service import MonitoringEngine
from src.services.notifier import Notifier
from src.utils.instruments import LotSizeResolver
from src.utils.logging_config import configure_logging
from src.utils.orders_enum import TradingMode

logger = logging.getLogger("app")


def build_engine(db: Database) -> MonitoringEngine:
    """Wire the monitoring engine from settings."""
    provider = UpstoxMarketData(
        settings.UPSTOX_ACCESS_TOKEN,
        api_key=settings.UPSTOX_API_KEY,
        product_type=settings.PRODUCT_TYPE,
        order_tag=settings.ORDER_TAG_PREFIX,
    )
    rate_limiter = ApiRateLimiter(
        min_interval_ms=settings.RATE_LIMIT_MIN_INTERVAL_MS,
        per_minute=settings.RATE_LIMIT_PER_MINUTE,
    )
    live = settings.TRADING_MODE.upper() == TradingMode.LIVE.value
    broker = provider if live else PaperBroker()
    executor = OrderExecutionService(
        broker,
        LotSizeResolver(settings.DEFAULT_INDEX),
        product_type=settings.PRODUCT_TYPE,
        tag_prefix=settings.ORDER_TAG_PREFIX,
        trading_mode=settings.TRADING_MODE.upper(),
        rate_limiter=rate_limiter,
    )
    if settings.STATE_BACKEND.lower() == "file":
        store = JsonFileStateStore(settings.STATE_FILE)
    else:
        store = DatabaseStateStore(db)
    trade_log = DatabaseTradeLogSink(db, trading_mode=settings.TRADING_MODE.upper())
    engine = MonitoringEngine(
        provider,
        CandleStore(provider, rate_limiter=rate_limiter),
        executor,
        trade_log,
        MonitorStatePersistence(store),
        notifier=Notifier(settings.NOTIFIER_WEBHOOK),
        rate_limiter=rate_limiter,
    )
    service_registry.register("trade_log", trade_log)
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    configure_logging()
    logger.info("Starting HMA option monitor (%s mode)...", settings.TRADING_MODE)

    db = Database(settings.DATABASE_URL)
    await db.connect()
    if not db.connected:
        logger.warning("Database unavailable, state and trade log writes will fail until it recovers")
        record_startup_event("database", "unavailable", url=settings.DATABASE_URL)

    engine = build_engine(db)
    if await engine.provider.ping():
        record_startup_event("broker", "connected")
    else:
        logger.warning("Upstox API unreachable, quotes and candle fetches will fail until it recovers")
        record_startup_event("broker", "unreachable")
    service_registry.register("monitor", engine)
    restored = await engine.resume(start=settings.AUTO_RESUME_MONITORING)
    record_startup_event("resume", "monitor_state_restored", restored=restored, running=engine.is_running())
    if restored:
        logger.info("Restored %d monitored instruments (running=%s)", restored, engine.is_running())

    yield

    logger.info("Shutting down monitoring...")
    # keep today's snapshot so a restart can resume; only halt the loop
    await engine.scheduler.stop()
    if engine.notifier:
        await engine.notifier.close()
    await db.disconnect()
    service_registry.unregister("monitor")
    service_registry.unregister("trade_log")


app = FastAPI(
    title="HMA Option Monitor",
    description="HMA crossover monitoring and execution engine",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(api_router)
app.mount("/metrics", make_asgi_app())
