"""System & metadata routes (root, health, status, trade log, config)."""
from fastapi import APIRouter, Depends

from src.api.dependencies.services import ServiceRegistry, get_service_registry, get_trade_log
from src.api.state.startup import get_startup_events
from src.config import settings
from src.utils.time_utils import now_ist

router = APIRouter()

@router.get("/")
async def root(registry: ServiceRegistry = Depends(get_service_registry)):
    return {
        "name": "HMA Option Monitor",
        "version": "1.0.0",
        "description": "HMA crossover monitoring and execution engine for index options",
        "services": registry.names(),
        "trading_mode": settings.TRADING_MODE,
        "endpoints": {
            "health": "/health",
            "status": "/status",
            "startup_events": "/startup/log",
            "docs": "/docs",
            "monitor": "/monitor/",
            "trades": "/trades/today",
            "metrics": "/metrics",
        },
    }

@router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": now_ist().isoformat()}

@router.get("/status")
async def status(registry: ServiceRegistry = Depends(get_service_registry)):
    return registry.all_status()

@router.get("/startup/log")
async def startup_log(limit: int = 100):
    return {"events": get_startup_events(limit)}

@router.get("/trades/today")
async def trades_today(trade_log=Depends(get_trade_log)):
    today = now_ist().date()
    entries = await trade_log.entries_for_day(today)
    realized = sum(e.pnl for e in entries if e.pnl is not None)
    return {
        "date": today.isoformat(),
        "count": len(entries),
        "realized_pnl": realized,
        "trades": [e.to_dict() for e in entries],
    }

@router.get("/config")
async def get_config():
    return {
        "hma_period": settings.HMA_PERIOD,
        "required_candles": settings.HMA_REQUIRED_CANDLES,
        "candle_timeframe": settings.HMA_CANDLE_TIMEFRAME,
        "session": [settings.SESSION_OPEN, settings.SESSION_CLOSE],
        "tick_sec": settings.MONITOR_TICK_SEC,
        "batch_size": settings.MONITOR_BATCH_SIZE,
        "trading_mode": settings.TRADING_MODE,
        "app_port": settings.APP_PORT,
    }

__all__ = ["router"]
