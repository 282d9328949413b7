"""Monitoring control routes: add/remove instruments, start/stop, HMA inspection."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.dependencies.services import get_engine
from src.engine.errors import (DuplicateInstrumentError, InstrumentConfigError,
                               InsufficientDataError, UnknownInstrumentError)
from src.models.monitor_models import EntryMethod, OptionType, ThresholdType

router = APIRouter(prefix="/monitor", tags=["monitoring"])

class AddInstrumentRequest(BaseModel):
    symbol: str
    option_type: OptionType
    lots: int = Field(1, gt=0)
    target_points: Optional[float] = Field(None, gt=0)
    stop_loss_points: Optional[float] = Field(None, gt=0)
    target_type: ThresholdType = ThresholdType.POINTS
    stop_loss_type: ThresholdType = ThresholdType.POINTS
    entry_method: EntryMethod = EntryMethod.MARKET
    auto_exit_on_target: bool = True
    auto_exit_on_stop_loss: bool = True
    trailing_stop_loss: bool = False
    trailing_stop_loss_offset: Optional[float] = None
    time_based_exit: bool = False
    exit_after_minutes: Optional[int] = Field(None, gt=0)
    exit_at_market_close: bool = False

@router.get("/instruments")
async def list_instruments(engine=Depends(get_engine)):
    entries = engine.list_monitored()
    return {"running": engine.is_running(), "count": len(entries), "instruments": [e.to_dict() for e in entries]}

@router.post("/instruments", status_code=201)
async def add_instrument(request: AddInstrumentRequest, engine=Depends(get_engine)):
    try:
        entry = await engine.add_instrument(**request.model_dump())
    except DuplicateInstrumentError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InstrumentConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InsufficientDataError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "added", "running": engine.is_running(), "instrument": entry.to_dict()}

@router.delete("/instruments/{entry_id}")
async def remove_instrument(entry_id: str, engine=Depends(get_engine)):
    try:
        entry = await engine.remove_instrument(entry_id)
    except UnknownInstrumentError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "removed", "symbol": entry.symbol, "running": engine.is_running()}

@router.post("/start")
async def start_monitoring(engine=Depends(get_engine)):
    if not engine.start():
        raise HTTPException(status_code=400, detail="No instruments to monitor")
    await engine.persist()
    return {"status": "started", "monitored": len(engine.list_monitored())}

@router.post("/stop")
async def stop_monitoring(engine=Depends(get_engine)):
    await engine.stop()
    return {"status": "stopped"}

@router.get("/hma/{symbol:path}")
async def hma(symbol: str, refresh: bool = False, engine=Depends(get_engine)):
    try:
        # only monitored symbols keep a candle window
        monitored = symbol in engine.registry
        series = await engine.candle_store.get_hma(symbol, force=refresh, cache=monitored)
    except InsufficientDataError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        "symbol": symbol,
        "period": series.period,
        "current": series.current,
        "computed_at": series.computed_at.isoformat(),
        "points": [{"ts": ts.isoformat(), "value": v} for ts, v in series.points],
    }

__all__ = ["router"]
