"""
Monitor registry records.
"""
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from src.utils.time_utils import now_ist, parse_iso


class OptionType(str, Enum):
    CE = "CE"
    PE = "PE"


class TriggerStatus(str, Enum):
    WAITING = "WAITING"
    ENTERED = "ENTERED"
    EXITED = "EXITED"


class ThresholdType(str, Enum):
    POINTS = "POINTS"
    PERCENT = "PERCENT"

    @classmethod
    def parse(cls, value) -> "ThresholdType":
        if isinstance(value, cls):
            return value
        text = str(value).upper()
        # older snapshots spelled it out
        if text == "PERCENTAGE":
            return cls.PERCENT
        return cls(text)


class EntryMethod(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


_DATETIME_FIELDS = ("crossover_signal_time", "last_update", "last_hma_update", "added_at", "entered_at")


def new_monitor_id() -> str:
    return f"monitor_{uuid.uuid4().hex[:12]}"


@dataclass
class MonitorEntry:
    """One watched option contract with its exit configuration and live state."""
    symbol: str
    option_type: OptionType
    lots: int
    target_points: float
    stop_loss_points: float
    entry_method: EntryMethod = EntryMethod.MARKET
    target_type: ThresholdType = ThresholdType.POINTS
    stop_loss_type: ThresholdType = ThresholdType.POINTS
    auto_exit_on_target: bool = True
    auto_exit_on_stop_loss: bool = True
    trailing_stop_loss: bool = False
    trailing_stop_loss_offset: float = 10.0
    time_based_exit: bool = False
    exit_after_minutes: int = 60
    exit_at_market_close: bool = False
    id: str = field(default_factory=new_monitor_id)
    current_ltp: Optional[float] = None
    hma_value: Optional[float] = None
    trigger_status: TriggerStatus = TriggerStatus.WAITING
    entry_price: Optional[float] = None
    crossover_signal_time: Optional[datetime] = None
    last_update: Optional[datetime] = None
    last_hma_update: Optional[datetime] = None
    added_at: datetime = field(default_factory=now_ist)
    entered_at: Optional[datetime] = None
    previous_price_above_hma: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("option_type", "trigger_status", "target_type", "stop_loss_type", "entry_method"):
            data[key] = getattr(self, key).value
        for key in _DATETIME_FIELDS:
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorEntry":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["option_type"] = OptionType(kwargs["option_type"])
        kwargs["trigger_status"] = TriggerStatus(kwargs.get("trigger_status", "WAITING"))
        kwargs["entry_method"] = EntryMethod(kwargs.get("entry_method", "MARKET"))
        kwargs["target_type"] = ThresholdType.parse(kwargs.get("target_type", "POINTS"))
        kwargs["stop_loss_type"] = ThresholdType.parse(kwargs.get("stop_loss_type", "POINTS"))
        for key in _DATETIME_FIELDS:
            if key in kwargs:
                kwargs[key] = parse_iso(kwargs[key])
        if kwargs.get("added_at") is None:
            kwargs.pop("added_at", None)
        return cls(**kwargs)
