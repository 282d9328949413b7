"""
Market data models used by the HMA engine.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Candle:
    """Represents a price candle/bar. Immutable once stored."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    def to_dict(self):
        return {
            "ts": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume
        }


@dataclass(frozen=True)
class HMASeries:
    """Hull moving average attached to a candle window.

    Replaced wholesale whenever the window changes, never mutated.
    """
    period: int
    points: Tuple[Tuple[datetime, float], ...]
    computed_at: datetime

    @property
    def current(self) -> float:
        return self.points[-1][1]

    @property
    def values(self) -> List[float]:
        return [v for _, v in self.points]


@dataclass(frozen=True)
class Quote:
    symbol: str
    ltp: float
    timestamp: datetime


@dataclass
class CandleCacheStats:
    symbol: str
    candle_count: int
    last_update: Optional[datetime]
    live: bool
    current_hma: Optional[float] = None
    extra: dict = field(default_factory=dict)
