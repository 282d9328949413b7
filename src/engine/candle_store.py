import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Sequence

import pandas as pd

from src.config import settings
from src.engine.errors import InsufficientHistoryError
from src.engine.hma import compute_hma
from src.engine.rate_limiter import ApiRateLimiter
from src.models.candle_models import Candle, CandleCacheStats, HMASeries
from src.utils.time_utils import (IST, is_weekend, now_ist, parse_hhmm,
                                  previous_trading_day)

logger = logging.getLogger("candle_store")


def session_candles(candles: Sequence[Candle], open_minute: int, close_minute: int) -> List[Candle]:
    """Keep candles whose IST minute-of-day lies in [open_minute, close_minute].

    Result is de-duplicated by timestamp and ordered old -> new.
    """
    if not candles:
        return []
    df = pd.DataFrame({
        "ts": [c.timestamp if c.timestamp.tzinfo else IST.localize(c.timestamp) for c in candles],
        "idx": range(len(candles)),
    })
    df["ts"] = pd.to_datetime(df["ts"], utc=True, errors="coerce")
    df = df.dropna(subset=["ts"])
    local = df["ts"].dt.tz_convert(IST)
    minutes = local.dt.hour * 60 + local.dt.minute
    df = df[(minutes >= open_minute) & (minutes <= close_minute)]
    df = df.sort_values("ts").drop_duplicates(subset="ts", keep="last")
    return [candles[int(i)] for i in df["idx"]]


@dataclass
class _CandleWindow:
    symbol: str
    candles: Deque[Candle]
    series: Optional[HMASeries] = None
    last_update: Optional[datetime] = None
    live: bool = False
    refreshes: int = field(default=0)


class CandleStore:
    """Rolling per-instrument window of session candles with its derived HMA.

    Warm-up walks back day by day (weekends skipped) collecting session candles
    until `required` are available; after that, refreshes only append the
    newest session candle and evict the oldest.
    """

    def __init__(self,
                 provider,
                 period: int = None,
                 required: int = None,
                 timeframe: str = None,
                 max_lookback_days: int = None,
                 session_open: str = None,
                 session_close: str = None,
                 refresh_minutes: int = None,
                 refresh_tolerance_sec: int = None,
                 stale_minutes: int = None,
                 rate_limiter: Optional[ApiRateLimiter] = None,
                 clock: Callable[[], datetime] = now_ist):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.period = period or settings.HMA_PERIOD
        self.required = max(required or settings.HMA_REQUIRED_CANDLES, self.period)
        self.timeframe = timeframe or settings.HMA_CANDLE_TIMEFRAME
        self.max_lookback_days = max_lookback_days or settings.HMA_MAX_LOOKBACK_DAYS
        self.open_minute = parse_hhmm(session_open or settings.SESSION_OPEN)
        self.close_minute = parse_hhmm(session_close or settings.SESSION_CLOSE)
        self.refresh_interval = timedelta(minutes=refresh_minutes or settings.HMA_REFRESH_MINUTES)
        self.refresh_tolerance = timedelta(seconds=refresh_tolerance_sec if refresh_tolerance_sec is not None else settings.HMA_REFRESH_TOLERANCE_SEC)
        self.stale_after = timedelta(minutes=stale_minutes or settings.HMA_STALE_MINUTES)
        self.clock = clock
        self._windows: Dict[str, _CandleWindow] = {}

    # ---------------- warm-up -----------------
    async def get_hma(self, symbol: str, force: bool = False, cache: bool = True) -> HMASeries:
        """Return the HMA series, reusing a window younger than one refresh interval.

        With cache=False a missing window is computed but not kept.
        """
        now = self.clock()
        window = self._windows.get(symbol)
        if not force and window and window.series and window.last_update and now - window.last_update < self.refresh_interval:
            logger.debug("Using cached candles for %s: %d candles", symbol, len(window.candles))
            return window.series
        return await self.warm(symbol, cache=cache)

    async def warm(self, symbol: str, cache: bool = True) -> HMASeries:
        candles = await self._fetch_market_aware(symbol)
        series = compute_hma(candles, self.period)
        if not cache:
            logger.info("Calculated HMA(%d)=%.2f for %s (not cached)", self.period, series.current, symbol)
            return series
        now = self.clock()
        self._windows[symbol] = _CandleWindow(
            symbol=symbol,
            candles=deque(candles, maxlen=self.required),
            series=series,
            last_update=now,
            live=self.is_market_open(now),
        )
        logger.info("Calculated HMA(%d)=%.2f for %s from %d candles", self.period, series.current, symbol, len(candles))
        return series

    async def _fetch_market_aware(self, symbol: str) -> List[Candle]:
        collected: List[Candle] = []
        day = self.clock().astimezone(IST).date()
        while is_weekend(day):
            day = previous_trading_day(day)
        attempts = 0
        while len(collected) < self.required and attempts < self.max_lookback_days:
            try:
                logger.debug("Fetching %s candles for %s on %s, attempt %d", self.timeframe, symbol, day, attempts + 1)
                raw = await self._fetch(symbol, day)
                day_candles = session_candles(raw or [], self.open_minute, self.close_minute)
                logger.debug("Found %d session candles for %s on %s", len(day_candles), symbol, day)
                collected = day_candles + collected
            except Exception as e:
                logger.warning("Error fetching candles for %s on %s: %s", symbol, day, e)
            day = previous_trading_day(day)
            attempts += 1
        if len(collected) < self.required:
            raise InsufficientHistoryError(
                f"Not enough trading data to calculate HMA({self.period}) for {symbol}. "
                f"Found {len(collected)} candles, need {self.required}",
                available=len(collected),
                required=self.required,
            )
        return collected[-self.required:]

    async def _fetch(self, symbol: str, day) -> List[Candle]:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        return await self.provider.fetch_historical_candles(symbol, self.timeframe, day, day)

    # ---------------- incremental refresh -----------------
    async def refresh(self, symbol: str) -> Optional[HMASeries]:
        """Append the latest session candle if it is new; returns the current series."""
        window = self._windows.get(symbol)
        if window is None:
            return await self.warm(symbol)
        today = self.clock().astimezone(IST).date()
        raw = await self._fetch(symbol, today)
        latest = session_candles(raw or [], self.open_minute, self.close_minute)
        if not latest:
            return window.series
        newest = latest[-1]
        if window.candles and newest.timestamp <= window.candles[-1].timestamp:
            return window.series
        window.candles.append(newest)  # maxlen evicts the oldest
        window.series = compute_hma(list(window.candles), self.period)
        window.last_update = self.clock()
        window.refreshes += 1
        logger.info("Live HMA updated for %s: %.2f", symbol, window.series.current)
        return window.series

    def should_refresh(self, last_hma_update: Optional[datetime], now: datetime) -> bool:
        """True on a wall-clock refresh boundary (within tolerance), when never updated, or when stale."""
        if last_hma_update is None:
            return True
        elapsed = now - last_hma_update
        if elapsed > self.stale_after:
            return True
        local = now.astimezone(IST) if now.tzinfo else now
        minutes_step = int(self.refresh_interval.total_seconds() // 60) or 1
        on_boundary = local.minute % minutes_step == 0 and local.second <= self.refresh_tolerance.total_seconds()
        return on_boundary and elapsed > self.refresh_tolerance

    # ---------------- accessors -----------------
    def is_market_open(self, now: datetime, buffer_minutes: int = 5) -> bool:
        local = now.astimezone(IST) if now.tzinfo else now
        if is_weekend(local):
            return False
        m = local.hour * 60 + local.minute
        return self.open_minute <= m <= self.close_minute + buffer_minutes

    def has_window(self, symbol: str) -> bool:
        return symbol in self._windows

    def series(self, symbol: str) -> Optional[HMASeries]:
        window = self._windows.get(symbol)
        return window.series if window else None

    def current_hma(self, symbol: str) -> Optional[float]:
        series = self.series(symbol)
        return series.current if series else None

    def candles(self, symbol: str) -> List[Candle]:
        window = self._windows.get(symbol)
        return list(window.candles) if window else []

    def clear(self, symbol: str):
        if self._windows.pop(symbol, None) is not None:
            logger.info("Cache cleared for %s", symbol)

    def clear_all(self):
        self._windows.clear()
        logger.info("All HMA cache cleared")

    def stats(self) -> List[CandleCacheStats]:
        return [
            CandleCacheStats(
                symbol=w.symbol,
                candle_count=len(w.candles),
                last_update=w.last_update,
                live=w.live,
                current_hma=w.series.current if w.series else None,
            )
            for w in self._windows.values()
        ]
