from datetime import date, datetime, timedelta

import pytest

from src.engine.candle_store import CandleStore, session_candles
from src.engine.errors import InsufficientHistoryError
from src.engine.rate_limiter import ApiRateLimiter
from src.models.candle_models import Candle
from src.utils.time_utils import IST


def _day_candles(day: date, count: int, base: float = 100.0, start=(9, 15)):
    first = IST.localize(datetime(day.year, day.month, day.day, *start))
    return [
        Candle(first + timedelta(minutes=5 * i), base + i, base + i + 1, base + i - 1, base + i, 10)
        for i in range(count)
    ]


class FakeProvider:
    def __init__(self, per_day=None, failing=()):
        self.per_day = per_day or {}
        self.failing = set(failing)
        self.calls = []

    async def fetch_historical_candles(self, symbol, timeframe, from_date, to_date):
        self.calls.append(from_date)
        if from_date in self.failing:
            raise RuntimeError("broker timeout")
        return list(self.per_day.get(from_date, []))


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


MONDAY = date(2024, 6, 10)
FRIDAY = date(2024, 6, 7)
THURSDAY = date(2024, 6, 6)


def _store(provider, clock, **kw):
    params = dict(period=55, required=60, timeframe="5m", max_lookback_days=5, session_open="09:15",
                  session_close="15:30", refresh_minutes=5, refresh_tolerance_sec=5, stale_minutes=10)
    params.update(kw)
    return CandleStore(provider, clock=clock, **params)


def test_session_filter_drops_out_of_hours_and_duplicates():
    candles = _day_candles(MONDAY, 3, start=(9, 5))  # 09:05, 09:10, 09:15
    dup = candles[-1]
    late = _day_candles(MONDAY, 1, start=(15, 35))
    kept = session_candles(candles + [dup] + late, 555, 930)
    assert [c.timestamp.strftime("%H:%M") for c in kept] == ["09:15"]


@pytest.mark.asyncio
async def test_warm_walks_back_across_days():
    provider = FakeProvider({MONDAY: _day_candles(MONDAY, 30, 200), FRIDAY: _day_candles(FRIDAY, 40, 100)})
    store = _store(provider, Clock(IST.localize(datetime(2024, 6, 10, 11, 45))))
    series = await store.warm("NSE:NIFTY24JUN24500CE")
    assert provider.calls == [MONDAY, FRIDAY]
    candles = store.candles("NSE:NIFTY24JUN24500CE")
    assert len(candles) == 60
    # oldest Friday candles trimmed, order old -> new
    assert candles[0].timestamp.date() == FRIDAY
    assert candles[-1].timestamp.date() == MONDAY
    assert store.current_hma("NSE:NIFTY24JUN24500CE") == series.current


@pytest.mark.asyncio
async def test_warm_skips_weekend_start_and_failed_days():
    provider = FakeProvider({FRIDAY: _day_candles(FRIDAY, 70)}, failing={THURSDAY})
    sunday = IST.localize(datetime(2024, 6, 9, 12, 0))
    store = _store(provider, Clock(sunday))
    await store.warm("NSE:NIFTY24JUN24500CE")
    assert provider.calls == [FRIDAY]

    provider = FakeProvider({MONDAY: _day_candles(MONDAY, 20), THURSDAY: _day_candles(THURSDAY, 50)}, failing={FRIDAY})
    store = _store(provider, Clock(IST.localize(datetime(2024, 6, 10, 10, 0))))
    await store.warm("NSE:NIFTY24JUN24500CE")
    assert provider.calls == [MONDAY, FRIDAY, THURSDAY]


@pytest.mark.asyncio
async def test_insufficient_history_after_lookback_cap():
    per_day = {MONDAY: _day_candles(MONDAY, 10), FRIDAY: _day_candles(FRIDAY, 10), THURSDAY: _day_candles(THURSDAY, 10)}
    provider = FakeProvider(per_day)
    store = _store(provider, Clock(IST.localize(datetime(2024, 6, 10, 10, 0))), max_lookback_days=3)
    with pytest.raises(InsufficientHistoryError) as exc:
        await store.warm("NSE:NIFTY24JUN24500CE")
    assert exc.value.available == 30
    assert len(provider.calls) == 3
    assert not store.has_window("NSE:NIFTY24JUN24500CE")


@pytest.mark.asyncio
async def test_refresh_appends_new_candle_and_evicts_oldest():
    provider = FakeProvider({MONDAY: _day_candles(MONDAY, 60)})
    clock = Clock(IST.localize(datetime(2024, 6, 10, 14, 20)))
    store = _store(provider, clock)
    await store.warm("SYM:X")
    before = store.candles("SYM:X")

    # same candles again: nothing new
    await store.refresh("SYM:X")
    assert store.candles("SYM:X") == before

    provider.per_day[MONDAY] = _day_candles(MONDAY, 61)
    clock.now = IST.localize(datetime(2024, 6, 10, 14, 25, 2))
    series = await store.refresh("SYM:X")
    after = store.candles("SYM:X")
    assert len(after) == 60
    assert after[0] == before[1]
    assert after[-1].timestamp > before[-1].timestamp
    assert series.current == store.current_hma("SYM:X")
    assert store.stats()[0].candle_count == 60


@pytest.mark.asyncio
async def test_get_hma_reuses_recent_window():
    provider = FakeProvider({MONDAY: _day_candles(MONDAY, 60)})
    clock = Clock(IST.localize(datetime(2024, 6, 10, 14, 20)))
    store = _store(provider, clock)
    first = await store.get_hma("SYM:X")
    clock.now += timedelta(minutes=2)
    assert await store.get_hma("SYM:X") is first
    assert provider.calls == [MONDAY]
    clock.now += timedelta(minutes=4)
    await store.get_hma("SYM:X")
    assert provider.calls == [MONDAY, MONDAY]


def test_should_refresh_alignment_and_staleness():
    store = _store(FakeProvider(), Clock(None))
    at = lambda h, m, s=0: IST.localize(datetime(2024, 6, 10, h, m, s))
    assert store.should_refresh(None, at(10, 1))
    assert store.should_refresh(at(10, 0), at(10, 5, 3))
    assert not store.should_refresh(at(10, 5, 2), at(10, 7))
    assert not store.should_refresh(at(10, 5, 0), at(10, 5, 2))
    assert store.should_refresh(at(10, 5), at(10, 20, 30))


def test_market_open_window():
    store = _store(FakeProvider(), Clock(None))
    assert store.is_market_open(IST.localize(datetime(2024, 6, 10, 9, 15)))
    assert store.is_market_open(IST.localize(datetime(2024, 6, 10, 15, 34)))
    assert not store.is_market_open(IST.localize(datetime(2024, 6, 10, 9, 0)))
    assert not store.is_market_open(IST.localize(datetime(2024, 6, 8, 11, 0)))


class FakeTime:
    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def __call__(self):
        return self.t

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.t += seconds


@pytest.mark.asyncio
async def test_warm_up_fetches_are_rate_limited():
    ft = FakeTime()
    limiter = ApiRateLimiter(min_interval_ms=150, per_minute=200, clock=ft, sleep=ft.sleep)
    per_day = {MONDAY: _day_candles(MONDAY, 20), FRIDAY: _day_candles(FRIDAY, 20), THURSDAY: _day_candles(THURSDAY, 30)}
    provider = FakeProvider(per_day)
    store = _store(provider, Clock(IST.localize(datetime(2024, 6, 10, 11, 0))), rate_limiter=limiter)
    await store.warm("NSE:NIFTY24JUN24500CE")
    assert provider.calls == [MONDAY, FRIDAY, THURSDAY]
    assert limiter.calls_in_window == 3
    assert ft.sleeps == [pytest.approx(0.15), pytest.approx(0.15)]


@pytest.mark.asyncio
async def test_uncached_lookup_leaves_no_window():
    provider = FakeProvider({MONDAY: _day_candles(MONDAY, 60)})
    store = _store(provider, Clock(IST.localize(datetime(2024, 6, 10, 14, 20))))
    series = await store.get_hma("NSE:NIFTY24JUN24900CE", cache=False)
    assert series.period == 55
    assert not store.has_window("NSE:NIFTY24JUN24900CE")
    assert store.stats() == []
