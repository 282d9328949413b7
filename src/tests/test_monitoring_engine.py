import asyncio
from datetime import datetime

import pytest

from src.engine.errors import (DuplicateInstrumentError, InstrumentConfigError,
                               InsufficientHistoryError, QuoteFetchError,
                               UnknownInstrumentError)
from src.engine.rate_limiter import ApiRateLimiter
from src.execution.execution import OrderExecutionService
from src.execution.simulator import PaperBroker
from src.models.candle_models import HMASeries, Quote
from src.models.monitor_models import MonitorEntry, OptionType, TriggerStatus
from src.persistence.monitor_state import InMemoryStateStore, MonitorStatePersistence
from src.persistence.trade_log import InMemoryTradeLogSink
from src.services.monitoring_service import MonitoringEngine
from src.utils.instruments import LotSizeResolver
from src.utils.time_utils import IST

SYMBOLS = [f"NSE:NIFTY24JUN2450{i}CE" for i in range(5)]


def at(h, m, s=0):
    return IST.localize(datetime(2024, 6, 10, h, m, s))


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeProvider:
    def __init__(self, prices=None):
        self.prices = dict(prices or {})
        self.quote_calls = []
        self.fail = False
        self.gate = None

    async def fetch_quotes(self, symbols):
        self.quote_calls.append(list(symbols))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise QuoteFetchError("quote service down")
        return {s: Quote(s, self.prices[s], at(10, 0)) for s in symbols if s in self.prices}


class FakeCandleStore:
    """Fixed HMA per symbol, never due for a refresh."""

    def __init__(self, hma=95.0, missing=()):
        self.hma = hma
        self.missing = set(missing)
        self.cleared = []

    async def get_hma(self, symbol, force=False):
        if symbol in self.missing:
            raise InsufficientHistoryError("Not enough trading data", available=12, required=60)
        return HMASeries(period=55, points=((at(9, 55), self.hma),), computed_at=at(10, 0))

    def should_refresh(self, last_hma_update, now):
        return False

    def clear(self, symbol):
        self.cleared.append(symbol)

    def clear_all(self):
        self.cleared.append("*")


async def no_sleep(_):
    return None


def build(prices=None, handoff_delay=None, broker=None, auto_start=False, store=None, clock=None, **kw):
    clock = clock or Clock(at(10, 0))
    provider = FakeProvider(prices)
    broker = broker or PaperBroker()
    trade_log = InMemoryTradeLogSink(clock=clock)
    persistence = MonitorStatePersistence(store or InMemoryStateStore(), clock=clock)
    engine = MonitoringEngine(
        provider,
        FakeCandleStore(**kw),
        OrderExecutionService(broker, LotSizeResolver()),
        trade_log,
        persistence,
        rate_limiter=ApiRateLimiter(min_interval_ms=0, per_minute=1000),
        batch_size=2,
        tick_interval=2.0,
        handoff_delay=handoff_delay,
        session_close="15:30",
        auto_start=auto_start,
        clock=clock,
        sleep=no_sleep,
    )
    return engine, provider, trade_log, clock


async def drive(engine, provider, clock, steps):
    """Apply (time, price) steps for the first monitored symbol, one tick each."""
    symbol = engine.list_monitored()[0].symbol
    for when, price in steps:
        clock.now = when
        provider.prices[symbol] = price
        await engine.tick()


@pytest.mark.asyncio
async def test_batches_cover_all_symbols_in_three_ticks():
    engine, provider, _, _ = build({s: 90.0 for s in SYMBOLS})
    for s in SYMBOLS:
        await engine.add_instrument(s, "CE", 1)
    queried = [await engine.tick() for _ in range(3)]
    assert provider.quote_calls == [SYMBOLS[0:2], SYMBOLS[2:4], SYMBOLS[4:5]]
    assert queried == provider.quote_calls
    assert all(e.current_ltp == 90.0 for e in engine.list_monitored())


@pytest.mark.asyncio
async def test_duplicate_add_keeps_first_configuration():
    engine, _, _, _ = build()
    first = await engine.add_instrument(SYMBOLS[0], "CE", 1, target_points=25)
    with pytest.raises(DuplicateInstrumentError):
        await engine.add_instrument(SYMBOLS[0], "PE", 5, target_points=99)
    assert len(engine.list_monitored()) == 1
    assert engine.list_monitored()[0] is first
    assert first.lots == 1 and first.target_points == 25 and first.option_type == OptionType.CE


@pytest.mark.asyncio
async def test_add_rejects_bad_config_and_missing_history():
    engine, _, _, _ = build(missing={SYMBOLS[1]})
    with pytest.raises(InstrumentConfigError):
        await engine.add_instrument("", "CE", 1)
    with pytest.raises(InstrumentConfigError):
        await engine.add_instrument(SYMBOLS[0], "XX", 1)
    with pytest.raises(InstrumentConfigError):
        await engine.add_instrument(SYMBOLS[0], "CE", 0)
    with pytest.raises(InsufficientHistoryError):
        await engine.add_instrument(SYMBOLS[1], "CE", 1)
    assert engine.list_monitored() == []


@pytest.mark.asyncio
async def test_first_tick_above_hma_never_enters():
    engine, provider, trade_log, clock = build()
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await drive(engine, provider, clock, [(at(10, 0, 5), 100.0), (at(10, 1, 5), 101.0), (at(10, 2, 5), 102.0)])
    assert trade_log.entries == []
    assert engine.list_monitored()[0].trigger_status == TriggerStatus.WAITING


@pytest.mark.asyncio
async def test_same_minute_reversal_produces_no_entry():
    engine, provider, trade_log, clock = build()
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await drive(engine, provider, clock, [
        (at(10, 0, 5), 90.0),
        (at(10, 0, 10), 96.0),
        (at(10, 0, 40), 94.0),
        (at(10, 1, 5), 94.0),
    ])
    assert trade_log.entries == []
    entry = engine.list_monitored()[0]
    assert entry.crossover_signal_time is None
    assert entry.trigger_status == TriggerStatus.WAITING


@pytest.mark.asyncio
async def test_entry_then_target_exit_records_pnl():
    engine, provider, trade_log, clock = build()
    await engine.add_instrument(SYMBOLS[0], "CE", 1, target_points=40, stop_loss_points=30)
    await drive(engine, provider, clock, [
        (at(10, 0, 5), 90.0),
        (at(10, 0, 10), 100.0),
        (at(10, 1, 5), 100.0),
    ])
    entry = engine.list_monitored()[0]
    assert entry.trigger_status == TriggerStatus.ENTERED
    assert entry.entry_price == 100.0
    assert entry.entered_at == at(10, 1, 5)
    assert [t.action for t in trade_log.entries] == ["BUY"]
    assert trade_log.entries[0].quantity == 75

    await drive(engine, provider, clock, [(at(10, 20), 140.0)])
    buy, sell = trade_log.entries
    assert sell.action == "SELL"
    assert sell.pnl == 3000
    assert sell.price == 140.0
    assert "Target of 40 points reached" in sell.remarks
    assert sell.remarks.endswith("(P&L: ₹3000.00)")
    assert entry.trigger_status == TriggerStatus.EXITED
    assert engine.list_monitored() == []


@pytest.mark.asyncio
async def test_entered_position_is_handed_off_after_delay():
    engine, provider, trade_log, clock = build(handoff_delay=3.0)
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await drive(engine, provider, clock, [(at(10, 0, 5), 90.0), (at(10, 0, 10), 100.0), (at(10, 1, 5), 100.0)])
    assert engine.status()["pending_handoffs"] == 1
    for _ in range(3):
        await asyncio.sleep(0)
    assert engine.list_monitored() == []
    assert [t.action for t in trade_log.entries] == ["BUY"]


@pytest.mark.asyncio
async def test_rejected_entry_order_is_retried_next_tick():
    broker = PaperBroker(reject_symbols=[SYMBOLS[0]])
    engine, provider, trade_log, clock = build(broker=broker)
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await drive(engine, provider, clock, [(at(10, 0, 5), 90.0), (at(10, 0, 10), 100.0), (at(10, 1, 5), 100.0)])
    entry = engine.list_monitored()[0]
    assert entry.trigger_status == TriggerStatus.WAITING
    assert entry.crossover_signal_time == at(10, 0, 10)
    assert trade_log.entries == []

    broker.reject_symbols.clear()
    await drive(engine, provider, clock, [(at(10, 1, 7), 100.5)])
    assert entry.trigger_status == TriggerStatus.ENTERED
    assert entry.entry_price == 100.5


@pytest.mark.asyncio
async def test_quote_failure_and_missing_quotes_keep_entries():
    engine, provider, _, _ = build({SYMBOLS[0]: 90.0})
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await engine.add_instrument(SYMBOLS[1], "CE", 1)
    await engine.tick()
    first, second = engine.list_monitored()
    assert first.current_ltp == 90.0
    assert second.current_ltp is None and second.last_update is None

    provider.fail = True
    provider.prices[SYMBOLS[0]] = 120.0
    await engine.tick()
    assert len(engine.list_monitored()) == 2
    assert first.current_ltp == 90.0


@pytest.mark.asyncio
async def test_stop_discards_in_flight_tick():
    engine, provider, trade_log, _ = build({SYMBOLS[0]: 90.0})
    entry = await engine.add_instrument(SYMBOLS[0], "CE", 1)
    provider.gate = asyncio.Event()
    pending = asyncio.ensure_future(engine.tick())
    await asyncio.sleep(0)
    await engine.stop()
    provider.gate.set()
    assert await pending == []
    assert entry.current_ltp is None
    assert engine.list_monitored() == []
    assert await engine.persistence.store.load() is None


@pytest.mark.asyncio
async def test_add_auto_starts_and_last_removal_stops():
    engine, _, _, _ = build({SYMBOLS[0]: 90.0}, auto_start=True)
    entry = await engine.add_instrument(SYMBOLS[0], "CE", 1)
    assert engine.is_running()
    assert engine.persistence.store.snapshot["monitoringActive"] is True
    await engine.remove_instrument(entry.id)
    assert not engine.is_running()
    assert not engine.scheduler.running
    with pytest.raises(UnknownInstrumentError):
        await engine.remove_instrument(entry.id)


@pytest.mark.asyncio
async def test_resume_restores_today_and_restarts():
    store = InMemoryStateStore()
    saved = MonitorEntry(symbol=SYMBOLS[2], option_type=OptionType.PE, lots=2, target_points=15, stop_loss_points=5)
    saved.previous_price_above_hma = True
    saved.last_update = at(9, 58)
    saved.crossover_signal_time = at(9, 59, 30)
    await MonitorStatePersistence(store, clock=Clock(at(9, 59))).save([saved], monitoring_active=True)

    engine, _, _, _ = build(store=store)
    assert await engine.resume(start=False) == 1
    restored = engine.list_monitored()[0]
    assert restored.lots == 2 and restored.option_type == OptionType.PE
    assert restored.previous_price_above_hma is None
    assert restored.last_update is None
    assert restored.crossover_signal_time is None
    assert not engine.is_running()

    engine, _, _, _ = build(store=store)
    await engine.resume()
    assert engine.is_running()
    await engine.stop()


@pytest.mark.asyncio
async def test_restored_signal_needs_a_fresh_cross_before_entry():
    store = InMemoryStateStore()
    saved = MonitorEntry(symbol=SYMBOLS[0], option_type=OptionType.CE, lots=1, target_points=20, stop_loss_points=10)
    saved.hma_value = 95.0
    saved.previous_price_above_hma = True
    saved.crossover_signal_time = at(9, 30)
    await MonitorStatePersistence(store, clock=Clock(at(9, 31))).save([saved], monitoring_active=False)

    engine, provider, trade_log, clock = build(store=store)
    await engine.resume(start=False)
    await drive(engine, provider, clock, [(at(11, 0, 1), 100.0), (at(11, 0, 3), 100.0), (at(11, 1, 5), 100.0)])
    assert trade_log.entries == []
    assert engine.list_monitored()[0].trigger_status == TriggerStatus.WAITING


@pytest.mark.asyncio
async def test_invalid_entry_order_keeps_signal_for_retry():
    engine, provider, trade_log, clock = build()
    engine.executor.product_type = "FOO"
    await engine.add_instrument(SYMBOLS[0], "CE", 1)
    await drive(engine, provider, clock, [(at(10, 0, 5), 90.0), (at(10, 0, 10), 100.0), (at(10, 1, 5), 100.0)])
    entry = engine.list_monitored()[0]
    assert entry.trigger_status == TriggerStatus.WAITING
    assert entry.crossover_signal_time == at(10, 0, 10)
    assert trade_log.entries == []

    engine.executor.product_type = "INTRADAY"
    await drive(engine, provider, clock, [(at(10, 1, 7), 101.0)])
    assert entry.trigger_status == TriggerStatus.ENTERED
