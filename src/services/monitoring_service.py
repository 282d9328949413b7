import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.config import settings
from src.engine.candle_store import CandleStore
from src.engine.crossover import (CrossoverAction, CrossoverDecision, ExitDecision,
                                  evaluate_crossover, evaluate_exit)
from src.engine.errors import (DuplicateInstrumentError, InstrumentConfigError,
                               MonitorError, OrderValidationError, PersistenceError, QuoteFetchError,
                               UnknownInstrumentError)
from src.engine.rate_limiter import ApiRateLimiter
from src.engine.scheduler import BatchRotator, TickScheduler
from src.execution.execution import OrderExecutionService
from src.models.monitor_models import (EntryMethod, MonitorEntry, OptionType,
                                       ThresholdType, TriggerStatus)
from src.persistence.monitor_state import MonitorStatePersistence
from src.persistence.trade_log import TradeLogSink, format_pnl
from src.services.metrics import (crossovers_counter, entries_counter, exits_counter,
                                  orders_counter, quote_failures_counter,
                                  tick_duration, ticks_counter)
from src.services.registry import MonitorRegistry
from src.utils.instruments import is_well_formed_symbol
from src.utils.orders_enum import OrderMethod, OrderSide
from src.utils.time_utils import now_ist, parse_hhmm

logger = logging.getLogger("monitor")

_FROM_SETTINGS = object()


class MonitoringEngine:
    """Watches option contracts for an HMA crossover and trades them.

    Every tick takes the next batch of the registry (round-robin), pulls one
    bulk quote for it under the API rate limiter and feeds each fresh price
    through the crossover/exit rules. Ticks never overlap, and everything a
    tick applies after an await is dropped if the engine was stopped
    meanwhile.
    """

    def __init__(self,
                 provider,
                 candle_store: CandleStore,
                 executor: OrderExecutionService,
                 trade_log: TradeLogSink,
                 persistence: MonitorStatePersistence,
                 notifier=None,
                 rate_limiter: Optional[ApiRateLimiter] = None,
                 batch_size: int = None,
                 tick_interval: float = None,
                 handoff_delay: Optional[float] = _FROM_SETTINGS,
                 session_close: str = None,
                 auto_start: bool = True,
                 clock: Callable[[], datetime] = now_ist,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.provider = provider
        self.candle_store = candle_store
        self.executor = executor
        self.trade_log = trade_log
        self.persistence = persistence
        self.notifier = notifier
        self.rate_limiter = rate_limiter or ApiRateLimiter(
            min_interval_ms=settings.RATE_LIMIT_MIN_INTERVAL_MS,
            per_minute=settings.RATE_LIMIT_PER_MINUTE,
        )
        self.rotator = BatchRotator(batch_size or settings.MONITOR_BATCH_SIZE)
        self.scheduler = TickScheduler(self.tick, tick_interval or settings.MONITOR_TICK_SEC)
        # None keeps entered positions in the registry so exits are managed here
        self.handoff_delay = settings.ENTRY_HANDOFF_DELAY_SEC if handoff_delay is _FROM_SETTINGS else handoff_delay
        self.session_close_minute = parse_hhmm(session_close or settings.SESSION_CLOSE)
        self.auto_start = auto_start
        self.clock = clock
        self._sleep = sleep

        self.registry = MonitorRegistry()
        self._running = False
        self._generation = 0
        self._tick_lock = asyncio.Lock()
        self._handoffs: Dict[str, asyncio.Task] = {}

    # ---------------- public surface -----------------
    async def add_instrument(self,
                             symbol: str,
                             option_type,
                             lots: int,
                             target_points: float = None,
                             stop_loss_points: float = None,
                             target_type=ThresholdType.POINTS,
                             stop_loss_type=ThresholdType.POINTS,
                             entry_method=EntryMethod.MARKET,
                             auto_exit_on_target: bool = True,
                             auto_exit_on_stop_loss: bool = True,
                             trailing_stop_loss: bool = False,
                             trailing_stop_loss_offset: float = None,
                             time_based_exit: bool = False,
                             exit_after_minutes: int = None,
                             exit_at_market_close: bool = False) -> MonitorEntry:
        """Validate, compute the initial HMA and start watching `symbol`.

        Raises DuplicateInstrumentError, InstrumentConfigError or the
        InsufficientDataError family; nothing is added in those cases.
        """
        symbol = (symbol or "").strip()
        if not symbol:
            raise InstrumentConfigError("Symbol is required")
        if not is_well_formed_symbol(symbol):
            raise InstrumentConfigError(f"Symbol {symbol} is not in EXCHANGE:NAME form")
        if symbol in self.registry:
            raise DuplicateInstrumentError(f"{symbol} is already being monitored")
        try:
            entry = MonitorEntry(
                symbol=symbol,
                option_type=OptionType(str(getattr(option_type, "value", option_type)).upper()),
                lots=int(lots),
                target_points=float(settings.DEFAULT_TARGET_POINTS if target_points is None else target_points),
                stop_loss_points=float(settings.DEFAULT_STOP_LOSS_POINTS if stop_loss_points is None else stop_loss_points),
                target_type=ThresholdType.parse(target_type),
                stop_loss_type=ThresholdType.parse(stop_loss_type),
                entry_method=EntryMethod(str(getattr(entry_method, "value", entry_method)).upper()),
                auto_exit_on_target=auto_exit_on_target,
                auto_exit_on_stop_loss=auto_exit_on_stop_loss,
                trailing_stop_loss=trailing_stop_loss,
                trailing_stop_loss_offset=float(settings.DEFAULT_TRAILING_OFFSET if trailing_stop_loss_offset is None else trailing_stop_loss_offset),
                time_based_exit=time_based_exit,
                exit_after_minutes=int(settings.DEFAULT_EXIT_AFTER_MINUTES if exit_after_minutes is None else exit_after_minutes),
                exit_at_market_close=exit_at_market_close,
                added_at=self.clock(),
            )
        except (TypeError, ValueError) as e:
            raise InstrumentConfigError(f"Invalid monitor configuration for {symbol}: {e}") from e
        if entry.lots <= 0:
            raise InstrumentConfigError("Lots must be greater than 0")
        if entry.target_points <= 0 or entry.stop_loss_points <= 0:
            raise InstrumentConfigError("Target and stop loss must be greater than 0")

        series = await self.candle_store.get_hma(symbol)
        # re-check: another add may have finished while the candles were loading
        if symbol in self.registry:
            raise DuplicateInstrumentError(f"{symbol} is already being monitored")
        entry.hma_value = series.current
        entry.last_hma_update = self.clock()
        self.registry.add(entry)
        logger.info("Added %s (%s) to monitoring: %d lots, HMA(%d)=%.2f", symbol, entry.option_type.value, entry.lots,
                    series.period, series.current)
        if self.auto_start and not self._running:
            self.start()
        await self.persist()
        return entry

    async def remove_instrument(self, entry_id: str) -> MonitorEntry:
        entry = self.registry.remove(entry_id)
        if entry is None:
            raise UnknownInstrumentError(f"No monitored instrument with id {entry_id}")
        self._cancel_handoff(entry_id)
        self.candle_store.clear(entry.symbol)
        logger.info("Removed %s from monitoring", entry.symbol)
        await self._after_removal()
        return entry

    def list_monitored(self) -> List[MonitorEntry]:
        return self.registry.entries()

    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        if self._running:
            return True
        if not len(self.registry):
            logger.warning("Nothing to monitor, not starting")
            return False
        self._running = True
        self.rotator.reset()
        self.scheduler.start()
        logger.info("Monitoring started for %d symbols (batch size %d, every %.1fs)", len(self.registry),
                    self.rotator.batch_size, self.scheduler.interval)
        return True

    async def stop(self):
        """Stop ticking, drop every monitored entry and the persisted snapshot."""
        self._generation += 1
        self._running = False
        for task in self._handoffs.values():
            task.cancel()
        self._handoffs.clear()
        await self.scheduler.stop()
        self.registry.clear()
        self.rotator.reset()
        self.candle_store.clear_all()
        await self.persistence.clear()
        logger.info("Monitoring stopped")

    async def resume(self, start: bool = True) -> int:
        """Restore today's snapshot; restart ticking if it was running when saved."""
        state = await self.persistence.restore(self.clock())
        if not state.entries:
            return 0
        self.registry.replace_all(state.entries)
        logger.info("Resumed %d monitored symbols", len(self.registry))
        if start and state.monitoring_active:
            self.start()
        return len(self.registry)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "monitored": len(self.registry),
            "batch_size": self.rotator.batch_size,
            "next_batch": self.rotator.index,
            "tick_interval_sec": self.scheduler.interval,
            "api_calls_this_minute": self.rate_limiter.calls_in_window,
            "pending_handoffs": len(self._handoffs),
            "symbols": [
                {
                    "id": e.id,
                    "symbol": e.symbol,
                    "status": e.trigger_status.value,
                    "ltp": e.current_ltp,
                    "hma": e.hma_value,
                    "signal_pending": e.crossover_signal_time is not None,
                }
                for e in self.registry.entries()
            ],
        }

    # ---------------- tick -----------------
    async def tick(self) -> List[str]:
        """One scheduler pass over the next batch; returns the symbols queried."""
        if self._tick_lock.locked():
            logger.debug("Previous tick still running, skipping")
            return []
        async with self._tick_lock:
            with tick_duration.time():
                return await self._run_batch(self._generation)

    def _current(self, generation: int) -> bool:
        return generation == self._generation

    async def _run_batch(self, generation: int) -> List[str]:
        batch = self.rotator.next_batch(self.registry.entries())
        if not batch:
            return []
        symbols = [e.symbol for e in batch]

        await self.rate_limiter.acquire()
        if not self._current(generation):
            return []
        try:
            quotes = await self.provider.fetch_quotes(symbols)
        except Exception as e:
            quote_failures_counter.inc()
            err = e if isinstance(e, QuoteFetchError) else QuoteFetchError(str(e))
            logger.warning("Quote fetch failed for %s: %s", ", ".join(symbols), err)
            return symbols
        if not self._current(generation):
            logger.debug("Engine stopped during quote fetch, discarding results")
            return []

        now = self.clock()
        updated = 0
        for entry in batch:
            if self.registry.get(entry.id) is not entry:
                continue
            quote = quotes.get(entry.symbol)
            if quote is None:
                logger.debug("No quote for %s this tick, keeping last values", entry.symbol)
                continue
            entry.current_ltp = quote.ltp
            entry.last_update = now
            updated += 1
            await self._process(entry, quote.ltp, now, generation)
            if not self._current(generation):
                return []

        ticks_counter.inc()
        if updated:
            await self.persist()
        return symbols

    async def _process(self, entry: MonitorEntry, ltp: float, now: datetime, generation: int):
        if entry.trigger_status == TriggerStatus.WAITING:
            await self._refresh_hma(entry, now)
            if not self._current(generation):
                return
            decision = evaluate_crossover(entry, ltp, now)
            if decision.action == CrossoverAction.SIGNAL:
                crossovers_counter.inc()
            elif decision.action == CrossoverAction.CONFIRMED:
                await self._execute_entry(entry, ltp, now, decision, generation)
        elif entry.trigger_status == TriggerStatus.ENTERED:
            decision = evaluate_exit(entry, ltp, now, self.session_close_minute)
            if decision is not None:
                await self._execute_exit(entry, decision, now, generation)

    async def _refresh_hma(self, entry: MonitorEntry, now: datetime):
        if not self.candle_store.should_refresh(entry.last_hma_update, now):
            return
        try:
            series = await self.candle_store.refresh(entry.symbol)
        except MonitorError as e:
            logger.warning("HMA refresh failed for %s: %s", entry.symbol, e)
            return
        except Exception:
            logger.exception("Unexpected error refreshing HMA for %s", entry.symbol)
            return
        if series is not None:
            entry.hma_value = series.current
            entry.last_hma_update = now

    # ---------------- entry / exit -----------------
    async def _execute_entry(self, entry: MonitorEntry, ltp: float, now: datetime, decision: CrossoverDecision, generation: int):
        method = OrderMethod(entry.entry_method.value)
        try:
            order = self.executor.prepare(entry.symbol, entry.lots, OrderSide.BUY, method, limit_price=ltp)
        except OrderValidationError as e:
            logger.warning("Entry order invalid for %s: %s", entry.symbol, "; ".join(e.errors))
            entry.crossover_signal_time = decision.signal_time
            return
        except MonitorError as e:
            logger.warning("Could not build entry order for %s: %s", entry.symbol, e)
            entry.crossover_signal_time = decision.signal_time
            return

        result = await self.executor.submit(order)
        if not self._current(generation):
            return
        orders_counter.labels(side=order.side).inc()
        if not result.ok:
            logger.warning("Entry order for %s not accepted: %s", entry.symbol, result.message)
            entry.crossover_signal_time = decision.signal_time
            return

        entry.trigger_status = TriggerStatus.ENTERED
        entry.entry_price = ltp
        entry.entered_at = now
        entries_counter.inc()
        logger.info("ENTERED %s (%s): %d qty @ %.2f, order %s", entry.symbol, entry.option_type.value, order.quantity,
                    ltp, result.order_id)

        remarks = (f"HMA crossover entry - {entry.lots} lots ({order.quantity} qty) - "
                   f"Target: {entry.target_points} {entry.target_type.value} - "
                   f"SL: {entry.stop_loss_points} {entry.stop_loss_type.value} - Order Tag: {order.tag}")
        await self._log_trade({
            "symbol": entry.symbol,
            "action": OrderSide.BUY.value,
            "quantity": order.quantity,
            "price": ltp,
            "order_type": order.method,
            "status": "COMPLETED",
            "remarks": remarks,
        })
        if not self._current(generation):
            return
        if self.notifier:
            await self.notifier.notify_trade(entry, "ENTRY", ltp, order.quantity, reason="HMA crossover")
        await self.persist()
        self._schedule_handoff(entry, generation)

    async def _execute_exit(self, entry: MonitorEntry, decision: ExitDecision, now: datetime, generation: int):
        try:
            order = self.executor.prepare(entry.symbol, entry.lots, OrderSide.SELL, OrderMethod.MARKET,
                                          limit_price=decision.price)
        except OrderValidationError as e:
            logger.warning("Exit order invalid for %s: %s", entry.symbol, "; ".join(e.errors))
            return
        except MonitorError as e:
            logger.warning("Could not build exit order for %s: %s", entry.symbol, e)
            return

        pnl = (decision.price - entry.entry_price) * order.quantity
        result = await self.executor.submit(order)
        if not self._current(generation):
            return
        orders_counter.labels(side=order.side).inc()
        if not result.ok:
            logger.warning("Exit order for %s not accepted: %s", entry.symbol, result.message)
            return

        logger.info("EXITED %s (%s) @ %.2f: %s, P&L %.2f", entry.symbol, entry.option_type.value, decision.price,
                    decision.reason, pnl)
        await self._log_trade({
            "symbol": entry.symbol,
            "action": OrderSide.SELL.value,
            "quantity": order.quantity,
            "price": decision.price,
            "order_type": order.method,
            "status": "COMPLETED",
            "pnl": pnl,
            "remarks": f"{decision.rule.value} exit: {decision.reason} (P&L: {format_pnl(pnl)})",
        })
        if not self._current(generation):
            return
        entry.trigger_status = TriggerStatus.EXITED
        exits_counter.labels(rule=decision.rule.value).inc()
        if self.notifier:
            await self.notifier.notify_trade(entry, "EXIT", decision.price, order.quantity, pnl=pnl, reason=decision.reason)
        if self.registry.remove(entry.id) is not None:
            self._cancel_handoff(entry.id)
            self.candle_store.clear(entry.symbol)
            await self._after_removal()

    async def _log_trade(self, data: dict):
        try:
            await self.trade_log.record(data)
        except PersistenceError as e:
            logger.error("Trade log write failed for %s: %s", data.get("symbol"), e)

    # ---------------- handoff / bookkeeping -----------------
    def _schedule_handoff(self, entry: MonitorEntry, generation: int):
        if self.handoff_delay is None:
            return
        self._cancel_handoff(entry.id)
        loop = asyncio.get_running_loop()
        self._handoffs[entry.id] = loop.create_task(self._handoff(entry.id, generation))

    async def _handoff(self, entry_id: str, generation: int):
        await self._sleep(self.handoff_delay)
        self._handoffs.pop(entry_id, None)
        if not self._current(generation):
            return
        entry = self.registry.get(entry_id)
        if entry is None or entry.trigger_status != TriggerStatus.ENTERED:
            return
        self.registry.remove(entry_id)
        self.candle_store.clear(entry.symbol)
        logger.info("Handed off %s to position tracking, removed from monitoring", entry.symbol)
        await self._after_removal()

    def _cancel_handoff(self, entry_id: str):
        task = self._handoffs.pop(entry_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _after_removal(self):
        if not len(self.registry) and self._running:
            self._running = False
            logger.info("No symbols left, stopping monitoring")
            await self.persist()
            await self.scheduler.stop()
            return
        await self.persist()

    async def persist(self):
        await self.persistence.save(self.registry.entries(), monitoring_active=self._running)
