"""Per-instrument crossover and exit rules.

WAITING entries look for price crossing above the HMA and confirm the cross
once a new wall-clock minute has started with price still above. ENTERED
entries are checked against target, stop-loss, trailing stop and time rules
in that order; the first rule that fires wins.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from src.models.monitor_models import MonitorEntry, ThresholdType, TriggerStatus
from src.utils.time_utils import minute_floor, minute_of_day

logger = logging.getLogger("crossover")


class CrossoverAction(str, Enum):
    NONE = "NONE"
    INITIALIZED = "INITIALIZED"  # first observation, state recorded only
    SIGNAL = "SIGNAL"  # price newly above HMA, waiting for a new minute
    PENDING = "PENDING"  # signal still inside its minute
    CONFIRMED = "CONFIRMED"  # held above into a new minute -> enter
    CANCELLED = "CANCELLED"  # fell back below before confirmation


class ExitRule(str, Enum):
    TARGET = "TARGET"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TIME_LIMIT = "TIME_LIMIT"
    MARKET_CLOSE = "MARKET_CLOSE"


@dataclass(frozen=True)
class CrossoverDecision:
    action: CrossoverAction
    above: Optional[bool] = None
    signal_time: Optional[datetime] = None  # set on CONFIRMED so a failed entry can re-arm


@dataclass(frozen=True)
class ExitDecision:
    rule: ExitRule
    reason: str
    price: float


def minute_boundary_elapsed(signal_time: datetime, now: datetime) -> bool:
    """At least one wall-clock minute boundary lies between signal and now.

    Compares whole minutes rather than the minute field, so 10:59 -> 11:59
    and hour wrap-arounds still count.
    """
    return minute_floor(now) > minute_floor(signal_time)


def evaluate_crossover(entry: MonitorEntry, ltp: float, now: datetime) -> CrossoverDecision:
    """Advance the WAITING state of `entry` for one fresh price.

    Mutates `previous_price_above_hma` and `crossover_signal_time`. A CONFIRMED
    decision has already cleared the pending signal.
    """
    if entry.trigger_status != TriggerStatus.WAITING or entry.hma_value is None:
        return CrossoverDecision(CrossoverAction.NONE)

    above = ltp > entry.hma_value
    previous = entry.previous_price_above_hma

    if previous is None:
        # a signal needs an observed below -> above move; drop any carried over
        entry.previous_price_above_hma = above
        entry.crossover_signal_time = None
        logger.info("%s (%s) initial state: price %.2f %s HMA %.2f", entry.symbol, entry.option_type.value,
                    ltp, "above" if above else "below", entry.hma_value)
        return CrossoverDecision(CrossoverAction.INITIALIZED, above)

    action = CrossoverAction.NONE
    signal_time = None
    if not above:
        if entry.crossover_signal_time is not None:
            entry.crossover_signal_time = None
            action = CrossoverAction.CANCELLED
            logger.info("%s (%s) price fell below HMA, cancelling crossover signal", entry.symbol, entry.option_type.value)
    elif entry.crossover_signal_time is None:
        if previous is False:
            entry.crossover_signal_time = now
            action = CrossoverAction.SIGNAL
            logger.info("%s (%s) CROSSOVER DETECTED: price %.2f crossed above HMA %.2f, waiting for 1-min candle close",
                        entry.symbol, entry.option_type.value, ltp, entry.hma_value)
    elif minute_boundary_elapsed(entry.crossover_signal_time, now):
        signal_time, entry.crossover_signal_time = entry.crossover_signal_time, None
        action = CrossoverAction.CONFIRMED
        logger.info("%s (%s) entry confirmed: price still above HMA at new candle", entry.symbol, entry.option_type.value)
    else:
        action = CrossoverAction.PENDING

    entry.previous_price_above_hma = above
    logger.debug("%s state: price %.2f %s HMA %.2f | previous: %s | action: %s", entry.symbol, ltp,
                 "above" if above else "below", entry.hma_value, "above" if previous else "below", action.value)
    return CrossoverDecision(action, above, signal_time)


def threshold_points(entry_price: float, value: float, kind: ThresholdType) -> float:
    if kind == ThresholdType.PERCENT:
        return entry_price * (value / 100.0)
    return value


def _describe(value: float, points: float, kind: ThresholdType) -> str:
    if kind == ThresholdType.PERCENT:
        return f"{value:g}% ({points:.2f} points)"
    return f"{points:g} points"


def evaluate_exit(entry: MonitorEntry, ltp: float, now: datetime, session_close_minute: int) -> Optional[ExitDecision]:
    if entry.trigger_status != TriggerStatus.ENTERED or entry.entry_price is None:
        return None

    entry_price = entry.entry_price
    target = threshold_points(entry_price, entry.target_points, entry.target_type)
    stop = threshold_points(entry_price, entry.stop_loss_points, entry.stop_loss_type)
    move = ltp - entry_price

    if entry.auto_exit_on_target and move >= target:
        return ExitDecision(ExitRule.TARGET, f"Target of {_describe(entry.target_points, target, entry.target_type)} reached", ltp)

    if entry.auto_exit_on_stop_loss and move <= -stop:
        return ExitDecision(ExitRule.STOP_LOSS, f"Stop loss of {_describe(entry.stop_loss_points, stop, entry.stop_loss_type)} triggered", ltp)

    if entry.trailing_stop_loss and move > 0:
        trailing_level = ltp - entry.trailing_stop_loss_offset
        initial_stop = entry_price - stop
        if trailing_level > initial_stop and ltp <= trailing_level:
            return ExitDecision(ExitRule.TRAILING_STOP,
                                f"Trailing stop loss triggered at {entry.trailing_stop_loss_offset:g} points below peak", ltp)

    if entry.time_based_exit:
        started = entry.entered_at or entry.last_update
        if started is not None:
            minutes_held = (now - started).total_seconds() / 60.0
            if minutes_held >= entry.exit_after_minutes:
                return ExitDecision(ExitRule.TIME_LIMIT, f"Time-based exit after {entry.exit_after_minutes} minutes", ltp)

    if entry.exit_at_market_close and minute_of_day(now) >= session_close_minute:
        return ExitDecision(ExitRule.MARKET_CLOSE, "Market close exit", ltp)

    return None
