"""Hull moving average over closing prices.

HMA(n) = WMA(2 * WMA(close, n // 2) - WMA(close, n), floor(sqrt(n)))

Only fully determined indices are kept: an index whose WMA window is not
completely filled is dropped rather than zero-filled, so early points never
leak into the final value.
"""
import logging
import math
from typing import List, Optional, Sequence

from src.engine.errors import InsufficientDataError
from src.models.candle_models import Candle, HMASeries
from src.utils.time_utils import now_ist

logger = logging.getLogger("hma")

DEFAULT_PERIOD = 55

# (period, smoothing used) pairs already reported
_reported_caps = set()


def wma(values: Sequence[float], period: int) -> List[Optional[float]]:
    """Weighted moving average aligned with `values`.

    Weights run 1..period with the heaviest weight on the most recent point.
    Indices with fewer than `period` points available are None.
    """
    if period <= 0:
        raise ValueError("WMA period must be positive")
    out: List[Optional[float]] = [None] * len(values)
    if len(values) < period:
        return out
    denominator = period * (period + 1) / 2.0
    for i in range(period - 1, len(values)):
        window = values[i - period + 1:i + 1]
        total = 0.0
        for weight, price in enumerate(window, start=1):
            total += price * weight
        out[i] = total / denominator
    return out


def hull_periods(period: int):
    return max(1, period // 2), period, max(1, int(math.isqrt(period)))


def compute_hma(candles: Sequence[Candle], period: int = DEFAULT_PERIOD) -> HMASeries:
    """Compute the HMA series for an ordered (old -> new) candle window.

    Raises InsufficientDataError when fewer than `period` candles are supplied.
    When the window holds fewer than period + sqrt(period) - 1 candles the final
    smoothing stage runs over the difference points that exist.
    """
    if len(candles) < period:
        raise InsufficientDataError(
            f"Insufficient data. Need at least {period} candles for HMA-{period}, got {len(candles)}",
            available=len(candles),
            required=period,
        )
    closes = [float(c.close) for c in candles]
    half, full, smooth = hull_periods(period)
    wma_half = wma(closes, half)
    wma_full = wma(closes, full)

    # wma_full is the later of the two to become defined
    start = full - 1
    diff = [2.0 * wma_half[i] - wma_full[i] for i in range(start, len(closes))]
    if len(diff) < smooth:
        if (period, len(diff)) not in _reported_caps:
            _reported_caps.add((period, len(diff)))
            logger.info("HMA(%d) final stage capped at WMA(%d) instead of WMA(%d): %d candles, %d needed for the full stage",
                        period, len(diff), smooth, len(candles), full + smooth - 1)
        smooth = len(diff)
    hull = wma(diff, smooth)

    points = tuple(
        (candles[start + i].timestamp, value)
        for i, value in enumerate(hull)
        if value is not None
    )
    series = HMASeries(period=period, points=points, computed_at=now_ist())
    logger.debug("HMA(%d) over %d candles -> %d points, current=%.2f", period, len(candles), len(points), series.current)
    return series

