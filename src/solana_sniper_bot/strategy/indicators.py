"""Momentum indicators evaluated over a pool's observed price samples."""

from __future__ import annotations

import math
from typing import NamedTuple, Optional, Sequence

RSI_PERIOD = 14
MACD_SHORT_PERIOD = 12
MACD_LONG_PERIOD = 26
MACD_SIGNAL_PERIOD = 9


class MacdResult(NamedTuple):
    macd: Optional[float]
    signal: Optional[float]


def _relative_strength(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # Flat series yield NaN, any gain with no loss saturates at 100.
        return math.inf if avg_gain > 0 else math.nan
    return avg_gain / avg_loss


def rsi(prices: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Return the latest Wilder-smoothed RSI of ``prices``.

    The first ``period`` deltas seed the average gain and loss, every later
    delta is folded in with Wilder smoothing. Fewer than ``period + 1``
    samples return ``0.0``, which callers treat as "not enough data".
    """

    if len(prices) <= period:
        return 0.0
    deltas = [current - previous for previous, current in zip(prices, prices[1:])]
    seed = deltas[:period]
    avg_gain = sum(delta for delta in seed if delta > 0) / period
    avg_loss = sum(-delta for delta in seed if delta < 0) / period
    for delta in deltas[period:]:
        gain = delta if delta > 0 else 0.0
        loss = -delta if delta < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
    strength = _relative_strength(avg_gain, avg_loss)
    return 100.0 - 100.0 / (1.0 + strength)


def _ema_step(value: float, previous: float, multiplier: float) -> float:
    return (value - previous) * multiplier + previous


def macd(prices: Sequence[float]) -> MacdResult:
    """Return the latest MACD line value and its signal line.

    Both EMAs are seeded with simple averages and advance from the
    26th sample on. The signal line needs nine MACD values, so a series
    of exactly 34 samples yields a MACD value without a signal.
    """

    if len(prices) < MACD_LONG_PERIOD + MACD_SIGNAL_PERIOD - 1:
        return MacdResult(None, None)
    short_multiplier = 2 / (MACD_SHORT_PERIOD + 1)
    long_multiplier = 2 / (MACD_LONG_PERIOD + 1)
    short_ema = sum(prices[:MACD_SHORT_PERIOD]) / MACD_SHORT_PERIOD
    long_ema = sum(prices[:MACD_LONG_PERIOD]) / MACD_LONG_PERIOD

    macd_line = []
    for price in prices[MACD_LONG_PERIOD:]:
        short_ema = _ema_step(price, short_ema, short_multiplier)
        long_ema = _ema_step(price, long_ema, long_multiplier)
        macd_line.append(short_ema - long_ema)

    if len(macd_line) < MACD_SIGNAL_PERIOD:
        return MacdResult(macd_line[-1], None)
    signal_multiplier = 2 / (MACD_SIGNAL_PERIOD + 1)
    signal = sum(macd_line[:MACD_SIGNAL_PERIOD]) / MACD_SIGNAL_PERIOD
    for value in macd_line[MACD_SIGNAL_PERIOD:]:
        signal = _ema_step(value, signal, signal_multiplier)
    return MacdResult(macd_line[-1], signal)


def is_entry_signal(rsi_value: float, macd_result: MacdResult) -> bool:
    """Oversold RSI confirmed by a bullish MACD crossover."""

    if not 0 < rsi_value < 30:
        return False
    if macd_result.macd is None or macd_result.signal is None:
        return False
    return macd_result.macd > macd_result.signal


__all__ = ["MacdResult", "is_entry_signal", "macd", "rsi"]
