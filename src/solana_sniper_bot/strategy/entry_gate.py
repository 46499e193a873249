"""Momentum-gated entry decision for a freshly discovered pool."""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, Optional, Sequence

from ..config.settings import EntrySignalConfig, get_app_config
from ..core.types import PoolKeys
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .indicators import MacdResult, is_entry_signal, macd, rsi
from .price_sampler import PriceSampler, PriceSeries

Sleep = Callable[[float], Awaitable[None]]


class EntryGate:
    """Polls a pool's price until RSI and MACD agree on an entry.

    The gate gives up early when ``no_signal_max_checks`` ticks went by
    without enough distinct prices to compute either indicator, which
    usually means the pool has no trading activity yet.
    """

    def __init__(
        self,
        sampler: PriceSampler,
        config: Optional[EntrySignalConfig] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rsi_fn: Callable[[Sequence[float]], float] = rsi,
        macd_fn: Callable[[Sequence[float]], MacdResult] = macd,
    ) -> None:
        self._sampler = sampler
        self._config = config or get_app_config().entry
        self._sleep = sleep
        self._rsi = rsi_fn
        self._macd = macd_fn
        self._logger = get_logger(__name__)

    @property
    def max_ticks(self) -> int:
        return max(1, math.ceil(self._config.check_duration_seconds / self._config.check_interval_seconds))

    async def evaluate(self, pool_keys: PoolKeys) -> bool:
        series = PriceSeries()
        max_ticks = self.max_ticks
        for tick in range(max_ticks):
            try:
                price = await self._sampler.sample(pool_keys)
                series.append(price)
                current_rsi = self._rsi(series.values)
                current_macd = self._macd(series.values)
                self._logger.debug(
                    "RSI %s, MACD %s, signal %s (%d/%d)",
                    current_rsi,
                    current_macd.macd,
                    current_macd.signal,
                    tick + 1,
                    max_ticks,
                )
                if (
                    tick >= self._config.no_signal_max_checks
                    and current_rsi == 0
                    and current_macd.macd is None
                ):
                    self._logger.info(
                        "No momentum data after %d checks, skipping %s",
                        self._config.no_signal_max_checks,
                        pool_keys.base_mint,
                    )
                    METRICS.increment("entry_gate.no_data")
                    return False
                if is_entry_signal(current_rsi, current_macd):
                    self._logger.info("Entry signal for %s at RSI %.2f", pool_keys.base_mint, current_rsi)
                    METRICS.increment("entry_gate.signal")
                    return True
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Failed to sample price for %s: %s", pool_keys.base_mint, exc)
                METRICS.increment("entry_gate.sample_errors")
            await self._sleep(self._config.check_interval_seconds)
        METRICS.increment("entry_gate.expired")
        return False


__all__ = ["EntryGate"]
