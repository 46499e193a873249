"""Exit monitoring for open positions."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config.settings import ExitConfig, TradingConfig, get_app_config
from ..core.types import PoolKeys
from ..execution.base import AmmPricing, NotificationSink
from ..monitoring.event_bus import EVENT_BUS, EventSeverity, EventType
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

Sleep = Callable[[float], Awaitable[None]]


class ExitOutcome(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"
    DISABLED = "disabled"


@dataclass(slots=True)
class ExitDecision:
    """Result of one exit evaluation."""

    outcome: ExitOutcome
    last_amount_out: Optional[float] = None

    @property
    def should_sell(self) -> bool:
        return self.outcome is not ExitOutcome.ABORTED


class StopLossBook:
    """Stop-loss floors of open positions keyed by base mint.

    Every method is synchronous so a read and its dependent write can
    never interleave with another task on the event loop.
    """

    def __init__(self) -> None:
        self._floors: Dict[str, float] = {}

    def get(self, mint: str) -> Optional[float]:
        return self._floors.get(mint)

    def ensure(self, mint: str, initial_floor: float) -> float:
        return self._floors.setdefault(mint, initial_floor)

    def ratchet(self, mint: str, candidate: float) -> bool:
        """Raise the floor to ``candidate`` if it is higher. Never lowers it."""

        current = self._floors.get(mint)
        if current is not None and candidate <= current:
            return False
        self._floors[mint] = candidate
        return True

    def clear(self, mint: str) -> None:
        self._floors.pop(mint, None)

    def __contains__(self, mint: object) -> bool:
        return mint in self._floors

    def __len__(self) -> int:
        return len(self._floors)


class ExitMonitor:
    """Polls the value of a held position until an exit condition fires."""

    def __init__(
        self,
        amm: AmmPricing,
        config: Optional[ExitConfig] = None,
        trading: Optional[TradingConfig] = None,
        *,
        book: Optional[StopLossBook] = None,
        notifier: Optional[NotificationSink] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._amm = amm
        self._config = config or get_app_config().exit
        self._trading = trading or get_app_config().trading
        self._book = book if book is not None else StopLossBook()
        self._notifier = notifier if notifier is not None else EVENT_BUS
        self._sleep = sleep
        self._logger = get_logger(__name__)

    @property
    def book(self) -> StopLossBook:
        return self._book

    async def evaluate(self, pool_keys: PoolKeys, amount_in_raw: int) -> ExitDecision:
        cfg = self._config
        if cfg.price_check_interval_seconds == 0 or cfg.price_check_duration_seconds == 0:
            return ExitDecision(ExitOutcome.DISABLED)

        mint = pool_keys.base_mint
        initial = self._trading.quote_amount
        take_profit = initial * (1 + cfg.take_profit_pct / 100)
        floor = self._book.ensure(mint, initial * (1 - cfg.stop_loss_pct / 100))
        abort_below: Optional[float] = None
        if cfg.skip_selling_if_lost_more_than_pct > 0:
            abort_below = initial * (1 - cfg.skip_selling_if_lost_more_than_pct / 100)

        max_ticks = max(1, math.ceil(cfg.price_check_duration_seconds / cfg.price_check_interval_seconds))
        current: Optional[float] = None
        for tick in range(max_ticks):
            try:
                pool_info = await self._amm.fetch_pool_info(pool_keys)
                quote = await self._amm.quote(
                    pool_keys,
                    pool_info,
                    amount_in_raw,
                    self._trading.quote_mint,
                    self._trading.sell_slippage_pct,
                )
                current = quote.amount_out

                if cfg.trailing_stop_loss:
                    candidate = current * (1 - cfg.stop_loss_pct / 100)
                    if self._book.ratchet(mint, candidate):
                        self._logger.debug("Trailing stop for %s raised from %s to %s", mint, floor, candidate)
                        floor = candidate
                        self._notify(EventType.TRAILING_STOP, {"mint": mint, "floor": floor, "current": current})

                if abort_below is not None and current < abort_below:
                    self._logger.info(
                        "Token dropped more than %s%%, sell stopped. Initial: %s | Current: %s",
                        cfg.skip_selling_if_lost_more_than_pct,
                        initial,
                        current,
                    )
                    self._book.clear(mint)
                    self._notify(
                        EventType.ABORT,
                        {
                            "mint": mint,
                            "threshold_pct": cfg.skip_selling_if_lost_more_than_pct,
                            "initial": initial,
                            "current": current,
                        },
                        severity=EventSeverity.WARNING,
                    )
                    return self._finish(ExitOutcome.ABORTED, current)

                self._logger.debug(
                    "%d/%d Take profit: %s | Stop loss: %s | Current: %s",
                    tick,
                    max_ticks,
                    take_profit,
                    floor,
                    current,
                )
                if current < floor:
                    self._book.clear(mint)
                    return self._finish(ExitOutcome.STOP_LOSS, current)
                if current > take_profit:
                    self._book.clear(mint)
                    return self._finish(ExitOutcome.TAKE_PROFIT, current)
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Failed to check price of %s: %s", mint, exc)
                METRICS.increment("exit_monitor.quote_errors")
            await self._sleep(cfg.price_check_interval_seconds)

        return self._finish(ExitOutcome.TIMED_OUT, current)

    def _finish(self, outcome: ExitOutcome, current: Optional[float]) -> ExitDecision:
        METRICS.increment(f"exit_monitor.{outcome.value}")
        return ExitDecision(outcome, current)

    def _notify(
        self,
        event_type: EventType,
        payload: Dict[str, Any],
        *,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        try:
            self._notifier.publish(event_type, payload, severity=severity, correlation_id=payload.get("mint"))
        except Exception:  # noqa: BLE001
            self._logger.exception("Failed to publish %s notification", event_type.value)


__all__ = ["ExitDecision", "ExitMonitor", "ExitOutcome", "StopLossBook"]
