"""Admission control over concurrently processed positions."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Deque, Iterator

from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS


class AdmissionController:
    """Counting permit pool shared by buys, with running sells charged against it.

    A buy is admitted only while ``in_flight + active_sells`` is below
    ``capacity``. Sells never wait for a permit, they only count toward the
    load so that a full book of open positions blocks new entries.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._available = capacity
        self._active_sells = 0
        self._waiters: Deque["asyncio.Future[None]"] = deque()
        self._logger = get_logger(__name__)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        return self._available

    @property
    def in_flight(self) -> int:
        return self._capacity - self._available

    @property
    def active_sells(self) -> int:
        return self._active_sells

    @property
    def locked(self) -> bool:
        return self._available == 0

    def load(self) -> int:
        return self.in_flight + self._active_sells

    def try_admit(self) -> bool:
        """Return whether a new buy may start right now."""

        if self.locked or self.load() >= self._capacity:
            self._logger.debug(
                "Admission denied: %d of %d slots busy (%d selling)",
                self.load(),
                self._capacity,
                self._active_sells,
            )
            METRICS.increment("admission.denied")
            return False
        return True

    async def acquire(self) -> None:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            self._publish_gauges()
            return
        waiter: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The permit was handed over just before the cancellation landed.
                self.release()
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
        self._publish_gauges()

    def release(self) -> None:
        if self._available >= self._capacity:
            raise RuntimeError("AdmissionController released more times than acquired")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._available += 1
        self._publish_gauges()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block."""

        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @contextmanager
    def track_sell(self) -> Iterator[None]:
        self._active_sells += 1
        self._publish_gauges()
        try:
            yield
        finally:
            self._active_sells -= 1
            self._publish_gauges()

    def _publish_gauges(self) -> None:
        METRICS.gauge("admission.in_flight", self.in_flight)
        METRICS.gauge("admission.active_sells", self._active_sells)


__all__ = ["AdmissionController"]
