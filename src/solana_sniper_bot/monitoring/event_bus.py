"""Trade notification bus.

Pipelines and the exit monitor publish buys, sells, P&L reports and
drawdown aborts here. Delivery (metrics, Telegram, webhooks, subscribers)
happens on a background thread so a slow endpoint never stalls a trade.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .alerts import AlertManager
from .metrics import MetricsRegistry


class EventType(str, Enum):
    """Notification categories emitted during a position's lifecycle."""

    BUY = "buy"
    SELL = "sell"
    PNL = "pnl"
    ABORT = "abort"
    TRAILING_STOP = "trailing_stop"
    EXIT = "exit"
    HEALTH = "health"


class EventSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(slots=True)
class Event:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


Subscriber = Callable[[Event], None]

_CLOSING_EXITS = frozenset({"take_profit", "stop_loss", "aborted"})


def _closes_position(event: Event) -> bool:
    if event.type in (EventType.SELL, EventType.ABORT):
        return True
    return event.type is EventType.EXIT and event.payload.get("outcome") in _CLOSING_EXITS


class EventBus:
    """Fan-out of trade events to metrics, the alert manager and subscribers."""

    def __init__(self, history_size: int = 500) -> None:
        self._queue: "queue.SimpleQueue[Event]" = queue.SimpleQueue()
        self._pending = 0
        self._idle = threading.Condition()
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.RLock()
        self._logger = logging.getLogger(__name__)
        self._metrics: Optional[MetricsRegistry] = None
        self._alerts: Optional[AlertManager] = None
        self._worker = threading.Thread(target=self._run, name="notification-dispatch", daemon=True)
        self._worker.start()

    def attach_metrics(self, registry: Optional[MetricsRegistry]) -> None:
        self._metrics = registry

    def attach_alert_manager(self, manager: Optional[AlertManager]) -> None:
        self._alerts = manager

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        """Call ``handler`` for every event of ``event_type``, or for all events when ``None``."""

        with self._lock:
            self._subscribers[event_type].append(handler)

    def publish(
        self,
        event_type: Union[EventType, str],
        payload: Optional[Dict[str, Any]] = None,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Queue an event for delivery and return immediately."""

        try:
            kind = EventType(event_type)
        except ValueError as exc:
            raise ValueError(f"Unsupported event type: {event_type}") from exc
        event = Event(
            type=kind,
            payload=dict(payload or {}),
            severity=severity,
            correlation_id=correlation_id,
            labels=dict(labels or {}),
        )
        with self._idle:
            self._pending += 1
        self._queue.put(event)

    def history(self, limit: int = 100) -> List[Event]:
        with self._lock:
            return list(self._history)[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait up to ``timeout`` seconds for queued events to be delivered."""

        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def reset(self) -> None:
        """Drop subscribers, history and attachments. Intended for tests."""

        self.flush()
        with self._lock:
            self._subscribers.clear()
            self._history.clear()
        self._metrics = None
        self._alerts = None

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                self._dispatch(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("Failed to dispatch %s event", event.type.value)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _dispatch(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            handlers = [*self._subscribers.get(event.type, ()), *self._subscribers.get(None, ())]
        self._update_metrics(event)
        if self._alerts is not None:
            self._alerts.handle_event(event)
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception(
                    "Subscriber %s failed for %s", getattr(handler, "__name__", handler), event.type.value
                )

    def _update_metrics(self, event: Event) -> None:
        if self._metrics is None:
            return
        self._metrics.increment(f"events.{event.type.value}")
        if event.type is EventType.PNL:
            try:
                pnl = float(event.payload.get("profit_or_loss", 0.0))
            except (TypeError, ValueError):
                return
            self._metrics.observe("position_pnl_quote", pnl)
            self._metrics.increment("positions.closed_in_profit" if pnl >= 0 else "positions.closed_at_loss")
        elif event.type is EventType.TRAILING_STOP and "floor" in event.payload:
            mint = event.payload.get("mint", "unknown")
            self._metrics.gauge(f"trailing_floor.{mint}", float(event.payload["floor"]))
        elif _closes_position(event):
            self._metrics.discard_gauge(f"trailing_floor.{event.payload.get('mint', 'unknown')}")


EVENT_BUS = EventBus()


__all__ = [
    "EVENT_BUS",
    "Event",
    "EventBus",
    "EventSeverity",
    "EventType",
]
