from __future__ import annotations

import io
import json
import logging
from typing import Any, Dict, List

from solana_sniper_bot.config.settings import MonitoringConfig
from solana_sniper_bot.monitoring.alerts import AlertManager, format_event_message
from solana_sniper_bot.monitoring.event_bus import EVENT_BUS, Event, EventSeverity, EventType
from solana_sniper_bot.monitoring.logger import configure_logging, correlation_scope, get_logger
from solana_sniper_bot.monitoring.metrics import METRICS


class FakeResponse:
    def raise_for_status(self) -> None:
        return None


class FakeSession:
    def __init__(self) -> None:
        self.posts: List[Dict[str, Any]] = []

    def post(self, url: str, json: Dict[str, Any], timeout: float) -> FakeResponse:
        self.posts.append({"url": url, "json": json})
        return FakeResponse()


def test_event_bus_updates_metrics() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    EVENT_BUS.attach_metrics(METRICS)
    EVENT_BUS.publish(EventType.PNL, {"mint": "Mint", "profit_or_loss": -0.002}, correlation_id="Mint")
    EVENT_BUS.publish(EventType.TRAILING_STOP, {"mint": "Mint", "floor": 0.0125})
    EVENT_BUS.publish("health", {"message": "heartbeat"})
    assert EVENT_BUS.flush()

    assert METRICS.get("events.pnl") == 1
    assert METRICS.get("events.health") == 1
    assert METRICS.get("positions.closed_at_loss") == 1
    assert METRICS.get_gauge("trailing_floor.Mint") == 0.0125
    assert [event.type for event in EVENT_BUS.history()] == [
        EventType.PNL,
        EventType.TRAILING_STOP,
        EventType.HEALTH,
    ]
    EVENT_BUS.reset()
    METRICS.reset()


def test_trailing_floor_gauge_dropped_when_position_closes() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    EVENT_BUS.attach_metrics(METRICS)
    EVENT_BUS.publish(EventType.TRAILING_STOP, {"mint": "Kept", "floor": 0.02})
    EVENT_BUS.publish(EventType.TRAILING_STOP, {"mint": "Stopped", "floor": 0.01})
    EVENT_BUS.publish(EventType.TRAILING_STOP, {"mint": "Sold", "floor": 0.03})
    EVENT_BUS.publish(EventType.EXIT, {"mint": "Kept", "outcome": "timed_out"})
    EVENT_BUS.publish(EventType.EXIT, {"mint": "Stopped", "outcome": "stop_loss"})
    EVENT_BUS.publish(EventType.SELL, {"mint": "Sold", "signature": "sig"})
    assert EVENT_BUS.flush()

    assert set(METRICS.snapshot()["gauges"]) == {"trailing_floor.Kept"}
    EVENT_BUS.reset()
    METRICS.reset()


def test_event_bus_fans_out_to_subscribers() -> None:
    EVENT_BUS.reset()
    received: List[Event] = []
    EVENT_BUS.subscribe(EventType.SELL, received.append)
    EVENT_BUS.publish(EventType.BUY, {"mint": "A"})
    EVENT_BUS.publish(EventType.SELL, {"mint": "B"})
    EVENT_BUS.flush()

    assert [event.payload["mint"] for event in received] == ["B"]
    EVENT_BUS.reset()


def test_alert_manager_sends_telegram_with_links() -> None:
    session = FakeSession()
    manager = AlertManager(
        MonitoringConfig(
            telegram_bot_token="123:abc",
            telegram_chat_id="42",
            webhook_urls=["https://hooks.example.com/bot"],
        ),
        owner="Owner111",
        session=session,
    )
    EVENT_BUS.reset()
    EVENT_BUS.attach_alert_manager(manager)
    EVENT_BUS.publish(EventType.BUY, {"mint": "MintAbc", "signature": "sig"})
    EVENT_BUS.publish(EventType.SELL, {"mint": "MintAbc", "signature": "sig"})
    EVENT_BUS.flush()
    EVENT_BUS.reset()

    assert [post["url"] for post in session.posts] == [
        "https://api.telegram.org/bot123:abc/sendMessage",
        "https://hooks.example.com/bot",
    ]
    telegram = session.posts[0]["json"]
    assert telegram["chat_id"] == "42"
    assert telegram["parse_mode"] == "HTML"
    buttons = telegram["reply_markup"]["inline_keyboard"][0]
    assert buttons[0]["url"] == "https://dexscreener.com/solana/MintAbc?maker=Owner111"
    assert buttons[1]["url"] == "https://rugcheck.xyz/tokens/MintAbc"
    assert session.posts[1]["json"]["mint"] == "MintAbc"


def test_alert_manager_throttles_repeated_messages() -> None:
    session = FakeSession()
    manager = AlertManager(
        MonitoringConfig(webhook_urls=["https://hooks.example.com/bot"], alert_throttle_seconds=60),
        session=session,
    )
    manager.send("hello", key="same")
    manager.send("hello again", key="same")
    manager.send("other", key="different")

    assert [post["json"]["message"] for post in session.posts] == ["hello", "other"]


def test_format_event_messages() -> None:
    pnl = format_event_message(
        Event(EventType.PNL, {"received": 0.008, "profit_or_loss": -0.002, "attempt": 1, "max_attempts": 10})
    )
    assert "<b>0.00800</b>" in pnl
    assert "Loss <code>-0.00200</code>" in pnl
    assert "<code>1/10</code>" in pnl

    abort = format_event_message(
        Event(
            EventType.ABORT,
            {"mint": "Mint<1>", "threshold_pct": 90, "initial": 0.01, "current": 0.0005},
            severity=EventSeverity.WARNING,
        )
    )
    assert "Mint&lt;1&gt;" in abort
    assert "more than 90%" in abort

    assert format_event_message(Event(EventType.HEALTH, {})) is None
    assert format_event_message(Event(EventType.HEALTH, {"message": "ok"})) == "ok"


def test_prometheus_export_sanitizes_metric_names() -> None:
    METRICS.reset()
    METRICS.increment("pipeline.buy.confirmed")
    METRICS.gauge("admission.in_flight", 1)
    with METRICS.timer("pipeline.buy.submit_seconds"):
        pass
    output = METRICS.export_prometheus()
    lines = [line for line in output.splitlines() if line]
    assert "# TYPE pipeline_buy_confirmed counter" in lines
    assert "pipeline.buy.confirmed" not in output
    assert any(line.startswith("admission_in_flight") for line in lines)
    assert "pipeline_buy_submit_seconds_count 1.0" in lines
    METRICS.reset()


def test_structured_logs_carry_the_mint() -> None:
    buffer = io.StringIO()
    configure_logging(MonitoringConfig(log_level="DEBUG"), stream=buffer, force=True)
    try:
        logger = get_logger("solana_sniper_bot.tests.logging")
        with correlation_scope("MintXyz"):
            logger.info("Confirmed buy tx", extra={"signature": "sig"})
        logger.info("outside")
    finally:
        configure_logging(MonitoringConfig(), force=True)
        logging.getLogger().setLevel(logging.INFO)

    first, second = [json.loads(line) for line in buffer.getvalue().splitlines()]
    assert first["mint"] == "MintXyz"
    assert first["message"] == "Confirmed buy tx"
    assert first["extra"] == {"signature": "sig"}
    assert second["mint"] == "-"
