"""Trade notifications delivered to Telegram and generic webhooks."""

from __future__ import annotations

import html
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

import requests

from ..config.settings import MonitoringConfig, get_app_config
from ..utils.constants import DEXSCREENER_URL, RUGCHECK_URL
from .logger import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .event_bus import Event

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class AlertSeverity(str, Enum):
    """Common severity levels recognised by the alert manager."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _code(value: Any) -> str:
    return f"<code>{html.escape(str(value))}</code>"


def format_event_message(event: "Event") -> Optional[str]:
    """Render a bus event as a Telegram HTML message, or ``None`` if it has no template."""

    payload = event.payload
    mint = payload.get("mint", "")
    kind = event.type.value
    if kind == "buy":
        return f"Confirmed buy\n\nMint {_code(mint)}\nSignature {_code(payload.get('signature', ''))}"
    if kind == "pnl":
        received = float(payload.get("received", 0.0))
        pnl = float(payload.get("profit_or_loss", 0.0))
        label = "Loss" if pnl < 0 else "Profit"
        retries = f"{payload.get('attempt', 0)}/{payload.get('max_attempts', 0)}"
        return (
            f"Confirmed sale at <b>{received:.5f}</b>\n\n{label} {_code(f'{pnl:.5f}')}\n\n"
            f"Retries {_code(retries)}"
        )
    if kind == "abort":
        return (
            f"RUG RUG RUG\n\nMint {_code(mint)}\n"
            f"Token dropped more than {payload.get('threshold_pct')}%, sell stopped\n"
            f"Initial: {_code(payload.get('initial'))}\nCurrent: {_code(payload.get('current'))}"
        )
    if kind == "trailing_stop":
        return f"Trailing stop raised\n\nMint {_code(mint)}\nFloor {_code(payload.get('floor'))}"
    if kind == "exit":
        return (
            f"Exit {html.escape(str(payload.get('outcome', '')))}\n\nMint {_code(mint)}\n"
            f"Current: {_code(payload.get('current'))}"
        )
    message = payload.get("message")
    return html.escape(str(message)) if message else None


class AlertManager:
    """Dispatch trade notifications to configured endpoints with throttling."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        owner: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._owner = owner or ""
        self._session = session or requests.Session()
        self._logger = get_logger(__name__)
        self._last_sent: Dict[str, float] = {}
        self._enabled_events = {name.lower() for name in self._config.notify_events}

    @property
    def telegram_enabled(self) -> bool:
        return bool(self._config.telegram_bot_token and self._config.telegram_chat_id)

    def handle_event(self, event: "Event") -> None:
        """Event bus subscriber: forward events selected by ``notify_events``."""

        if event.type.value not in self._enabled_events:
            return
        message = format_event_message(event)
        if message is None:
            return
        mint = str(event.payload.get("mint", ""))
        try:
            severity = AlertSeverity(event.severity.value)
        except ValueError:
            severity = AlertSeverity.INFO
        self.send(
            message,
            severity=severity,
            key=f"{event.type.value}:{mint}:{event.payload.get('signature', '')}",
            mint=mint or None,
            extra=event.payload,
        )

    def send(
        self,
        message: str,
        *,
        severity: AlertSeverity = AlertSeverity.INFO,
        key: Optional[str] = None,
        mint: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        key = key or message
        now = time.monotonic()
        throttle = max(self._config.alert_throttle_seconds, 0)
        last = self._last_sent.get(key)
        if last is not None and now - last < throttle:
            return
        self._last_sent[key] = now
        if self.telegram_enabled:
            self._post(
                TELEGRAM_API_URL.format(token=self._config.telegram_bot_token),
                self._telegram_payload(message, mint),
            )
        payload = {
            "message": message,
            "severity": severity.value,
            "mint": mint,
            "extra": extra or {},
        }
        for url in self._config.webhook_urls:
            self._post(str(url), payload)

    def _telegram_payload(self, message: str, mint: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "chat_id": self._config.telegram_chat_id,
            "text": message,
            "parse_mode": "HTML",
        }
        if mint:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [
                        {"text": "Dexscreener", "url": DEXSCREENER_URL.format(mint=mint, owner=self._owner)},
                        {"text": "Rugcheck", "url": RUGCHECK_URL.format(mint=mint)},
                    ]
                ]
            }
        return payload

    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(url, json=payload, timeout=5)
            response.raise_for_status()
        except requests.RequestException as exc:  # pragma: no cover - network failures
            # The bot token is part of the Telegram URL, keep it out of the log.
            target = "telegram" if "api.telegram.org" in url else url
            self._logger.warning("Failed to send alert to %s: %s", target, exc)


__all__ = ["AlertManager", "AlertSeverity", "TELEGRAM_API_URL", "format_event_message"]
