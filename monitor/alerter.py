"""Operator alert delivery (Telegram) with severity levels and per-kind dedupe."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from html import escape
from typing import Any

from telegram import Bot

from config import AlertSettings

logger = logging.getLogger(__name__)

LEVELS = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
_LEVEL_RANK = {name: rank for rank, name in enumerate(LEVELS)}
_LEVEL_ICON = {"CRITICAL": "\U0001F6A8", "HIGH": "\u26A0\uFE0F", "MEDIUM": "\U0001F514", "LOW": "\u2139\uFE0F"}


@dataclass
class Alert:
    level: str
    kind: str
    message: str
    fields: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    delivered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "kind": self.kind,
            "message": self.message,
            "fields": dict(self.fields),
            "created_at": self.created_at,
            "delivered": self.delivered,
        }


class AlertManager:
    def __init__(self, settings: AlertSettings, bot: Any | None = None) -> None:
        self.settings = settings
        self._bot = bot
        if self._bot is None and settings.telegram_bot_token and settings.telegram_chat_id:
            self._bot = Bot(token=settings.telegram_bot_token)
        self._history: deque[Alert] = deque(maxlen=max(10, int(settings.history_max)))
        self._last_sent: dict[str, float] = {}
        self._pending: set[asyncio.Task] = set()

    def _should_deliver(self, alert: Alert) -> bool:
        if _LEVEL_RANK.get(alert.level, len(LEVELS)) > _LEVEL_RANK.get(self.settings.min_level, 2):
            return False
        # CRITICAL always goes out; everything else is deduped per kind.
        if alert.level == "CRITICAL":
            return True
        last = self._last_sent.get(alert.kind, 0.0)
        return (alert.created_at - last) >= float(self.settings.dedupe_seconds)

    @staticmethod
    def _format(alert: Alert) -> str:
        lines = [f"{_LEVEL_ICON.get(alert.level, '')} <b>{escape(alert.level)}</b> {escape(alert.kind)}", escape(alert.message)]
        for key, value in alert.fields.items():
            lines.append(f"{escape(str(key))}: <code>{escape(str(value))}</code>")
        return "\n".join(lines)

    async def send(self, level: str, kind: str, message: str, **fields: Any) -> Alert:
        alert = Alert(level=str(level).upper(), kind=str(kind), message=str(message), fields=fields)
        self._history.append(alert)
        log = logger.error if alert.level in ("CRITICAL", "HIGH") else logger.info
        log("ALERT level=%s kind=%s msg=%s", alert.level, alert.kind, alert.message)
        if self._bot is None or not self._should_deliver(alert):
            return alert
        try:
            await self._bot.send_message(
                chat_id=self.settings.telegram_chat_id,
                text=self._format(alert),
                parse_mode="HTML",
                disable_web_page_preview=True,
            )
            alert.delivered = True
            self._last_sent[alert.kind] = alert.created_at
        except Exception as exc:
            logger.warning("ALERT_DELIVERY_FAILED kind=%s err=%s", alert.kind, exc)
        return alert

    def notify(self, level: str, kind: str, message: str, **fields: Any) -> None:
        """Fire-and-forget variant for synchronous call sites."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._history.append(Alert(level=str(level).upper(), kind=str(kind), message=str(message), fields=fields))
            logger.warning("ALERT level=%s kind=%s msg=%s (no loop)", level, kind, message)
            return
        task = loop.create_task(self.send(level, kind, message, **fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = list(self._history)[-max(1, int(limit)):]
        return [a.to_dict() for a in rows]
