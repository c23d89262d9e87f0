"""Portfolio-level guard rails: daily loss/profit pauses, streak cooldowns, weekly breaker."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from config import RiskSettings
from utils.errors import ControlError
from utils.state_file import JsonStateFile

logger = logging.getLogger(__name__)

REASON_DAILY_LOSS = "daily loss limit"
REASON_DAILY_PROFIT = "daily profit target"
REASON_STREAK = "loss streak cooldown"
REASON_WEEKLY = "weekly circuit breaker"


def utc_day_start(ts: float) -> float:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def utc_week_start(ts: float) -> float:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return (dt - timedelta(days=dt.weekday())).timestamp()


@dataclass(frozen=True)
class RiskSnapshot:
    evaluated_at: float = 0.0
    daily_pnl_usd: float = 0.0
    daily_pnl_percent: float = 0.0
    weekly_pnl_usd: float = 0.0
    weekly_pnl_percent: float = 0.0
    loss_streak: int = 0
    paused: bool = False
    pause_reason: str = ""
    paused_until: float = 0.0
    hard_stop: bool = False
    hard_stop_reason: str = ""
    size_multiplier: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluated_at": self.evaluated_at,
            "daily_pnl_usd": round(self.daily_pnl_usd, 6),
            "daily_pnl_percent": round(self.daily_pnl_percent, 4),
            "weekly_pnl_usd": round(self.weekly_pnl_usd, 6),
            "weekly_pnl_percent": round(self.weekly_pnl_percent, 4),
            "loss_streak": self.loss_streak,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "paused_until": self.paused_until,
            "hard_stop": self.hard_stop,
            "hard_stop_reason": self.hard_stop_reason,
            "size_multiplier": self.size_multiplier,
        }


class RiskGovernor:
    def __init__(
        self,
        settings: RiskSettings,
        *,
        books: Iterable[Any] = (),
        alerts: Any | None = None,
        kill_switch: Any | None = None,
        state_file: JsonStateFile | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.books = list(books)
        self.alerts = alerts
        self.kill_switch = kill_switch
        self._state = state_file if state_file is not None else JsonStateFile(settings.state_file)
        self._clock = clock
        self._loss_streak = 0
        self._pause_reason = ""
        self._paused_until = 0.0
        self._hard_stop = False
        self._hard_stop_reason = ""
        self.snapshot = RiskSnapshot()
        self._task: asyncio.Task | None = None
        self.last_tick_at: float = 0.0
        self._restore()

    def _restore(self) -> None:
        data = self._state.load({})
        self._hard_stop = bool(data.get("hard_stop", False))
        self._hard_stop_reason = str(data.get("hard_stop_reason", "") or "")
        self._loss_streak = int(data.get("loss_streak", 0) or 0)
        self._pause_reason = str(data.get("pause_reason", "") or "")
        self._paused_until = float(data.get("paused_until", 0.0) or 0.0)
        if self._hard_stop:
            logger.warning("RISK_HARD_STOP_RESTORED reason=%s", self._hard_stop_reason)
        self._publish()

    def _save(self) -> None:
        try:
            self._state.save(
                {
                    "hard_stop": self._hard_stop,
                    "hard_stop_reason": self._hard_stop_reason,
                    "loss_streak": self._loss_streak,
                    "pause_reason": self._pause_reason,
                    "paused_until": self._paused_until,
                    "updated_at": self._clock(),
                }
            )
        except Exception:
            logger.exception("RISK_STATE_SAVE_FAILED path=%s", self.settings.state_file)

    def _publish(self, **fields: Any) -> None:
        now = self._clock()
        paused = self._paused_until > now
        self.snapshot = replace(
            self.snapshot,
            loss_streak=self._loss_streak,
            paused=paused,
            pause_reason=self._pause_reason if paused else "",
            paused_until=self._paused_until if paused else 0.0,
            hard_stop=self._hard_stop,
            hard_stop_reason=self._hard_stop_reason,
            size_multiplier=self.size_multiplier(),
            **fields,
        )

    def size_multiplier(self) -> float:
        s = self.settings
        if self._loss_streak >= s.streak_halve_at:
            return s.streak_halve_mult
        if self._loss_streak >= s.streak_reduce_at:
            return s.streak_reduce_mult
        return 1.0

    def check_entry_allowed(self) -> tuple[bool, str]:
        if self._hard_stop:
            return False, REASON_WEEKLY
        if self._paused_until > self._clock():
            return False, self._pause_reason or REASON_DAILY_LOSS
        return True, ""

    def _pause(self, reason: str, until: float) -> None:
        if until <= self._paused_until:
            return
        self._pause_reason = reason
        self._paused_until = until
        logger.warning(
            "RISK_PAUSE reason=%s until=%s",
            reason,
            datetime.fromtimestamp(until, tz=timezone.utc).isoformat(),
        )
        if self.alerts is not None:
            self.alerts.notify("HIGH", "risk_pause", f"New entries paused: {reason}")
        self._save()

    def record_trade(self, trade: Any) -> None:
        outcome = str(getattr(getattr(trade, "outcome", ""), "value", getattr(trade, "outcome", "")))
        if outcome == "LOSS":
            self._loss_streak += 1
        elif outcome == "WIN":
            self._loss_streak = 0
        else:
            return
        s = self.settings
        now = self._clock()
        if self._loss_streak >= s.streak_long_losses and self._loss_streak % s.streak_long_losses == 0:
            self._pause(REASON_STREAK, now + s.streak_long_cooldown_hours * 3600.0)
        elif self._loss_streak == s.streak_short_losses:
            self._pause(REASON_STREAK, now + s.streak_short_cooldown_hours * 3600.0)
        logger.info("RISK_STREAK outcome=%s streak=%s size_mult=%.2f", outcome, self._loss_streak, self.size_multiplier())
        self._save()
        self._publish()

    def _pnl_since(self, since_ts: float) -> float:
        total = 0.0
        for book in self.books:
            total += float(book.realized_pnl_since(since_ts))
            total += float(book.unrealized_pnl_usd())
        return total

    async def evaluate(self) -> RiskSnapshot:
        now = self._clock()
        self.last_tick_at = now
        s = self.settings
        base = s.portfolio_base_usd
        daily = self._pnl_since(utc_day_start(now))
        weekly = self._pnl_since(utc_week_start(now))
        daily_pct = daily / base * 100.0
        weekly_pct = weekly / base * 100.0

        trip_breaker = weekly_pct <= -s.weekly_circuit_breaker_percent and not self._hard_stop
        if trip_breaker:
            self._hard_stop = True
            self._hard_stop_reason = f"{REASON_WEEKLY}: weekly pnl {weekly_pct:.2f}%"
            self._save()
            logger.critical("RISK_WEEKLY_BREAKER weekly_pct=%.2f threshold=%.2f", weekly_pct, s.weekly_circuit_breaker_percent)
        elif daily_pct <= -s.max_daily_loss_percent:
            self._pause(REASON_DAILY_LOSS, now + s.daily_loss_cooldown_hours * 3600.0)
        elif daily_pct >= s.max_daily_profit_percent:
            self._pause(REASON_DAILY_PROFIT, utc_day_start(now) + 86400.0)

        self._publish(
            evaluated_at=now,
            daily_pnl_usd=daily,
            daily_pnl_percent=daily_pct,
            weekly_pnl_usd=weekly,
            weekly_pnl_percent=weekly_pct,
        )
        if trip_breaker:
            if self.alerts is not None:
                await self.alerts.send(
                    "CRITICAL",
                    "weekly_circuit_breaker",
                    f"Weekly drawdown {weekly_pct:.2f}% crossed -{s.weekly_circuit_breaker_percent:.1f}%. Manual resume required.",
                )
            if self.kill_switch is not None:
                await self.kill_switch.activate(REASON_WEEKLY, actor="risk_governor")
        return self.snapshot

    def resume(self, *, actor: str = "operator") -> RiskSnapshot:
        """Clear the hard stop and any pause. Kill switch state is reset separately."""
        if not self._hard_stop and self._paused_until <= self._clock():
            raise ControlError("risk governor is not paused", code="RISK_NOT_PAUSED")
        logger.warning(
            "RISK_RESUME actor=%s hard_stop=%s pause_reason=%s",
            actor,
            self._hard_stop,
            self._pause_reason,
        )
        self._hard_stop = False
        self._hard_stop_reason = ""
        self._pause_reason = ""
        self._paused_until = 0.0
        self._save()
        self._publish()
        return self.snapshot

    async def _run(self) -> None:
        while True:
            try:
                await self.evaluate()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Risk loop error")
            await asyncio.sleep(self.settings.eval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="risk-governor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
