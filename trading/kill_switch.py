"""Emergency stop: disable entries, then force-liquidate every open position."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

from utils.errors import ControlError

logger = logging.getLogger(__name__)


class KillSwitch:
    """Concurrent activations share one liquidation run.

    Failed emergency exits are retried by each halted book's tick; activating
    again after a run finished re-liquidates whatever is still open.
    """

    def __init__(
        self,
        *,
        entries: Any,
        books: Iterable[Any],
        alerts: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.entries = entries
        self.books = list(books)
        self.alerts = alerts
        self._clock = clock
        self._task: asyncio.Task | None = None
        self.reason = ""
        self.actor = ""
        self.activated_at: float | None = None

    @property
    def active(self) -> bool:
        return self.activated_at is not None

    async def activate(self, reason: str, *, actor: str = "system") -> dict[str, Any]:
        if self._task is None:
            self.reason = str(reason)
            self.actor = str(actor)
            self.activated_at = self._clock()
            # Entries close before the first await so no tick can admit in between.
            self.entries.disable_entries(f"kill switch: {reason}")
            for book in self.books:
                book.halt()
            logger.critical("KILL_SWITCH reason=%s actor=%s books=%s", reason, actor, len(self.books))
            self._task = asyncio.create_task(self._liquidate(), name="kill-switch")
        elif self._task.done() and self.open_position_count() > 0:
            logger.critical(
                "KILL_SWITCH_RELIQUIDATE reason=%s actor=%s open=%s", reason, actor, self.open_position_count()
            )
            for book in self.books:
                book.halt()
            self._task = asyncio.create_task(self._liquidate(), name="kill-switch")
        else:
            logger.warning("KILL_SWITCH_ALREADY_ACTIVE reason=%s actor=%s", reason, actor)
        return await asyncio.shield(self._task)

    def open_position_count(self) -> int:
        return sum(book.open_count() for book in self.books)

    async def _liquidate(self) -> dict[str, Any]:
        results = await asyncio.gather(
            *(book.liquidate_all(reason="kill_switch") for book in self.books),
            return_exceptions=True,
        )
        summary: dict[str, Any] = {"reason": self.reason, "actor": self.actor, "books": {}}
        failed = 0
        for book, res in zip(self.books, results):
            if isinstance(res, Exception):
                logger.error("KILL_SWITCH_BOOK_ERROR book=%s err=%s", book.label, res)
                summary["books"][book.label] = {"error": str(res)}
                continue
            ok = sum(1 for r in res if r is not None and r.success)
            bad = sum(1 for r in res if r is not None and not r.success)
            failed += bad
            summary["books"][book.label] = {"submitted": len(res), "filled": ok, "failed": bad}
        summary["failed"] = failed
        logger.critical("KILL_SWITCH_DONE summary=%s", summary)
        if self.alerts is not None:
            tail = f"{failed} exit(s) still open" if failed else "all positions liquidated"
            await self.alerts.send("CRITICAL", "kill_switch", f"Kill switch activated ({self.reason}); {tail}", actor=self.actor)
        return summary

    def reset(self, *, actor: str = "operator") -> None:
        """Re-arm after an operator review. Entries and books stay paused until resumed."""
        if self._task is not None and not self._task.done():
            raise ControlError("kill switch liquidation still running", code="KILL_SWITCH_BUSY")
        logger.warning("KILL_SWITCH_RESET actor=%s previous_reason=%s", actor, self.reason)
        self._task = None
        self.reason = ""
        self.actor = ""
        self.activated_at = None

    def status(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "reason": self.reason,
            "actor": self.actor,
            "activated_at": self.activated_at,
            "running": self._task is not None and not self._task.done(),
            "open_positions": self.open_position_count(),
        }
