from __future__ import annotations

import asyncio
import dataclasses
import os
import tempfile
import unittest
from types import SimpleNamespace

from config import RiskSettings
from trading.risk_governor import RiskGovernor, utc_day_start
from utils.errors import ControlError
from utils.state_file import JsonStateFile
from tests.support import RecordingAlerts

NOW = 1_760_000_000.0  # a Thursday, 08:53 UTC


class StubBook:
    def __init__(self, realized: float = 0.0, unrealized: float = 0.0) -> None:
        self.realized = realized
        self.unrealized = unrealized

    def realized_pnl_since(self, since_ts: float) -> float:
        return self.realized

    def unrealized_pnl_usd(self) -> float:
        return self.unrealized


class StubKillSwitch:
    def __init__(self) -> None:
        self.activations: list[tuple[str, str]] = []

    async def activate(self, reason: str, *, actor: str = "system") -> dict:
        self.activations.append((reason, actor))
        return {}


def _loss() -> SimpleNamespace:
    return SimpleNamespace(outcome="LOSS")


def _win() -> SimpleNamespace:
    return SimpleNamespace(outcome="WIN")


class RiskGovernorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = NOW
        self.alerts = RecordingAlerts()

    def _governor(self, book: StubBook | None = None, *, state_file: JsonStateFile | None = None, kill_switch=None) -> RiskGovernor:
        return RiskGovernor(
            RiskSettings(),
            books=[book or StubBook()],
            alerts=self.alerts,
            kill_switch=kill_switch,
            state_file=state_file or JsonStateFile(""),
            clock=lambda: self.now,
        )

    def test_loss_streak_reduces_size_then_pauses(self) -> None:
        governor = self._governor()
        governor.record_trade(_loss())
        self.assertEqual(governor.size_multiplier(), 1.0)
        governor.record_trade(_loss())
        self.assertEqual(governor.size_multiplier(), 0.75)
        self.assertEqual(governor.check_entry_allowed(), (True, ""))

        governor.record_trade(_loss())
        self.assertEqual(governor.size_multiplier(), 0.5)
        self.assertEqual(governor.check_entry_allowed(), (False, "loss streak cooldown"))
        self.assertAlmostEqual(governor.snapshot.paused_until, NOW + 3600.0)

        self.now += 3601.0
        self.assertEqual(governor.check_entry_allowed(), (True, ""))
        governor.record_trade(_win())
        self.assertEqual(governor.size_multiplier(), 1.0)
        self.assertEqual(governor.snapshot.loss_streak, 0)

    def test_fifth_loss_triggers_long_cooldown(self) -> None:
        governor = self._governor()
        for _ in range(5):
            governor.record_trade(_loss())
        self.assertAlmostEqual(governor.snapshot.paused_until, NOW + 6 * 3600.0)

    def test_breakeven_trades_leave_streak_alone(self) -> None:
        governor = self._governor()
        governor.record_trade(_loss())
        governor.record_trade(SimpleNamespace(outcome="BREAKEVEN"))
        self.assertEqual(governor.snapshot.loss_streak, 1)

    def test_daily_loss_limit_pauses_for_cooldown(self) -> None:
        governor = self._governor(StubBook(realized=-60.0, unrealized=-25.0))
        snapshot = asyncio.run(governor.evaluate())
        self.assertAlmostEqual(snapshot.daily_pnl_percent, -8.5)
        self.assertTrue(snapshot.paused)
        self.assertEqual(snapshot.pause_reason, "daily loss limit")
        self.assertAlmostEqual(snapshot.paused_until, NOW + 12 * 3600.0)
        self.assertEqual(governor.check_entry_allowed(), (False, "daily loss limit"))
        self.assertIn("risk_pause", self.alerts.kinds())

    def test_daily_profit_target_pauses_until_next_utc_day(self) -> None:
        governor = self._governor(StubBook(realized=160.0))
        snapshot = asyncio.run(governor.evaluate())
        self.assertEqual(snapshot.pause_reason, "daily profit target")
        self.assertEqual(snapshot.paused_until, utc_day_start(NOW) + 86400.0)

    def test_weekly_breaker_hard_stops_and_fires_kill_switch(self) -> None:
        kill_switch = StubKillSwitch()
        governor = self._governor(StubBook(realized=-160.0), kill_switch=kill_switch)
        snapshot = asyncio.run(governor.evaluate())
        self.assertTrue(snapshot.hard_stop)
        self.assertEqual(governor.check_entry_allowed(), (False, "weekly circuit breaker"))
        self.assertEqual(kill_switch.activations, [("weekly circuit breaker", "risk_governor")])
        self.assertIn("weekly_circuit_breaker", self.alerts.kinds())

        # Already tripped: no second activation.
        asyncio.run(governor.evaluate())
        self.assertEqual(len(kill_switch.activations), 1)

    def test_hard_stop_survives_restart_until_resumed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            state = JsonStateFile(os.path.join(tmp, "risk_state.json"))
            governor = self._governor(StubBook(realized=-200.0), state_file=state)
            asyncio.run(governor.evaluate())

            restarted = self._governor(state_file=state)
            self.assertTrue(restarted.snapshot.hard_stop)
            self.assertFalse(restarted.check_entry_allowed()[0])

            restarted.resume(actor="ops")
            self.assertEqual(restarted.check_entry_allowed(), (True, ""))
            self.assertFalse(self._governor(state_file=state).snapshot.hard_stop)

    def test_resume_requires_a_pause(self) -> None:
        with self.assertRaises(ControlError) as ctx:
            self._governor().resume()
        self.assertEqual(ctx.exception.code, "RISK_NOT_PAUSED")

    def test_thresholds_come_from_settings(self) -> None:
        settings = dataclasses.replace(RiskSettings(), max_daily_loss_percent=3.0)
        governor = RiskGovernor(settings, books=[StubBook(realized=-35.0)], state_file=JsonStateFile(""), clock=lambda: self.now)
        self.assertTrue(asyncio.run(governor.evaluate()).paused)


if __name__ == "__main__":
    unittest.main()
