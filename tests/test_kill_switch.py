from __future__ import annotations

import asyncio
import unittest

from config import ExecutionSettings, PositionSettings
from trading.execution_manager import ExecutionManager, Intent
from trading.kill_switch import KillSwitch
from trading.position_manager import Position, PositionManager, PositionStatus, TradeOutcome
from utils.audit_log import AuditLog
from utils.errors import ControlError, ExecutionError
from tests.support import TOKEN_A, TOKEN_B, FakeSwapBackend, RecordingAlerts, make_entry_engine, no_sleep


class KillSwitchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.audit = AuditLog(None)
        self.backend = FakeSwapBackend()
        execution = ExecutionManager(ExecutionSettings(), self.backend, audit=self.audit, sleep=no_sleep)
        self.book = PositionManager(PositionSettings(), execution)
        for token in (TOKEN_A, TOKEN_B):
            position = Position(token_address=token, entry_price=1.0, entry_amount=100.0, entry_usd=100.0)
            self.book.positions[position.position_id] = position
        self.entries = make_entry_engine()
        self.alerts = RecordingAlerts()
        self.switch = KillSwitch(entries=self.entries, books=[self.book], alerts=self.alerts)

    def test_activation_liquidates_every_open_position(self) -> None:
        summary = asyncio.run(self.switch.activate("operator panic", actor="ops"))

        self.assertEqual(summary["books"]["live"], {"submitted": 2, "filled": 2, "failed": 0})
        self.assertEqual(summary["failed"], 0)
        self.assertFalse(self.entries.entries_enabled)
        self.assertTrue(self.book.halted)
        self.assertTrue(all(p.status == PositionStatus.CLOSED for p in self.book.positions.values()))
        self.assertEqual({t.outcome for t in self.book.trades}, {TradeOutcome.EMERGENCY})

        sells = self.audit.recent(action="emergency_sell")
        self.assertEqual(len(sells), 2)
        self.assertTrue(all(e.verify() and e.status == "success" for e in sells))
        self.assertIn("kill_switch", self.alerts.kinds())
        self.assertEqual(self.switch.status()["actor"], "ops")

    def test_repeated_activation_shares_one_run(self) -> None:
        async def scenario():
            return await asyncio.gather(
                self.switch.activate("first"),
                self.switch.activate("second"),
            )

        first, second = asyncio.run(scenario())
        self.assertIs(first, second)
        self.assertEqual(first["reason"], "first")
        self.assertEqual(self.backend.intents(), [Intent.EMERGENCY_SELL, Intent.EMERGENCY_SELL])

    def test_failed_exits_are_retried_by_halted_tick(self) -> None:
        self.backend.outcomes = [ExecutionError("stuck")] * 100

        async def scenario() -> dict:
            summary = await self.switch.activate("drawdown")
            self.assertEqual(self.switch.status()["open_positions"], 2)
            self.assertTrue(all(p.emergency_reason == "kill_switch" for p in self.book.positions.values()))
            self.backend.outcomes = []
            await self.book.tick()
            return summary

        summary = asyncio.run(scenario())
        self.assertEqual(summary["failed"], 2)
        self.assertEqual(summary["books"]["live"]["filled"], 0)
        self.assertTrue(self.book.halted)
        self.assertTrue(all(p.status == PositionStatus.CLOSED for p in self.book.positions.values()))
        self.assertEqual({t.outcome for t in self.book.trades}, {TradeOutcome.EMERGENCY})
        self.assertEqual(self.switch.status()["open_positions"], 0)

    def test_repeat_activation_reliquidates_leftovers(self) -> None:
        self.backend.outcomes = [ExecutionError("stuck")] * 100

        async def scenario() -> tuple[dict, dict, int]:
            first = await self.switch.activate("drawdown")
            calls = len(self.backend.calls)
            self.backend.outcomes = []
            second = await self.switch.activate("drawdown again", actor="ops")
            return first, second, calls

        first, second, calls = asyncio.run(scenario())
        self.assertIsNot(first, second)
        self.assertEqual(first["failed"], 2)
        self.assertEqual(second["books"]["live"], {"submitted": 2, "filled": 2, "failed": 0})
        self.assertEqual(len(self.backend.calls), calls + 2)
        self.assertEqual(second["reason"], "drawdown")
        self.assertEqual(self.book.open_count(), 0)

    def test_repeat_activation_with_nothing_open_returns_last_summary(self) -> None:
        async def scenario() -> tuple[dict, dict]:
            first = await self.switch.activate("first")
            second = await self.switch.activate("second")
            return first, second

        first, second = asyncio.run(scenario())
        self.assertIs(first, second)
        self.assertEqual(len(self.backend.calls), 2)

    def test_reset_refused_while_liquidating(self) -> None:
        async def scenario() -> None:
            self.backend.gate = asyncio.Event()
            task = asyncio.create_task(self.switch.activate("operator"))
            await asyncio.sleep(0)
            with self.assertRaises(ControlError) as ctx:
                self.switch.reset()
            self.assertEqual(ctx.exception.code, "KILL_SWITCH_BUSY")
            self.backend.gate.set()
            await task

        asyncio.run(scenario())
        self.switch.reset(actor="ops")
        self.assertFalse(self.switch.active)
        # Entries stay disabled until the operator resumes the bot.
        self.assertFalse(self.entries.entries_enabled)


if __name__ == "__main__":
    unittest.main()
