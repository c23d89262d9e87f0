from __future__ import annotations

import asyncio
import dataclasses
import unittest

from config import AlertSettings
from monitor.alerter import AlertManager


class FakeBot:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[dict] = []

    async def send_message(self, **kwargs) -> None:
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append(kwargs)


def _settings(**overrides) -> AlertSettings:
    return dataclasses.replace(AlertSettings(telegram_chat_id="42"), **overrides)


class AlertManagerTests(unittest.TestCase):
    def test_levels_below_minimum_are_kept_but_not_sent(self) -> None:
        bot = FakeBot()
        alerts = AlertManager(_settings(min_level="HIGH"), bot=bot)
        asyncio.run(alerts.send("MEDIUM", "regime_change", "FULL -> CAUTIOUS"))
        asyncio.run(alerts.send("HIGH", "exit_failed", "sell <MEME> failed", position_id="p1"))
        self.assertEqual(len(bot.messages), 1)
        text = bot.messages[0]["text"]
        self.assertIn("exit_failed", text)
        self.assertIn("&lt;MEME&gt;", text)
        self.assertEqual(bot.messages[0]["parse_mode"], "HTML")
        self.assertEqual(len(alerts.recent()), 2)

    def test_dedupe_per_kind_except_critical(self) -> None:
        bot = FakeBot()
        alerts = AlertManager(_settings(dedupe_seconds=60), bot=bot)

        async def scenario() -> None:
            await alerts.send("HIGH", "rpc_failover", "a -> b")
            await alerts.send("HIGH", "rpc_failover", "b -> c")
            await alerts.send("HIGH", "risk_pause", "daily loss")
            await alerts.send("CRITICAL", "kill_switch", "first")
            await alerts.send("CRITICAL", "kill_switch", "second")

        asyncio.run(scenario())
        self.assertEqual(len(bot.messages), 4)
        self.assertEqual([a["delivered"] for a in alerts.recent()], [True, False, True, True, True])

    def test_delivery_failure_is_logged(self) -> None:
        alerts = AlertManager(_settings(), bot=FakeBot(fail=True))
        with self.assertLogs("monitor.alerter", level="WARNING") as logs:
            alert = asyncio.run(alerts.send("CRITICAL", "kill_switch", "boom"))
        self.assertFalse(alert.delivered)
        self.assertTrue(any("ALERT_DELIVERY_FAILED" in line for line in logs.output))

    def test_notify_without_loop_records_history(self) -> None:
        alerts = AlertManager(_settings())
        alerts.notify("HIGH", "exit_failed", "no loop")
        self.assertEqual(alerts.recent(limit=1)[0]["kind"], "exit_failed")

    def test_notify_inside_loop_schedules_send(self) -> None:
        bot = FakeBot()
        alerts = AlertManager(_settings(), bot=bot)

        async def scenario() -> None:
            alerts.notify("CRITICAL", "weekly_circuit_breaker", "tripped")
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(scenario())
        self.assertEqual(len(bot.messages), 1)


if __name__ == "__main__":
    unittest.main()
