from __future__ import annotations

import asyncio
import unittest

from config import ExecutionSettings
from trading.execution_manager import ExecutionManager, ExecutionRequest, Intent
from utils.audit_log import AuditLog
from utils.errors import ExecutionError, SlippageExceeded, ValidationError
from tests.support import TOKEN_A, TOKEN_B, FakeSwapBackend, no_sleep


class CongestedGateway:
    def is_congested(self) -> bool:
        return True


def _manager(backend: FakeSwapBackend, **kwargs) -> ExecutionManager:
    kwargs.setdefault("sleep", no_sleep)
    return ExecutionManager(ExecutionSettings(), backend, **kwargs)


def _request(intent: Intent = Intent.BUY, amount: float = 50.0, **kwargs) -> ExecutionRequest:
    return ExecutionRequest(intent=intent, token_address=kwargs.pop("token", TOKEN_A), amount=amount, **kwargs)


class RetryTests(unittest.TestCase):
    def test_transient_failures_are_retried(self) -> None:
        backend = FakeSwapBackend([ExecutionError("nonce too low"), ExecutionError("reverted"), None])
        result = asyncio.run(_manager(backend).execute(_request()))
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 3)
        self.assertAlmostEqual(result.usd_amount, 50.0)

    def test_retries_exhausted_reports_last_error_code(self) -> None:
        backend = FakeSwapBackend([ExecutionError("a"), ExecutionError("b"), ExecutionError("c", code="RPC_TIMEOUT")])
        manager = _manager(backend)
        result = asyncio.run(manager.execute(_request()))
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(result.error_code, "RPC_TIMEOUT")
        self.assertEqual(len(backend.calls), 3)
        self.assertEqual(manager.metrics()["failed"], 1)

    def test_sell_gets_more_attempts_than_buy(self) -> None:
        backend = FakeSwapBackend([ExecutionError("x")] * 4)
        result = asyncio.run(_manager(backend).execute(_request(Intent.SELL, 10.0)))
        self.assertEqual(result.attempts, 4)
        self.assertEqual(result.error_code, "EXEC_FAILED")


class SlippageTests(unittest.TestCase):
    def test_routine_slippage_breach_aborts_without_retry(self) -> None:
        backend = FakeSwapBackend([SlippageExceeded("moved", expected=1.0, actual=1.2)])
        result = asyncio.run(_manager(backend).execute(_request(Intent.SELL, 10.0)))
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.error_code, "EXEC_SLIPPAGE_EXCEEDED")
        self.assertEqual(backend.calls[0]["slippage_percent"], 8.0)

    def test_emergency_widens_ceiling_up_to_cap(self) -> None:
        backend = FakeSwapBackend([SlippageExceeded("moved")] * 5)
        result = asyncio.run(_manager(backend).execute(_request(Intent.EMERGENCY_SELL, 10.0)))
        self.assertTrue(result.success)
        self.assertEqual([c["slippage_percent"] for c in backend.calls], [15.0, 20.0, 25.0, 30.0, 30.0, 30.0])
        self.assertEqual(result.slippage_ceiling_percent, 30.0)

    def test_caller_can_only_tighten_ceiling(self) -> None:
        backend = FakeSwapBackend()
        manager = _manager(backend)
        asyncio.run(manager.execute(_request(max_slippage_percent=2.0)))
        asyncio.run(manager.execute(_request(max_slippage_percent=50.0)))
        self.assertEqual([c["slippage_percent"] for c in backend.calls], [2.0, 5.0])


class PriorityFeeTests(unittest.TestCase):
    def test_fee_scales_with_intent(self) -> None:
        manager = _manager(FakeSwapBackend())
        self.assertAlmostEqual(manager.priority_fee_gwei(Intent.BUY, 1), 0.02)
        self.assertAlmostEqual(manager.priority_fee_gwei(Intent.SELL, 3), 0.04)
        self.assertAlmostEqual(manager.priority_fee_gwei(Intent.EMERGENCY_SELL, 1), 0.08)

    def test_congestion_escalates_per_attempt_and_caps(self) -> None:
        manager = _manager(FakeSwapBackend(), gateway=CongestedGateway())
        self.assertAlmostEqual(manager.priority_fee_gwei(Intent.BUY, 2), 0.03)
        self.assertAlmostEqual(manager.priority_fee_gwei(Intent.EMERGENCY_SELL, 6), 0.5)


class SubmitTests(unittest.TestCase):
    def test_invalid_requests_raise(self) -> None:
        manager = _manager(FakeSwapBackend())
        with self.assertRaises(ValidationError) as ctx:
            asyncio.run(manager.execute(_request(amount=0)))
        self.assertEqual(ctx.exception.code, "EXEC_INVALID_AMOUNT")
        with self.assertRaises(ValidationError) as ctx:
            asyncio.run(manager.execute(_request(token="nope")))
        self.assertEqual(ctx.exception.code, "VALIDATION_INVALID_ADDRESS")

    def test_stale_buy_expires_in_queue(self) -> None:
        backend = FakeSwapBackend()
        manager = _manager(backend, clock=lambda: 1400.0)
        result = asyncio.run(manager.submit(_request(requested_at=1000.0)))
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 0)
        self.assertEqual(result.error_code, "EXEC_QUEUE_EXPIRED")
        self.assertEqual(backend.calls, [])

    def test_duplicate_request_joins_in_flight(self) -> None:
        async def scenario():
            backend = FakeSwapBackend()
            backend.gate = asyncio.Event()
            manager = _manager(backend)
            first = asyncio.create_task(manager.submit(_request()))
            await asyncio.sleep(0)
            second = asyncio.create_task(manager.submit(_request()))
            await asyncio.sleep(0)
            backend.gate.set()
            return backend, await asyncio.gather(first, second)

        backend, (first, second) = asyncio.run(scenario())
        self.assertEqual(len(backend.calls), 1)
        self.assertEqual(first.request_id, second.request_id)

    def test_workers_drain_queue(self) -> None:
        async def scenario():
            backend = FakeSwapBackend()
            manager = _manager(backend)
            manager.start()
            try:
                self.assertTrue(manager.running)
                results = await asyncio.gather(
                    manager.submit(_request()),
                    manager.submit(_request(Intent.SELL, 5.0, token=TOKEN_B)),
                )
            finally:
                await manager.stop()
            return manager, results

        manager, results = asyncio.run(scenario())
        self.assertTrue(all(r.success for r in results))
        self.assertFalse(manager.running)
        self.assertEqual(manager.metrics()["success"], 2)

    def test_every_result_is_audited(self) -> None:
        audit = AuditLog(None)
        backend = FakeSwapBackend([SlippageExceeded("moved")])
        manager = _manager(backend, audit=audit, label="paper")
        asyncio.run(manager.execute(_request()))
        asyncio.run(manager.execute(_request(Intent.SELL, 5.0)))
        entries = audit.recent()
        self.assertEqual([e.action for e in entries], ["buy", "sell"])
        self.assertEqual([e.status for e in entries], ["failed", "success"])
        self.assertTrue(all(e.actor == "execution:paper" and e.verify() for e in entries))
        self.assertEqual(entries[0].details["error_code"], "EXEC_SLIPPAGE_EXCEEDED")


if __name__ == "__main__":
    unittest.main()
