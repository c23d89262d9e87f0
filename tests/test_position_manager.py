from __future__ import annotations

import asyncio
import unittest

from config import ExecutionSettings, PositionSettings
from trading.execution_manager import ExecutionManager, Intent
from trading.position_manager import (
    ExitReason,
    Position,
    PositionManager,
    PositionStatus,
    TradeOutcome,
    classify_outcome,
    plan_exits,
    update_price,
)
from utils.errors import ControlError, ExecutionError, NotFoundError
from tests.support import TOKEN_A, TOKEN_B, FakeSwapBackend, StubPriceFeed, memory_store, no_sleep


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(backend: FakeSwapBackend | None = None, *, clock: Clock | None = None, store=None) -> PositionManager:
    backend = backend or FakeSwapBackend()
    execution = ExecutionManager(ExecutionSettings(), backend, sleep=no_sleep, label="test")
    return PositionManager(PositionSettings(), execution, label="test", clock=clock or Clock(), store=store)


def _open(manager: PositionManager, token: str = TOKEN_A, size: float = 100.0) -> Position:
    return asyncio.run(manager.open(token_address=token, size_usd=size, expected_price_usd=1.0, symbol="MEME"))


class StopRatchetTests(unittest.TestCase):
    def test_fixed_stop_before_activation(self) -> None:
        position = Position(token_address=TOKEN_A, entry_price=1.0, entry_amount=100.0, entry_usd=100.0)
        update_price(position, 1.1, PositionSettings())
        self.assertAlmostEqual(position.stop_price, 0.75)
        self.assertEqual(position.stop_kind, "fixed")

    def test_trailing_stop_only_tightens(self) -> None:
        settings = PositionSettings()
        position = Position(token_address=TOKEN_A, entry_price=1.0, entry_amount=100.0, entry_usd=100.0)
        update_price(position, 1.6, settings)
        self.assertAlmostEqual(position.stop_price, 1.408)
        self.assertEqual(position.trailing_percent, 12.0)

        update_price(position, 1.45, settings)
        self.assertAlmostEqual(position.stop_price, 1.408)

        position.tp_hits = [True, True, False, False]
        update_price(position, 1.3, settings)
        actions = plan_exits(position, settings, position.entry_time)
        self.assertEqual(len(actions), 1)
        self.assertEqual(actions[0].reason, ExitReason.STOP_LOSS)
        self.assertEqual(actions[0].detail, "trailing_stop_12")
        self.assertTrue(actions[0].full)

    def test_outcome_classification(self) -> None:
        self.assertEqual(classify_outcome(0.8, ExitReason.TIME_STOP, 1.0), TradeOutcome.BREAKEVEN)
        self.assertEqual(classify_outcome(-1.0, ExitReason.STOP_LOSS, 1.0), TradeOutcome.BREAKEVEN)
        self.assertEqual(classify_outcome(12.0, ExitReason.TAKE_PROFIT, 1.0), TradeOutcome.WIN)
        self.assertEqual(classify_outcome(-26.0, ExitReason.STOP_LOSS, 1.0), TradeOutcome.LOSS)
        self.assertEqual(classify_outcome(50.0, ExitReason.EMERGENCY, 1.0), TradeOutcome.EMERGENCY)


class PositionManagerTests(unittest.TestCase):
    def test_take_profit_tiers_sell_fractions_of_remaining(self) -> None:
        manager = _manager()
        position = _open(manager)
        self.assertAlmostEqual(position.entry_amount, 100.0)

        results = asyncio.run(manager.process(position, 1.65))
        self.assertEqual([round(r.token_amount, 6) for r in results], [20.0, 20.0])
        self.assertAlmostEqual(position.remaining_amount, 60.0)
        self.assertEqual(position.tp_hits, [True, True, False, False])
        self.assertEqual(position.status, PositionStatus.OPEN)

        asyncio.run(manager.process(position, 2.1))
        self.assertAlmostEqual(position.remaining_amount, 45.0)
        asyncio.run(manager.process(position, 3.2))
        self.assertAlmostEqual(position.remaining_amount, 38.25)
        self.assertEqual(position.tp_hits, [True, True, True, True])

        # Tiers never fire twice.
        self.assertEqual(asyncio.run(manager.process(position, 3.3)), [])

    def test_hard_stop_closes_with_loss_and_notifies_listeners(self) -> None:
        manager = _manager()
        seen = []
        manager.add_trade_listener(seen.append)
        position = _open(manager)

        asyncio.run(manager.process(position, 0.74))
        self.assertEqual(position.status, PositionStatus.CLOSED)
        self.assertEqual(position.remaining_amount, 0.0)
        trade = seen[0]
        self.assertEqual(trade.exit_reason, ExitReason.STOP_LOSS)
        self.assertEqual(trade.outcome, TradeOutcome.LOSS)
        self.assertAlmostEqual(trade.pnl_usd, -26.0)
        self.assertAlmostEqual(trade.pnl_percent, -26.0)
        self.assertEqual(manager.stats()["losses"], 1)
        self.assertFalse(manager.has_open_token(TOKEN_A))

    def test_time_stop_after_max_hold(self) -> None:
        clock = Clock()
        manager = _manager(clock=clock)
        position = _open(manager)
        self.assertEqual(asyncio.run(manager.process(position, 1.05)), [])

        clock.now += 4 * 3600
        asyncio.run(manager.process(position, 1.05))
        self.assertEqual(position.status, PositionStatus.CLOSED)
        self.assertEqual(manager.trades[-1].exit_reason, ExitReason.TIME_STOP)
        self.assertEqual(manager.trades[-1].outcome, TradeOutcome.WIN)

    def test_single_exit_in_flight_per_position(self) -> None:
        async def scenario():
            backend = FakeSwapBackend()
            manager = _manager(backend)
            position = await manager.open(token_address=TOKEN_A, size_usd=100.0, expected_price_usd=1.0)
            backend.gate = asyncio.Event()
            first = asyncio.create_task(manager.process(position, 0.5))
            await asyncio.sleep(0)
            self.assertTrue(manager.in_flight(position.position_id))
            self.assertEqual(await manager.process(position, 0.4), [])
            self.assertTrue(position.queued)
            with self.assertRaises(ControlError) as ctx:
                await manager.close_position(position.position_id)
            self.assertEqual(ctx.exception.code, "POSITION_EXIT_IN_FLIGHT")
            backend.gate.set()
            await first
            return backend, manager, position

        backend, manager, position = asyncio.run(scenario())
        self.assertEqual(backend.intents(), [Intent.BUY, Intent.SELL])
        self.assertEqual(position.status, PositionStatus.CLOSED)
        self.assertFalse(manager.in_flight(position.position_id))
        with self.assertRaises(NotFoundError):
            asyncio.run(manager.close_position(position.position_id))

    def test_failed_exit_reopens_position(self) -> None:
        backend = FakeSwapBackend()
        manager = _manager(backend)
        position = _open(manager)
        backend.outcomes = [ExecutionError("reverted")] * 4
        results = asyncio.run(manager.process(position, 0.7))
        self.assertFalse(results[0].success)
        self.assertEqual(position.status, PositionStatus.OPEN)
        self.assertEqual(position.exit_failures, 1)
        self.assertAlmostEqual(position.remaining_amount, 100.0)

    def test_failed_buy_raises(self) -> None:
        manager = _manager(FakeSwapBackend([ExecutionError("no route")] * 3))
        with self.assertRaises(ExecutionError):
            _open(manager)
        self.assertEqual(manager.positions, {})

    def test_manual_close(self) -> None:
        manager = _manager()
        position = _open(manager)
        result = asyncio.run(manager.close_position(position.position_id))
        self.assertTrue(result.success)
        self.assertEqual(manager.trades[-1].exit_reason, ExitReason.MANUAL)
        self.assertEqual(manager.trades[-1].outcome, TradeOutcome.BREAKEVEN)

    def test_partial_take_profit_is_realized_on_the_day_it_filled(self) -> None:
        clock = Clock()
        manager = _manager(clock=clock)
        position = _open(manager)
        asyncio.run(manager.process(position, 1.35))
        self.assertAlmostEqual(position.remaining_amount, 80.0)
        self.assertAlmostEqual(manager.realized_pnl_since(clock.now), 7.0)
        self.assertAlmostEqual(manager.unrealized_pnl_usd(), 28.0)

        clock.now += 86400
        today = clock.now - 60
        self.assertAlmostEqual(manager.realized_pnl_since(today), 0.0)

        asyncio.run(manager.close_position(position.position_id))
        self.assertAlmostEqual(manager.realized_pnl_since(today), 28.0)
        self.assertAlmostEqual(manager.realized_pnl_since(0.0), 35.0)
        self.assertAlmostEqual(manager.trades[-1].pnl_usd, 35.0)
        self.assertEqual(manager.unrealized_pnl_usd(), 0.0)

    def test_liquidate_all_halts_and_emergency_sells(self) -> None:
        backend = FakeSwapBackend()
        manager = _manager(backend)
        _open(manager, TOKEN_A)
        _open(manager, TOKEN_B)
        results = asyncio.run(manager.liquidate_all())
        self.assertEqual(len(results), 2)
        self.assertTrue(manager.halted)
        self.assertEqual(backend.intents().count(Intent.EMERGENCY_SELL), 2)
        self.assertEqual({t.outcome for t in manager.trades}, {TradeOutcome.EMERGENCY})
        with self.assertRaises(ControlError):
            _open(manager, TOKEN_A)

    def test_tick_uses_price_feed(self) -> None:
        manager = _manager()
        position = _open(manager)
        manager.price_feed = StubPriceFeed({TOKEN_A: 0.7})
        asyncio.run(manager.tick())
        self.assertEqual(position.status, PositionStatus.CLOSED)
        self.assertGreater(manager.last_tick_at, 0)

    def test_open_positions_are_restored_from_store(self) -> None:
        store = memory_store()
        manager = _manager(store=store)
        position = _open(manager)
        asyncio.run(manager.process(position, 1.35))

        restored = _manager(store=store)
        self.assertEqual(restored.load(), 1)
        copy = restored.get(position.position_id)
        self.assertAlmostEqual(copy.remaining_amount, 80.0)
        self.assertEqual(copy.tp_hits, [True, False, False, False])
        self.assertEqual(copy.status, PositionStatus.OPEN)


if __name__ == "__main__":
    unittest.main()
