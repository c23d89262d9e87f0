from __future__ import annotations

import asyncio
import dataclasses
import unittest
from types import SimpleNamespace

from config import LearningSettings
from learning.patterns import mine_patterns
from learning.scheduler import LearningScheduler, category_correlations, pearson
from utils.errors import ValidationError
from tests.support import make_weights, memory_store

WIN_FEATURES = {"regime": "FULL", "hype": "DISCOVERY"}
LOSS_FEATURES = {"regime": "DEFENSIVE", "hype": "PEAK_FOMO"}


def _trade(outcome: str, smart_wallet: float) -> SimpleNamespace:
    win = outcome == "WIN"
    return SimpleNamespace(
        outcome=outcome,
        pnl_percent=40.0 if win else -20.0,
        features=dict(WIN_FEATURES if win else LOSS_FEATURES),
        category_scores={
            "smart_wallet": smart_wallet,
            "token_safety": 90.0,
            "market_conditions": 70.0,
            "social_signals": 50.0,
            "entry_quality": 60.0,
        },
    )


def _batch() -> list[SimpleNamespace]:
    return [_trade("WIN", 90.0) for _ in range(5)] + [_trade("LOSS", 30.0) for _ in range(5)]


def _settings(**overrides) -> LearningSettings:
    return dataclasses.replace(LearningSettings(), batch_size=10, min_trades=10, **overrides)


class CorrelationTests(unittest.TestCase):
    def test_pearson_edges(self) -> None:
        self.assertAlmostEqual(pearson([1, 2, 3], [2, 4, 6]), 1.0)
        self.assertAlmostEqual(pearson([1, 2, 3], [3, 2, 1]), -1.0)
        self.assertEqual(pearson([1, 1, 1], [0, 1, 0]), 0.0)
        self.assertEqual(pearson([1], [1]), 0.0)

    def test_only_predictive_category_correlates(self) -> None:
        correlations = category_correlations(_batch())
        self.assertAlmostEqual(correlations["smart_wallet"], 1.0, places=6)
        self.assertEqual(correlations["token_safety"], 0.0)


class LearningSchedulerTests(unittest.TestCase):
    def test_batch_fires_on_the_tenth_closed_trade(self) -> None:
        scheduler = LearningScheduler(_settings(), make_weights())
        results = [asyncio.run(scheduler.on_trade_closed(t)) for t in _batch()]
        self.assertTrue(all(r is None for r in results[:-1]))
        result = results[-1]
        self.assertTrue(result.applied)
        self.assertEqual(result.batch_number, 1)
        self.assertEqual(result.trade_count, 10)
        # max_step 5 on smart_wallet, then every unlocked weight shifts by -1 to keep the sum at 100.
        self.assertAlmostEqual(result.weights_after["smart_wallet"], 34.0, places=6)
        self.assertAlmostEqual(result.weights_after["token_safety"], 24.0, places=6)
        self.assertAlmostEqual(sum(result.weights_after.values()), 100.0, places=6)
        self.assertEqual(scheduler.pending, [])

    def test_emergency_trades_are_excluded(self) -> None:
        scheduler = LearningScheduler(_settings(), make_weights())
        self.assertIsNone(asyncio.run(scheduler.on_trade_closed(_trade("EMERGENCY", 10.0))))
        self.assertEqual(scheduler.pending, [])

    def test_shadow_mode_proposes_without_applying(self) -> None:
        weights = make_weights()
        scheduler = LearningScheduler(_settings(mode="shadow"), weights)
        result = scheduler.run_batch(_batch())
        self.assertFalse(result.applied)
        self.assertAlmostEqual(result.weights_after["smart_wallet"], 34.0, places=6)
        self.assertEqual(weights.as_map()["smart_wallet"], 30.0)
        self.assertGreater(weights.categories()[0].predictive_power, 0.99)

    def test_paused_and_small_batches_are_skipped(self) -> None:
        scheduler = LearningScheduler(_settings(mode="paused"), make_weights())
        for trade in _batch():
            self.assertIsNone(asyncio.run(scheduler.on_trade_closed(trade)))
        self.assertEqual(scheduler.pending, [])
        self.assertEqual(len(scheduler.history), 10)
        self.assertEqual(scheduler.run_batch().skipped_reason, "paused")

        scheduler.set_mode("active")
        small = scheduler.run_batch(_batch()[:4])
        self.assertFalse(small.applied)
        self.assertEqual(small.skipped_reason, "insufficient trades")
        self.assertEqual(small.weights_after, small.weights_before)

    def test_trades_closed_while_paused_do_not_accumulate(self) -> None:
        scheduler = LearningScheduler(_settings(mode="paused"), make_weights())
        for _ in range(50):
            for trade in _batch():
                asyncio.run(scheduler.on_trade_closed(trade))
        self.assertEqual(scheduler.pending, [])

        scheduler.set_mode("active")
        results = [asyncio.run(scheduler.on_trade_closed(t)) for t in _batch()]
        self.assertTrue(all(r is None for r in results[:-1]))
        self.assertEqual(results[-1].trade_count, 10)
        self.assertEqual(results[-1].batch_number, 1)

    def test_set_mode_rejects_unknown(self) -> None:
        scheduler = LearningScheduler(_settings(), make_weights())
        with self.assertRaises(ValidationError):
            scheduler.set_mode("turbo")

    def test_batch_persists_patterns_and_snapshot(self) -> None:
        store = memory_store()
        scheduler = LearningScheduler(_settings(pattern_min_occurrences=5), make_weights(store), store=store)
        for trade in _batch():
            asyncio.run(scheduler.on_trade_closed(trade))
        self.assertEqual(len(scheduler.win_patterns), 1)
        self.assertEqual(len(scheduler.danger_patterns), 1)
        stored = store.list_patterns("win")
        self.assertEqual(stored[0]["features"], WIN_FEATURES)
        self.assertEqual(stored[0]["occurrences"], 5)
        self.assertEqual(store.list_patterns("danger")[0]["win_rate"], 0.0)


class PatternMiningTests(unittest.TestCase):
    def test_pairs_below_min_occurrences_are_ignored(self) -> None:
        wins, dangers = mine_patterns(_batch()[:3] + _batch()[5:8], min_occurrences=5)
        self.assertEqual((wins, dangers), ([], []))

    def test_win_and_danger_patterns(self) -> None:
        wins, dangers = mine_patterns(_batch(), min_occurrences=5)
        self.assertEqual(wins[0].features, WIN_FEATURES)
        self.assertEqual(wins[0].win_rate, 1.0)
        self.assertEqual(wins[0].avg_return_percent, 40.0)
        self.assertEqual(dangers[0].features, LOSS_FEATURES)
        self.assertEqual(dangers[0].key, "hype=PEAK_FOMO|regime=DEFENSIVE")


if __name__ == "__main__":
    unittest.main()
