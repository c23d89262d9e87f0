from __future__ import annotations

import unittest
from types import SimpleNamespace

from config import ConvictionSettings
from market.regime_detector import Regime, RegimeState
from monitor.wallet_registry import SmartWalletSignal
from trading.conviction import (
    ConvictionScorer,
    conviction_tier,
    score_entry_quality,
    score_market_conditions,
    score_smart_wallet,
    score_social_signals,
    weighted_conviction,
)
from trading.opportunities import EntrySnapshot, MarketSnapshot, SocialSnapshot, TokenOpportunity
from tests.support import TOKEN_A, make_weights


def _regime(regime: Regime = Regime.FULL, primary: float | None = 6.0) -> RegimeState:
    return RegimeState(
        regime=regime,
        primary_change=primary,
        secondary_change=1.0,
        primary_trend="UP",
        secondary_trend="FLAT",
        reason="",
        updated_at=0.0,
    )


class CategoryScoreTests(unittest.TestCase):
    def test_smart_wallet_score(self) -> None:
        signal = SmartWalletSignal(count=3, tier1=2, tier2=1, avg_score=75.0, minutes_since_last_buy=5.0)
        self.assertEqual(score_smart_wallet(signal), 65.0)
        self.assertEqual(score_smart_wallet(SmartWalletSignal()), 0.0)

    def test_market_conditions_score(self) -> None:
        market = MarketSnapshot(liquidity_usd=50_000)
        self.assertEqual(score_market_conditions(market, _regime(), peak_hours_utc=(14,), hour_utc=14), 100.0)
        self.assertEqual(score_market_conditions(market, _regime(), peak_hours_utc=(14,), hour_utc=3), 90.0)
        thin = MarketSnapshot(liquidity_usd=5_000)
        self.assertEqual(score_market_conditions(thin, _regime(Regime.DEFENSIVE, -8.0), hour_utc=3), 35.0)

    def test_coordinated_social_activity_is_penalised(self) -> None:
        organic = SocialSnapshot(has_twitter=True, mention_velocity=60)
        coordinated = SocialSnapshot(has_twitter=True, mention_velocity=60, is_coordinated=True)
        self.assertEqual(score_social_signals(organic), 35.0)
        self.assertEqual(score_social_signals(coordinated), 0.0)

    def test_entry_quality_score(self) -> None:
        ideal = EntrySnapshot(dip_percent=30, ath_distance_percent=60, age_minutes=60, buy_sell_ratio=2.5, hype_phase="DISCOVERY")
        self.assertEqual(score_entry_quality(ideal), 100.0)
        late = EntrySnapshot(dip_percent=5, ath_distance_percent=5, age_minutes=600, buy_sell_ratio=0.5, hype_phase="DUMP")
        self.assertEqual(score_entry_quality(late), 0.0)


class ConvictionTotalTests(unittest.TestCase):
    def test_weighted_total_uses_weights_over_one_hundred(self) -> None:
        weights = dict(ConvictionSettings().default_weights)
        scores = {name: 100.0 for name in weights}
        self.assertAlmostEqual(weighted_conviction(scores, weights), 100.0)
        scores["smart_wallet"] = 0.0
        self.assertAlmostEqual(weighted_conviction(scores, weights), 70.0)

    def test_tier_boundaries(self) -> None:
        settings = ConvictionSettings()
        self.assertEqual(conviction_tier(85.0, settings), ("HIGH", 5.0))
        self.assertEqual(conviction_tier(84.9, settings), ("MEDIUM", 3.0))
        self.assertEqual(conviction_tier(50.0, settings), ("LOW", 1.0))
        self.assertEqual(conviction_tier(49.9, settings), ("REJECT", 0.0))

    def test_scorer_breakdown(self) -> None:
        opportunity = TokenOpportunity(
            token_address=TOKEN_A,
            wallet_signal=SmartWalletSignal(count=3, tier1=3, avg_score=85.0, minutes_since_last_buy=5.0),
            market=MarketSnapshot(liquidity_usd=50_000),
            social=SocialSnapshot(has_twitter=True, has_telegram=True, has_website=True, twitter_followers=20_000, mention_velocity=60),
            entry=EntrySnapshot(dip_percent=30, ath_distance_percent=60, age_minutes=60, buy_sell_ratio=2.5, hype_phase="DISCOVERY"),
        )
        opportunity.safety = SimpleNamespace(score=100)
        breakdown = ConvictionScorer(ConvictionSettings(), make_weights()).score(opportunity, _regime(), hour_utc=14)
        self.assertEqual(breakdown.scores["smart_wallet"], 70.0)
        self.assertEqual(breakdown.scores["social_signals"], 70.0)
        self.assertAlmostEqual(breakdown.total, 88.0)
        self.assertEqual(breakdown.tier, "HIGH")
        self.assertEqual(breakdown.size_percent, 5.0)
        self.assertAlmostEqual(sum(breakdown.contributions.values()), breakdown.total)


if __name__ == "__main__":
    unittest.main()
