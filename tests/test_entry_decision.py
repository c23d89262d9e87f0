from __future__ import annotations

import unittest
from typing import Any

from config import SafetySettings
from monitor.safety_scorer import score_report
from monitor.wallet_registry import WalletBuy, WalletRegistry
from trading.opportunities import TokenOpportunity
from tests.support import TOKEN_A, WALLETS, clean_report, full_regime, make_entry_engine, opportunity_payload


def _candidate(*, report_overrides: dict[str, Any] | None = None, **sections: Any) -> TokenOpportunity:
    opportunity = TokenOpportunity.from_payload(opportunity_payload(TOKEN_A, **sections))
    registry = WalletRegistry()
    for address in WALLETS[:3]:
        registry.add(address, tier=1, score=85)
    opportunity.wallet_signal = registry.summarize(WalletBuy(**row) for row in opportunity.wallet_buys)
    opportunity.safety = score_report(clean_report(**(report_overrides or {})), SafetySettings())
    return opportunity


class StubRisk:
    def __init__(self, allowed: bool = True, reason: str = "", multiplier: float = 1.0) -> None:
        self.allowed = allowed
        self.reason = reason
        self.multiplier = multiplier

    def check_entry_allowed(self) -> tuple[bool, str]:
        return self.allowed, self.reason

    def size_multiplier(self) -> float:
        return self.multiplier


class StubPositions:
    def __init__(self, *, tokens: tuple[str, ...] = (), count: int = 0, exposure: float = 0.0) -> None:
        self.tokens = tokens
        self.count = count
        self.exposure = exposure

    def has_open_token(self, token_address: str) -> bool:
        return token_address in self.tokens

    def open_count(self) -> int:
        return self.count

    def open_exposure_usd(self) -> float:
        return self.exposure


class EntryDecisionTests(unittest.TestCase):
    def test_strong_candidate_is_admitted_at_high_tier(self) -> None:
        decision = make_entry_engine().evaluate(_candidate(), hour_utc=14)
        self.assertTrue(decision.admitted)
        self.assertEqual(decision.reason_code, "ENTRY_ADMITTED")
        self.assertAlmostEqual(decision.conviction, 88.0)
        self.assertEqual(decision.threshold, 70.0)
        self.assertEqual(decision.tier, "HIGH")
        self.assertAlmostEqual(decision.size_usd, 50.0)
        self.assertEqual(decision.regime, "FULL")

    def test_mint_authority_rejects_regardless_of_conviction(self) -> None:
        decision = make_entry_engine().evaluate(_candidate(report_overrides={"mint_authority": True}), hour_utc=14)
        self.assertFalse(decision.admitted)
        self.assertEqual(decision.reason, "mint authority active")
        self.assertEqual(decision.reason_code, "SAFETY_MINT_AUTHORITY")
        self.assertEqual(decision.size_usd, 0.0)

    def test_missing_safety_result_is_unverifiable(self) -> None:
        opportunity = _candidate()
        opportunity.safety = None
        decision = make_entry_engine().evaluate(opportunity, hour_utc=14)
        self.assertFalse(decision.admitted)
        self.assertEqual(decision.reason_code, "SAFETY_UNVERIFIABLE")

    def test_defensive_regime_raises_threshold(self) -> None:
        engine = make_entry_engine(full_regime(-8.0, -1.0))
        decision = engine.evaluate(_candidate(), hour_utc=14)
        self.assertFalse(decision.admitted)
        self.assertAlmostEqual(decision.conviction, 82.0)
        self.assertEqual(decision.threshold, 90.0)
        self.assertEqual(decision.reason, "conviction below threshold")
        self.assertEqual(decision.reason_code, "ENTRY_CONVICTION_LOW")

    def test_pause_regime_blocks_entries(self) -> None:
        decision = make_entry_engine(full_regime(-20.0, -3.0)).evaluate(_candidate(), hour_utc=14)
        self.assertFalse(decision.admitted)
        self.assertEqual(decision.reason, "regime pause")
        self.assertEqual(decision.reason_code, "ENTRY_REGIME_PAUSE")
        self.assertIsNone(decision.to_dict()["threshold"])

    def test_disabled_entries_reject(self) -> None:
        engine = make_entry_engine()
        engine.disable_entries("kill switch")
        decision = engine.evaluate(_candidate(), hour_utc=14)
        self.assertEqual(decision.reason_code, "ENTRY_DISABLED")
        engine.enable_entries()
        self.assertTrue(engine.evaluate(_candidate(), hour_utc=14).admitted)

    def test_hard_filters(self) -> None:
        engine = make_entry_engine()
        cases = [
            ({"wallet_buys": [{"wallet": WALLETS[0], "minutes_ago": 5}]}, "ENTRY_SMART_WALLETS_LOW"),
            ({"entry": {"dip_percent": 5}}, "ENTRY_DIP_TOO_SHALLOW"),
            ({"entry": {"dip_percent": 70}}, "ENTRY_DIP_TOO_DEEP"),
            ({"entry": {"age_minutes": 3}}, "ENTRY_TOKEN_TOO_YOUNG"),
            ({"entry": {"age_minutes": 2000}}, "ENTRY_TOKEN_TOO_OLD"),
        ]
        for sections, code in cases:
            with self.subTest(code=code):
                decision = engine.evaluate(_candidate(**sections), hour_utc=14)
                self.assertFalse(decision.admitted)
                self.assertEqual(decision.reason_code, code)

    def test_risk_governor_block_and_streak_multiplier(self) -> None:
        blocked = make_entry_engine(risk=StubRisk(False, "daily loss limit")).evaluate(_candidate(), hour_utc=14)
        self.assertEqual(blocked.reason, "daily loss limit")
        self.assertEqual(blocked.reason_code, "RISK_DAILY_LOSS")

        halved = make_entry_engine(risk=StubRisk(multiplier=0.5)).evaluate(_candidate(), hour_utc=14)
        self.assertTrue(halved.admitted)
        self.assertAlmostEqual(halved.size_usd, 25.0)

    def test_size_is_clamped_to_remaining_exposure(self) -> None:
        engine = make_entry_engine(positions=StubPositions(count=2, exposure=190.0))
        decision = engine.evaluate(_candidate(), hour_utc=14)
        self.assertTrue(decision.admitted)
        self.assertAlmostEqual(decision.size_usd, 10.0)

        full = make_entry_engine(positions=StubPositions(count=2, exposure=200.0)).evaluate(_candidate(), hour_utc=14)
        self.assertEqual(full.reason_code, "ENTRY_EXPOSURE_LIMIT")

    def test_position_limits(self) -> None:
        holding = make_entry_engine(positions=StubPositions(tokens=(TOKEN_A,), count=1))
        self.assertEqual(holding.evaluate(_candidate(), hour_utc=14).reason_code, "ENTRY_DUPLICATE_TOKEN")

        crowded = make_entry_engine(positions=StubPositions(count=5))
        self.assertEqual(crowded.evaluate(_candidate(), hour_utc=14).reason_code, "ENTRY_MAX_POSITIONS")


if __name__ == "__main__":
    unittest.main()
