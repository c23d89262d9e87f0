"""Admission control for new entries: safety gate, regime, risk budget, conviction tier."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from config import ConvictionSettings, EntrySettings
from market.regime_detector import Regime, RegimeDetector
from trading.conviction import ConvictionBreakdown, ConvictionScorer
from trading.opportunities import TokenOpportunity
from utils.log_contracts import reason_code_for_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryDecision:
    admitted: bool
    reason: str
    reason_code: str
    conviction: float
    threshold: float
    tier: str
    size_percent: float
    size_usd: float
    regime: str
    breakdown: ConvictionBreakdown | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "conviction": round(self.conviction, 2),
            "threshold": self.threshold if self.threshold != float("inf") else None,
            "tier": self.tier,
            "size_percent": self.size_percent,
            "size_usd": round(self.size_usd, 4),
            "regime": self.regime,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
        }


class EntryDecisionEngine:
    """Pure reads of regime, risk and position state; never does network I/O."""

    def __init__(
        self,
        conviction_settings: ConvictionSettings,
        entry_settings: EntrySettings,
        regime: RegimeDetector,
        scorer: ConvictionScorer,
        *,
        risk: Any | None = None,
        positions: Any | None = None,
        portfolio_usd: Callable[[], float] = lambda: 1000.0,
    ) -> None:
        self.conviction_settings = conviction_settings
        self.settings = entry_settings
        self.regime = regime
        self.scorer = scorer
        self.risk = risk
        self.positions = positions
        self.portfolio_usd = portfolio_usd
        self._entries_enabled = True
        self.disabled_reason = ""

    @property
    def entries_enabled(self) -> bool:
        return self._entries_enabled

    def disable_entries(self, reason: str) -> None:
        if self._entries_enabled:
            logger.warning("ENTRIES_DISABLED reason=%s", reason)
        self._entries_enabled = False
        self.disabled_reason = str(reason)

    def enable_entries(self) -> None:
        if not self._entries_enabled:
            logger.info("ENTRIES_ENABLED previous_reason=%s", self.disabled_reason)
        self._entries_enabled = True
        self.disabled_reason = ""

    def evaluate(self, opportunity: TokenOpportunity, *, hour_utc: int | None = None) -> EntryDecision:
        state = self.regime.state
        breakdown = self.scorer.score(opportunity, state, hour_utc=hour_utc)
        conviction = breakdown.total
        threshold = self.conviction_settings.base_threshold + self.regime.get_conviction_threshold_adjustment()

        def reject(reason: str, stage: str = "entry", code: str = "") -> EntryDecision:
            return EntryDecision(
                admitted=False,
                reason=reason,
                reason_code=code or reason_code_for_event(reason=reason, stage=stage),
                conviction=conviction,
                threshold=threshold,
                tier=breakdown.tier,
                size_percent=0.0,
                size_usd=0.0,
                regime=state.regime.value,
                breakdown=breakdown,
            )

        if not self._entries_enabled:
            return reject("entries disabled")

        safety = opportunity.safety
        if safety is None:
            return reject("safety unverifiable", stage="safety")
        if not safety.passed:
            if getattr(safety, "mint_authority_active", False):
                return reject("mint authority active", stage="safety")
            return reject(safety.reason, stage="safety", code=getattr(safety, "reason_code", ""))

        if state.regime == Regime.PAUSE:
            return reject("regime pause")

        s = self.settings
        if opportunity.wallet_signal.count < s.min_smart_wallets:
            return reject("insufficient smart wallets")
        age = opportunity.entry.age_minutes
        if age < s.min_token_age_minutes:
            return reject("token too young")
        if age > s.max_token_age_minutes:
            return reject("token too old")
        dip = opportunity.entry.dip_percent
        if dip < s.min_dip_percent:
            return reject("dip too shallow")
        if dip > s.max_dip_percent:
            return reject("dip too deep")

        streak_multiplier = 1.0
        if self.risk is not None:
            allowed, risk_reason = self.risk.check_entry_allowed()
            if not allowed:
                return reject(risk_reason, stage="risk")
            streak_multiplier = self.risk.size_multiplier()

        open_exposure = 0.0
        if self.positions is not None:
            if self.positions.has_open_token(opportunity.token_address):
                return reject("already holding token")
            if self.positions.open_count() >= s.max_open_positions:
                return reject("max positions reached")
            open_exposure = self.positions.open_exposure_usd()

        if conviction < threshold:
            return reject("conviction below threshold")
        if breakdown.tier == "REJECT":
            return reject("conviction below minimum tier")

        portfolio = max(0.0, float(self.portfolio_usd()))
        remaining_budget = portfolio * s.max_total_exposure_percent / 100.0 - open_exposure
        if remaining_budget <= 0:
            return reject("exposure limit reached")
        size = portfolio * breakdown.size_percent / 100.0
        size *= self.regime.get_position_size_multiplier() * streak_multiplier
        size = min(size, remaining_budget)
        if size <= 0:
            return reject("exposure limit reached")

        return EntryDecision(
            admitted=True,
            reason="admitted",
            reason_code="ENTRY_ADMITTED",
            conviction=conviction,
            threshold=threshold,
            tier=breakdown.tier,
            size_percent=breakdown.size_percent,
            size_usd=size,
            regime=state.regime.value,
            breakdown=breakdown,
        )
