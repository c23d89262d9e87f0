"""Conviction scoring: per-category 0-100 scores combined with learned weights."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from config import ConvictionSettings
from learning.weights import CATEGORIES, LearningWeights
from market.regime_detector import Regime, RegimeState
from monitor.wallet_registry import SmartWalletSignal
from trading.opportunities import EntrySnapshot, MarketSnapshot, SocialSnapshot, TokenOpportunity


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def score_smart_wallet(signal: SmartWalletSignal) -> float:
    score = 0.0
    if signal.tier1 >= 3:
        score += 40
    elif signal.tier1 >= 2:
        score += 30
    elif signal.tier1 >= 1:
        score += 20

    if signal.tier2 >= 3:
        score += 20
    elif signal.tier2 >= 2:
        score += 15
    elif signal.tier2 >= 1:
        score += 10

    if signal.tier3 >= 2:
        score += 10
    elif signal.tier3 >= 1:
        score += 5

    if signal.avg_score >= 80:
        score += 20
    elif signal.avg_score >= 70:
        score += 15
    elif signal.avg_score >= 60:
        score += 10

    minutes = signal.minutes_since_last_buy
    if minutes is not None:
        if minutes < 10:
            score += 10
        elif minutes < 30:
            score += 5
    return _clamp(score)


def score_token_safety(safety: Any) -> float:
    return _clamp(getattr(safety, "score", 0) if safety is not None else 0)


def score_market_conditions(
    market: MarketSnapshot,
    regime: RegimeState,
    *,
    peak_hours_utc: tuple = (),
    hour_utc: int | None = None,
) -> float:
    score = 50.0
    if regime.regime == Regime.FULL:
        score += 25
    elif regime.regime == Regime.CAUTIOUS:
        score += 10
    elif regime.regime == Regime.PAUSE:
        score -= 50

    native = regime.primary_change
    if native is not None:
        if native > 5:
            score += 15
        elif native > 0:
            score += 10
        elif native > -3:
            score += 5
        elif native < -10:
            score -= 20

    if hour_utc is None:
        hour_utc = datetime.now(timezone.utc).hour
    if hour_utc in peak_hours_utc:
        score += 10

    # Thin books make every exit expensive.
    if 0 < market.liquidity_usd < 10_000:
        score -= 15
    return _clamp(score)


def score_social_signals(social: SocialSnapshot) -> float:
    score = 0.0
    if social.has_twitter:
        score += 15
    if social.has_telegram:
        score += 10
    if social.has_website:
        score += 5

    followers = social.twitter_followers
    if followers > 10_000:
        score += 20
    elif followers > 5_000:
        score += 15
    elif followers > 1_000:
        score += 10
    elif followers > 100:
        score += 5

    velocity = social.mention_velocity
    if velocity > 50 and not social.is_coordinated:
        score += 20
    elif velocity > 20 and not social.is_coordinated:
        score += 15
    elif velocity > 10:
        score += 10

    if social.influencer_calls > 2:
        score -= 20
    if social.is_coordinated:
        score -= 30
    return _clamp(score)


def score_entry_quality(entry: EntrySnapshot) -> float:
    score = 0.0
    dip = entry.dip_percent
    if 25 <= dip <= 35:
        score += 30
    elif 20 <= dip <= 40:
        score += 25
    elif 15 <= dip <= 45:
        score += 15
    elif dip < 10:
        score += 5
    elif dip > 50:
        score -= 10

    ath = entry.ath_distance_percent
    if ath > 50:
        score += 20
    elif ath > 30:
        score += 15
    elif ath > 20:
        score += 10
    elif ath < 10:
        score -= 20

    age = entry.age_minutes
    if 30 < age < 240:
        score += 20
    elif 10 < age < 480:
        score += 10
    elif age < 10:
        score += 5

    ratio = entry.buy_sell_ratio
    if ratio > 2.0:
        score += 15
    elif ratio > 1.5:
        score += 10
    elif ratio < 0.8:
        score -= 15

    phase = entry.hype_phase
    if phase == "DISCOVERY":
        score += 15
    elif phase == "EARLY_FOMO":
        score += 5
    elif phase == "PEAK_FOMO":
        score -= 20
    elif phase in ("DISTRIBUTION", "DUMP"):
        score -= 30
    return _clamp(score)


def weighted_conviction(scores: dict[str, float], weights: dict[str, float]) -> float:
    """sum(weight * score) / 100 with weights summing to 100."""
    return sum(float(weights[c]) * float(scores.get(c, 0.0)) for c in CATEGORIES) / 100.0


@dataclass(frozen=True)
class ConvictionBreakdown:
    total: float
    tier: str
    size_percent: float
    scores: dict[str, float] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)

    @property
    def contributions(self) -> dict[str, float]:
        return {c: self.weights[c] * self.scores[c] / 100.0 for c in self.scores}

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": round(self.total, 2),
            "tier": self.tier,
            "size_percent": self.size_percent,
            "scores": {k: round(v, 2) for k, v in self.scores.items()},
            "weights": {k: round(v, 4) for k, v in self.weights.items()},
            "contributions": {k: round(v, 2) for k, v in self.contributions.items()},
        }


def conviction_tier(total: float, settings: ConvictionSettings) -> tuple[str, float]:
    if total >= settings.high_tier:
        return "HIGH", settings.high_size_percent
    if total >= settings.medium_tier:
        return "MEDIUM", settings.medium_size_percent
    if total >= settings.low_tier:
        return "LOW", settings.low_size_percent
    return "REJECT", 0.0


class ConvictionScorer:
    def __init__(self, settings: ConvictionSettings, weights: LearningWeights) -> None:
        self.settings = settings
        self.weights = weights

    def category_scores(
        self,
        opportunity: TokenOpportunity,
        regime: RegimeState,
        *,
        hour_utc: int | None = None,
    ) -> dict[str, float]:
        return {
            "smart_wallet": score_smart_wallet(opportunity.wallet_signal),
            "token_safety": score_token_safety(opportunity.safety),
            "market_conditions": score_market_conditions(
                opportunity.market,
                regime,
                peak_hours_utc=tuple(self.settings.peak_hours_utc),
                hour_utc=hour_utc,
            ),
            "social_signals": score_social_signals(opportunity.social),
            "entry_quality": score_entry_quality(opportunity.entry),
        }

    def score(
        self,
        opportunity: TokenOpportunity,
        regime: RegimeState,
        *,
        hour_utc: int | None = None,
    ) -> ConvictionBreakdown:
        scores = self.category_scores(opportunity, regime, hour_utc=hour_utc)
        weights = self.weights.as_map()
        total = weighted_conviction(scores, weights)
        tier, size = conviction_tier(total, self.settings)
        return ConvictionBreakdown(total=total, tier=tier, size_percent=size, scores=scores, weights=weights)
