"""Win/danger pattern mining over bucketed entry features of closed trades."""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Iterable


def _bucket(value: float, edges: tuple[float, ...], labels: tuple[str, ...]) -> str:
    for edge, label in zip(edges, labels):
        if value < edge:
            return label
    return labels[-1]


def entry_features(opportunity: Any, regime: str, *, hour_utc: int, peak_hours: tuple = ()) -> dict[str, str]:
    """Coarse fingerprint of an entry, recorded on the position and its Trade."""
    signal = opportunity.wallet_signal
    entry = opportunity.entry
    safety_score = float(getattr(opportunity.safety, "score", 0) or 0)
    return {
        "wallets": _bucket(signal.count, (2, 3, 5), ("0-1", "2", "3-4", "5+")),
        "tier1": "yes" if signal.tier1 > 0 else "no",
        "safety": _bucket(safety_score, (70, 85), ("<70", "70-84", "85+")),
        "regime": str(regime),
        "dip": _bucket(entry.dip_percent, (20, 30, 40), ("<20", "20-30", "30-40", "40+")),
        "age": _bucket(entry.age_minutes, (30, 240), ("<30m", "30m-4h", "4h+")),
        "hype": entry.hype_phase,
        "session": "peak" if hour_utc in peak_hours else "off",
    }


@dataclass(frozen=True)
class Pattern:
    kind: str
    features: dict[str, str] = field(default_factory=dict)
    occurrences: int = 0
    win_rate: float = 0.0
    avg_return_percent: float = 0.0

    @property
    def key(self) -> str:
        return "|".join(f"{k}={v}" for k, v in sorted(self.features.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "features": dict(self.features),
            "occurrences": self.occurrences,
            "win_rate": round(self.win_rate, 4),
            "avg_return_percent": round(self.avg_return_percent, 4),
        }


def mine_patterns(
    trades: Iterable[Any],
    *,
    min_occurrences: int = 5,
    win_rate_floor: float = 0.6,
    danger_win_rate_ceiling: float = 0.3,
    limit: int = 25,
) -> tuple[list[Pattern], list[Pattern]]:
    """Return (win_patterns, danger_patterns) over every pair of entry features."""
    stats: dict[tuple[tuple[str, str], ...], list[float]] = {}
    wins: dict[tuple[tuple[str, str], ...], int] = {}
    for trade in trades:
        features = getattr(trade, "features", None) or {}
        outcome = str(getattr(getattr(trade, "outcome", ""), "value", getattr(trade, "outcome", "")))
        if not features or outcome == "EMERGENCY":
            continue
        items = sorted((str(k), str(v)) for k, v in features.items())
        for combo in combinations(items, 2):
            stats.setdefault(combo, []).append(float(trade.pnl_percent))
            if outcome == "WIN":
                wins[combo] = wins.get(combo, 0) + 1

    win_patterns: list[Pattern] = []
    danger_patterns: list[Pattern] = []
    for combo, returns in stats.items():
        n = len(returns)
        if n < min_occurrences:
            continue
        rate = wins.get(combo, 0) / n
        avg = sum(returns) / n
        if rate >= win_rate_floor:
            win_patterns.append(Pattern("win", dict(combo), n, rate, avg))
        elif rate <= danger_win_rate_ceiling:
            danger_patterns.append(Pattern("danger", dict(combo), n, rate, avg))

    win_patterns.sort(key=lambda p: (p.win_rate, p.occurrences, p.avg_return_percent), reverse=True)
    danger_patterns.sort(key=lambda p: (-p.win_rate, p.occurrences, -p.avg_return_percent), reverse=True)
    return win_patterns[:limit], danger_patterns[:limit]
