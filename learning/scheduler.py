"""Batch retuning of conviction weights from closed trades, plus pattern mining."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from config import LearningSettings
from learning.patterns import Pattern, mine_patterns
from learning.weights import CATEGORIES, LearningWeights
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

OUTCOME_VALUE = {"WIN": 1.0, "BREAKEVEN": 0.5, "LOSS": 0.0}


class LearningMode(str, Enum):
    ACTIVE = "active"
    SHADOW = "shadow"
    PAUSED = "paused"


def _outcome(trade: Any) -> str:
    value = getattr(trade, "outcome", "")
    return str(getattr(value, "value", value))


def pearson(xs: list[float], ys: list[float]) -> float:
    n = len(xs)
    if n < 2 or n != len(ys):
        return 0.0
    mx = sum(xs) / n
    my = sum(ys) / n
    cov = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    vx = sum((x - mx) ** 2 for x in xs)
    vy = sum((y - my) ** 2 for y in ys)
    if vx <= 0 or vy <= 0:
        return 0.0
    return max(-1.0, min(1.0, cov / math.sqrt(vx * vy)))


def category_correlations(trades: Iterable[Any]) -> dict[str, float]:
    rows = [t for t in trades if _outcome(t) in OUTCOME_VALUE]
    outcomes = [OUTCOME_VALUE[_outcome(t)] for t in rows]
    out: dict[str, float] = {}
    for category in CATEGORIES:
        scores = [float((t.category_scores or {}).get(category, 0.0)) for t in rows]
        out[category] = pearson(scores, outcomes)
    return out


@dataclass(frozen=True)
class LearningBatchResult:
    batch_number: int
    mode: str
    trade_count: int
    applied: bool
    skipped_reason: str = ""
    correlations: dict[str, float] = field(default_factory=dict)
    weights_before: dict[str, float] = field(default_factory=dict)
    weights_after: dict[str, float] = field(default_factory=dict)
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "mode": self.mode,
            "trade_count": self.trade_count,
            "applied": self.applied,
            "skipped_reason": self.skipped_reason,
            "correlations": {k: round(v, 4) for k, v in self.correlations.items()},
            "weights_before": {k: round(v, 4) for k, v in self.weights_before.items()},
            "weights_after": {k: round(v, 4) for k, v in self.weights_after.items()},
            "finished_at": self.finished_at,
        }


class LearningScheduler:
    """Fires a batch every `batch_size` newly closed non-emergency trades."""

    def __init__(
        self,
        settings: LearningSettings,
        weights: LearningWeights,
        *,
        store: Any | None = None,
        history_max: int = 1000,
    ) -> None:
        self.settings = settings
        self.weights = weights
        self.store = store
        self.mode = LearningMode(settings.mode)
        self.pending: list[Any] = []
        self.history: deque[Any] = deque(maxlen=max(settings.batch_size, int(history_max)))
        self.batch_number = 0
        self.last_result: LearningBatchResult | None = None
        self.win_patterns: list[Pattern] = []
        self.danger_patterns: list[Pattern] = []

    def set_mode(self, mode: str | LearningMode) -> LearningMode:
        try:
            new_mode = LearningMode(str(getattr(mode, "value", mode)).strip().lower())
        except ValueError:
            raise ValidationError(f"invalid learning mode: {mode!r}", code="LEARNING_INVALID_MODE") from None
        if new_mode != self.mode:
            logger.info("LEARNING_MODE from=%s to=%s", self.mode.value, new_mode.value)
        self.mode = new_mode
        return new_mode

    async def on_trade_closed(self, trade: Any) -> LearningBatchResult | None:
        if _outcome(trade) == "EMERGENCY":
            return None
        self.history.append(trade)
        # Paused learning only feeds pattern history; batches count trades closed while running.
        if self.mode == LearningMode.PAUSED:
            return None
        self.pending.append(trade)
        if len(self.pending) < self.settings.batch_size:
            return None
        return self.run_batch()

    def run_batch(self, trades: list[Any] | None = None) -> LearningBatchResult:
        batch = list(trades if trades is not None else self.pending)
        before = self.weights.as_map()
        if self.mode == LearningMode.PAUSED:
            return self._skip(batch, before, "paused")
        if len(batch) < self.settings.min_trades:
            return self._skip(batch, before, "insufficient trades")

        correlations = category_correlations(batch)
        deltas = {
            c.name: self.settings.max_step * correlations.get(c.name, 0.0)
            for c in self.weights.categories()
            if not c.locked
        }
        self.weights.set_predictive_power(correlations)
        applied = self.mode == LearningMode.ACTIVE
        if applied:
            after = self.weights.apply_deltas(deltas)
        else:
            after = self.weights.propose(deltas)
            self.weights.persist()

        self.batch_number += 1
        result = LearningBatchResult(
            batch_number=self.batch_number,
            mode=self.mode.value,
            trade_count=len(batch),
            applied=applied,
            correlations=correlations,
            weights_before=before,
            weights_after=after,
        )
        self.last_result = result
        if trades is None:
            self.pending.clear()
        logger.info(
            "LEARNING_BATCH n=%s mode=%s trades=%s applied=%s weights=%s",
            self.batch_number,
            self.mode.value,
            len(batch),
            applied,
            {k: round(v, 2) for k, v in after.items()},
        )
        self._refresh_patterns()
        self._save_snapshot(result)
        return result

    def _skip(self, batch: list[Any], before: dict[str, float], reason: str) -> LearningBatchResult:
        logger.info("LEARNING_BATCH_SKIPPED reason=%s trades=%s mode=%s", reason, len(batch), self.mode.value)
        result = LearningBatchResult(
            batch_number=self.batch_number,
            mode=self.mode.value,
            trade_count=len(batch),
            applied=False,
            skipped_reason=reason,
            weights_before=before,
            weights_after=before,
        )
        self.last_result = result
        return result

    def _refresh_patterns(self) -> None:
        s = self.settings
        self.win_patterns, self.danger_patterns = mine_patterns(
            self.history,
            min_occurrences=s.pattern_min_occurrences,
            win_rate_floor=s.win_pattern_min_win_rate,
            danger_win_rate_ceiling=s.danger_pattern_max_win_rate,
        )
        if self.store is None:
            return
        try:
            self.store.replace_patterns("win", [p.to_dict() for p in self.win_patterns])
            self.store.replace_patterns("danger", [p.to_dict() for p in self.danger_patterns])
        except Exception:
            logger.exception("PATTERN_PERSIST_FAILED")

    def _save_snapshot(self, result: LearningBatchResult) -> None:
        if self.store is None:
            return
        try:
            self.store.save_learning_snapshot(result.to_dict())
        except Exception:
            logger.exception("LEARNING_SNAPSHOT_PERSIST_FAILED batch=%s", result.batch_number)

    def parameters(self) -> dict[str, Any]:
        s = self.settings
        return {
            "mode": self.mode.value,
            "batch_size": s.batch_size,
            "min_trades": s.min_trades,
            "max_step": s.max_step,
            "drift_cap_percent": s.drift_cap_percent,
            "min_weight": s.min_weight,
            "max_weight": s.max_weight,
            "pending_trades": len(self.pending),
            "batch_number": self.batch_number,
            "last_batch": self.last_result.to_dict() if self.last_result else None,
        }

    def patterns(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "win": [p.to_dict() for p in self.win_patterns],
            "danger": [p.to_dict() for p in self.danger_patterns],
        }
