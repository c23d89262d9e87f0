"""Category weights used by the conviction score, with locks and a drift cap."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from config import LearningSettings
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

CATEGORIES = ("smart_wallet", "token_safety", "market_conditions", "social_signals", "entry_quality")
WEIGHT_TOTAL = 100.0
_EPS = 1e-9


@dataclass
class WeightCategory:
    name: str
    weight: float
    default: float
    locked: bool = False
    predictive_power: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "weight": round(self.weight, 4),
            "default": self.default,
            "locked": self.locked,
            "predictive_power": round(self.predictive_power, 4),
        }


class LearningWeights:
    def __init__(
        self,
        defaults: Iterable[tuple[str, float]],
        settings: LearningSettings,
        store: Any | None = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._categories: dict[str, WeightCategory] = {}
        for name, weight in defaults:
            self._categories[str(name)] = WeightCategory(name=str(name), weight=float(weight), default=float(weight))
        missing = [c for c in CATEGORIES if c not in self._categories]
        if missing:
            raise ValueError(f"missing default weights: {missing}")

    def load(self) -> bool:
        """Restore persisted weights; keep defaults when the stored set is incomplete."""
        if self._store is None:
            return False
        rows = {str(r["name"]): r for r in self._store.load_weights()}
        if set(rows) != set(self._categories):
            return False
        total = sum(float(r["weight"]) for r in rows.values())
        if abs(total - WEIGHT_TOTAL) > 1e-6:
            logger.warning("WEIGHTS_LOAD_SKIPPED total=%.6f", total)
            return False
        for name, row in rows.items():
            cat = self._categories[name]
            lo, hi = self.bounds(name)
            cat.weight = min(hi, max(lo, float(row["weight"])))
            cat.locked = bool(row.get("locked", False))
            cat.predictive_power = float(row.get("predictive_power", 0.0) or 0.0)
        self._normalize({n: c.weight for n, c in self._categories.items() if not c.locked})
        return True

    def persist(self) -> None:
        if self._store is not None:
            self._store.save_weights([c.to_dict() | {"weight": c.weight} for c in self._categories.values()])

    def _require(self, name: str) -> WeightCategory:
        cat = self._categories.get(name)
        if cat is None:
            raise NotFoundError(f"unknown weight category: {name}", code="LEARNING_UNKNOWN_CATEGORY")
        return cat

    def bounds(self, name: str) -> tuple[float, float]:
        cat = self._require(name)
        cap = self.settings.drift_cap_percent / 100.0
        lo = max(self.settings.min_weight, cat.default * (1.0 - cap))
        hi = min(self.settings.max_weight, cat.default * (1.0 + cap))
        # A default outside the global band still has to be reachable.
        return min(lo, cat.default), max(hi, cat.default)

    def as_map(self) -> dict[str, float]:
        return {name: cat.weight for name, cat in self._categories.items()}

    def categories(self) -> list[WeightCategory]:
        return list(self._categories.values())

    def to_list(self) -> list[dict[str, Any]]:
        rows = []
        for cat in self._categories.values():
            lo, hi = self.bounds(cat.name)
            rows.append(cat.to_dict() | {"min": round(lo, 4), "max": round(hi, 4)})
        return rows

    def lock(self, name: str) -> WeightCategory:
        cat = self._require(name)
        cat.locked = True
        self.persist()
        logger.info("WEIGHT_LOCK category=%s weight=%.4f", name, cat.weight)
        return cat

    def unlock(self, name: str) -> WeightCategory:
        cat = self._require(name)
        cat.locked = False
        self.persist()
        logger.info("WEIGHT_UNLOCK category=%s", name)
        return cat

    def reset(self) -> dict[str, float]:
        """Restore every weight to its default and clear all locks."""
        for cat in self._categories.values():
            cat.weight = cat.default
            cat.locked = False
        self.persist()
        logger.info("WEIGHT_RESET weights=%s", self.as_map())
        return self.as_map()

    def set_predictive_power(self, values: dict[str, float]) -> None:
        for name, value in values.items():
            if name in self._categories:
                self._categories[name].predictive_power = float(value)

    def propose(self, deltas: dict[str, float]) -> dict[str, float]:
        """Weights that `apply_deltas` would produce, without mutating state."""
        targets = {
            name: cat.weight + float(deltas.get(name, 0.0))
            for name, cat in self._categories.items()
            if not cat.locked
        }
        return self._solve(targets)

    def apply_deltas(self, deltas: dict[str, float]) -> dict[str, float]:
        result = self.propose(deltas)
        for name, weight in result.items():
            self._categories[name].weight = weight
        self.persist()
        return self.as_map()

    def _normalize(self, targets: dict[str, float]) -> None:
        for name, weight in self._solve(targets).items():
            self._categories[name].weight = weight

    def _solve(self, targets: dict[str, float]) -> dict[str, float]:
        """Shift unlocked targets by one common offset so the full vector sums to 100.

        Each unlocked weight stays inside its bounds; locked weights are untouched.
        """
        result = self.as_map()
        if not targets:
            return result
        locked_total = sum(c.weight for c in self._categories.values() if c.locked)
        goal = WEIGHT_TOTAL - locked_total
        bounds = {name: self.bounds(name) for name in targets}

        def placed(offset: float) -> dict[str, float]:
            return {n: min(bounds[n][1], max(bounds[n][0], t + offset)) for n, t in targets.items()}

        lo_off, hi_off = -WEIGHT_TOTAL * 2, WEIGHT_TOTAL * 2
        for _ in range(200):
            mid = (lo_off + hi_off) / 2.0
            if sum(placed(mid).values()) < goal:
                lo_off = mid
            else:
                hi_off = mid
        solved = placed(hi_off)

        residual = goal - sum(solved.values())
        for name in sorted(solved, key=lambda n: solved[n], reverse=True):
            if abs(residual) <= _EPS:
                break
            lo, hi = bounds[name]
            room = (hi - solved[name]) if residual > 0 else (solved[name] - lo)
            step = min(abs(residual), max(0.0, room))
            solved[name] += step if residual > 0 else -step
            residual += -step if residual > 0 else step

        result.update(solved)
        return result
