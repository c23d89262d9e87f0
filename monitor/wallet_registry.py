"""Registry of tracked smart wallets and the signal summary built from their buys."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from utils.addressing import require_address
from utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TIERS = (1, 2, 3)


@dataclass
class SmartWallet:
    address: str
    tier: int = 2
    label: str = ""
    score: float = 50.0
    active: bool = True
    added_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "tier": self.tier,
            "label": self.label,
            "score": self.score,
            "active": self.active,
        }


@dataclass(frozen=True)
class WalletBuy:
    """One observed buy of a candidate token by a wallet."""

    wallet: str
    minutes_ago: float = 0.0


@dataclass
class SmartWalletSignal:
    count: int = 0
    tier1: int = 0
    tier2: int = 0
    tier3: int = 0
    avg_score: float = 0.0
    minutes_since_last_buy: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "tier1": self.tier1,
            "tier2": self.tier2,
            "tier3": self.tier3,
            "avg_score": round(self.avg_score, 2),
            "minutes_since_last_buy": self.minutes_since_last_buy,
        }


def _check_tier(tier: Any) -> int:
    try:
        value = int(tier)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid wallet tier: {tier!r}") from None
    if value not in TIERS:
        raise ValidationError(f"wallet tier must be one of {TIERS}")
    return value


class WalletRegistry:
    def __init__(self, store: Any | None = None) -> None:
        self._store = store
        self._wallets: dict[str, SmartWallet] = {}

    def load(self) -> int:
        if self._store is None:
            return 0
        for row in self._store.load_wallets():
            wallet = SmartWallet(
                address=str(row["address"]).lower(),
                tier=int(row.get("tier", 2)),
                label=str(row.get("label") or ""),
                score=float(row.get("score", 50.0)),
                active=bool(row.get("active", True)),
            )
            self._wallets[wallet.address] = wallet
        return len(self._wallets)

    def _persist(self, wallet: SmartWallet) -> None:
        if self._store is not None:
            self._store.save_wallet(wallet.to_dict())

    def add(self, address: str, *, tier: int = 2, label: str = "", score: float = 50.0) -> SmartWallet:
        key = require_address(address, field="wallet address")
        if key in self._wallets:
            raise ValidationError(f"wallet already tracked: {key}", code="VALIDATION_DUPLICATE_WALLET")
        score = float(score)
        if not 0.0 <= score <= 100.0:
            raise ValidationError("wallet score must be within 0..100")
        wallet = SmartWallet(address=key, tier=_check_tier(tier), label=str(label or ""), score=score)
        self._wallets[key] = wallet
        self._persist(wallet)
        logger.info("WALLET_ADD address=%s tier=%s label=%s", key, wallet.tier, wallet.label)
        return wallet

    def remove(self, address: str) -> SmartWallet:
        key = require_address(address, field="wallet address")
        wallet = self._wallets.pop(key, None)
        if wallet is None:
            raise NotFoundError(f"wallet not tracked: {key}", code="WALLET_NOT_FOUND")
        if self._store is not None:
            self._store.remove_wallet(key)
        logger.info("WALLET_REMOVE address=%s", key)
        return wallet

    def update(self, address: str, *, tier: int | None = None, active: bool | None = None, score: float | None = None) -> SmartWallet:
        key = require_address(address, field="wallet address")
        wallet = self._wallets.get(key)
        if wallet is None:
            raise NotFoundError(f"wallet not tracked: {key}", code="WALLET_NOT_FOUND")
        if tier is not None:
            wallet.tier = _check_tier(tier)
        if active is not None:
            wallet.active = bool(active)
        if score is not None:
            wallet.score = max(0.0, min(100.0, float(score)))
        self._persist(wallet)
        logger.info("WALLET_UPDATE address=%s tier=%s active=%s", key, wallet.tier, wallet.active)
        return wallet

    def get(self, address: str) -> SmartWallet | None:
        return self._wallets.get(str(address or "").strip().lower())

    def wallets(self) -> list[SmartWallet]:
        return sorted(self._wallets.values(), key=lambda w: (w.tier, w.address))

    def summarize(self, buys: Iterable[WalletBuy]) -> SmartWalletSignal:
        """Count distinct active tracked wallets among `buys`."""
        seen: dict[str, float] = {}
        for buy in buys:
            wallet = self.get(buy.wallet)
            if wallet is None or not wallet.active:
                continue
            minutes = max(0.0, float(buy.minutes_ago))
            seen[wallet.address] = min(minutes, seen.get(wallet.address, minutes))
        signal = SmartWalletSignal(count=len(seen))
        if not seen:
            return signal
        scores = []
        for address in seen:
            wallet = self._wallets[address]
            scores.append(wallet.score)
            if wallet.tier == 1:
                signal.tier1 += 1
            elif wallet.tier == 2:
                signal.tier2 += 1
            else:
                signal.tier3 += 1
        signal.avg_score = sum(scores) / len(scores)
        signal.minutes_since_last_buy = min(seen.values())
        return signal
