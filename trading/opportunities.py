"""Candidate tokens under analysis and their one-directional status lifecycle."""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from monitor.wallet_registry import SmartWalletSignal
from utils.addressing import require_address
from utils.errors import ControlError, ValidationError

HYPE_PHASES = ("DISCOVERY", "EARLY_FOMO", "PEAK_FOMO", "DISTRIBUTION", "DUMP", "UNKNOWN")


class OpportunityStatus(str, Enum):
    """ANALYZING resolves to QUALIFIED, REJECTED or EXPIRED; QUALIFIED resolves to ENTERED.

    A QUALIFIED candidate whose entry fill fails ends REJECTED with the failure's reason code.
    """

    ANALYZING = "ANALYZING"
    QUALIFIED = "QUALIFIED"
    REJECTED = "REJECTED"
    ENTERED = "ENTERED"
    EXPIRED = "EXPIRED"


_TRANSITIONS: dict[OpportunityStatus, frozenset[OpportunityStatus]] = {
    OpportunityStatus.ANALYZING: frozenset(
        {OpportunityStatus.QUALIFIED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED}
    ),
    OpportunityStatus.QUALIFIED: frozenset(
        {OpportunityStatus.ENTERED, OpportunityStatus.REJECTED, OpportunityStatus.EXPIRED}
    ),
}


@dataclass
class MarketSnapshot:
    price_usd: float = 0.0
    liquidity_usd: float = 0.0
    holders: int = 0
    volume_24h_usd: float = 0.0
    change_1h_percent: float = 0.0
    change_24h_percent: float = 0.0


@dataclass
class SocialSnapshot:
    has_twitter: bool = False
    has_telegram: bool = False
    has_website: bool = False
    twitter_followers: int = 0
    mention_velocity: float = 0.0
    influencer_calls: int = 0
    is_coordinated: bool = False


@dataclass
class EntrySnapshot:
    dip_percent: float = 0.0
    ath_distance_percent: float = 0.0
    age_minutes: float = 0.0
    buy_sell_ratio: float = 1.0
    hype_phase: str = "UNKNOWN"


def _num(payload: dict[str, Any], key: str, default: float = 0.0) -> float:
    value = payload.get(key, default)
    if value is None or value == "":
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be numeric", code="VALIDATION_INVALID_NUMBER") from None


@dataclass
class TokenOpportunity:
    token_address: str
    symbol: str = ""
    wallet_buys: list = field(default_factory=list)
    wallet_signal: SmartWalletSignal = field(default_factory=SmartWalletSignal)
    market: MarketSnapshot = field(default_factory=MarketSnapshot)
    social: SocialSnapshot = field(default_factory=SocialSnapshot)
    entry: EntrySnapshot = field(default_factory=EntrySnapshot)
    safety: Any = None
    conviction: float = 0.0
    breakdown: dict[str, Any] = field(default_factory=dict)
    status: OpportunityStatus = OpportunityStatus.ANALYZING
    reason: str = ""
    reason_code: str = ""
    size_usd: float = 0.0
    position_id: str = ""
    manual: bool = False
    opportunity_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    created_at: float = field(default_factory=time.time)
    resolved_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status not in _TRANSITIONS

    def transition(
        self,
        status: OpportunityStatus,
        *,
        reason: str = "",
        reason_code: str = "",
        now: float | None = None,
    ) -> None:
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ControlError(
                f"opportunity {self.opportunity_id} cannot move {self.status.value} -> {status.value}",
                code="OPPORTUNITY_INVALID_TRANSITION",
            )
        self.status = status
        if reason:
            self.reason = reason
        if reason_code:
            self.reason_code = reason_code
        if status != OpportunityStatus.QUALIFIED:
            self.resolved_at = time.time() if now is None else float(now)

    def to_dict(self) -> dict[str, Any]:
        safety = self.safety.to_dict() if hasattr(self.safety, "to_dict") else (self.safety or {})
        return {
            "opportunity_id": self.opportunity_id,
            "token_address": self.token_address,
            "symbol": self.symbol,
            "status": self.status.value,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "conviction": round(self.conviction, 2),
            "breakdown": dict(self.breakdown),
            "smart_wallets": self.wallet_signal.to_dict(),
            "safety": safety,
            "market": asdict(self.market),
            "social": asdict(self.social),
            "entry": asdict(self.entry),
            "size_usd": round(self.size_usd, 4),
            "position_id": self.position_id,
            "manual": self.manual,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, manual: bool = False) -> "TokenOpportunity":
        """Build a candidate from a discovery or control payload, validating inputs."""
        if not isinstance(payload, dict):
            raise ValidationError("opportunity payload must be an object")
        token = require_address(payload.get("token_address") or payload.get("address"), field="token_address")
        market_raw = payload.get("market") or {}
        social_raw = payload.get("social") or {}
        entry_raw = payload.get("entry") or {}
        hype = str(entry_raw.get("hype_phase") or "UNKNOWN").strip().upper()
        if hype not in HYPE_PHASES:
            raise ValidationError(f"unknown hype phase: {hype}", code="VALIDATION_INVALID_HYPE_PHASE")
        buys = payload.get("wallet_buys") or []
        if not isinstance(buys, list):
            raise ValidationError("wallet_buys must be a list")
        return cls(
            token_address=token,
            symbol=str(payload.get("symbol") or "")[:32],
            wallet_buys=buys,
            market=MarketSnapshot(
                price_usd=_num(market_raw, "price_usd"),
                liquidity_usd=_num(market_raw, "liquidity_usd"),
                holders=int(_num(market_raw, "holders")),
                volume_24h_usd=_num(market_raw, "volume_24h_usd"),
                change_1h_percent=_num(market_raw, "change_1h_percent"),
                change_24h_percent=_num(market_raw, "change_24h_percent"),
            ),
            social=SocialSnapshot(
                has_twitter=bool(social_raw.get("has_twitter", False)),
                has_telegram=bool(social_raw.get("has_telegram", False)),
                has_website=bool(social_raw.get("has_website", False)),
                twitter_followers=int(_num(social_raw, "twitter_followers")),
                mention_velocity=_num(social_raw, "mention_velocity"),
                influencer_calls=int(_num(social_raw, "influencer_calls")),
                is_coordinated=bool(social_raw.get("is_coordinated", False)),
            ),
            entry=EntrySnapshot(
                dip_percent=_num(entry_raw, "dip_percent"),
                ath_distance_percent=_num(entry_raw, "ath_distance_percent"),
                age_minutes=_num(entry_raw, "age_minutes"),
                buy_sell_ratio=_num(entry_raw, "buy_sell_ratio", 1.0),
                hype_phase=hype,
            ),
            manual=manual,
        )


class OpportunityBook:
    """Bounded history of candidates keyed by id, newest last."""

    def __init__(self, *, window_seconds: int = 300, history_max: int = 500, store: Any | None = None) -> None:
        self.window_seconds = int(window_seconds)
        self.history_max = max(10, int(history_max))
        self._store = store
        self._items: "OrderedDict[str, TokenOpportunity]" = OrderedDict()
        self.counters: dict[str, int] = {s.value: 0 for s in OpportunityStatus}

    def add(self, opportunity: TokenOpportunity) -> TokenOpportunity:
        self._items[opportunity.opportunity_id] = opportunity
        self.counters[OpportunityStatus.ANALYZING.value] += 1
        while len(self._items) > self.history_max:
            self._items.popitem(last=False)
        return opportunity

    def get(self, opportunity_id: str) -> TokenOpportunity | None:
        return self._items.get(opportunity_id)

    def resolve(
        self,
        opportunity: TokenOpportunity,
        status: OpportunityStatus,
        *,
        reason: str = "",
        reason_code: str = "",
    ) -> TokenOpportunity:
        opportunity.transition(status, reason=reason, reason_code=reason_code)
        self.counters[status.value] += 1
        if self._store is not None and not opportunity.manual:
            self._store.save_opportunity(opportunity.to_dict())
        return opportunity

    def expire_stale(self, now: float | None = None) -> list[TokenOpportunity]:
        ts = time.time() if now is None else float(now)
        expired = []
        for opp in self._items.values():
            if opp.terminal or opp.status == OpportunityStatus.QUALIFIED:
                continue
            if ts - opp.created_at >= self.window_seconds:
                self.resolve(opp, OpportunityStatus.EXPIRED, reason="analysis window elapsed")
                expired.append(opp)
        return expired

    def recent(self, *, limit: int = 100, status: str | None = None) -> list[TokenOpportunity]:
        rows = [o for o in self._items.values() if status is None or o.status.value == status.upper()]
        return rows[-max(1, int(limit)):][::-1]

    def stats(self) -> dict[str, Any]:
        current: dict[str, int] = {s.value: 0 for s in OpportunityStatus}
        reasons: dict[str, int] = {}
        for opp in self._items.values():
            current[opp.status.value] += 1
            if opp.status == OpportunityStatus.REJECTED and opp.reason_code:
                reasons[opp.reason_code] = reasons.get(opp.reason_code, 0) + 1
        analyzed = self.counters[OpportunityStatus.ANALYZING.value]
        entered = self.counters[OpportunityStatus.ENTERED.value]
        return {
            "tracked": len(self._items),
            "current": current,
            "totals": dict(self.counters),
            "entry_rate": round(entered / analyzed, 4) if analyzed else 0.0,
            "top_rejections": dict(sorted(reasons.items(), key=lambda kv: kv[1], reverse=True)[:10]),
        }
