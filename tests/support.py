from __future__ import annotations

import asyncio
import dataclasses
import os
import tempfile
import uuid
from typing import Any

import config
from config import LearningSettings, ConvictionSettings, EntrySettings, RegimeSettings, RiskSettings, Settings
from learning.weights import LearningWeights
from market.regime_detector import RegimeDetector
from monitor.safety_provider import TokenSecurityReport
from trading.conviction import ConvictionScorer
from trading.entry_decision import EntryDecisionEngine
from trading.execution_manager import Intent
from trading.swap_executor import SwapFill
from utils.http_client import HttpResult

TOKEN_A = "0x" + "a1" * 20
TOKEN_B = "0x" + "b2" * 20
TOKEN_C = "0x" + "c3" * 20
DEPLOYER = "0x" + "d4" * 20
WALLETS = tuple("0x" + f"{i:02x}" * 20 for i in range(1, 6))


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


async def no_sleep(_seconds: float) -> None:
    return None


def clean_report(token: str = TOKEN_A, **overrides: Any) -> TokenSecurityReport:
    """A report that passes every safety check (score 100)."""
    fields: dict[str, Any] = {
        "honeypot": False,
        "can_sell": True,
        "sell_tax_percent": 1.0,
        "buy_tax_percent": 1.0,
        "mint_authority": False,
        "freeze_authority": False,
        "liquidity_locked": True,
        "top_holder_percent": 5.0,
        "top10_percent": 20.0,
        "deployer_address": DEPLOYER,
        "deployer_percent": 2.0,
        "verified": True,
        "sources": ("goplus",),
    }
    fields.update(overrides)
    return TokenSecurityReport(token_address=token, **fields)


class StubSecurityProvider:
    def __init__(self, report: TokenSecurityReport | None = None, *, error: Exception | None = None, delay: float = 0.0) -> None:
        self.report = report
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def fetch(self, token_address: str) -> TokenSecurityReport:
        self.calls.append(token_address)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.report is None:
            return clean_report(token_address)
        return dataclasses.replace(self.report, token_address=token_address)


class StubPriceFeed:
    def __init__(self, prices: dict[str, float] | None = None) -> None:
        self.prices = {k.lower(): float(v) for k, v in (prices or {}).items()}

    def set(self, token: str, price: float) -> None:
        self.prices[token.lower()] = float(price)

    async def get_price(self, token_address: str) -> float | None:
        return self.prices.get(str(token_address).lower())

    async def get_prices(self, tokens: list[str]) -> dict[str, float]:
        return {t: self.prices[t] for t in tokens if t in self.prices}


class FakeSwapBackend:
    """Scripted backend: each call pops the next outcome (an exception to raise, or None to fill)."""

    def __init__(self, outcomes: list[Exception | None] | None = None, *, price: float = 1.0) -> None:
        self.outcomes = list(outcomes or [])
        self.price = float(price)
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None

    def intents(self) -> list[Intent]:
        return [c["intent"] for c in self.calls]

    async def swap(self, request: Any, *, slippage_percent: float, priority_fee_gwei: float, timeout: float) -> SwapFill:
        self.calls.append(
            {
                "intent": request.intent,
                "amount": request.amount,
                "token": request.token_address,
                "slippage_percent": slippage_percent,
                "priority_fee_gwei": priority_fee_gwei,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        price = request.expected_price_usd or self.price
        if request.intent == Intent.BUY:
            return SwapFill(
                tx_hash="0x" + uuid.uuid4().hex,
                token_amount=request.amount / price,
                usd_amount=request.amount,
                price_usd=price,
                slippage_percent=0.5,
                endpoint="fake",
            )
        return SwapFill(
            tx_hash="0x" + uuid.uuid4().hex,
            token_amount=request.amount,
            usd_amount=request.amount * price,
            price_usd=price,
            slippage_percent=0.5,
            endpoint="fake",
        )


class RecordingAlerts:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    def notify(self, level: str, kind: str, message: str, **fields: Any) -> None:
        self.calls.append((level, kind, message))

    async def send(self, level: str, kind: str, message: str, **fields: Any) -> bool:
        self.calls.append((level, kind, message))
        return True

    def kinds(self) -> list[str]:
        return [c[1] for c in self.calls]


class OfflineHttp:
    """HTTP client double whose every request fails, so pollers never touch the network."""

    def __init__(self, responses: dict[tuple[str, str], Any] | None = None) -> None:
        self.responses = dict(responses or {})
        self.requests: list[tuple[str, dict[str, Any]]] = []

    def in_cooldown(self, source: str) -> bool:
        return False

    async def get_json(self, url: str, *, source: str = "default", params: dict[str, Any] | None = None, **_: Any) -> HttpResult:
        params = dict(params or {})
        self.requests.append((source, params))
        data = self.responses.get((source, str(params.get("symbol", ""))))
        if data is None:
            return HttpResult(ok=False, status=0, data=None, error="offline")
        return HttpResult(ok=True, status=200, data=data)

    async def close(self) -> None:
        return None


def memory_store():
    from database import db

    db.configure("sqlite://")
    db.init_db()
    return db


def full_regime(primary: float = 6.0, secondary: float = 1.0) -> RegimeDetector:
    detector = RegimeDetector(RegimeSettings(), OfflineHttp())
    detector.apply_changes(primary, secondary)
    return detector


def make_weights(store: Any | None = None, settings: LearningSettings | None = None) -> LearningWeights:
    return LearningWeights(ConvictionSettings().default_weights, settings or LearningSettings(), store)


def make_entry_engine(
    regime: RegimeDetector | None = None,
    *,
    risk: Any | None = None,
    positions: Any | None = None,
    portfolio_usd: float = 1000.0,
    entry_settings: EntrySettings | None = None,
) -> EntryDecisionEngine:
    conviction_settings = ConvictionSettings()
    scorer = ConvictionScorer(conviction_settings, make_weights())
    return EntryDecisionEngine(
        conviction_settings,
        entry_settings or EntrySettings(),
        regime or full_regime(),
        scorer,
        risk=risk,
        positions=positions,
        portfolio_usd=lambda: portfolio_usd,
    )


def opportunity_payload(token: str = TOKEN_A, **sections: Any) -> dict[str, Any]:
    """Discovery payload for a strong candidate: three tier-1 buyers, healthy dip, discovery phase."""
    payload: dict[str, Any] = {
        "token_address": token,
        "symbol": "MEME",
        "wallet_buys": [{"wallet": w, "minutes_ago": 5} for w in WALLETS[:3]],
        "market": {"price_usd": 1.0, "liquidity_usd": 50_000, "holders": 800, "volume_24h_usd": 250_000},
        "social": {
            "has_twitter": True,
            "has_telegram": True,
            "has_website": True,
            "twitter_followers": 20_000,
            "mention_velocity": 60,
        },
        "entry": {
            "dip_percent": 30,
            "ath_distance_percent": 60,
            "age_minutes": 60,
            "buy_sell_ratio": 2.5,
            "hype_phase": "DISCOVERY",
        },
    }
    for key, value in sections.items():
        if isinstance(value, dict) and isinstance(payload.get(key), dict):
            payload[key] = {**payload[key], **value}
        else:
            payload[key] = value
    return payload


class PaperContextMixin(ConfigPatchMixin):
    """Paper-mode context with network-facing collaborators replaced by stubs."""

    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp_dir = self._tmp.name
        self.decisions_log = os.path.join(self.tmp_dir, "decisions.jsonl")
        self.patch_cfg(
            PAPER_STATE_FILE=os.path.join(self.tmp_dir, "paper_wallet.json"),
            TRADE_DECISIONS_LOG_FILE=self.decisions_log,
            RUN_TAG="test",
        )

    def tearDown(self) -> None:
        super().tearDown()
        self._tmp.cleanup()

    def paper_settings(self, **overrides: Any) -> Settings:
        risk = dataclasses.replace(RiskSettings(), state_file=os.path.join(self.tmp_dir, "risk_state.json"))
        return dataclasses.replace(Settings(), risk=risk, **overrides)

    def build_paper_context(self, provider: Any | None = None, prices: dict[str, float] | None = None, settings: Settings | None = None):
        from monitor.safety_scorer import SafetyScorer
        from trading.context import build_context

        settings = settings or self.paper_settings()
        ctx = build_context(settings)
        feed = StubPriceFeed(prices or {TOKEN_A: 1.0})
        ctx.price_feed = feed
        ctx.paper.backend.price_feed = feed
        ctx.paper.positions.price_feed = feed
        ctx.regime._http = OfflineHttp()
        ctx.safety = SafetyScorer(settings.safety, provider or StubSecurityProvider(), ctx.blacklist)
        ctx.regime.apply_changes(6.0, 1.0)
        for address in WALLETS[:3]:
            ctx.wallets.add(address, tier=1, score=85)
        self.feed = feed
        return ctx
