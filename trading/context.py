"""Object graph for one bot process: every component built once and wired together."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import config
from config import Settings
from learning.scheduler import LearningScheduler
from learning.weights import LearningWeights
from market.price_feed import DexScreenerPriceFeed
from market.regime_detector import RegimeDetector
from monitor.alerter import AlertManager
from monitor.blacklist import BlacklistManager
from monitor.safety_provider import TokenSecurityProvider
from monitor.safety_scorer import SafetyScorer
from monitor.wallet_registry import WalletRegistry
from trading.conviction import ConvictionScorer
from trading.entry_decision import EntryDecisionEngine
from trading.execution_manager import ExecutionManager
from trading.kill_switch import KillSwitch
from trading.opportunities import OpportunityBook
from trading.paper_trading import PaperTradingSimulator
from trading.position_manager import PositionManager
from trading.risk_governor import RiskGovernor
from trading.rpc_gateway import RpcGateway
from trading.swap_executor import Web3SwapBackend
from utils.audit_log import AuditLog
from utils.http_client import ResilientHttpClient
from utils.state_file import JsonStateFile

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    running: bool = False
    paused: bool = False
    pause_reason: str = ""
    started_at: float | None = None
    stopped_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "uptime_seconds": round(time.time() - self.started_at, 1) if self.running and self.started_at else 0.0,
        }


@dataclass
class BotContext:
    settings: Settings
    store: Any
    audit: AuditLog
    alerts: AlertManager
    http: ResilientHttpClient
    price_feed: DexScreenerPriceFeed
    regime: RegimeDetector
    blacklist: BlacklistManager
    wallets: WalletRegistry
    safety_provider: TokenSecurityProvider
    safety: SafetyScorer
    weights: LearningWeights
    conviction: ConvictionScorer
    opportunities: OpportunityBook
    entries: EntryDecisionEngine
    paper: PaperTradingSimulator
    risk: RiskGovernor
    kill_switch: KillSwitch
    learning: LearningScheduler
    rpc: RpcGateway | None = None
    backend: Web3SwapBackend | None = None
    execution: ExecutionManager | None = None
    positions: PositionManager | None = None
    state: RunState = field(default_factory=RunState)

    @property
    def live(self) -> bool:
        return self.positions is not None

    @property
    def primary_book(self) -> PositionManager:
        """The book admitted entries go to and risk is measured against."""
        return self.positions if self.positions is not None else self.paper.positions

    def books(self) -> list[PositionManager]:
        out = [self.positions] if self.positions is not None else []
        out.append(self.paper.positions)
        return out

    def apply_settings(self, settings: Settings) -> None:
        """Swap in a validated settings object and push each section to its owners."""
        self.settings = settings
        self.regime.settings = settings.regime
        self.safety.settings = settings.safety
        self.conviction.settings = settings.conviction
        self.entries.conviction_settings = settings.conviction
        self.entries.settings = settings.entry
        self.opportunities.window_seconds = settings.entry.analysis_window_seconds
        for book in self.books():
            book.settings = settings.position
        for manager in (self.execution, self.paper.execution):
            if manager is not None:
                manager.settings = settings.execution
        if self.rpc is not None:
            self.rpc.settings = settings.rpc
        self.risk.settings = settings.risk
        self.learning.settings = settings.learning
        self.weights.settings = settings.learning
        self.alerts.settings = settings.alerts

    async def close(self) -> None:
        # Feed, provider and regime detector share this client.
        await self.http.close()


def _live_configured() -> bool:
    return bool(config.LIVE_WALLET_ADDRESS and config.LIVE_PRIVATE_KEY and config.LIVE_ROUTER_ADDRESS)


def build_context(
    settings: Settings,
    *,
    store: Any | None = None,
    bot: Any | None = None,
    rpc_client_factory: Any | None = None,
) -> BotContext:
    """Construct the component graph. Live execution is wired only outside paper mode."""
    alerts = AlertManager(settings.alerts, bot=bot)
    audit = AuditLog(store)
    http = ResilientHttpClient(timeout_seconds=settings.regime.fetch_timeout_seconds)

    price_feed = DexScreenerPriceFeed(http)
    regime = RegimeDetector(settings.regime, http, alerts=alerts)
    blacklist = BlacklistManager(store)
    blacklist.load()
    wallets = WalletRegistry(store)
    wallets.load()
    safety_provider = TokenSecurityProvider(http)
    safety = SafetyScorer(settings.safety, safety_provider, blacklist)

    weights = LearningWeights(settings.conviction.default_weights, settings.learning, store)
    weights.load()
    conviction = ConvictionScorer(settings.conviction, weights)
    opportunities = OpportunityBook(
        window_seconds=settings.entry.analysis_window_seconds,
        history_max=settings.entry.history_max,
        store=store,
    )

    paper = PaperTradingSimulator(
        settings,
        price_feed=price_feed,
        store=store,
        alerts=alerts,
        state_file=JsonStateFile(config.PAPER_STATE_FILE),
        decisions_log=config.TRADE_DECISIONS_LOG_FILE,
        run_tag=config.RUN_TAG,
    )
    paper.load()

    rpc = backend = execution = positions = None
    if not settings.paper_mode:
        if not _live_configured():
            raise config.ConfigError("live mode requires LIVE_WALLET_ADDRESS, LIVE_PRIVATE_KEY and LIVE_ROUTER_ADDRESS")
        gateway_kwargs: dict[str, Any] = {"alerts": alerts}
        if rpc_client_factory is not None:
            gateway_kwargs["client_factory"] = rpc_client_factory
        rpc = RpcGateway(settings.rpc, **gateway_kwargs)
        backend = Web3SwapBackend(rpc, native_price_usd=regime.native_price_usd)
        execution = ExecutionManager(
            settings.execution,
            backend,
            gateway=rpc,
            audit=audit,
            label="live",
            timeout_seconds=settings.rpc.timeout_seconds,
            emergency_timeout_seconds=settings.rpc.emergency_timeout_seconds,
        )
        positions = PositionManager(
            settings.position,
            execution,
            price_feed=price_feed,
            store=store,
            alerts=alerts,
            label="live",
            native_price_usd=regime.native_price_usd,
            decisions_log=config.TRADE_DECISIONS_LOG_FILE,
            run_tag=config.RUN_TAG,
        )
        positions.load()

    primary = positions if positions is not None else paper.positions
    risk = RiskGovernor(
        settings.risk,
        books=[primary],
        alerts=alerts,
        state_file=JsonStateFile(settings.risk.state_file),
    )

    if positions is not None:
        portfolio_usd = lambda: risk.settings.portfolio_base_usd  # noqa: E731
    else:
        portfolio_usd = paper.equity_usd
    entries = EntryDecisionEngine(
        settings.conviction,
        settings.entry,
        regime,
        conviction,
        risk=risk,
        positions=primary,
        portfolio_usd=portfolio_usd,
    )

    books = ([positions] if positions is not None else []) + [paper.positions]
    kill_switch = KillSwitch(entries=entries, books=books, alerts=alerts)
    risk.kill_switch = kill_switch

    learning = LearningScheduler(settings.learning, weights, store=store)
    primary.add_trade_listener(risk.record_trade)
    primary.add_trade_listener(learning.on_trade_closed)

    logger.info(
        "CONTEXT_READY mode=%s mirror=%s rpc_nodes=%s weights=%s",
        "live" if positions is not None else "paper",
        bool(settings.paper_mirror and positions is not None),
        len(rpc.nodes) if rpc is not None else 0,
        weights.as_map(),
    )
    return BotContext(
        settings=settings,
        store=store,
        audit=audit,
        alerts=alerts,
        http=http,
        price_feed=price_feed,
        regime=regime,
        blacklist=blacklist,
        wallets=wallets,
        safety_provider=safety_provider,
        safety=safety,
        weights=weights,
        conviction=conviction,
        opportunities=opportunities,
        entries=entries,
        paper=paper,
        risk=risk,
        kill_switch=kill_switch,
        learning=learning,
        rpc=rpc,
        backend=backend,
        execution=execution,
        positions=positions,
    )
