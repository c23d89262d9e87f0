"""Bot lifecycle and the opportunity pipeline: discover -> safety -> admit -> enter."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable

import config
from learning.patterns import entry_features
from monitor.wallet_registry import WalletBuy
from trading.context import BotContext
from trading.entry_decision import EntryDecision
from trading.opportunities import OpportunityStatus, TokenOpportunity
from utils.errors import ControlError, ExecutionError, RpcError, ValidationError
from utils.log_contracts import append_event, entry_decision_event

logger = logging.getLogger(__name__)

OPPORTUNITY_POLL_SECONDS = 5.0
STALE_TICK_FACTOR = 3.0


def component_health(*, running: bool, last_tick_at: float, interval: float, now: float) -> str:
    """`offline` when the loop is gone, `degraded` when it stopped ticking on schedule."""
    if not running:
        return "offline"
    if last_tick_at <= 0:
        return "starting"
    if now - last_tick_at > STALE_TICK_FACTOR * max(1.0, float(interval)):
        return "degraded"
    return "ok"


def _wallet_buys(raw: list[Any]) -> list[WalletBuy]:
    buys: list[WalletBuy] = []
    for row in raw or []:
        if isinstance(row, WalletBuy):
            buys.append(row)
            continue
        if not isinstance(row, dict):
            raise ValidationError("wallet_buys entries must be objects", code="VALIDATION_INVALID_WALLET_BUY")
        wallet = str(row.get("wallet") or row.get("address") or "").strip().lower()
        if not wallet:
            raise ValidationError("wallet_buys entry missing wallet", code="VALIDATION_INVALID_WALLET_BUY")
        try:
            minutes_ago = float(row.get("minutes_ago", 0.0) or 0.0)
        except (TypeError, ValueError):
            raise ValidationError("wallet_buys minutes_ago must be numeric", code="VALIDATION_INVALID_NUMBER") from None
        buys.append(WalletBuy(wallet=wallet, minutes_ago=max(0.0, minutes_ago)))
    return buys


class TradingController:
    def __init__(
        self,
        ctx: BotContext,
        *,
        decisions_log: str | None = None,
        run_tag: str | None = None,
        queue_max: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ctx = ctx
        self.decisions_log = config.TRADE_DECISIONS_LOG_FILE if decisions_log is None else decisions_log
        self.run_tag = config.RUN_TAG if run_tag is None else run_tag
        self._clock = clock
        self._queue: asyncio.Queue[TokenOpportunity] = asyncio.Queue(maxsize=max(1, int(queue_max)))
        self._task: asyncio.Task | None = None
        self.last_tick_at: float = 0.0

    # Lifecycle

    @property
    def running(self) -> bool:
        return self.ctx.state.running

    async def start(self) -> dict[str, Any]:
        ctx = self.ctx
        if ctx.state.running:
            raise ControlError("bot is already running", code="BOT_ALREADY_RUNNING")
        ctx.regime.start()
        if ctx.rpc is not None:
            ctx.rpc.start()
        if ctx.execution is not None:
            ctx.execution.start()
        if ctx.positions is not None:
            ctx.positions.start()
        ctx.paper.start()
        ctx.risk.start()
        self._task = asyncio.create_task(self._run(), name="opportunity-processor")
        ctx.state.running = True
        ctx.state.started_at = self._clock()
        ctx.state.stopped_at = None
        if not ctx.state.paused and not ctx.kill_switch.active:
            ctx.entries.enable_entries()
        logger.info(
            "BOT_STARTED mode=%s paused=%s regime=%s",
            "live" if ctx.live else "paper",
            ctx.state.paused,
            ctx.regime.get_regime().value,
        )
        return ctx.state.to_dict()

    async def stop(self) -> dict[str, Any]:
        ctx = self.ctx
        if not ctx.state.running:
            raise ControlError("bot is not running", code="BOT_NOT_RUNNING")
        ctx.entries.disable_entries("stopped")
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await ctx.risk.stop()
        await ctx.paper.stop()
        if ctx.positions is not None:
            await ctx.positions.stop()
        if ctx.execution is not None:
            await ctx.execution.stop()
        if ctx.rpc is not None:
            await ctx.rpc.stop()
        await ctx.regime.stop()
        ctx.state.running = False
        ctx.state.stopped_at = self._clock()
        logger.info("BOT_STOPPED open_positions=%s", sum(b.open_count() for b in ctx.books()))
        return ctx.state.to_dict()

    def pause(self, reason: str = "operator") -> dict[str, Any]:
        """Stop new entries; open positions keep being managed."""
        ctx = self.ctx
        if ctx.state.paused:
            raise ControlError("bot is already paused", code="BOT_ALREADY_PAUSED")
        ctx.state.paused = True
        ctx.state.pause_reason = str(reason or "operator")
        ctx.entries.disable_entries(f"paused: {ctx.state.pause_reason}")
        return ctx.state.to_dict()

    def resume(self) -> dict[str, Any]:
        ctx = self.ctx
        if ctx.kill_switch.active:
            raise ControlError("kill switch is active; reset it before resuming", code="KILL_SWITCH_ACTIVE")
        if not ctx.state.paused and ctx.entries.entries_enabled:
            raise ControlError("bot is not paused", code="BOT_NOT_PAUSED")
        ctx.state.paused = False
        ctx.state.pause_reason = ""
        if ctx.state.running:
            ctx.entries.enable_entries()
        return ctx.state.to_dict()

    async def kill(self, reason: str, *, actor: str = "operator") -> dict[str, Any]:
        self.ctx.state.paused = True
        self.ctx.state.pause_reason = f"kill switch: {reason}"
        return await self.ctx.kill_switch.activate(reason, actor=actor)

    def reset_kill_switch(self, *, actor: str = "operator") -> dict[str, Any]:
        """Re-arm the switch and un-halt the books. Entries stay off until resume."""
        ctx = self.ctx
        if not ctx.kill_switch.active:
            raise ControlError("kill switch is not active", code="KILL_SWITCH_INACTIVE")
        ctx.kill_switch.reset(actor=actor)
        for book in ctx.books():
            book.resume()
        return ctx.kill_switch.status()

    # Opportunities

    def submit_opportunity(self, payload: dict[str, Any]) -> TokenOpportunity:
        opportunity = TokenOpportunity.from_payload(payload)
        opportunity.wallet_buys = _wallet_buys(opportunity.wallet_buys)
        try:
            self._queue.put_nowait(opportunity)
        except asyncio.QueueFull:
            raise ControlError("opportunity queue is full", code="OPPORTUNITY_QUEUE_FULL") from None
        self.ctx.opportunities.add(opportunity)
        logger.info(
            "OPPORTUNITY_QUEUED id=%s token=%s symbol=%s depth=%s",
            opportunity.opportunity_id,
            opportunity.token_address,
            opportunity.symbol,
            self._queue.qsize(),
        )
        return opportunity

    async def _assess(self, opportunity: TokenOpportunity) -> tuple[EntryDecision, int]:
        ctx = self.ctx
        opportunity.wallet_signal = ctx.wallets.summarize(_wallet_buys(opportunity.wallet_buys))
        opportunity.safety = await ctx.safety.score(opportunity.token_address)
        hour = datetime.now(timezone.utc).hour
        decision = ctx.entries.evaluate(opportunity, hour_utc=hour)
        opportunity.conviction = decision.conviction
        opportunity.breakdown = decision.breakdown.to_dict() if decision.breakdown else {}
        return decision, hour

    async def analyze(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Score a token on demand without queueing or executing anything."""
        opportunity = TokenOpportunity.from_payload(payload, manual=True)
        decision, _ = await self._assess(opportunity)
        logger.info(
            "MANUAL_ANALYSIS token=%s admitted=%s conviction=%.2f reason=%s",
            opportunity.token_address,
            decision.admitted,
            decision.conviction,
            decision.reason,
        )
        return {"opportunity": opportunity.to_dict(), "decision": decision.to_dict()}

    async def process(self, opportunity: TokenOpportunity) -> TokenOpportunity:
        ctx = self.ctx
        if opportunity.terminal:
            return opportunity
        decision, hour = await self._assess(opportunity)
        if opportunity.status != OpportunityStatus.ANALYZING:
            # Expired while the safety check was running.
            return opportunity
        book = ctx.primary_book.label
        if not decision.admitted:
            ctx.opportunities.resolve(
                opportunity, OpportunityStatus.REJECTED, reason=decision.reason, reason_code=decision.reason_code
            )
            self._log_decision(opportunity, decision, book=book)
            return opportunity

        ctx.opportunities.resolve(
            opportunity, OpportunityStatus.QUALIFIED, reason=decision.reason, reason_code=decision.reason_code
        )
        features = entry_features(
            opportunity, decision.regime, hour_utc=hour, peak_hours=ctx.settings.conviction.peak_hours_utc
        )
        # Kill or pause may have landed during the safety await.
        if not ctx.entries.entries_enabled:
            ctx.opportunities.resolve(
                opportunity,
                OpportunityStatus.REJECTED,
                reason="entries disabled",
                reason_code="ENTRY_DISABLED",
            )
            self._log_decision(opportunity, decision, book=book, status="reject")
            return opportunity

        position = None
        failure: tuple[str, str] = ("paper entry skipped", "ENTRY_PAPER_SKIPPED")
        if ctx.positions is None:
            position = await ctx.paper.mirror_entry(opportunity, decision, features=features)
        else:
            try:
                position = await ctx.positions.open(
                    token_address=opportunity.token_address,
                    size_usd=decision.size_usd,
                    expected_price_usd=opportunity.market.price_usd,
                    symbol=opportunity.symbol,
                    conviction=decision.conviction,
                    entry_tier=decision.tier,
                    category_scores=dict(decision.breakdown.scores) if decision.breakdown else {},
                    features=features,
                )
            except (ExecutionError, ControlError) as exc:
                logger.warning(
                    "ENTRY_EXECUTION_FAILED token=%s code=%s err=%s", opportunity.token_address, exc.code, exc.message
                )
                failure = ("execution failed", exc.code)
            else:
                if ctx.settings.paper_mirror:
                    await ctx.paper.mirror_entry(opportunity, decision, features=features)

        if position is None:
            ctx.opportunities.resolve(
                opportunity, OpportunityStatus.REJECTED, reason=failure[0], reason_code=failure[1]
            )
            self._log_decision(opportunity, decision, book=book, status="reject")
            return opportunity

        opportunity.position_id = position.position_id
        opportunity.size_usd = position.entry_usd
        ctx.opportunities.resolve(opportunity, OpportunityStatus.ENTERED, reason="entered", reason_code="ENTRY_FILLED")
        self._log_decision(opportunity, decision, book=book, status="enter")
        logger.info(
            "ENTRY_FILLED book=%s token=%s position=%s size_usd=%.2f conviction=%.2f tier=%s regime=%s",
            book,
            opportunity.token_address,
            position.position_id,
            position.entry_usd,
            decision.conviction,
            decision.tier,
            decision.regime,
        )
        return opportunity

    def _log_decision(
        self, opportunity: TokenOpportunity, decision: EntryDecision, *, book: str, status: str = ""
    ) -> None:
        if not self.decisions_log:
            return
        threshold = decision.threshold if math.isfinite(decision.threshold) else 100.0
        safety = opportunity.safety
        try:
            event = entry_decision_event(
                {
                    "book": book,
                    "stage": "entry",
                    "decision": status or ("enter" if decision.admitted else "reject"),
                    "opportunity_id": opportunity.opportunity_id,
                    "token_address": opportunity.token_address,
                    "symbol": opportunity.symbol,
                    "reason": opportunity.reason,
                    "reason_code": opportunity.reason_code,
                    "conviction": decision.conviction,
                    "threshold": threshold,
                    "tier": decision.tier,
                    "size_usd": opportunity.size_usd or decision.size_usd,
                    "regime": decision.regime,
                    "safety_score": getattr(safety, "score", None),
                    "scores": dict(decision.breakdown.scores) if decision.breakdown else {},
                },
                run_tag=self.run_tag,
            )
            append_event(self.decisions_log, event)
        except Exception:
            logger.exception("ENTRY_DECISION_LOG_FAILED id=%s", opportunity.opportunity_id)

    async def _tick(self) -> None:
        self.last_tick_at = self._clock()
        expired = self.ctx.opportunities.expire_stale(self._clock())
        for opp in expired:
            logger.info("OPPORTUNITY_EXPIRED id=%s token=%s", opp.opportunity_id, opp.token_address)
        try:
            opportunity = await asyncio.wait_for(self._queue.get(), timeout=OPPORTUNITY_POLL_SECONDS)
        except asyncio.TimeoutError:
            return
        try:
            await self.process(opportunity)
        finally:
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Opportunity loop error")
                await asyncio.sleep(1)

    # Status

    def health(self) -> dict[str, Any]:
        ctx = self.ctx
        now = self._clock()
        s = ctx.settings
        components = {
            "opportunities": component_health(
                running=self._task is not None and not self._task.done(),
                last_tick_at=self.last_tick_at,
                interval=OPPORTUNITY_POLL_SECONDS,
                now=now,
            ),
            "regime": component_health(
                running=ctx.regime.running, last_tick_at=ctx.regime.last_tick_at, interval=s.regime.poll_seconds, now=now
            ),
            "risk": component_health(
                running=ctx.risk.running, last_tick_at=ctx.risk.last_tick_at, interval=s.risk.eval_seconds, now=now
            ),
            "paper_positions": component_health(
                running=ctx.paper.positions.running,
                last_tick_at=ctx.paper.positions.last_tick_at,
                interval=s.position.tick_seconds,
                now=now,
            ),
        }
        if ctx.positions is not None:
            components["live_positions"] = component_health(
                running=ctx.positions.running,
                last_tick_at=ctx.positions.last_tick_at,
                interval=s.position.tick_seconds,
                now=now,
            )
        if ctx.execution is not None:
            components["execution"] = "ok" if ctx.execution.running else "offline"
        if ctx.rpc is not None:
            rpc_state = component_health(
                running=ctx.rpc.running, last_tick_at=ctx.rpc.last_tick_at, interval=s.rpc.health_check_seconds, now=now
            )
            if rpc_state == "ok" and not any(n.healthy for n in ctx.rpc.nodes):
                rpc_state = "degraded"
            components["rpc"] = rpc_state
        if not ctx.state.running:
            overall = "offline"
        elif any(v in ("offline", "degraded") for v in components.values()):
            overall = "degraded"
        else:
            overall = "ok"
        return {"overall": overall, "components": components}

    def status(self) -> dict[str, Any]:
        ctx = self.ctx
        return {
            "mode": "live" if ctx.live else "paper",
            "paper_mirror": bool(ctx.live and ctx.settings.paper_mirror),
            "state": ctx.state.to_dict(),
            "health": self.health(),
            "entries_enabled": ctx.entries.entries_enabled,
            "entries_disabled_reason": ctx.entries.disabled_reason,
            "regime": ctx.regime.state.to_dict(),
            "risk": ctx.risk.snapshot.to_dict(),
            "kill_switch": ctx.kill_switch.status(),
            "books": {book.label: book.stats() for book in ctx.books()},
            "opportunity_queue": self._queue.qsize(),
            "learning_mode": ctx.learning.mode.value,
        }

    async def wallet_status(self) -> dict[str, Any]:
        ctx = self.ctx
        out: dict[str, Any] = {
            "paper": {
                "balance_usd": round(ctx.paper.wallet.balance_usd, 4),
                "equity_usd": round(ctx.paper.equity_usd(), 4),
            }
        }
        if ctx.backend is not None:
            try:
                out["live"] = {"balance_usd": round(await ctx.backend.native_balance_usd(), 4)}
            except (RpcError, ExecutionError) as exc:
                logger.warning("WALLET_BALANCE_UNAVAILABLE code=%s err=%s", exc.code, exc.message)
                out["live"] = {"balance_usd": None, "error": exc.message, "code": exc.code}
        return out
