"""Open-position supervision: stops, trailing, time stop, take-profit tiers, exits."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from config import PositionSettings
from trading.execution_manager import ExecutionRequest, ExecutionResult, Intent
from utils.errors import ControlError, ExecutionError, NotFoundError
from utils.log_contracts import append_event, exit_decision_event

logger = logging.getLogger(__name__)


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TIME_STOP = "TIME_STOP"
    MANUAL = "MANUAL"
    EMERGENCY = "EMERGENCY"


class TradeOutcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"
    EMERGENCY = "EMERGENCY"


@dataclass
class Position:
    token_address: str
    entry_price: float
    entry_amount: float
    entry_usd: float
    symbol: str = ""
    book: str = "live"
    entry_time: float = field(default_factory=time.time)
    conviction: float = 0.0
    entry_tier: str = ""
    category_scores: dict[str, float] = field(default_factory=dict)
    features: dict[str, str] = field(default_factory=dict)
    remaining_amount: float = -1.0
    current_price: float = 0.0
    ath_price: float = 0.0
    stop_price: float = 0.0
    stop_kind: str = "fixed"
    trailing_percent: float = 0.0
    tp_hits: list[bool] = field(default_factory=lambda: [False, False, False, False])
    status: PositionStatus = PositionStatus.OPEN
    sold_amount: float = 0.0
    proceeds_usd: float = 0.0
    fees_usd: float = 0.0
    exit_failures: int = 0
    queued: bool = False
    last_exit_reason: str = ""
    # Set once an emergency exit is requested; a halted book keeps retrying it.
    emergency_reason: str = ""
    # [timestamp, pnl_usd] per filled exit, so partial take-profits land on the day they filled.
    realizations: list = field(default_factory=list)
    closed_at: float | None = None
    position_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    def __post_init__(self) -> None:
        self.status = PositionStatus(self.status)
        if self.remaining_amount < 0:
            self.remaining_amount = float(self.entry_amount)
        if self.current_price <= 0:
            self.current_price = float(self.entry_price)
        if self.ath_price <= 0:
            self.ath_price = float(self.entry_price)
        self.tp_hits = list(self.tp_hits) + [False] * (4 - len(self.tp_hits))

    @property
    def gain_percent(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.current_price / self.entry_price - 1.0) * 100.0

    @property
    def ath_gain_percent(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.ath_price / self.entry_price - 1.0) * 100.0

    @property
    def remaining_cost_usd(self) -> float:
        if self.entry_amount <= 0:
            return 0.0
        return self.entry_usd * self.remaining_amount / self.entry_amount

    @property
    def realized_usd(self) -> float:
        sold_cost = self.entry_usd * self.sold_amount / self.entry_amount if self.entry_amount > 0 else 0.0
        return self.proceeds_usd - sold_cost

    @property
    def unrealized_usd(self) -> float:
        return self.current_price * self.remaining_amount - self.remaining_cost_usd

    def reduce(self, amount: float, *, dust: float = 0.0) -> float:
        """Remove up to `amount` tokens; returns what was actually removed."""
        taken = max(0.0, min(float(amount), self.remaining_amount))
        self.remaining_amount -= taken
        self.sold_amount += taken
        if 0 < self.remaining_amount <= dust:
            self.sold_amount += self.remaining_amount
            self.remaining_amount = 0.0
        return taken

    def realized_since(self, since_ts: float) -> float:
        return sum(float(pnl) for ts, pnl in self.realizations if float(ts) >= since_ts)

    def mark_tp(self, index: int) -> None:
        self.tp_hits[index] = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["gain_percent"] = round(self.gain_percent, 4)
        data["realized_usd"] = round(self.realized_usd, 6)
        data["unrealized_usd"] = round(self.unrealized_usd, 6)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Trade:
    trade_id: str
    position_id: str
    book: str
    token_address: str
    symbol: str
    entry_price: float
    exit_price: float
    amount: float
    entry_time: float
    exit_time: float
    exit_reason: ExitReason
    outcome: TradeOutcome
    pnl_usd: float
    pnl_native: float
    pnl_percent: float
    conviction: float
    category_scores: dict[str, float] = field(default_factory=dict)
    features: dict[str, str] = field(default_factory=dict)
    realizations: tuple = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["exit_reason"] = self.exit_reason.value
        data["outcome"] = self.outcome.value
        return data


@dataclass(frozen=True)
class ExitAction:
    reason: ExitReason
    # Percent of the remaining amount to sell; 100 closes the position.
    percent: float = 100.0
    tp_index: int | None = None
    detail: str = ""

    @property
    def full(self) -> bool:
        return self.percent >= 100.0


def trailing_distance(gain_percent: float, tiers: Iterable[tuple[float, float]]) -> float | None:
    distance = None
    for threshold, trail in sorted(tiers):
        if gain_percent >= float(threshold):
            distance = float(trail)
    return distance


def update_price(position: Position, price: float, settings: PositionSettings) -> None:
    """Record the tick price, the ATH and ratchet the stop. The stop never loosens."""
    position.current_price = float(price)
    if price > position.ath_price:
        position.ath_price = float(price)
    fixed = position.entry_price * (1.0 - settings.hard_stop_percent / 100.0)
    if position.stop_price <= 0:
        position.stop_price = fixed
    if position.ath_gain_percent >= settings.trailing_activation_percent:
        distance = trailing_distance(position.ath_gain_percent, settings.trailing_tiers)
        if distance is None:
            distance = float(sorted(settings.trailing_tiers)[0][1])
        candidate = position.ath_price * (1.0 - distance / 100.0)
        if candidate > position.stop_price:
            position.stop_price = candidate
            position.stop_kind = "trailing"
            position.trailing_percent = distance


def plan_exits(position: Position, settings: PositionSettings, now: float) -> list[ExitAction]:
    """Ordered exit actions for the current price; a full exit short-circuits the rest."""
    price = position.current_price
    hard_floor = position.entry_price * (1.0 - settings.hard_stop_percent / 100.0)
    if price <= hard_floor:
        return [ExitAction(ExitReason.STOP_LOSS, detail="hard_stop")]
    if position.stop_kind == "trailing" and price <= position.stop_price:
        return [ExitAction(ExitReason.STOP_LOSS, detail=f"trailing_stop_{position.trailing_percent:g}")]

    held_hours = (now - position.entry_time) / 3600.0
    if held_hours >= settings.time_stop_hours:
        gain = position.gain_percent
        flat = settings.time_stop_flat_min_percent <= gain <= settings.time_stop_flat_max_percent
        if not settings.time_stop_flat_only or flat:
            return [ExitAction(ExitReason.TIME_STOP, detail=f"held_{held_hours:.1f}h")]

    actions: list[ExitAction] = []
    for idx, (gain_level, sell_percent) in enumerate(settings.take_profit_tiers):
        if position.tp_hits[idx]:
            continue
        if position.gain_percent >= float(gain_level):
            actions.append(
                ExitAction(ExitReason.TAKE_PROFIT, percent=float(sell_percent), tp_index=idx, detail=f"tp{idx + 1}")
            )
    return actions


def classify_outcome(pnl_percent: float, reason: ExitReason, band_percent: float) -> TradeOutcome:
    if reason == ExitReason.EMERGENCY:
        return TradeOutcome.EMERGENCY
    if abs(pnl_percent) <= band_percent:
        return TradeOutcome.BREAKEVEN
    return TradeOutcome.WIN if pnl_percent > 0 else TradeOutcome.LOSS


def trade_stats(trades: Iterable[Trade]) -> dict[str, Any]:
    rows = list(trades)
    wins = sum(1 for t in rows if t.outcome == TradeOutcome.WIN)
    losses = sum(1 for t in rows if t.outcome == TradeOutcome.LOSS)
    decided = wins + losses
    return {
        "count": len(rows),
        "wins": wins,
        "losses": losses,
        "breakeven": sum(1 for t in rows if t.outcome == TradeOutcome.BREAKEVEN),
        "emergency": sum(1 for t in rows if t.outcome == TradeOutcome.EMERGENCY),
        "win_rate": round(wins / decided, 4) if decided else None,
        "total_pnl_usd": round(sum(t.pnl_usd for t in rows), 6),
        "avg_pnl_percent": round(sum(t.pnl_percent for t in rows) / len(rows), 4) if rows else 0.0,
        "best_pnl_percent": round(max((t.pnl_percent for t in rows), default=0.0), 4),
        "worst_pnl_percent": round(min((t.pnl_percent for t in rows), default=0.0), 4),
    }


class PositionManager:
    """Owns the position arena for one book (live or paper).

    A position is mutated only by the coroutine holding its in-flight marker.
    """

    def __init__(
        self,
        settings: PositionSettings,
        execution: Any,
        *,
        price_feed: Any | None = None,
        store: Any | None = None,
        alerts: Any | None = None,
        label: str = "live",
        native_price_usd: Callable[[], float | None] = lambda: None,
        decisions_log: str = "",
        run_tag: str = "",
        price_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        trades_max: int = 500,
    ) -> None:
        self.settings = settings
        self.execution = execution
        self.price_feed = price_feed
        self.store = store
        self.alerts = alerts
        self.label = label
        self.native_price_usd = native_price_usd
        self.decisions_log = decisions_log
        self.run_tag = run_tag
        self.price_timeout_seconds = float(price_timeout_seconds)
        self._clock = clock
        self.positions: dict[str, Position] = {}
        self.trades: deque[Trade] = deque(maxlen=max(10, int(trades_max)))
        self._inflight: dict[str, asyncio.Event] = {}
        self._listeners: list[Callable[[Trade], Any]] = []
        self._halted = False
        self._task: asyncio.Task | None = None
        self.last_tick_at: float = 0.0

    # Arena queries

    def get(self, position_id: str) -> Position | None:
        return self.positions.get(position_id)

    def open_positions(self) -> list[Position]:
        return [p for p in self.positions.values() if p.status != PositionStatus.CLOSED]

    def has_open_token(self, token_address: str) -> bool:
        token = str(token_address or "").lower()
        return any(p.token_address == token for p in self.open_positions())

    def open_count(self) -> int:
        return len(self.open_positions())

    def open_exposure_usd(self) -> float:
        return sum(p.remaining_cost_usd for p in self.open_positions())

    def unrealized_pnl_usd(self) -> float:
        return sum(p.unrealized_usd for p in self.open_positions())

    def realized_pnl_since(self, since_ts: float) -> float:
        """PnL of every exit fill at or after `since_ts`, partial fills of open positions included."""
        closed = sum(float(pnl) for t in self.trades for ts, pnl in t.realizations if float(ts) >= since_ts)
        return closed + sum(p.realized_since(since_ts) for p in self.open_positions())

    def in_flight(self, position_id: str) -> bool:
        return position_id in self._inflight

    def recent_trades(self, limit: int = 50) -> list[Trade]:
        rows = list(self.trades)[-max(1, int(limit)):]
        return list(reversed(rows))

    def stats(self) -> dict[str, Any]:
        out = trade_stats(self.trades)
        out.update(
            {
                "book": self.label,
                "open_positions": self.open_count(),
                "open_exposure_usd": round(self.open_exposure_usd(), 6),
                "unrealized_pnl_usd": round(self.unrealized_pnl_usd(), 6),
                "halted": self._halted,
            }
        )
        return out

    def add_trade_listener(self, listener: Callable[[Trade], Any]) -> None:
        self._listeners.append(listener)

    @property
    def halted(self) -> bool:
        return self._halted

    def halt(self) -> None:
        if not self._halted:
            logger.warning("POSITIONS_HALTED book=%s open=%s", self.label, self.open_count())
        self._halted = True

    def resume(self) -> None:
        if self._halted:
            logger.info("POSITIONS_RESUMED book=%s", self.label)
        self._halted = False
        for position in self.pending_emergency():
            position.emergency_reason = ""

    # Persistence

    def _persist(self, position: Position) -> None:
        if self.store is None:
            return
        try:
            row = position.to_dict()
            row["book"] = self.label
            self.store.save_position(row)
        except Exception:
            logger.exception("POSITION_PERSIST_FAILED book=%s id=%s", self.label, position.position_id)

    def load(self) -> int:
        if self.store is None:
            return 0
        rows = self.store.load_positions(self.label)
        for row in rows:
            position = Position.from_dict(row)
            # Nothing is in flight after a restart.
            if position.status == PositionStatus.CLOSING:
                position.status = PositionStatus.OPEN
            position.queued = False
            self.positions[position.position_id] = position
        if rows:
            logger.info("POSITIONS_RESTORED book=%s count=%s", self.label, len(rows))
        return len(rows)

    # Entries

    async def open(
        self,
        *,
        token_address: str,
        size_usd: float,
        expected_price_usd: float = 0.0,
        symbol: str = "",
        conviction: float = 0.0,
        entry_tier: str = "",
        category_scores: dict[str, float] | None = None,
        features: dict[str, str] | None = None,
        reason: str = "entry",
    ) -> Position:
        if self._halted:
            raise ControlError("position manager halted", code="POSITIONS_HALTED")
        request = ExecutionRequest(
            intent=Intent.BUY,
            token_address=token_address,
            amount=float(size_usd),
            expected_price_usd=float(expected_price_usd or 0.0),
            reason=reason,
            symbol=symbol,
        )
        result: ExecutionResult = await self.execution.submit(request)
        if not result.success:
            raise ExecutionError(result.error or "buy failed", code=result.error_code or "EXEC_FAILED")
        position = Position(
            token_address=request.token_address,
            symbol=symbol,
            book=self.label,
            entry_price=result.price_usd,
            entry_amount=result.token_amount,
            entry_usd=result.usd_amount,
            entry_time=self._clock(),
            conviction=float(conviction),
            entry_tier=entry_tier,
            category_scores=dict(category_scores or {}),
            features=dict(features or {}),
        )
        update_price(position, position.entry_price, self.settings)
        self.positions[position.position_id] = position
        self._persist(position)
        logger.info(
            "POSITION_OPENED book=%s id=%s token=%s price=%.10g amount=%.8f usd=%.4f tier=%s conviction=%.1f",
            self.label,
            position.position_id,
            position.token_address,
            position.entry_price,
            position.entry_amount,
            position.entry_usd,
            entry_tier,
            conviction,
        )
        return position

    # Exit ownership

    def _acquire(self, position: Position) -> bool:
        if position.position_id in self._inflight:
            position.queued = True
            return False
        self._inflight[position.position_id] = asyncio.Event()
        return True

    def _release(self, position: Position) -> None:
        event = self._inflight.pop(position.position_id, None)
        if event is not None:
            event.set()

    async def _wait_and_acquire(self, position: Position) -> None:
        while True:
            event = self._inflight.get(position.position_id)
            if event is None:
                break
            await event.wait()
        self._inflight[position.position_id] = asyncio.Event()

    async def _execute_exit(self, position: Position, action: ExitAction, *, intent: Intent = Intent.SELL) -> ExecutionResult | None:
        if position.status == PositionStatus.CLOSED or position.remaining_amount <= 0:
            return None
        amount = position.remaining_amount if action.full else position.remaining_amount * action.percent / 100.0
        if position.remaining_amount - amount <= self.settings.dust_amount:
            amount = position.remaining_amount
        position.status = PositionStatus.CLOSING
        request = ExecutionRequest(
            intent=intent,
            token_address=position.token_address,
            amount=amount,
            expected_price_usd=position.current_price,
            position_id=position.position_id,
            reason=f"{action.reason.value}:{action.detail}" if action.detail else action.reason.value,
            symbol=position.symbol,
        )
        result: ExecutionResult = await self.execution.submit(request)
        self._log_exit_decision(position, action, amount, result)
        if not result.success:
            position.status = PositionStatus.OPEN
            position.exit_failures += 1
            logger.error(
                "EXIT_FAILED book=%s id=%s token=%s reason=%s failures=%s code=%s",
                self.label,
                position.position_id,
                position.token_address,
                action.reason.value,
                position.exit_failures,
                result.error_code,
            )
            if position.exit_failures >= self.settings.max_exit_failures and self.alerts is not None:
                level = "CRITICAL" if intent == Intent.EMERGENCY_SELL else "HIGH"
                self.alerts.notify(
                    level,
                    "exit_failed",
                    f"Exit for {position.symbol or position.token_address} failed {position.exit_failures}x",
                    position_id=position.position_id,
                    reason=action.reason.value,
                    error=result.error_code,
                )
            self._persist(position)
            return result

        position.exit_failures = 0
        sold_before = position.sold_amount
        sold = position.reduce(result.token_amount or amount, dust=self.settings.dust_amount)
        cost = position.entry_usd * (position.sold_amount - sold_before) / position.entry_amount if position.entry_amount > 0 else 0.0
        position.proceeds_usd += result.usd_amount
        position.realizations.append([self._clock(), result.usd_amount - cost])
        position.fees_usd += result.fee_usd
        position.last_exit_reason = action.reason.value
        if action.tp_index is not None:
            position.mark_tp(action.tp_index)
        logger.info(
            "EXIT_FILLED book=%s id=%s token=%s reason=%s detail=%s sold=%.8f remaining=%.8f usd=%.4f",
            self.label,
            position.position_id,
            position.token_address,
            action.reason.value,
            action.detail,
            sold,
            position.remaining_amount,
            result.usd_amount,
        )
        if position.remaining_amount <= 0:
            await self._close(position, action.reason)
        else:
            position.status = PositionStatus.OPEN
            self._persist(position)
        return result

    def _log_exit_decision(self, position: Position, action: ExitAction, amount: float, result: ExecutionResult) -> None:
        if not self.decisions_log:
            return
        if action.reason == ExitReason.STOP_LOSS:
            reason = "trailing_stop" if action.detail.startswith("trailing_stop") else "hard_stop"
        else:
            reason = action.reason.value.lower()
        sold = amount if result.success else 0.0
        try:
            event = exit_decision_event(
                {
                    "book": self.label,
                    "stage": "exit",
                    "decision": "sell" if result.success else "sell_failed",
                    "position_id": position.position_id,
                    "token_address": position.token_address,
                    "symbol": position.symbol,
                    "reason": reason,
                    "detail": action.detail,
                    "sold_amount": sold,
                    "remaining_amount": max(0.0, position.remaining_amount - sold),
                    "price_usd": position.current_price,
                    "gain_percent": round(position.gain_percent, 4),
                    "success": result.success,
                    "error_code": result.error_code,
                },
                run_tag=self.run_tag,
            )
            append_event(self.decisions_log, event)
        except Exception:
            logger.exception("EXIT_DECISION_LOG_FAILED id=%s", position.position_id)

    async def _close(self, position: Position, reason: ExitReason) -> Trade:
        now = self._clock()
        position.status = PositionStatus.CLOSED
        position.closed_at = now
        pnl_usd = position.proceeds_usd - position.entry_usd
        pnl_percent = pnl_usd / position.entry_usd * 100.0 if position.entry_usd > 0 else 0.0
        native = self.native_price_usd() or 0.0
        trade = Trade(
            trade_id=uuid.uuid4().hex[:16],
            position_id=position.position_id,
            book=self.label,
            token_address=position.token_address,
            symbol=position.symbol,
            entry_price=position.entry_price,
            exit_price=position.proceeds_usd / position.sold_amount if position.sold_amount > 0 else 0.0,
            amount=position.entry_amount,
            entry_time=position.entry_time,
            exit_time=now,
            exit_reason=reason,
            outcome=classify_outcome(pnl_percent, reason, self.settings.breakeven_band_percent),
            pnl_usd=pnl_usd,
            pnl_native=pnl_usd / native if native > 0 else 0.0,
            pnl_percent=pnl_percent,
            conviction=position.conviction,
            category_scores=dict(position.category_scores),
            features=dict(position.features),
            realizations=tuple(tuple(r) for r in position.realizations),
        )
        self.trades.append(trade)
        self._persist(position)
        if self.store is not None:
            try:
                self.store.record_trade(trade.to_dict())
            except Exception:
                logger.exception("TRADE_PERSIST_FAILED book=%s id=%s", self.label, trade.trade_id)
        logger.info(
            "POSITION_CLOSED book=%s id=%s token=%s reason=%s outcome=%s pnl_usd=%.4f pnl_pct=%.2f",
            self.label,
            position.position_id,
            position.token_address,
            reason.value,
            trade.outcome.value,
            pnl_usd,
            pnl_percent,
        )
        for listener in list(self._listeners):
            try:
                res = listener(trade)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                logger.exception("TRADE_LISTENER_ERROR book=%s trade=%s", self.label, trade.trade_id)
        return trade

    # Tick evaluation

    async def process(self, position: Position, price: float | None = None) -> list[ExecutionResult]:
        """Evaluate one position at `price` and run any triggered exits under its marker."""
        if self._halted or position.status == PositionStatus.CLOSED:
            return []
        if position.status == PositionStatus.CLOSING or position.position_id in self._inflight:
            position.queued = True
            return []
        if price is not None and price > 0:
            update_price(position, price, self.settings)
        actions = plan_exits(position, self.settings, self._clock())
        if not actions:
            return []
        if not self._acquire(position):
            return []
        results: list[ExecutionResult] = []
        try:
            while actions and not self._halted:
                position.queued = False
                ok = True
                for action in actions:
                    result = await self._execute_exit(position, action)
                    if result is None or not result.success:
                        ok = False
                        if result is not None:
                            results.append(result)
                        break
                    results.append(result)
                    if position.status == PositionStatus.CLOSED:
                        break
                # A trigger that fired while CLOSING is re-evaluated under the same marker.
                if not ok or not position.queued or position.status != PositionStatus.OPEN:
                    break
                actions = plan_exits(position, self.settings, self._clock())
        finally:
            self._release(position)
        return results

    async def tick(self) -> None:
        self.last_tick_at = self._clock()
        if self._halted:
            await self.retry_emergency_exits()
            return
        candidates = [p for p in self.open_positions() if p.status == PositionStatus.OPEN]
        if not candidates:
            return
        prices: dict[str, float] = {}
        if self.price_feed is not None:
            tokens = sorted({p.token_address for p in candidates})
            try:
                prices = await asyncio.wait_for(self.price_feed.get_prices(tokens), timeout=self.price_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("POSITION_PRICE_TIMEOUT book=%s tokens=%s", self.label, len(tokens))
                prices = {}
        results = await asyncio.gather(
            *(self.process(p, prices.get(p.token_address)) for p in candidates),
            return_exceptions=True,
        )
        for position, res in zip(candidates, results):
            if isinstance(res, Exception):
                logger.error("POSITION_TICK_ERROR book=%s id=%s err=%s", self.label, position.position_id, res)

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Position loop error book=%s", self.label)
            await asyncio.sleep(self.settings.tick_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"positions-{self.label}")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # Operator and emergency exits

    async def close_position(self, position_id: str, *, reason: ExitReason = ExitReason.MANUAL) -> ExecutionResult:
        position = self.positions.get(position_id)
        if position is None or position.status == PositionStatus.CLOSED:
            raise NotFoundError(f"no open position {position_id}", code="POSITION_NOT_FOUND")
        if not self._acquire(position):
            raise ControlError("an exit is already in flight for this position", code="POSITION_EXIT_IN_FLIGHT")
        try:
            result = await self._execute_exit(position, ExitAction(reason, detail="operator"))
        finally:
            self._release(position)
        if result is None:
            raise NotFoundError(f"no open position {position_id}", code="POSITION_NOT_FOUND")
        return result

    async def emergency_exit(self, position: Position, *, reason: str = "kill_switch") -> ExecutionResult | None:
        """Sell the full remainder with EMERGENCY_SELL once any in-flight exit settles."""
        await self._wait_and_acquire(position)
        try:
            if position.status == PositionStatus.CLOSED or position.remaining_amount <= 0:
                return None
            position.emergency_reason = reason
            logger.warning(
                "EMERGENCY_EXIT book=%s id=%s token=%s remaining=%.8f reason=%s",
                self.label,
                position.position_id,
                position.token_address,
                position.remaining_amount,
                reason,
            )
            return await self._execute_exit(
                position,
                ExitAction(ExitReason.EMERGENCY, detail=reason),
                intent=Intent.EMERGENCY_SELL,
            )
        finally:
            self._release(position)

    def pending_emergency(self) -> list[Position]:
        return [p for p in self.open_positions() if p.emergency_reason]

    async def retry_emergency_exits(self) -> list[ExecutionResult | None]:
        """Re-submit emergency exits that failed earlier and are not already in flight."""
        targets = [
            p
            for p in self.pending_emergency()
            if p.status == PositionStatus.OPEN and p.position_id not in self._inflight
        ]
        if not targets:
            return []
        logger.warning("EMERGENCY_EXIT_RETRY book=%s positions=%s", self.label, len(targets))
        return await self._emergency_batch(targets, reason=None)

    async def liquidate_all(self, *, reason: str = "kill_switch") -> list[ExecutionResult | None]:
        self.halt()
        targets = self.open_positions()
        if not targets:
            return []
        return await self._emergency_batch(targets, reason=reason)

    async def _emergency_batch(self, targets: list[Position], *, reason: str | None) -> list[ExecutionResult | None]:
        results = await asyncio.gather(
            *(self.emergency_exit(p, reason=reason or p.emergency_reason or "kill_switch") for p in targets),
            return_exceptions=True,
        )
        out: list[ExecutionResult | None] = []
        for position, res in zip(targets, results):
            if isinstance(res, Exception):
                logger.error("EMERGENCY_EXIT_ERROR book=%s id=%s err=%s", self.label, position.position_id, res)
                out.append(None)
            else:
                out.append(res)
        return out
