"""Paper book: simulated swaps against a virtual USD wallet, same position logic as live."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable

from config import Settings
from trading.execution_manager import ExecutionManager, ExecutionRequest, ExecutionResult, Intent
from trading.position_manager import Position, PositionManager
from trading.swap_executor import SwapFill
from utils.errors import ControlError, ExecutionError, NotFoundError, SlippageExceeded
from utils.state_file import JsonStateFile

logger = logging.getLogger(__name__)


class PaperWallet:
    def __init__(self, initial_balance_usd: float, *, state_file: JsonStateFile | None = None) -> None:
        self.initial_balance_usd = float(initial_balance_usd)
        self.balance_usd = float(initial_balance_usd)
        self.fees_paid_usd = 0.0
        self._state = state_file

    def load(self) -> None:
        if self._state is None:
            return
        data = self._state.load({})
        if data:
            self.initial_balance_usd = float(data.get("initial_balance_usd", self.initial_balance_usd))
            self.balance_usd = float(data.get("balance_usd", self.balance_usd))
            self.fees_paid_usd = float(data.get("fees_paid_usd", 0.0))

    def save(self) -> None:
        if self._state is None:
            return
        try:
            self._state.save(
                {
                    "initial_balance_usd": self.initial_balance_usd,
                    "balance_usd": self.balance_usd,
                    "fees_paid_usd": self.fees_paid_usd,
                    "updated_at": time.time(),
                }
            )
        except Exception:
            logger.exception("PAPER_WALLET_SAVE_FAILED")

    def debit(self, amount_usd: float, fee_usd: float = 0.0) -> None:
        if amount_usd > self.balance_usd + 1e-9:
            raise ExecutionError(
                f"paper balance ${self.balance_usd:.2f} below ${amount_usd:.2f}",
                code="EXEC_INSUFFICIENT_BALANCE",
            )
        self.balance_usd -= amount_usd
        self.fees_paid_usd += fee_usd
        self.save()

    def credit(self, amount_usd: float, fee_usd: float = 0.0) -> None:
        self.balance_usd += amount_usd
        self.fees_paid_usd += fee_usd
        self.save()

    def reset(self, initial_balance_usd: float | None = None) -> None:
        if initial_balance_usd is not None:
            self.initial_balance_usd = float(initial_balance_usd)
        self.balance_usd = self.initial_balance_usd
        self.fees_paid_usd = 0.0
        self.save()


class PaperSwapBackend:
    """Fills at the feed price moved against us by a fixed simulated slippage, minus a fee."""

    def __init__(
        self,
        wallet: PaperWallet,
        *,
        price_feed: Any | None = None,
        slippage_percent: float = 1.0,
        fee_percent: float = 0.3,
    ) -> None:
        self.wallet = wallet
        self.price_feed = price_feed
        self.slippage_percent = float(slippage_percent)
        self.fee_percent = float(fee_percent)

    async def _price(self, request: ExecutionRequest, timeout: float) -> float:
        price = None
        if self.price_feed is not None:
            try:
                price = await asyncio.wait_for(self.price_feed.get_price(request.token_address), timeout=timeout)
            except asyncio.TimeoutError:
                price = None
        price = price or request.expected_price_usd
        if not price or price <= 0:
            raise ExecutionError(f"no price for {request.token_address}", code="EXEC_NO_PRICE")
        return float(price)

    async def swap(
        self,
        request: ExecutionRequest,
        *,
        slippage_percent: float,
        priority_fee_gwei: float,
        timeout: float,
    ) -> SwapFill:
        market = await self._price(request, timeout)
        slip = self.slippage_percent
        if slip > slippage_percent:
            raise SlippageExceeded(
                f"simulated slippage {slip:.2f}% exceeds {slippage_percent:.2f}%",
                expected=market,
                actual=market * (1 + slip / 100.0),
            )
        tx_hash = f"paper-{uuid.uuid4().hex[:16]}"
        if request.intent == Intent.BUY:
            price = market * (1.0 + slip / 100.0)
            fee = request.amount * self.fee_percent / 100.0
            self.wallet.debit(request.amount, fee)
            return SwapFill(
                tx_hash=tx_hash,
                token_amount=(request.amount - fee) / price,
                usd_amount=request.amount,
                price_usd=price,
                slippage_percent=slip,
                fee_usd=fee,
                endpoint="paper",
            )
        price = market * (1.0 - slip / 100.0)
        gross = request.amount * price
        fee = gross * self.fee_percent / 100.0
        self.wallet.credit(gross - fee, fee)
        return SwapFill(
            tx_hash=tx_hash,
            token_amount=request.amount,
            usd_amount=gross - fee,
            price_usd=price,
            slippage_percent=slip,
            fee_usd=fee,
            endpoint="paper",
        )


class PaperTradingSimulator:
    def __init__(
        self,
        settings: Settings,
        *,
        price_feed: Any | None = None,
        store: Any | None = None,
        alerts: Any | None = None,
        state_file: JsonStateFile | None = None,
        decisions_log: str = "",
        run_tag: str = "",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.wallet = PaperWallet(settings.paper_initial_balance_usd, state_file=state_file)
        self.backend = PaperSwapBackend(
            self.wallet,
            price_feed=price_feed,
            slippage_percent=settings.paper_slippage_percent,
            fee_percent=settings.paper_fee_percent,
        )
        self.execution = ExecutionManager(
            settings.execution,
            self.backend,
            label="paper",
            timeout_seconds=settings.rpc.timeout_seconds,
            emergency_timeout_seconds=settings.rpc.emergency_timeout_seconds,
            clock=clock,
            sleep=sleep,
        )
        self.positions = PositionManager(
            settings.position,
            self.execution,
            price_feed=price_feed,
            store=store,
            alerts=alerts,
            label="paper",
            decisions_log=decisions_log,
            run_tag=run_tag,
            clock=clock,
        )
        self.paused = False
        self.mirrored = 0

    @property
    def label(self) -> str:
        return self.positions.label

    def load(self) -> None:
        self.wallet.load()
        self.positions.load()

    async def mirror_entry(
        self, opportunity: Any, decision: Any, *, features: dict[str, str] | None = None
    ) -> Position | None:
        """Open the paper twin of an admitted decision; skipped while paused or already held."""
        if self.paused:
            logger.info("PAPER_MIRROR_SKIPPED reason=paused token=%s", opportunity.token_address)
            return None
        if self.positions.halted:
            return None
        if self.positions.has_open_token(opportunity.token_address):
            return None
        size = min(float(decision.size_usd), self.wallet.balance_usd)
        if size <= 0:
            logger.warning("PAPER_MIRROR_SKIPPED reason=no_balance token=%s", opportunity.token_address)
            return None
        breakdown = decision.breakdown
        try:
            position = await self.positions.open(
                token_address=opportunity.token_address,
                size_usd=size,
                expected_price_usd=opportunity.market.price_usd,
                symbol=opportunity.symbol,
                conviction=decision.conviction,
                entry_tier=decision.tier,
                category_scores=dict(breakdown.scores) if breakdown else {},
                features=dict(features or {}),
                reason="paper_entry",
            )
        except ExecutionError as exc:
            logger.warning("PAPER_ENTRY_FAILED token=%s code=%s err=%s", opportunity.token_address, exc.code, exc.message)
            return None
        self.mirrored += 1
        return position

    def pause(self) -> None:
        self.paused = True
        logger.info("PAPER_PAUSED open=%s", self.positions.open_count())

    def resume(self) -> None:
        self.paused = False
        self.positions.resume()
        logger.info("PAPER_RESUMED")

    def reset(self) -> dict[str, Any]:
        if self.positions.open_count():
            raise ControlError("close paper positions before reset", code="PAPER_POSITIONS_OPEN")
        self.wallet.reset()
        self.positions.trades.clear()
        self.mirrored = 0
        logger.warning("PAPER_RESET balance=%.2f", self.wallet.balance_usd)
        return self.status()

    async def close(self, token_address: str) -> ExecutionResult:
        token = str(token_address or "").lower()
        for position in self.positions.open_positions():
            if position.token_address == token:
                return await self.positions.close_position(position.position_id)
        raise NotFoundError(f"no open paper position for {token_address}", code="POSITION_NOT_FOUND")

    def equity_usd(self) -> float:
        return self.wallet.balance_usd + sum(p.current_price * p.remaining_amount for p in self.positions.open_positions())

    def status(self) -> dict[str, Any]:
        equity = self.equity_usd()
        return {
            "paused": self.paused,
            "balance_usd": round(self.wallet.balance_usd, 4),
            "equity_usd": round(equity, 4),
            "initial_balance_usd": self.wallet.initial_balance_usd,
            "pnl_usd": round(equity - self.wallet.initial_balance_usd, 4),
            "fees_paid_usd": round(self.wallet.fees_paid_usd, 4),
            "mirrored_entries": self.mirrored,
            "positions": [p.to_dict() for p in self.positions.open_positions()],
            "stats": self.positions.stats(),
        }

    def start(self) -> None:
        self.positions.start()

    async def stop(self) -> None:
        await self.positions.stop()
        await self.execution.stop()
