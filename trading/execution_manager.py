"""Swap submission: priority queue, bounded retries, slippage ceilings, fee escalation."""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from config import ExecutionSettings, RetryPolicy
from utils.errors import ExecutionError, SlippageExceeded, ValidationError
from utils.addressing import require_address

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    EMERGENCY_SELL = "EMERGENCY_SELL"


INTENT_PRIORITY = {Intent.EMERGENCY_SELL: 0, Intent.SELL: 1, Intent.BUY: 2}
INTENT_FEE_MULTIPLIER = {Intent.BUY: 1.0, Intent.SELL: 2.0, Intent.EMERGENCY_SELL: 4.0}


@dataclass
class ExecutionRequest:
    intent: Intent
    token_address: str
    # USD notional for BUY, token units for SELL/EMERGENCY_SELL.
    amount: float
    max_slippage_percent: float | None = None
    expected_price_usd: float = 0.0
    position_id: str = ""
    reason: str = ""
    symbol: str = ""
    requested_at: float = field(default_factory=time.time)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def validate(self) -> None:
        if not isinstance(self.intent, Intent):
            self.intent = Intent(str(self.intent).upper())
        self.token_address = require_address(self.token_address, field="token_address")
        if not self.amount or float(self.amount) <= 0:
            raise ValidationError("amount must be > 0", code="EXEC_INVALID_AMOUNT")


@dataclass(frozen=True)
class ExecutionResult:
    request_id: str
    intent: str
    token_address: str
    success: bool
    attempts: int
    tx_hash: str = ""
    token_amount: float = 0.0
    usd_amount: float = 0.0
    price_usd: float = 0.0
    slippage_percent: float = 0.0
    slippage_ceiling_percent: float = 0.0
    fee_usd: float = 0.0
    latency_ms: float = 0.0
    endpoint: str = ""
    error: str = ""
    error_code: str = ""
    position_id: str = ""
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "intent": self.intent,
            "token_address": self.token_address,
            "success": self.success,
            "attempts": self.attempts,
            "tx_hash": self.tx_hash,
            "token_amount": self.token_amount,
            "usd_amount": round(self.usd_amount, 6),
            "price_usd": self.price_usd,
            "slippage_percent": round(self.slippage_percent, 4),
            "slippage_ceiling_percent": self.slippage_ceiling_percent,
            "fee_usd": round(self.fee_usd, 6),
            "latency_ms": round(self.latency_ms, 1),
            "endpoint": self.endpoint,
            "error": self.error,
            "error_code": self.error_code,
            "position_id": self.position_id,
            "finished_at": self.finished_at,
        }


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = min(len(ordered) - 1, max(0, int(round(pct / 100.0 * (len(ordered) - 1)))))
    return ordered[idx]


class ExecutionManager:
    def __init__(
        self,
        settings: ExecutionSettings,
        backend: Any,
        *,
        gateway: Any | None = None,
        audit: Any | None = None,
        label: str = "live",
        timeout_seconds: float = 10.0,
        emergency_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.gateway = gateway
        self.audit = audit
        self.label = label
        self.timeout_seconds = float(timeout_seconds)
        self.emergency_timeout_seconds = float(emergency_timeout_seconds)
        self._clock = clock
        self._sleep = sleep
        self._log: deque[ExecutionResult] = deque(maxlen=max(10, int(settings.log_max)))
        self._queue: asyncio.PriorityQueue | None = None
        self._workers: list[asyncio.Task] = []
        self._seq = itertools.count()
        self._active: dict[tuple[str, Intent], asyncio.Future] = {}
        self.last_tick_at: float = 0.0

    def policy_for(self, intent: Intent) -> RetryPolicy:
        if intent == Intent.EMERGENCY_SELL:
            return self.settings.emergency_retry
        if intent == Intent.SELL:
            return self.settings.sell_retry
        return self.settings.buy_retry

    def slippage_ceiling(self, intent: Intent) -> float:
        if intent == Intent.EMERGENCY_SELL:
            return self.settings.max_emergency_slippage_percent
        if intent == Intent.SELL:
            return self.settings.max_sell_slippage_percent
        return self.settings.max_buy_slippage_percent

    def priority_fee_gwei(self, intent: Intent, attempt: int) -> float:
        fee = self.settings.base_priority_fee_gwei * INTENT_FEE_MULTIPLIER[intent]
        if self.gateway is not None and self.gateway.is_congested():
            fee *= self.policy_for(intent).fee_factor(attempt)
        return min(fee, self.settings.max_priority_fee_gwei)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request to completion; never raises for execution failures."""
        request.validate()
        intent = request.intent
        policy = self.policy_for(intent)
        ceiling = self.slippage_ceiling(intent)
        if request.max_slippage_percent is not None:
            # Caller may tighten but never widen the ceiling.
            ceiling = min(ceiling, float(request.max_slippage_percent))
        timeout = self.emergency_timeout_seconds if intent == Intent.EMERGENCY_SELL else self.timeout_seconds
        started = time.perf_counter()
        attempt = 0
        last_error: Exception | None = None
        fill = None

        while attempt < policy.max_attempts:
            attempt += 1
            if attempt > 1:
                await self._sleep(policy.delay(attempt - 1, random.uniform(0.0, policy.jitter_seconds)))
            fee = self.priority_fee_gwei(intent, attempt)
            try:
                fill = await self.backend.swap(
                    request,
                    slippage_percent=ceiling,
                    priority_fee_gwei=fee,
                    timeout=timeout,
                )
                break
            except SlippageExceeded as exc:
                last_error = exc
                if intent != Intent.EMERGENCY_SELL:
                    logger.warning(
                        "EXEC_SLIPPAGE_ABORT book=%s intent=%s token=%s ceiling=%.2f err=%s",
                        self.label,
                        intent.value,
                        request.token_address,
                        ceiling,
                        exc.message,
                    )
                    break
                widened = min(self.settings.emergency_slippage_cap_percent, ceiling + self.settings.emergency_slippage_step_percent)
                logger.warning(
                    "EXEC_SLIPPAGE_WIDEN book=%s token=%s from=%.2f to=%.2f",
                    self.label,
                    request.token_address,
                    ceiling,
                    widened,
                )
                ceiling = widened
            except ValidationError as exc:
                last_error = exc
                break
            except ExecutionError as exc:
                last_error = exc
                logger.warning(
                    "EXEC_ATTEMPT_FAILED book=%s intent=%s token=%s attempt=%s/%s code=%s err=%s",
                    self.label,
                    intent.value,
                    request.token_address,
                    attempt,
                    policy.max_attempts,
                    exc.code,
                    exc.message,
                )
            except Exception as exc:
                last_error = exc
                logger.exception(
                    "EXEC_ATTEMPT_ERROR book=%s intent=%s token=%s attempt=%s",
                    self.label,
                    intent.value,
                    request.token_address,
                    attempt,
                )

        latency_ms = (time.perf_counter() - started) * 1000.0
        if fill is not None:
            result = ExecutionResult(
                request_id=request.request_id,
                intent=intent.value,
                token_address=request.token_address,
                success=True,
                attempts=attempt,
                tx_hash=fill.tx_hash,
                token_amount=fill.token_amount,
                usd_amount=fill.usd_amount,
                price_usd=fill.price_usd,
                slippage_percent=fill.slippage_percent,
                slippage_ceiling_percent=ceiling,
                fee_usd=fill.fee_usd,
                latency_ms=latency_ms,
                endpoint=fill.endpoint,
                position_id=request.position_id,
                finished_at=self._clock(),
            )
            logger.info(
                "EXEC_OK book=%s intent=%s token=%s attempts=%s tokens=%.8f usd=%.4f slip=%.2f latency_ms=%.0f tx=%s",
                self.label,
                intent.value,
                request.token_address,
                attempt,
                fill.token_amount,
                fill.usd_amount,
                fill.slippage_percent,
                latency_ms,
                fill.tx_hash,
            )
        else:
            code = getattr(last_error, "code", "EXEC_FAILED")
            result = ExecutionResult(
                request_id=request.request_id,
                intent=intent.value,
                token_address=request.token_address,
                success=False,
                attempts=attempt,
                slippage_ceiling_percent=ceiling,
                latency_ms=latency_ms,
                error=str(last_error or "no attempts"),
                error_code=str(code),
                position_id=request.position_id,
                finished_at=self._clock(),
            )
            logger.error(
                "EXEC_FAILED book=%s intent=%s token=%s attempts=%s code=%s err=%s",
                self.label,
                intent.value,
                request.token_address,
                attempt,
                code,
                last_error,
            )
        self._record(request, result)
        return result

    def _record(self, request: ExecutionRequest, result: ExecutionResult) -> None:
        self._log.append(result)
        if self.audit is None:
            return
        details = result.to_dict()
        details.update({"book": self.label, "reason": request.reason, "symbol": request.symbol})
        self.audit.record(
            request.intent.value.lower(),
            details,
            actor=f"execution:{self.label}",
            status="success" if result.success else "failed",
        )

    def _expired_result(self, request: ExecutionRequest) -> ExecutionResult:
        age = self._clock() - request.requested_at
        logger.warning("EXEC_QUEUE_EXPIRED book=%s token=%s age=%.0fs", self.label, request.token_address, age)
        result = ExecutionResult(
            request_id=request.request_id,
            intent=request.intent.value,
            token_address=request.token_address,
            success=False,
            attempts=0,
            error=f"buy expired in queue after {age:.0f}s",
            error_code="EXEC_QUEUE_EXPIRED",
            position_id=request.position_id,
            finished_at=self._clock(),
        )
        self._record(request, result)
        return result

    async def submit(self, request: ExecutionRequest) -> ExecutionResult:
        """Queue a request (or run inline when no workers are running) and await its result.

        A second request for the same token and intent joins the in-flight one.
        """
        request.validate()
        key = (request.token_address, request.intent)
        existing = self._active.get(key)
        if existing is not None and not existing.done():
            logger.info("EXEC_DUPLICATE_JOINED book=%s intent=%s token=%s", self.label, request.intent.value, request.token_address)
            return await asyncio.shield(existing)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._active[key] = future
        try:
            if self._queue is None or not self._workers:
                try:
                    result = await self._run_request(request)
                except BaseException:
                    future.cancel()
                    raise
                future.set_result(result)
                return result
            await self._queue.put((INTENT_PRIORITY[request.intent], next(self._seq), request, future))
            return await asyncio.shield(future)
        finally:
            if self._active.get(key) is future and future.done():
                self._active.pop(key, None)

    async def _run_request(self, request: ExecutionRequest) -> ExecutionResult:
        if request.intent == Intent.BUY and self._clock() - request.requested_at > self.settings.buy_queue_ttl_seconds:
            return self._expired_result(request)
        return await self.execute(request)

    async def _worker(self, idx: int) -> None:
        assert self._queue is not None
        while True:
            _, _, request, future = await self._queue.get()
            try:
                self.last_tick_at = self._clock()
                result = await self._run_request(request)
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                logger.exception("EXEC_WORKER_ERROR book=%s worker=%s", self.label, idx)
                if not future.done():
                    future.set_exception(exc)
            finally:
                self._active.pop((request.token_address, request.intent), None)
                self._queue.task_done()

    def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.PriorityQueue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"exec-{self.label}-{i}") for i in range(self.settings.workers)
        ]

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        for task in workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._queue = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._workers)

    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def recent(self, limit: int = 50) -> list[dict[str, Any]]:
        rows = list(self._log)[-max(1, int(limit)):]
        return [r.to_dict() for r in reversed(rows)]

    def metrics(self) -> dict[str, Any]:
        rows = list(self._log)
        latencies = [r.latency_ms for r in rows if r.success]
        ok = sum(1 for r in rows if r.success)
        return {
            "book": self.label,
            "total": len(rows),
            "success": ok,
            "failed": len(rows) - ok,
            "success_rate": round(ok / len(rows), 4) if rows else None,
            "latency_p50_ms": round(_percentile(latencies, 50), 1),
            "latency_p95_ms": round(_percentile(latencies, 95), 1),
            "avg_slippage_percent": round(sum(r.slippage_percent for r in rows if r.success) / ok, 4) if ok else 0.0,
            "queue_depth": self.queue_depth(),
        }
