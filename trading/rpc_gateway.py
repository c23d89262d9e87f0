"""Multi-endpoint RPC access with health tracking and explicit primary failover."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from web3 import HTTPProvider, Web3

from config import RpcSettings
from utils.errors import ExecutionError, RpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def web3_client(url: str, timeout_seconds: float) -> Web3:
    return Web3(HTTPProvider(url, request_kwargs={"timeout": timeout_seconds}))


@dataclass
class RpcNodeHealth:
    name: str
    url: str
    primary: bool = False
    healthy: bool = True
    # Demoted nodes stay ineligible for primary until a health check passes.
    eligible: bool = True
    consecutive_failures: int = 0
    last_check: float = 0.0
    last_error: str = ""
    last_error_kind: str = ""
    window: int = 20
    latencies_ms: deque = field(default_factory=deque)
    outcomes: deque = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.latencies_ms = deque(self.latencies_ms, maxlen=self.window)
        self.outcomes = deque(self.outcomes, maxlen=self.window)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self.latencies_ms) / len(self.latencies_ms) if self.latencies_ms else 0.0

    @property
    def success_rate(self) -> float:
        return sum(self.outcomes) / len(self.outcomes) if self.outcomes else 1.0

    def record_success(self, latency_ms: float, now: float) -> None:
        self.latencies_ms.append(float(latency_ms))
        self.outcomes.append(1)
        self.consecutive_failures = 0
        self.last_check = now
        self.last_error_kind = ""

    def record_failure(self, error: str, kind: str, now: float) -> None:
        self.outcomes.append(0)
        self.consecutive_failures += 1
        self.last_check = now
        self.last_error = error[:300]
        self.last_error_kind = kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "primary": self.primary,
            "healthy": self.healthy,
            "eligible": self.eligible,
            "consecutive_failures": self.consecutive_failures,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "success_rate": round(self.success_rate, 4),
            "last_check": self.last_check,
            "last_error": self.last_error,
        }


class RpcGateway:
    def __init__(
        self,
        settings: RpcSettings,
        *,
        client_factory: Callable[[str, float], Any] = web3_client,
        alerts: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory
        self._alerts = alerts
        self._clock = clock
        self.nodes: list[RpcNodeHealth] = [
            RpcNodeHealth(name=name, url=url, window=settings.rolling_window) for name, url in settings.endpoints
        ]
        if self.nodes:
            self.nodes[0].primary = True
        self._clients: dict[str, Any] = {}
        self._task: asyncio.Task | None = None
        self.last_tick_at: float = 0.0
        self.failovers = 0

    @property
    def primary(self) -> RpcNodeHealth | None:
        for node in self.nodes:
            if node.primary:
                return node
        return None

    def node(self, name: str) -> RpcNodeHealth | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def _client(self, node: RpcNodeHealth) -> Any:
        client = self._clients.get(node.name)
        if client is None:
            client = self._client_factory(node.url, self.settings.timeout_seconds)
            self._clients[node.name] = client
        return client

    def is_congested(self) -> bool:
        node = self.primary
        if node is None:
            return False
        return node.avg_latency_ms >= self.settings.latency_warn_ms or node.last_error_kind == "timeout"

    async def call(self, fn: Callable[[Any], T], *, timeout: float | None = None, label: str = "call") -> T:
        """Run blocking `fn(client)` against the primary endpoint with a timeout.

        Business errors raised by `fn` (ExecutionError other than RpcError) pass
        through without counting against the node.
        """
        node = self.primary
        if node is None:
            raise RpcError("no rpc endpoints configured", code="RPC_UNAVAILABLE")
        limit = float(timeout or self.settings.timeout_seconds)
        client = self._client(node)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn, client), timeout=limit)
        except asyncio.TimeoutError:
            self._on_failure(node, f"timeout after {limit:.1f}s", "timeout", label)
            raise RpcError(f"{label} timed out on {node.name}", code="RPC_TIMEOUT") from None
        except RpcError as exc:
            self._on_failure(node, exc.message, "error", label)
            raise
        except ExecutionError:
            node.record_success((time.perf_counter() - started) * 1000.0, self._clock())
            raise
        except Exception as exc:
            self._on_failure(node, str(exc), "error", label)
            raise RpcError(f"{label} failed on {node.name}: {exc}") from exc
        latency_ms = (time.perf_counter() - started) * 1000.0
        node.record_success(latency_ms, self._clock())
        if latency_ms >= self.settings.latency_critical_ms:
            logger.warning("RPC_LATENCY_CRITICAL node=%s label=%s latency_ms=%.0f", node.name, label, latency_ms)
        elif latency_ms >= self.settings.latency_warn_ms:
            logger.info("RPC_LATENCY_WARN node=%s label=%s latency_ms=%.0f", node.name, label, latency_ms)
        return result

    def _on_failure(self, node: RpcNodeHealth, error: str, kind: str, label: str) -> None:
        node.record_failure(error, kind, self._clock())
        logger.warning(
            "RPC_FAILURE node=%s label=%s kind=%s consecutive=%s err=%s",
            node.name,
            label,
            kind,
            node.consecutive_failures,
            error,
        )
        if node.primary and node.consecutive_failures >= self.settings.max_consecutive_failures:
            self._failover(node, reason=f"{node.consecutive_failures} consecutive failures")

    def _candidates(self, exclude: RpcNodeHealth) -> list[RpcNodeHealth]:
        pool = [n for n in self.nodes if n is not exclude and n.eligible and n.healthy]
        return sorted(pool, key=lambda n: (-n.success_rate, n.avg_latency_ms, n.name))

    def _failover(self, node: RpcNodeHealth, *, reason: str) -> RpcNodeHealth:
        node.healthy = False
        node.eligible = False
        candidates = self._candidates(node)
        if not candidates:
            logger.error("RPC_FAILOVER_NO_CANDIDATE keeping=%s reason=%s", node.name, reason)
            if self._alerts is not None:
                self._alerts.notify("CRITICAL", "rpc_no_failover", f"No healthy RPC to replace {node.name}: {reason}")
            return node
        target = candidates[0]
        node.primary = False
        target.primary = True
        self.failovers += 1
        logger.warning("RPC_FAILOVER from=%s to=%s reason=%s", node.name, target.name, reason)
        if self._alerts is not None:
            self._alerts.notify("HIGH", "rpc_failover", f"RPC failover {node.name} -> {target.name}: {reason}")
        return target

    async def check_node(self, node: RpcNodeHealth) -> bool:
        client = self._client(node)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(
                asyncio.to_thread(lambda: client.eth.block_number),
                timeout=self.settings.health_timeout_seconds,
            )
        except asyncio.TimeoutError:
            node.record_failure("health check timeout", "timeout", self._clock())
            node.healthy = False
            return False
        except Exception as exc:
            node.record_failure(str(exc), "error", self._clock())
            node.healthy = False
            return False
        node.record_success((time.perf_counter() - started) * 1000.0, self._clock())
        if not node.eligible:
            logger.info("RPC_NODE_RECOVERED node=%s", node.name)
        node.healthy = True
        node.eligible = True
        return True

    async def health_check(self) -> list[dict[str, Any]]:
        self.last_tick_at = self._clock()
        for node in self.nodes:
            await self.check_node(node)
        primary = self.primary
        if primary is not None and not primary.healthy:
            self._failover(primary, reason="health check failed")
        return [n.to_dict() for n in self.nodes]

    async def promote(self, name: str) -> RpcNodeHealth:
        """Operator-requested primary change; the target must pass a health check first."""
        target = self.node(name)
        if target is None:
            raise RpcError(f"unknown rpc endpoint: {name}", code="RPC_UNKNOWN_ENDPOINT")
        if not await self.check_node(target):
            raise RpcError(f"rpc endpoint {name} failed health check", code="RPC_UNHEALTHY")
        current = self.primary
        if current is target:
            return target
        if current is not None:
            current.primary = False
        target.primary = True
        logger.warning("RPC_PROMOTE from=%s to=%s reason=operator", current.name if current else "-", target.name)
        return target

    async def _run(self) -> None:
        while True:
            try:
                await self.health_check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("RPC health loop error")
            await asyncio.sleep(self.settings.health_check_seconds)

    def start(self) -> None:
        if self.nodes and (self._task is None or self._task.done()):
            self._task = asyncio.create_task(self._run(), name="rpc-health")

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

    def snapshot(self) -> list[dict[str, Any]]:
        return [n.to_dict() for n in self.nodes]
