"""Shared HTTP client for market and safety providers: retries, rate windows, 429 cooldowns."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def observe(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)


def _source_key(source: str) -> str:
    return str(source or "default").strip().lower() or "default"


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._rate_windows: dict[str, deque[float]] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
                connector=connector,
            )
        return self._session

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
            sem = asyncio.Semaphore(max(1, int(self._source_limits.get(key, default_limit))))
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        return self._stats.setdefault(key, HttpSourceStats())

    async def _wait_for_slot(self, key: str) -> None:
        """Honour the 429 cooldown first, then the per-source rate window."""
        until = float(self._cooldown_until.get(key, 0.0) or 0.0)
        now = time.monotonic()
        if until > now:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", key, until - now)
            await asyncio.sleep(until - now)

        limits = getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}
        if key not in limits:
            return
        max_calls, window_seconds = limits[key]
        window = self._rate_windows.setdefault(key, deque())
        while True:
            now = time.monotonic()
            while window and window[0] <= now - float(window_seconds):
                window.popleft()
            if len(window) < int(max_calls):
                window.append(now)
                return
            wait_for = max(0.01, (window[0] + float(window_seconds)) - now)
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs max_calls=%s", key, wait_for, max_calls)
            await asyncio.sleep(wait_for)

    def _apply_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        per_source = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        cooldown = float(per_source.get(key, getattr(config, "HTTP_429_COOLDOWN_SECONDS", 90.0)) or 0.0)
        try:
            cooldown = max(cooldown, float((response.headers or {}).get("Retry-After", "") or 0.0))
        except ValueError:
            pass
        if cooldown > 0:
            until = time.monotonic() + cooldown
            self._cooldown_until[key] = max(float(self._cooldown_until.get(key, 0.0) or 0.0), until)
            logger.warning("RATE_LIMIT source=%s status=429 cooldown=%.0fs", key, cooldown)

    def in_cooldown(self, source: str) -> bool:
        return float(self._cooldown_until.get(_source_key(source), 0.0) or 0.0) > time.monotonic()

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        now = time.monotonic()
        for source, row in self._stats.items():
            total = int(row.ok + row.fail)
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "retries": int(row.retries),
                "error_percent": round((float(row.fail) / total * 100.0) if total else 0.0, 2),
                "cooldown_remaining_sec": round(max(0.0, float(self._cooldown_until.get(source, 0.0)) - now), 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        if reset:
            self._stats = {}
        return out

    @staticmethod
    def _compute_delay(attempt: int, status: int) -> float:
        base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
        cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
        jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0))
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            delay = min(cap, delay + max(0.0, float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0) or 0.0)))
        return max(0.01, delay + random.uniform(0.0, jitter))

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or int(getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3)))
        req_headers = {**self._headers, **(headers or {})}
        request_timeout = aiohttp.ClientTimeout(total=float(timeout)) if timeout else None
        key = _source_key(source)
        stats = self._stats_row(key)
        sem = self._semaphore(key)

        for attempt in range(1, attempts + 1):
            status = 0
            await self._wait_for_slot(key)
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params, headers=req_headers, timeout=request_timeout) as response:
                        stats.observe(started)
                        status = int(response.status or 0)
                        if status == 200:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)
                        if status == 429:
                            stats.rate_limited += 1
                            self._apply_cooldown(key, response)
                        retryable = status == 429 or 500 <= status <= 599
                        if not retryable or attempt >= attempts:
                            stats.fail += 1
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.observe(started)
                    if attempt >= attempts:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc.__class__.__name__}")

            stats.retries += 1
            delay = self._compute_delay(attempt=attempt, status=status)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
