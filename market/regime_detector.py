"""Macro market regime detection from two reference assets' 24h change."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from config import RegimeSettings
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class Regime(str, Enum):
    FULL = "FULL"
    CAUTIOUS = "CAUTIOUS"
    DEFENSIVE = "DEFENSIVE"
    PAUSE = "PAUSE"


POSITION_SIZE_MULTIPLIERS: dict[Regime, float] = {
    Regime.FULL: 1.0,
    Regime.CAUTIOUS: 0.5,
    Regime.DEFENSIVE: 0.25,
    Regime.PAUSE: 0.0,
}

CONVICTION_THRESHOLD_ADJUSTMENTS: dict[Regime, float] = {
    Regime.FULL: 0.0,
    Regime.CAUTIOUS: 10.0,
    Regime.DEFENSIVE: 20.0,
    Regime.PAUSE: math.inf,
}


@dataclass(frozen=True)
class RegimeState:
    regime: Regime
    primary_change: float | None
    secondary_change: float | None
    primary_trend: str
    secondary_trend: str
    reason: str
    updated_at: float
    primary_price_usd: float | None = None
    source: str = ""
    override: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "regime": self.regime.value,
            "primary_change": self.primary_change,
            "secondary_change": self.secondary_change,
            "primary_trend": self.primary_trend,
            "secondary_trend": self.secondary_trend,
            "reason": self.reason,
            "updated_at": self.updated_at,
            "primary_price_usd": self.primary_price_usd,
            "source": self.source,
            "override": self.override,
            "position_size_multiplier": POSITION_SIZE_MULTIPLIERS[self.regime],
            "conviction_threshold_adjustment": CONVICTION_THRESHOLD_ADJUSTMENTS[self.regime],
        }


def classify_trend(change: float | None, band_percent: float = 2.0) -> str:
    if change is None:
        return "UNKNOWN"
    if change > band_percent:
        return "UP"
    if change < -band_percent:
        return "DOWN"
    return "FLAT"


def classify_regime(
    primary_change: float,
    secondary_change: float,
    settings: RegimeSettings | None = None,
) -> tuple[Regime, str]:
    """Ordered rule table; the first matching rule wins."""
    s = settings or RegimeSettings()
    p = float(primary_change)
    b = float(secondary_change)
    if p <= s.pause_primary_percent:
        return Regime.PAUSE, f"primary {p:+.2f}% <= {s.pause_primary_percent:+.1f}%"
    if p <= s.defensive_primary_percent:
        return Regime.DEFENSIVE, f"primary {p:+.2f}% <= {s.defensive_primary_percent:+.1f}%"
    if b <= s.defensive_secondary_percent:
        return Regime.DEFENSIVE, f"secondary {b:+.2f}% <= {s.defensive_secondary_percent:+.1f}%"
    if p <= s.cautious_primary_percent or b <= s.cautious_secondary_percent:
        return Regime.CAUTIOUS, f"primary {p:+.2f}% / secondary {b:+.2f}% weak"
    return Regime.FULL, f"primary {p:+.2f}% / secondary {b:+.2f}% healthy"


class RegimeDetector:
    """Polls reference prices; every read is served from the cached snapshot."""

    def __init__(
        self,
        settings: RegimeSettings,
        http: ResilientHttpClient | None = None,
        *,
        alerts: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._http = http or ResilientHttpClient(timeout_seconds=settings.fetch_timeout_seconds)
        self._alerts = alerts
        self._clock = clock
        # Start cautious until the first successful fetch.
        self._state = RegimeState(
            regime=Regime.CAUTIOUS,
            primary_change=None,
            secondary_change=None,
            primary_trend="UNKNOWN",
            secondary_trend="UNKNOWN",
            reason="awaiting first market data",
            updated_at=clock(),
        )
        self._task: asyncio.Task | None = None
        self.last_tick_at: float = 0.0
        self.fetch_failures = 0

    @property
    def state(self) -> RegimeState:
        return self._state

    def get_regime(self) -> Regime:
        return self._state.regime

    def get_position_size_multiplier(self) -> float:
        return POSITION_SIZE_MULTIPLIERS[self._state.regime]

    def get_conviction_threshold_adjustment(self) -> float:
        return CONVICTION_THRESHOLD_ADJUSTMENTS[self._state.regime]

    def native_price_usd(self) -> float | None:
        return self._state.primary_price_usd

    def set_override(self, regime: Regime | str, *, actor: str = "operator") -> RegimeState:
        target = Regime(str(getattr(regime, "value", regime)).upper())
        self._publish(
            replace(
                self._state,
                regime=target,
                reason=f"Manual override: {target.value}",
                override=True,
                updated_at=self._clock(),
            ),
            trigger=f"override actor={actor}",
        )
        return self._state

    def clear_override(self, *, actor: str = "operator") -> RegimeState:
        current = self._state
        if not current.override:
            return current
        if current.primary_change is None or current.secondary_change is None:
            regime, reason = Regime.CAUTIOUS, "override cleared, awaiting market data"
        else:
            regime, reason = classify_regime(current.primary_change, current.secondary_change, self.settings)
        self._publish(
            replace(current, regime=regime, reason=reason, override=False, updated_at=self._clock()),
            trigger=f"override_cleared actor={actor}",
        )
        return self._state

    def apply_changes(
        self,
        primary_change: float,
        secondary_change: float,
        *,
        primary_price_usd: float | None = None,
        source: str = "",
    ) -> RegimeState:
        current = self._state
        if current.override:
            regime, reason = current.regime, current.reason
        else:
            regime, reason = classify_regime(primary_change, secondary_change, self.settings)
        band = self.settings.trend_band_percent
        self._publish(
            RegimeState(
                regime=regime,
                primary_change=float(primary_change),
                secondary_change=float(secondary_change),
                primary_trend=classify_trend(primary_change, band),
                secondary_trend=classify_trend(secondary_change, band),
                reason=reason,
                updated_at=self._clock(),
                primary_price_usd=primary_price_usd if primary_price_usd else current.primary_price_usd,
                source=source,
                override=current.override,
            ),
            trigger="poll",
        )
        return self._state

    def _publish(self, new_state: RegimeState, *, trigger: str) -> None:
        previous = self._state
        self._state = new_state
        if previous.regime != new_state.regime:
            logger.warning(
                "REGIME_CHANGE from=%s to=%s primary=%s secondary=%s trigger=%s reason=%s",
                previous.regime.value,
                new_state.regime.value,
                new_state.primary_change,
                new_state.secondary_change,
                trigger,
                new_state.reason,
            )
            if self._alerts is not None and new_state.regime == Regime.PAUSE:
                self._alerts.notify("HIGH", "regime_pause", f"Market regime PAUSE: {new_state.reason}")
        else:
            logger.debug(
                "REGIME_UPDATE regime=%s primary=%s secondary=%s",
                new_state.regime.value,
                new_state.primary_change,
                new_state.secondary_change,
            )

    async def _fetch_coingecko(self) -> tuple[float, float, float | None] | None:
        s = self.settings
        result = await self._http.get_json(
            s.coingecko_api,
            source="coingecko",
            params={
                "ids": f"{s.primary_asset},{s.secondary_asset}",
                "vs_currencies": "usd",
                "include_24hr_change": "true",
            },
            max_attempts=1,
            timeout=s.fetch_timeout_seconds,
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("REGIME_FETCH_FAIL source=coingecko status=%s err=%s", result.status, result.error)
            return None
        primary = result.data.get(s.primary_asset) or {}
        secondary = result.data.get(s.secondary_asset) or {}
        try:
            return (
                float(primary["usd_24h_change"]),
                float(secondary["usd_24h_change"]),
                float(primary.get("usd") or 0.0) or None,
            )
        except (KeyError, TypeError, ValueError):
            return None

    async def _fetch_binance_symbol(self, symbol: str) -> tuple[float, float] | None:
        result = await self._http.get_json(
            self.settings.binance_api,
            source="binance",
            params={"symbol": symbol},
            max_attempts=1,
            timeout=self.settings.fetch_timeout_seconds,
        )
        if not result.ok or not isinstance(result.data, dict):
            return None
        try:
            return float(result.data["priceChangePercent"]), float(result.data.get("lastPrice") or 0.0)
        except (KeyError, TypeError, ValueError):
            return None

    async def _fetch_binance(self) -> tuple[float, float, float | None] | None:
        primary = await self._fetch_binance_symbol(self.settings.primary_binance_symbol)
        secondary = await self._fetch_binance_symbol(self.settings.secondary_binance_symbol)
        if primary is None or secondary is None:
            return None
        return primary[0], secondary[0], primary[1] or None

    async def refresh(self) -> RegimeState:
        """Fetch both changes; on failure hold the last regime and warn."""
        self.last_tick_at = self._clock()
        source = "coingecko"
        data = None
        if not self._http.in_cooldown("coingecko"):
            data = await self._fetch_coingecko()
        if data is None:
            source = "binance"
            data = await self._fetch_binance()
        if data is None:
            self.fetch_failures += 1
            logger.warning(
                "REGIME_FETCH_FAILED holding=%s failures=%s",
                self._state.regime.value,
                self.fetch_failures,
            )
            return self._state
        self.fetch_failures = 0
        primary_change, secondary_change, primary_price = data
        return self.apply_changes(primary_change, secondary_change, primary_price_usd=primary_price, source=source)

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Regime detector loop error")
            await asyncio.sleep(self.settings.poll_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="regime-detector")

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
