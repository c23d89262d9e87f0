"""DexScreener-backed token price feed."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

import config
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

_BATCH_SIZE = 30


@dataclass(frozen=True)
class PriceQuote:
    token_address: str
    price_usd: float
    liquidity_usd: float
    fetched_at: float


def best_pair_quote(token_address: str, pairs: Iterable[dict[str, Any]], chain_id: str) -> PriceQuote | None:
    """Pick the deepest-liquidity pair on our chain whose base token is `token_address`."""
    best: PriceQuote | None = None
    for pair in pairs or []:
        if str(pair.get("chainId", "")).lower() != str(chain_id).lower():
            continue
        base = normalize_address((pair.get("baseToken") or {}).get("address"))
        if base and base != token_address:
            continue
        try:
            price = float(pair.get("priceUsd") or 0)
            liq = float((pair.get("liquidity") or {}).get("usd") or 0)
        except (TypeError, ValueError):
            continue
        if price <= 0:
            continue
        if best is None or liq > best.liquidity_usd:
            best = PriceQuote(token_address=token_address, price_usd=price, liquidity_usd=liq, fetched_at=time.time())
    return best


class DexScreenerPriceFeed:
    def __init__(self, http: ResilientHttpClient | None = None, *, timeout_seconds: float | None = None) -> None:
        self._timeout = float(timeout_seconds or config.DEX_TIMEOUT)
        self._http = http or ResilientHttpClient(timeout_seconds=self._timeout, source_limits={"dex_price": 4})
        self._last: dict[str, PriceQuote] = {}

    async def close(self) -> None:
        await self._http.close()

    def last_quote(self, token_address: str) -> PriceQuote | None:
        return self._last.get(normalize_address(token_address))

    async def get_price(self, token_address: str) -> float | None:
        prices = await self.get_prices([token_address])
        return prices.get(normalize_address(token_address))

    async def get_prices(self, token_addresses: Iterable[str]) -> dict[str, float]:
        tokens = sorted({normalize_address(t) for t in token_addresses if normalize_address(t)})
        out: dict[str, float] = {}
        for start in range(0, len(tokens), _BATCH_SIZE):
            chunk = tokens[start : start + _BATCH_SIZE]
            result = await self._http.get_json(
                f"{config.DEXSCREENER_API}/tokens/{','.join(chunk)}",
                source="dex_price",
                timeout=self._timeout,
            )
            if not result.ok or not isinstance(result.data, dict):
                logger.warning("PRICE_FETCH_FAILED tokens=%s err=%s", len(chunk), result.error or result.status)
                continue
            pairs = result.data.get("pairs") or []
            for token in chunk:
                quote = best_pair_quote(token, pairs, config.CHAIN_ID)
                if quote is not None:
                    self._last[token] = quote
                    out[token] = quote.price_usd
        return out
