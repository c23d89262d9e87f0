"""Token security data from GoPlus and honeypot.is, normalized into one report."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

import config
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

# Share of LP tokens that must sit in lockers for liquidity to count as locked.
MIN_LOCKED_LP_SHARE = 0.8


def _flag(value: Any) -> bool | None:
    if value in ("1", 1, True, "true"):
        return True
    if value in ("0", 0, False, "false"):
        return False
    return None


def _fraction(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class TokenSecurityReport:
    """`None` means the field could not be verified."""

    token_address: str
    honeypot: bool | None = None
    can_sell: bool | None = None
    sell_tax_percent: float | None = None
    buy_tax_percent: float | None = None
    mint_authority: bool | None = None
    freeze_authority: bool | None = None
    liquidity_locked: bool | None = None
    top_holder_percent: float | None = None
    top10_percent: float | None = None
    deployer_address: str = ""
    deployer_percent: float | None = None
    verified: bool | None = None
    sources: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        row = asdict(self)
        row["sources"] = list(self.sources)
        return row


def parse_goplus(token_address: str, payload: dict[str, Any]) -> dict[str, Any] | None:
    code = str(payload.get("code", "")).strip()
    if code and code not in {"1", "200", "ok", "OK"}:
        return None
    result_map = payload.get("result") or {}
    if not isinstance(result_map, dict):
        return None
    row = result_map.get(token_address) or result_map.get(token_address.lower())
    if not isinstance(row, dict):
        return None

    out: dict[str, Any] = {
        "honeypot": _flag(row.get("is_honeypot")),
        "mint_authority": _flag(row.get("is_mintable")),
        "freeze_authority": _flag(row.get("transfer_pausable")),
        "verified": _flag(row.get("is_open_source")),
        "deployer_address": normalize_address(row.get("creator_address")),
    }
    cannot_sell = _flag(row.get("cannot_sell_all"))
    out["can_sell"] = None if cannot_sell is None else not cannot_sell
    sell_tax = _fraction(row.get("sell_tax"))
    buy_tax = _fraction(row.get("buy_tax"))
    out["sell_tax_percent"] = None if sell_tax is None else sell_tax * 100.0
    out["buy_tax_percent"] = None if buy_tax is None else buy_tax * 100.0
    creator_percent = _fraction(row.get("creator_percent"))
    out["deployer_percent"] = None if creator_percent is None else creator_percent * 100.0

    lp_holders = row.get("lp_holders")
    if isinstance(lp_holders, list) and lp_holders:
        locked = sum(_fraction(h.get("percent")) or 0.0 for h in lp_holders if _flag(h.get("is_locked")))
        out["liquidity_locked"] = locked >= MIN_LOCKED_LP_SHARE
    holders = row.get("holders")
    if isinstance(holders, list) and holders:
        # Locked and contract holders (pools, lockers) are not concentration risk.
        shares = sorted(
            (
                (_fraction(h.get("percent")) or 0.0) * 100.0
                for h in holders
                if not _flag(h.get("is_locked")) and not _flag(h.get("is_contract"))
            ),
            reverse=True,
        )
        out["top_holder_percent"] = shares[0] if shares else 0.0
        out["top10_percent"] = sum(shares[:10])
    return out


def parse_honeypot_is(payload: dict[str, Any]) -> dict[str, Any]:
    simulation = payload.get("simulationResult") or {}
    can_sell = simulation.get("canSell")
    if can_sell is None:
        can_sell = simulation.get("sellSuccess")
    out: dict[str, Any] = {
        "honeypot": bool((payload.get("honeypotResult") or {}).get("isHoneypot", False)),
        "can_sell": None if can_sell is None else bool(can_sell),
    }
    if not payload.get("simulationSuccess", True):
        out["can_sell"] = False
    if "sellTax" in simulation:
        out["sell_tax_percent"] = _fraction(simulation.get("sellTax"))
    if "buyTax" in simulation:
        out["buy_tax_percent"] = _fraction(simulation.get("buyTax"))
    return out


class TokenSecurityProvider:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.SAFETY_CHECK_TIMEOUT_SECONDS),
            source_limits={"goplus": 4, "honeypot": 3},
        )

    async def close(self) -> None:
        await self._http.close()

    async def _goplus(self, token_address: str) -> dict[str, Any] | None:
        headers = {}
        if config.GOPLUS_ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {config.GOPLUS_ACCESS_TOKEN}"
        result = await self._http.get_json(
            config.GOPLUS_EVM_API.format(chain_id=config.EVM_CHAIN_ID),
            source="goplus",
            params={"contract_addresses": token_address},
            headers=headers,
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.warning("SAFETY_SOURCE_FAIL source=goplus token=%s err=%s", token_address, result.error)
            return None
        return parse_goplus(token_address, result.data)

    async def _honeypot(self, token_address: str) -> dict[str, Any] | None:
        if not config.HONEYPOT_API_URL:
            return None
        result = await self._http.get_json(
            config.HONEYPOT_API_URL,
            source="honeypot",
            params={"address": token_address, "chainID": int(config.LIVE_CHAIN_ID)},
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.warning("SAFETY_SOURCE_FAIL source=honeypot token=%s err=%s", token_address, result.error)
            return None
        return parse_honeypot_is(result.data)

    async def fetch(self, token_address: str) -> TokenSecurityReport:
        token = normalize_address(token_address)
        report = TokenSecurityReport(token_address=token)
        sources: list[str] = []
        goplus = await self._goplus(token)
        if goplus:
            sources.append("goplus")
            for key, value in goplus.items():
                setattr(report, key, value)
        honeypot = await self._honeypot(token)
        if honeypot:
            sources.append("honeypot")
            # The sell simulation outranks static analysis for honeypot and taxes.
            for key, value in honeypot.items():
                if value is not None:
                    setattr(report, key, value)
        report.sources = tuple(sources)
        return report
