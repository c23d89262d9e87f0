"""Stable reason codes and decision-event contracts shared across runtime writers."""

from __future__ import annotations

import hashlib
import json
import os
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_ENTRY_DECISION = "entry_decision.v1"
SCHEMA_EXIT_DECISION = "exit_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "validate": "VALIDATION",
    "safety": "SAFETY",
    "entry": "ENTRY",
    "risk": "RISK",
    "execute": "EXEC",
    "exit": "EXIT",
    "rpc": "RPC",
    "control": "CONTROL",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "mint_authority_active": "SAFETY_MINT_AUTHORITY",
    "honeypot_detected": "SAFETY_HONEYPOT",
    "freeze_authority_active": "SAFETY_FREEZE_AUTHORITY",
    "deployer_blacklisted": "SAFETY_DEPLOYER_BLACKLISTED",
    "blacklisted": "SAFETY_BLACKLISTED",
    "safety_score_below_minimum": "SAFETY_SCORE_LOW",
    "entries_disabled": "ENTRY_DISABLED",
    "regime_pause": "ENTRY_REGIME_PAUSE",
    "insufficient_smart_wallets": "ENTRY_SMART_WALLETS_LOW",
    "token_too_young": "ENTRY_TOKEN_TOO_YOUNG",
    "token_too_old": "ENTRY_TOKEN_TOO_OLD",
    "dip_too_shallow": "ENTRY_DIP_TOO_SHALLOW",
    "dip_too_deep": "ENTRY_DIP_TOO_DEEP",
    "conviction_below_threshold": "ENTRY_CONVICTION_LOW",
    "conviction_below_minimum_tier": "ENTRY_CONVICTION_LOW",
    "max_positions_reached": "ENTRY_MAX_POSITIONS",
    "exposure_limit_reached": "ENTRY_EXPOSURE_LIMIT",
    "already_holding_token": "ENTRY_DUPLICATE_TOKEN",
    "daily_loss_limit": "RISK_DAILY_LOSS",
    "daily_profit_target": "RISK_DAILY_PROFIT",
    "loss_streak_cooldown": "RISK_STREAK_COOLDOWN",
    "weekly_circuit_breaker": "RISK_WEEKLY_BREAKER",
    "slippage_exceeded": "EXEC_SLIPPAGE_EXCEEDED",
    "queue_expired": "EXEC_QUEUE_EXPIRED",
    "duplicate_request": "EXEC_DUPLICATE",
    "retries_exhausted": "EXEC_RETRIES_EXHAUSTED",
    "hard_stop": "EXIT_STOP_LOSS",
    "trailing_stop": "EXIT_TRAILING_STOP",
    "time_stop": "EXIT_TIME_STOP",
    "take_profit": "EXIT_TAKE_PROFIT",
    "analysis_window_elapsed": "ENTRY_EXPIRED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "SAFETY_MINT_AUTHORITY": {"severity": "WARN", "category": "safety", "title": "Mint authority active"},
    "SAFETY_HONEYPOT": {"severity": "WARN", "category": "safety", "title": "Honeypot detected"},
    "SAFETY_FREEZE_AUTHORITY": {"severity": "WARN", "category": "safety", "title": "Freeze authority active"},
    "SAFETY_DEPLOYER_BLACKLISTED": {"severity": "WARN", "category": "safety", "title": "Deployer blacklisted"},
    "SAFETY_BLACKLISTED": {"severity": "INFO", "category": "safety", "title": "Token blocked by blacklist"},
    "SAFETY_SCORE_LOW": {"severity": "INFO", "category": "safety", "title": "Safety score below minimum"},
    "SAFETY_UNVERIFIABLE": {"severity": "WARN", "category": "safety", "title": "Safety check could not complete"},
    "ENTRY_DISABLED": {"severity": "INFO", "category": "entry", "title": "New entries disabled"},
    "ENTRY_REGIME_PAUSE": {"severity": "INFO", "category": "entry", "title": "Market regime paused"},
    "ENTRY_SMART_WALLETS_LOW": {"severity": "INFO", "category": "entry", "title": "Not enough smart wallets"},
    "ENTRY_TOKEN_TOO_YOUNG": {"severity": "INFO", "category": "entry", "title": "Token younger than minimum age"},
    "ENTRY_TOKEN_TOO_OLD": {"severity": "INFO", "category": "entry", "title": "Token older than maximum age"},
    "ENTRY_DIP_TOO_SHALLOW": {"severity": "INFO", "category": "entry", "title": "Dip from high too shallow"},
    "ENTRY_DIP_TOO_DEEP": {"severity": "INFO", "category": "entry", "title": "Token already dumped"},
    "ENTRY_CONVICTION_LOW": {"severity": "INFO", "category": "entry", "title": "Conviction below threshold"},
    "ENTRY_MAX_POSITIONS": {"severity": "INFO", "category": "entry", "title": "Max open positions reached"},
    "ENTRY_EXPOSURE_LIMIT": {"severity": "INFO", "category": "entry", "title": "Exposure budget exhausted"},
    "ENTRY_DUPLICATE_TOKEN": {"severity": "INFO", "category": "entry", "title": "Position already open for token"},
    "ENTRY_EXPIRED": {"severity": "INFO", "category": "entry", "title": "Analysis window elapsed"},
    "ENTRY_ADMITTED": {"severity": "INFO", "category": "entry", "title": "Entry admitted"},
    "ENTRY_FILLED": {"severity": "INFO", "category": "entry", "title": "Entry filled"},
    "ENTRY_PAPER_SKIPPED": {"severity": "INFO", "category": "entry", "title": "Paper entry skipped"},
    "RISK_DAILY_LOSS": {"severity": "WARN", "category": "risk", "title": "Daily loss limit reached"},
    "RISK_DAILY_PROFIT": {"severity": "INFO", "category": "risk", "title": "Daily profit target reached"},
    "RISK_STREAK_COOLDOWN": {"severity": "WARN", "category": "risk", "title": "Losing streak cooldown"},
    "RISK_WEEKLY_BREAKER": {"severity": "CRITICAL", "category": "risk", "title": "Weekly circuit breaker"},
    "EXEC_SLIPPAGE_EXCEEDED": {"severity": "WARN", "category": "execute", "title": "Slippage ceiling exceeded"},
    "EXEC_QUEUE_EXPIRED": {"severity": "INFO", "category": "execute", "title": "Queued buy expired"},
    "EXEC_DUPLICATE": {"severity": "INFO", "category": "execute", "title": "Duplicate request for token"},
    "EXEC_RETRIES_EXHAUSTED": {"severity": "WARN", "category": "execute", "title": "Retries exhausted"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss"},
    "EXIT_TRAILING_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by trailing stop"},
    "EXIT_TIME_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by time stop"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Take-profit tier sold"},
}


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def reason_code_for_event(*, reason: Any, stage: Any = "") -> str:
    normalized = _normalize_reason_text(reason)
    if not normalized:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized)
    if override:
        return override
    if normalized.endswith("_unverifiable"):
        return "SAFETY_UNVERIFIABLE"
    prefix = _STAGE_PREFIX.get(_normalize_reason_text(stage) or "unknown", "UNKNOWN")
    return f"{prefix}_{_sanitize_code_token(normalized)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(event: dict[str, Any], *, schema_name: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    now = datetime.now(timezone.utc)
    payload.setdefault("ts", now.timestamp())
    payload.setdefault("timestamp", now.isoformat())
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    reason_code = str(payload.get("reason_code", "") or "").strip().upper()
    if not reason_code:
        reason_code = reason_code_for_event(reason=payload.get("reason", ""), stage=payload.get("stage", ""))
    payload["reason_code"] = reason_code
    meta = reason_code_meta(reason_code)
    payload.setdefault("reason_severity", meta["severity"])
    payload.setdefault("reason_category", meta["category"])
    payload["decision_id"] = "dec_" + _digest_seed(
        run_tag,
        payload.get("token_address", ""),
        payload.get("stage", ""),
        payload.get("decision", ""),
        reason_code,
        f"{float(payload['ts']):.6f}",
    )[:20]
    return payload


def entry_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_ENTRY_DECISION, run_tag=run_tag)
    payload.setdefault("decision", "unknown")
    payload["conviction"] = round(float(payload.get("conviction", 0.0) or 0.0), 2)
    payload["threshold"] = round(float(payload.get("threshold", 0.0) or 0.0), 2)
    payload["size_usd"] = round(float(payload.get("size_usd", 0.0) or 0.0), 4)
    payload.setdefault("regime", "")
    return payload


def exit_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_EXIT_DECISION, run_tag=run_tag)
    payload.setdefault("position_id", "")
    payload["sold_amount"] = float(payload.get("sold_amount", 0.0) or 0.0)
    payload["remaining_amount"] = float(payload.get("remaining_amount", 0.0) or 0.0)
    return payload


def append_event(path: str, event: dict[str, Any]) -> None:
    """Append one JSON line; the directory is created on first write."""
    if not path:
        return
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
