"""Fixed-checklist token safety scoring.

Each check awards its points only when it positively passes. A check that
cannot be verified (provider timeout, missing field) counts as failed, and an
unverifiable hard-fail check is itself a hard fail.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from config import SafetySettings
from monitor.blacklist import BlacklistManager
from monitor.safety_provider import TokenSecurityReport
from utils.addressing import normalize_address
from utils.log_contracts import reason_code_for_event

logger = logging.getLogger(__name__)

# name, points on pass, hard fail
SAFETY_CHECKS: tuple[tuple[str, int, bool], ...] = (
    ("honeypot", 25, True),
    ("mint_authority", 15, True),
    ("freeze_authority", 10, True),
    ("liquidity_lock", 15, False),
    ("holder_concentration", 10, False),
    ("deployer_holding", 10, False),
    ("deployer_blacklist", 10, True),
    ("contract_verified", 5, False),
)

_HARD_FAIL_REASONS = {
    "honeypot": "honeypot detected",
    "mint_authority": "mint authority active",
    "freeze_authority": "freeze authority active",
    "deployer_blacklist": "deployer blacklisted",
}


@dataclass(frozen=True)
class SafetyCheckResult:
    name: str
    passed: bool
    points: int
    detail: str
    hard_fail: bool = False
    verified: bool = True


@dataclass(frozen=True)
class SafetyResult:
    token_address: str
    score: int
    passed: bool
    level: str
    reason: str
    reason_code: str
    checks: tuple[SafetyCheckResult, ...] = ()
    hard_fail_reasons: tuple[str, ...] = ()
    checked_at: float = field(default_factory=time.time)

    @property
    def mint_authority_active(self) -> bool:
        return "mint authority active" in self.hard_fail_reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_address": self.token_address,
            "score": self.score,
            "passed": self.passed,
            "level": self.level,
            "reason": self.reason,
            "reason_code": self.reason_code,
            "hard_fail_reasons": list(self.hard_fail_reasons),
            "checks": [
                {"name": c.name, "passed": c.passed, "points": c.points, "detail": c.detail, "verified": c.verified}
                for c in self.checks
            ],
            "checked_at": self.checked_at,
        }


def safety_level(score: int) -> str:
    if score >= 85:
        return "SAFE"
    if score >= 70:
        return "CAUTION"
    if score >= 50:
        return "RISKY"
    return "DANGER"


def _evaluate(
    name: str,
    report: TokenSecurityReport,
    settings: SafetySettings,
    deployer_blacklisted: bool,
) -> tuple[bool | None, str]:
    """Return (passed, detail); `None` when the data needed is missing."""
    if name == "honeypot":
        if report.honeypot is None and report.can_sell is None:
            return None, "sell simulation unavailable"
        if report.honeypot or report.can_sell is False:
            return False, "honeypot or unsellable"
        if report.sell_tax_percent is not None and report.sell_tax_percent > settings.max_sell_tax_percent:
            return False, f"sell tax {report.sell_tax_percent:.1f}%"
        return True, "sell simulation ok"
    if name == "mint_authority":
        if report.mint_authority is None:
            return None, "mint authority unknown"
        return (not report.mint_authority), ("mint authority active" if report.mint_authority else "renounced")
    if name == "freeze_authority":
        if report.freeze_authority is None:
            return None, "freeze authority unknown"
        return (not report.freeze_authority), ("freeze authority active" if report.freeze_authority else "none")
    if name == "liquidity_lock":
        if report.liquidity_locked is None:
            return None, "lp lock unknown"
        return bool(report.liquidity_locked), ("locked" if report.liquidity_locked else "unlocked")
    if name == "holder_concentration":
        if report.top_holder_percent is None:
            return None, "holders unknown"
        top10 = report.top10_percent or 0.0
        ok = report.top_holder_percent <= settings.max_top_holder_percent and top10 <= settings.max_top10_percent
        return ok, f"top1={report.top_holder_percent:.1f}% top10={top10:.1f}%"
    if name == "deployer_holding":
        if report.deployer_percent is None:
            return None, "deployer share unknown"
        return report.deployer_percent <= settings.max_deployer_percent, f"deployer={report.deployer_percent:.1f}%"
    if name == "deployer_blacklist":
        if not report.deployer_address:
            return None, "deployer unknown"
        return (not deployer_blacklisted), ("deployer blacklisted" if deployer_blacklisted else "clean")
    if name == "contract_verified":
        if report.verified is None:
            return None, "verification unknown"
        return bool(report.verified), ("verified" if report.verified else "unverified")
    raise KeyError(name)


def score_report(
    report: TokenSecurityReport,
    settings: SafetySettings,
    *,
    deployer_blacklisted: bool = False,
) -> SafetyResult:
    checks: list[SafetyCheckResult] = []
    hard_fails: list[str] = []
    score = 0
    for name, points, hard in SAFETY_CHECKS:
        passed, detail = _evaluate(name, report, settings, deployer_blacklisted)
        verified = passed is not None
        ok = bool(passed)
        if ok:
            score += points
        is_hard_fail = hard and not ok
        if is_hard_fail:
            hard_fails.append(_HARD_FAIL_REASONS[name] if verified else f"{name} unverifiable")
        checks.append(
            SafetyCheckResult(
                name=name,
                passed=ok,
                points=points if ok else 0,
                detail=detail,
                hard_fail=is_hard_fail,
                verified=verified,
            )
        )

    passed = not hard_fails and score >= settings.min_score
    if hard_fails:
        reason = hard_fails[0]
    elif not passed:
        reason = "safety score below minimum"
    else:
        reason = "passed"
    return SafetyResult(
        token_address=report.token_address,
        score=score,
        passed=passed,
        level=safety_level(score),
        reason=reason,
        reason_code="" if passed else reason_code_for_event(reason=reason, stage="safety"),
        checks=tuple(checks),
        hard_fail_reasons=tuple(hard_fails),
    )


class SafetyScorer:
    def __init__(
        self,
        settings: SafetySettings,
        provider: Any,
        blacklist: BlacklistManager,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._provider = provider
        self._blacklist = blacklist
        self._clock = clock
        self._rejections: deque[dict[str, Any]] = deque(maxlen=200)
        self.checks_total = 0
        self.fail_closed = 0

    async def _fetch_report(self, token: str) -> TokenSecurityReport:
        try:
            return await asyncio.wait_for(self._provider.fetch(token), timeout=self.settings.check_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("SAFETY_TIMEOUT token=%s timeout=%.1fs", token, self.settings.check_timeout_seconds)
        except Exception as exc:
            logger.warning("SAFETY_PROVIDER_ERROR token=%s err=%s", token, exc)
        self.fail_closed += 1
        return TokenSecurityReport(token_address=token)

    async def score(self, token_address: str) -> SafetyResult:
        token = normalize_address(token_address)
        self.checks_total += 1
        entry = self._blacklist.get(token, kind="token")
        if entry is not None:
            result = SafetyResult(
                token_address=token,
                score=0,
                passed=False,
                level="DANGER",
                reason="blacklisted",
                reason_code=reason_code_for_event(reason="blacklisted"),
                hard_fail_reasons=(f"blacklisted: {entry.reason}",),
                checked_at=self._clock(),
            )
            self._remember_rejection(result)
            return result

        report = await self._fetch_report(token)
        deployer_blacklisted = bool(report.deployer_address) and self._blacklist.is_blacklisted(
            report.deployer_address, kind="deployer"
        )
        result = score_report(report, self.settings, deployer_blacklisted=deployer_blacklisted)
        if any(c.hard_fail and c.verified for c in result.checks):
            # Not retried for this token within the cool-off window.
            self._blacklist.add(
                token,
                f"safety hard fail: {result.reason}",
                kind="token",
                ttl_seconds=self.settings.hard_fail_cooloff_seconds or None,
            )
        if not result.passed:
            self._remember_rejection(result)
            logger.info("SAFETY_REJECT token=%s score=%s reason=%s", token, result.score, result.reason)
        return result

    def _remember_rejection(self, result: SafetyResult) -> None:
        self._rejections.append(
            {
                "token_address": result.token_address,
                "score": result.score,
                "reason": result.reason,
                "reason_code": result.reason_code,
                "at": result.checked_at,
            }
        )

    def recent_rejections(self, limit: int = 50) -> list[dict[str, Any]]:
        return list(self._rejections)[-max(1, int(limit)):]

    def runtime_stats(self) -> dict[str, int]:
        return {
            "checks_total": int(self.checks_total),
            "fail_closed": int(self.fail_closed),
            "recent_rejections": len(self._rejections),
        }
