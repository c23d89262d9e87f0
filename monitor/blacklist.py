"""Token/deployer/wallet blacklist with optional expiry."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from utils.addressing import normalize_address
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

KINDS = ("token", "deployer", "wallet")


@dataclass
class BlacklistEntry:
    address: str
    kind: str
    reason: str
    added_at: float
    expires_at: float | None = None
    added_by: str = "system"

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        def _iso(ts: float | None) -> str | None:
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat() if ts is not None else None

        return {
            "address": self.address,
            "kind": self.kind,
            "reason": self.reason,
            "added_by": self.added_by,
            "added_at": _iso(self.added_at),
            "expires_at": _iso(self.expires_at),
        }


def _ts(value: Any) -> float | None:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class BlacklistManager:
    def __init__(self, store: Any | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._entries: dict[tuple[str, str], BlacklistEntry] = {}

    def load(self) -> int:
        if self._store is None:
            return 0
        for row in self._store.load_blacklist():
            entry = BlacklistEntry(
                address=normalize_address(row["address"]),
                kind=str(row.get("kind") or "token"),
                reason=str(row.get("reason") or ""),
                added_at=_ts(row.get("added_at")) or self._clock(),
                expires_at=_ts(row.get("expires_at")),
                added_by=str(row.get("added_by") or "system"),
            )
            self._entries[(entry.kind, entry.address)] = entry
        self._prune()
        return len(self._entries)

    def add(
        self,
        address: str,
        reason: str,
        *,
        kind: str = "token",
        ttl_seconds: float | None = None,
        added_by: str = "system",
    ) -> BlacklistEntry:
        if kind not in KINDS:
            raise ValidationError(f"unknown blacklist kind: {kind}")
        key = normalize_address(address)
        if not key:
            raise ValidationError("blacklist address is empty", code="VALIDATION_INVALID_ADDRESS")
        now = self._clock()
        entry = BlacklistEntry(
            address=key,
            kind=kind,
            reason=str(reason or ""),
            added_at=now,
            expires_at=(now + float(ttl_seconds)) if ttl_seconds else None,
            added_by=added_by,
        )
        self._entries[(kind, key)] = entry
        logger.info("BLACKLIST_ADD kind=%s address=%s reason=%s ttl=%s by=%s", kind, key, reason, ttl_seconds, added_by)
        if self._store is not None:
            self._store.upsert_blacklist(entry.to_dict())
        return entry

    def remove(self, address: str, *, kind: str = "token") -> bool:
        key = normalize_address(address)
        removed = self._entries.pop((kind, key), None) is not None
        if self._store is not None:
            removed = self._store.remove_blacklist(key, kind) or removed
        if removed:
            logger.info("BLACKLIST_REMOVE kind=%s address=%s", kind, key)
        return removed

    def _prune(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expired(now)]:
            self._entries.pop(key, None)

    def get(self, address: str, *, kind: str = "token") -> BlacklistEntry | None:
        entry = self._entries.get((kind, normalize_address(address)))
        if entry is not None and entry.expired(self._clock()):
            self._entries.pop((kind, entry.address), None)
            return None
        return entry

    def is_blacklisted(self, address: str, *, kind: str = "token") -> bool:
        return self.get(address, kind=kind) is not None

    def entries(self, kind: str | None = None) -> list[BlacklistEntry]:
        self._prune()
        rows = [e for e in self._entries.values() if kind is None or e.kind == kind]
        return sorted(rows, key=lambda e: e.added_at, reverse=True)
