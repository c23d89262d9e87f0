"""Append-only, checksummed audit trail for state-changing actions."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit_fallback")

REDACTED = "[REDACTED]"
REDACT_KEYS = frozenset(
    {
        "password",
        "privatekey",
        "private_key",
        "secret",
        "token",
        "apikey",
        "api_key",
        "discordwebhook",
        "api_keys",
        "telegram_bot_token",
    }
)


def redact(payload: Any) -> Any:
    """Return a copy of `payload` with sensitive keys masked at any depth."""
    if isinstance(payload, dict):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            if str(key).strip().lower() in REDACT_KEYS:
                out[str(key)] = REDACTED
            else:
                out[str(key)] = redact(value)
        return out
    if isinstance(payload, (list, tuple)):
        return [redact(item) for item in payload]
    return payload


def canonical_json(details: Any) -> str:
    return json.dumps(details, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_checksum(action: str, details: Any, timestamp: str) -> str:
    seed = f"{action}{canonical_json(details)}{timestamp}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    actor: str
    timestamp: str
    details: dict[str, Any]
    status: str
    checksum: str
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def verify(self) -> bool:
        return compute_checksum(self.action, self.details, self.timestamp) == self.checksum

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AuditLog:
    """Writes entries to the store; write failures land in the fallback channel."""

    def __init__(
        self,
        store: Any | None = None,
        *,
        recent_max: int = 500,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._recent: deque[AuditLogEntry] = deque(maxlen=max(10, int(recent_max)))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.write_failures = 0

    def record(
        self,
        action: str,
        details: dict[str, Any] | None = None,
        *,
        actor: str = "system",
        status: str = "success",
    ) -> AuditLogEntry | None:
        try:
            clean = redact(dict(details or {}))
            timestamp = self._clock().isoformat()
            entry = AuditLogEntry(
                action=str(action),
                actor=str(actor or "system"),
                timestamp=timestamp,
                details=clean,
                status=str(status),
                checksum=compute_checksum(str(action), clean, timestamp),
            )
        except Exception as exc:
            self.write_failures += 1
            fallback_logger.error("AUDIT_BUILD_FAILED action=%s actor=%s err=%s", action, actor, exc)
            return None

        self._recent.append(entry)
        if self._store is None:
            return entry
        try:
            self._store.append_audit(entry.to_dict())
        except Exception as exc:
            self.write_failures += 1
            fallback_logger.error(
                "AUDIT_WRITE_FAILED err=%s entry=%s",
                exc,
                canonical_json(entry.to_dict()),
            )
        return entry

    def recent(self, limit: int = 50, action: str | None = None) -> list[AuditLogEntry]:
        rows = [e for e in self._recent if action is None or e.action == action]
        return rows[-max(0, int(limit)):] if limit else []
