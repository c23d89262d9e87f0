"""Locked, atomic JSON state files for halt flags and paper wallets."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - platform specific
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

E_STATE_LOCKED = "E_STATE_LOCKED"
E_JSON_CORRUPT = "E_JSON_CORRUPT"


class StateFileLockError(RuntimeError):
    """Raised when the state-file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    """Acquire an inter-process lock for a state file using `<state>.lock`."""

    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    deadline = time.monotonic() + max(0.05, float(timeout_seconds))
    poll = max(0.01, float(poll_seconds))

    with open(lock_path, "a+b") as handle:
        if fcntl is None:  # pragma: no cover - no lock primitive on this platform
            yield
            return
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"{E_STATE_LOCKED}: state lock timeout path={target_path}") from exc
                time.sleep(poll)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_json(path: str, payload: Any, *, indent: int = 2) -> None:
    """Write JSON atomically via temp file + replace in the same directory."""

    state_dir = os.path.dirname(path) or "."
    os.makedirs(state_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(path)}.", suffix=".tmp", dir=state_dir, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=indent, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise


class JsonStateFile:
    """Small persisted JSON document guarded by the state lock."""

    def __init__(self, path: str, *, timeout_seconds: float = 2.0) -> None:
        self.path = str(path)
        self.timeout_seconds = float(timeout_seconds)

    def load(self, default: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.path or not os.path.exists(self.path):
            return dict(default or {})
        with state_file_lock(self.path, timeout_seconds=self.timeout_seconds):
            try:
                with open(self.path, "r", encoding="utf-8-sig") as f:
                    data = json.load(f)
            except json.JSONDecodeError as exc:
                logger.error("%s path=%s err=%s", E_JSON_CORRUPT, self.path, exc)
                return dict(default or {})
        return data if isinstance(data, dict) else dict(default or {})

    def save(self, payload: dict[str, Any]) -> None:
        if not self.path:
            return
        with state_file_lock(self.path, timeout_seconds=self.timeout_seconds):
            atomic_write_json(self.path, payload)

    def clear(self) -> None:
        if self.path and os.path.exists(self.path):
            with state_file_lock(self.path, timeout_seconds=self.timeout_seconds):
                os.remove(self.path)
