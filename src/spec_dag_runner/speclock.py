"""Per-spec lock records with a refreshed heartbeat.

A lock names its owner (``host:pid:token``) and carries a heartbeat timestamp
that a background thread refreshes while the spec runs. Liveness is judged by
the heartbeat age only; owner ids are informational.
"""

from __future__ import annotations

import os
import socket
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import DEFAULT_HEARTBEAT_GRACE_SECONDS, DEFAULT_HEARTBEAT_SECONDS
from .errors import LockHeldError
from .io_utils import _atomic_write_yaml, _load_data_with_error
from .utils import _now_iso, _parse_iso


def make_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class SpecLock:
    spec_id: str
    owner: str
    started_at: str
    heartbeat: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SpecLock":
        return cls(
            spec_id=str(data.get("spec_id") or ""),
            owner=str(data.get("owner") or ""),
            started_at=str(data.get("started_at") or ""),
            heartbeat=str(data.get("heartbeat") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "owner": self.owner,
            "started_at": self.started_at,
            "heartbeat": self.heartbeat,
        }

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        beat = _parse_iso(self.heartbeat)
        if beat is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - beat).total_seconds()


class SpecLockManager:
    """Acquire, refresh and judge spec locks stored under ``locks_dir``."""

    def __init__(
        self,
        locks_dir: Path,
        owner: Optional[str] = None,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        grace_seconds: float = DEFAULT_HEARTBEAT_GRACE_SECONDS,
    ):
        self.locks_dir = locks_dir
        self.owner = owner or make_owner_id()
        self.heartbeat_seconds = heartbeat_seconds
        self.grace_seconds = grace_seconds
        self._held: set[str] = set()
        self._held_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def path(self, spec_id: str) -> Path:
        return self.locks_dir / f"{spec_id}.lock"

    def read(self, spec_id: str) -> Optional[SpecLock]:
        path = self.path(spec_id)
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Unreadable lock for {}: {}", spec_id, err)
            return None
        if not data:
            return None
        return SpecLock.from_dict(data)

    def is_stale(self, lock: Optional[SpecLock], now: Optional[datetime] = None) -> bool:
        """A missing lock or unparseable heartbeat counts as stale."""
        if lock is None:
            return True
        age = lock.age_seconds(now)
        return age is None or age > self.grace_seconds

    def acquire(self, spec_id: str) -> SpecLock:
        """Take the lock for ``spec_id``.

        Raises:
            LockHeldError: If another owner holds a lock with a fresh heartbeat.
        """
        existing = self.read(spec_id)
        if existing and existing.owner != self.owner and not self.is_stale(existing):
            raise LockHeldError(
                f"spec {spec_id} is locked by {existing.owner} (heartbeat {existing.heartbeat})"
            )
        now = _now_iso()
        lock = SpecLock(spec_id=spec_id, owner=self.owner, started_at=now, heartbeat=now)
        _atomic_write_yaml(self.path(spec_id), lock.to_dict())
        with self._held_lock:
            self._held.add(spec_id)
        self._ensure_heartbeat()
        return lock

    def refresh(self, spec_id: str) -> None:
        """Bump the heartbeat of a lock this manager still holds."""
        # Held across read and write so a concurrent release cannot be undone.
        with self._held_lock:
            if spec_id not in self._held:
                return
            lock = self.read(spec_id)
            if lock is None or lock.owner != self.owner:
                self._held.discard(spec_id)
                return
            lock.heartbeat = _now_iso()
            _atomic_write_yaml(self.path(spec_id), lock.to_dict())

    def release(self, spec_id: str) -> None:
        with self._held_lock:
            self._held.discard(spec_id)
            try:
                self.path(spec_id).unlink()
            except FileNotFoundError:
                pass

    def _ensure_heartbeat(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._heartbeat_loop, name="spec-heartbeat", daemon=True)
        self._thread.start()

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_seconds):
            with self._held_lock:
                held = list(self._held)
            for spec_id in held:
                try:
                    self.refresh(spec_id)
                except OSError as exc:
                    logger.warning("Heartbeat refresh failed for {}: {}", spec_id, exc)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
