"""Tests for spec locks and heartbeat staleness."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from spec_dag_runner.errors import LockHeldError
from spec_dag_runner.io_utils import _atomic_write_yaml
from spec_dag_runner.speclock import SpecLock, SpecLockManager


def _write_lock(locks_dir: Path, spec_id: str, owner: str, age_seconds: float) -> None:
    beat = (datetime.now(timezone.utc) - timedelta(seconds=age_seconds)).isoformat()
    lock = SpecLock(spec_id=spec_id, owner=owner, started_at=beat, heartbeat=beat)
    _atomic_write_yaml(locks_dir / f"{spec_id}.lock", lock.to_dict())


def test_acquire_writes_owner_and_heartbeat(tmp_path: Path) -> None:
    manager = SpecLockManager(tmp_path, owner="host:1:abc", heartbeat_seconds=60)
    try:
        manager.acquire("A")
        lock = manager.read("A")
    finally:
        manager.stop()

    assert lock is not None
    assert lock.owner == "host:1:abc"
    assert lock.spec_id == "A"
    assert not manager.is_stale(lock)


def test_fresh_lock_of_another_owner_is_refused(tmp_path: Path) -> None:
    _write_lock(tmp_path, "A", "other:2:def", age_seconds=5)
    manager = SpecLockManager(tmp_path, owner="host:1:abc", grace_seconds=120)

    with pytest.raises(LockHeldError):
        manager.acquire("A")


def test_stale_lock_can_be_taken_over(tmp_path: Path) -> None:
    _write_lock(tmp_path, "A", "other:2:def", age_seconds=600)
    manager = SpecLockManager(tmp_path, owner="host:1:abc", heartbeat_seconds=60, grace_seconds=120)
    try:
        manager.acquire("A")
    finally:
        manager.stop()

    lock = manager.read("A")
    assert lock is not None
    assert lock.owner == "host:1:abc"


def test_missing_or_unparseable_lock_is_stale(tmp_path: Path) -> None:
    manager = SpecLockManager(tmp_path)

    assert manager.is_stale(None)
    assert manager.is_stale(SpecLock(spec_id="A", owner="x", started_at="", heartbeat="not a time"))


def test_refresh_only_touches_own_locks(tmp_path: Path) -> None:
    _write_lock(tmp_path, "A", "other:2:def", age_seconds=600)
    manager = SpecLockManager(tmp_path, owner="host:1:abc")

    manager.refresh("A")

    lock = manager.read("A")
    assert lock is not None
    assert lock.owner == "other:2:def"
    assert manager.is_stale(lock)


def test_release_removes_the_file(tmp_path: Path) -> None:
    manager = SpecLockManager(tmp_path, heartbeat_seconds=60)
    try:
        manager.acquire("A")
        manager.release("A")
    finally:
        manager.stop()

    assert manager.read("A") is None
    manager.release("A")


def test_refresh_after_release_does_not_recreate_the_lock(tmp_path: Path) -> None:
    manager = SpecLockManager(tmp_path, heartbeat_seconds=60)
    try:
        manager.acquire("A")
        manager.release("A")
        manager.refresh("A")
    finally:
        manager.stop()

    assert not manager.path("A").exists()


def test_release_racing_a_heartbeat_leaves_no_orphan(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = SpecLockManager(tmp_path, owner="host:1:abc", heartbeat_seconds=60)
    releasers: list[threading.Thread] = []
    read = manager.read

    def read_then_release(spec_id: str) -> Optional[SpecLock]:
        lock = read(spec_id)
        releaser = threading.Thread(target=manager.release, args=(spec_id,))
        releaser.start()
        releaser.join(timeout=0.2)
        releasers.append(releaser)
        return lock

    try:
        manager.acquire("A")
        monkeypatch.setattr(manager, "read", read_then_release)
        manager.refresh("A")
        releasers[0].join(timeout=5)
    finally:
        manager.stop()

    assert not releasers[0].is_alive()
    assert not manager.path("A").exists()
    other = SpecLockManager(tmp_path, owner="other:2:def", heartbeat_seconds=60)
    try:
        other.acquire("A")
    finally:
        other.stop()
