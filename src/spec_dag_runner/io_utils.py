from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

if os.name == "nt":
    import msvcrt
else:
    import fcntl


class FileLock:
    """Best-effort cross-platform file lock.

    Re-entrant per instance: a holder may call helpers that take the same lock.
    With ``blocking=False`` acquiring a lock held elsewhere raises
    ``BlockingIOError`` instead of waiting.
    """

    def __init__(self, lock_path: Path, *, blocking: bool = True):
        self.lock_path = Path(lock_path)
        self.blocking = blocking
        self.handle: Optional[Any] = None
        self._thread_lock = threading.RLock()
        self._depth = 0

    def _lock_handle(self, handle: Any) -> None:
        if os.name == "nt":
            handle.seek(0)
            mode = msvcrt.LK_LOCK if self.blocking else msvcrt.LK_NBLCK
            msvcrt.locking(handle.fileno(), mode, WINDOWS_LOCK_BYTES)
        else:
            fcntl.flock(handle, fcntl.LOCK_EX if self.blocking else fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock_handle(self, handle: Any) -> None:
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
        else:
            fcntl.flock(handle, fcntl.LOCK_UN)

    def acquire(self) -> None:
        if not self._thread_lock.acquire(blocking=self.blocking):
            raise BlockingIOError(f"{self.lock_path} is held by another thread")
        try:
            if self._depth == 0:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self.lock_path, "w")
                try:
                    self._lock_handle(handle)
                except OSError:
                    handle.close()
                    raise
                self.handle = handle
            self._depth += 1
        except BaseException:
            self._thread_lock.release()
            raise

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self.handle is not None:
            self._unlock_handle(self.handle)
            self.handle.close()
            self.handle = None
        self._thread_lock.release()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(
        data,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    _atomic_write_text(path, _dump_yaml(data))


def _load_data(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    data, _ = _load_data_with_error(path, default)
    return data


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse and IO failures are reported instead of raised so callers can avoid
    overwriting corrupted durable files.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix == ".json":
                data = json.load(handle)
            else:
                data = yaml.safe_load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _stage_from_progress(progress_path: Path) -> Optional[str]:
    """Return the stage a workflow reported in its progress file, if any."""
    if not progress_path.exists():
        return None
    progress = _load_data(progress_path, {})
    stage = progress.get("stage")
    if isinstance(stage, str) and stage.strip():
        return stage.strip()
    return None
