"""Configure loguru sinks for the CLI and per-spec log files, and read those files back."""

from __future__ import annotations

import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)
SPEC_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}"


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def truncate_log(path: Path, max_size: int) -> None:
    """Keep only the newest half of ``path`` once it grows past ``max_size`` bytes."""
    if max_size <= 0 or not path.exists():
        return
    size = path.stat().st_size
    if size <= max_size:
        return
    with path.open("rb") as handle:
        handle.seek(size - max_size // 2)
        tail = handle.read()
    newline = tail.find(b"\n")
    if newline != -1:
        tail = tail[newline + 1 :]
    path.write_bytes(b"[log truncated]\n" + tail)


@contextmanager
def spec_log_sink(log_path: Path, spec_id: str, max_size: int = 0) -> Iterator[None]:
    """Route records bound to ``spec_id`` into ``log_path`` for the duration."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    truncate_log(log_path, max_size)
    sink_id = logger.add(
        log_path,
        level="DEBUG",
        format=SPEC_LOG_FORMAT,
        filter=lambda record: record["extra"].get("spec_id") == spec_id,
        enqueue=False,
    )
    try:
        yield
    finally:
        logger.remove(sink_id)


def follow_log(
    path: Path,
    keep_following: Callable[[], bool],
    poll_seconds: float = 0.5,
) -> Iterator[str]:
    """Yield the lines of ``path``, then new lines as they are appended.

    Waits for the file to appear. Stops once ``keep_following`` returns False
    and everything written before that check has been yielded.
    """
    handle = None
    try:
        while True:
            active = keep_following()
            if handle is None and path.exists():
                handle = path.open("r", encoding="utf-8", errors="replace")
            if handle is not None:
                for line in iter(handle.readline, ""):
                    yield line.rstrip("\n")
            if not active:
                return
            time.sleep(poll_seconds)
    finally:
        if handle is not None:
            handle.close()
