"""Run external processes with logging, timeouts and cancellation."""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from loguru import logger

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130
_POLL_SECONDS = 0.2
_TAIL_LINES = 200


@dataclass
class ProcessResult:
    command: str
    exit_code: int
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False
    log_path: Optional[Path] = None
    output_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def _stream_pipe(
    pipe: Any,
    log_path: Optional[Path],
    tail: deque[str],
    echo_prefix: Optional[str],
) -> None:
    handle = open(log_path, "a", encoding="utf-8") if log_path else None
    try:
        for line in iter(pipe.readline, ""):
            tail.append(line)
            if handle:
                handle.write(line)
                handle.flush()
            if echo_prefix is not None:
                sys.stdout.write(echo_prefix + line)
                sys.stdout.flush()
    finally:
        if handle:
            handle.close()
        pipe.close()


def _terminate(process: subprocess.Popen[str]) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return
        process.wait()


def run_process(
    command: Sequence[str] | str,
    cwd: Path,
    *,
    env: Optional[Mapping[str, str]] = None,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    log_path: Optional[Path] = None,
    stdin_text: Optional[str] = None,
    echo: bool = False,
    label: str = "",
) -> ProcessResult:
    """Run ``command`` to completion, a timeout, or cancellation.

    Args:
        command: Argument vector, or a string run through the shell.
        cwd: Working directory.
        env: Extra environment variables layered over the current environment.
        timeout_seconds: Wall-clock limit. Exceeding it terminates the process
            and reports exit code 124.
        cancel_event: When set, the process is terminated and the result is
            marked cancelled.
        log_path: File that receives combined stdout/stderr (appended).
        stdin_text: Text written to the process's stdin.
        echo: Also copy output to the console, prefixed with ``label``.
        label: Short name used in the echo prefix.

    Returns:
        A `ProcessResult`. A missing executable is reported as exit code 127.
    """
    shell = isinstance(command, str)
    display = command if shell else " ".join(command)
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as handle:
            handle.write(f"$ {display}\n")

    start = time.monotonic()
    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            env=merged_env,
            shell=shell,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        logger.warning("Could not start {}: {}", display, exc)
        if log_path:
            with open(log_path, "a", encoding="utf-8") as handle:
                handle.write(f"[runner] could not start command: {exc}\n")
        return ProcessResult(
            command=display,
            exit_code=127,
            duration_seconds=0.0,
            log_path=log_path,
            output_tail=str(exc),
        )

    tail: deque[str] = deque(maxlen=_TAIL_LINES)
    reader = threading.Thread(
        target=_stream_pipe,
        args=(process.stdout, log_path, tail, f"[{label}] " if echo else None),
        daemon=True,
    )
    reader.start()

    if stdin_text is not None and process.stdin:
        try:
            process.stdin.write(stdin_text)
            process.stdin.close()
        except BrokenPipeError:
            pass

    timed_out = False
    cancelled = False
    while True:
        try:
            process.wait(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            _terminate(process)
            break
        if timeout_seconds is not None and time.monotonic() - start > timeout_seconds:
            timed_out = True
            _terminate(process)
            break

    reader.join(timeout=5)
    duration = time.monotonic() - start
    exit_code = process.returncode if process.returncode is not None else -1
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
        message = f"\n[runner] command timed out after {int(timeout_seconds or 0)}s\n"
    elif cancelled:
        exit_code = CANCELLED_EXIT_CODE
        message = "\n[runner] command cancelled\n"
    else:
        message = ""
    if message and log_path:
        with open(log_path, "a", encoding="utf-8") as handle:
            handle.write(message)

    return ProcessResult(
        command=display,
        exit_code=exit_code,
        duration_seconds=duration,
        timed_out=timed_out,
        cancelled=cancelled,
        log_path=log_path,
        output_tail="".join(tail),
    )
