"""Prepare a freshly created worktree: copy local directories and run the setup script."""

from __future__ import annotations

import os
import shutil
import threading
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..errors import SetupError
from ..process import ProcessResult, run_process


def copy_dirs(source_root: Path, destination: Path, dirs: Iterable[str]) -> list[str]:
    """Copy untracked local directories (e.g. ``.env.d``) into a worktree.

    Missing sources are skipped with a warning. Files already present at the
    destination are left untouched.

    Returns:
        The directories that were copied.
    """
    copied: list[str] = []
    for rel in dirs:
        source = source_root / rel
        if not source.exists():
            logger.warning("copy_dirs: {} does not exist in {}; skipping", rel, source_root)
            continue
        target = destination / rel
        if source.is_dir():
            for src_file in source.rglob("*"):
                dest_file = target / src_file.relative_to(source)
                if src_file.is_dir():
                    dest_file.mkdir(parents=True, exist_ok=True)
                elif not dest_file.exists():
                    dest_file.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src_file, dest_file)
        elif not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        copied.append(rel)
    return copied


def resolve_setup_script(source_root: Path, script: Optional[str]) -> Optional[Path]:
    if not script:
        return None
    path = Path(os.path.expanduser(script))
    if not path.is_absolute():
        path = source_root / path
    return path


def run_setup_script(
    script: Optional[str],
    *,
    source_root: Path,
    worktree_path: Path,
    name: str,
    branch: str,
    timeout_seconds: float,
    cancel_event: Optional[threading.Event] = None,
    log_path: Optional[Path] = None,
) -> Optional[ProcessResult]:
    """Run the configured setup script inside a new worktree.

    The script receives ``<path> <name> <branch>`` as arguments and
    ``WORKTREE_PATH``, ``WORKTREE_NAME``, ``WORKTREE_BRANCH`` and
    ``SOURCE_REPO`` in its environment.

    Returns:
        The process result, or None when no script is configured or the
        configured script does not exist.

    Raises:
        SetupError: If the script is not executable, fails, times out or is cancelled.
    """
    path = resolve_setup_script(source_root, script)
    if path is None:
        return None
    if not path.exists():
        logger.info("Setup script {} not found; skipping setup", path)
        return None
    if not os.access(path, os.X_OK):
        raise SetupError(f"setup script {path} is not executable")

    logger.info("Running setup script {} for {}", path.name, name)
    result = run_process(
        [str(path), str(worktree_path), name, branch],
        worktree_path,
        env={
            "WORKTREE_PATH": str(worktree_path),
            "WORKTREE_NAME": name,
            "WORKTREE_BRANCH": branch,
            "SOURCE_REPO": str(source_root),
        },
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
        log_path=log_path,
        label=f"setup {name}",
    )
    if result.timed_out:
        raise SetupError(f"setup script timed out after {int(timeout_seconds)}s")
    if result.cancelled:
        raise SetupError("setup script cancelled")
    if result.exit_code != 0:
        tail = result.output_tail.strip().splitlines()[-5:]
        detail = f": {' | '.join(tail)}" if tail else ""
        raise SetupError(f"setup script exited with code {result.exit_code}{detail}")
    return result
