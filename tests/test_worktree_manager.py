"""Tests for the worktree lifecycle manager against real git repositories."""

from __future__ import annotations

import shutil
import subprocess
import threading
import time
from pathlib import Path

import pytest

from spec_dag_runner.config import WorktreeConfig
from spec_dag_runner.errors import UnsafeRemovalError, WorktreeError, WorktreeExistsError
from spec_dag_runner.git_utils import _git_branch_exists, _git_worktree_paths
from spec_dag_runner.worktree import WorktreeManager
from spec_dag_runner.worktree.setup import copy_dirs


def _write_script(path: Path, body: str) -> None:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)


def test_create_tracks_and_validates(repo: Path) -> None:
    manager = WorktreeManager(repo)

    worktree = manager.create("dag-x-A", "dag/x/A", "main")

    assert worktree.path == (repo.parent / "dag-x-A").resolve()
    assert worktree.setup_completed
    assert (worktree.path / "README.md").exists()
    assert worktree.path in _git_worktree_paths(repo)
    assert manager.get("dag-x-A") is not None
    assert manager.is_usable("dag-x-A")
    assert "dag-x-A" in (repo / ".spec_dag" / "worktrees.yaml").read_text(encoding="utf-8")


def test_duplicate_name_is_refused(repo: Path) -> None:
    manager = WorktreeManager(repo)
    manager.create("dag-x-A", "dag/x/A", "main")

    with pytest.raises(WorktreeExistsError):
        manager.create("dag-x-A", "dag/x/A2", "main")


def test_failing_setup_script_leaves_nothing_behind(repo: Path) -> None:
    _write_script(repo / "setup.sh", "echo broken >&2\nexit 4\n")
    manager = WorktreeManager(repo, WorktreeConfig(setup_script="setup.sh"))

    with pytest.raises(WorktreeError, match="exited with code 4"):
        manager.create("dag-x-A", "dag/x/A", "main")

    assert not (repo.parent / "dag-x-A").exists()
    assert manager.get("dag-x-A") is None
    assert not _git_branch_exists(repo, "dag/x/A")


def test_failing_setup_is_preserved_when_configured(repo: Path) -> None:
    _write_script(repo / "setup.sh", "exit 1\n")
    manager = WorktreeManager(repo, WorktreeConfig(setup_script="setup.sh", preserve_on_failure=True))

    with pytest.raises(WorktreeError, match="preserved"):
        manager.create("dag-x-A", "dag/x/A", "main")

    assert (repo.parent / "dag-x-A").is_dir()
    tracked = manager.get("dag-x-A")
    assert tracked is not None
    assert tracked.status == "broken"
    assert not manager.is_usable("dag-x-A")


def test_setup_script_receives_worktree_arguments(repo: Path) -> None:
    _write_script(repo / "setup.sh", 'echo "$1 $2 $3" > "$WORKTREE_PATH/setup.out"\n')
    manager = WorktreeManager(repo, WorktreeConfig(setup_script="setup.sh"))

    worktree = manager.create("dag-x-A", "dag/x/A", "main")

    output = (worktree.path / "setup.out").read_text(encoding="utf-8").strip()
    assert output == f"{worktree.path} dag-x-A dag/x/A"


def test_slow_setup_script_times_out(repo: Path) -> None:
    _write_script(repo / "setup.sh", "sleep 30\n")
    manager = WorktreeManager(repo, WorktreeConfig(setup_script="setup.sh", setup_timeout=1))
    started = time.monotonic()

    with pytest.raises(WorktreeError, match="timed out after 1s"):
        manager.create("dag-x-A", "dag/x/A", "main")

    assert time.monotonic() - started < 15
    assert not (repo.parent / "dag-x-A").exists()
    assert manager.get("dag-x-A") is None


def test_setup_script_is_cancelled(repo: Path) -> None:
    _write_script(repo / "setup.sh", "sleep 30\n")
    manager = WorktreeManager(repo, WorktreeConfig(setup_script="setup.sh", setup_timeout=60))
    cancel = threading.Event()
    timer = threading.Timer(0.5, cancel.set)
    timer.start()
    started = time.monotonic()

    try:
        with pytest.raises(WorktreeError, match="setup script cancelled"):
            manager.create("dag-x-A", "dag/x/A", "main", cancel_event=cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 15
    assert not (repo.parent / "dag-x-A").exists()
    assert not _git_branch_exists(repo, "dag/x/A")


def test_copy_dirs_copies_untracked_directories(repo: Path, tmp_path: Path) -> None:
    (repo / ".env.d").mkdir()
    (repo / ".env.d" / "local.env").write_text("TOKEN=1\n", encoding="utf-8")
    destination = tmp_path / "copy"
    destination.mkdir()

    copied = copy_dirs(repo, destination, [".env.d", "missing"])

    assert copied == [".env.d"]
    assert (destination / ".env.d" / "local.env").read_text(encoding="utf-8") == "TOKEN=1\n"


def test_remove_refuses_uncommitted_changes(repo: Path) -> None:
    manager = WorktreeManager(repo)
    worktree = manager.create("dag-x-A", "dag/x/A", "main")
    (worktree.path / "work.txt").write_text("wip\n", encoding="utf-8")

    with pytest.raises(UnsafeRemovalError):
        manager.remove("dag-x-A")

    manager.remove("dag-x-A", force=True, delete_branch=True)
    assert not worktree.path.exists()
    assert manager.get("dag-x-A") is None
    assert not _git_branch_exists(repo, "dag/x/A")


def test_remove_refuses_unmerged_commits(repo: Path) -> None:
    manager = WorktreeManager(repo)
    worktree = manager.create("dag-x-A", "dag/x/A", "main")
    (worktree.path / "work.txt").write_text("done\n", encoding="utf-8")
    subprocess.run(["git", "add", "-A"], cwd=worktree.path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "work"], cwd=worktree.path, check=True, capture_output=True)

    with pytest.raises(UnsafeRemovalError, match="unpushed"):
        manager.remove("dag-x-A")


def test_prune_forgets_vanished_worktrees(repo: Path) -> None:
    manager = WorktreeManager(repo)
    worktree = manager.create("dag-x-A", "dag/x/A", "main")
    shutil.rmtree(worktree.path)

    assert manager.prune() == ["dag-x-A"]
    assert manager.list() == []


def test_update_status(repo: Path) -> None:
    manager = WorktreeManager(repo)
    manager.create("dag-x-A", "dag/x/A", "main")

    manager.update_status("dag-x-A", "merged")

    tracked = manager.get("dag-x-A")
    assert tracked is not None
    assert tracked.status == "merged"
    with pytest.raises(ValueError):
        manager.update_status("dag-x-A", "exploded")
