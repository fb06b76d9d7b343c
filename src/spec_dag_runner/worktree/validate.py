from __future__ import annotations

from pathlib import Path

from ..errors import WorktreeError
from ..git_utils import _git_worktree_paths


def worktree_problems(repo_root: Path, path: Path) -> list[str]:
    """Return the reasons ``path`` is not a usable worktree of ``repo_root``."""
    problems: list[str] = []
    if not path.exists():
        return [f"{path} does not exist"]
    if not path.is_dir():
        return [f"{path} is not a directory"]
    if path.resolve() == repo_root.resolve():
        problems.append(f"{path} is the source repository itself")
    if path.resolve() not in _git_worktree_paths(repo_root):
        problems.append(f"{path} is not registered as a git worktree")
    return problems


def validate_worktree(repo_root: Path, path: Path) -> None:
    problems = worktree_problems(repo_root, path)
    if problems:
        raise WorktreeError("worktree validation failed: " + "; ".join(problems))
