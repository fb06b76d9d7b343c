"""Provide small git helpers used by the runner."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .errors import GitError


def _run_git(args: Sequence[str], cwd: Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    result = subprocess.run(
        command,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    if check and result.returncode != 0:
        raise GitError(command, result.returncode, (result.stderr or result.stdout or ""))
    return result


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _ensure_local_exclude(repo_root: Path, ignore_entry: str) -> None:
    """Add ``ignore_entry`` to the repository's local ``info/exclude`` file."""
    result = _run_git(["rev-parse", "--git-common-dir"], repo_root, check=False)
    if result.returncode != 0:
        return
    common_dir = Path(result.stdout.strip())
    if not common_dir.is_absolute():
        common_dir = (repo_root / common_dir).resolve()
    exclude_path = common_dir / "info" / "exclude"
    try:
        if _ignore_file_has_entry(exclude_path, ignore_entry):
            return
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents + ignore_entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)


def _git_repo_root(path: Path) -> Optional[Path]:
    result = _run_git(["rev-parse", "--show-toplevel"], path, check=False)
    if result.returncode != 0:
        return None
    return Path(result.stdout.strip()).resolve()


def _git_current_branch(path: Path) -> Optional[str]:
    result = _run_git(["rev-parse", "--abbrev-ref", "HEAD"], path, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_head_sha(path: Path, ref: str = "HEAD") -> Optional[str]:
    result = _run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], path, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(path: Path, branch: str) -> bool:
    result = _run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], path, check=False)
    return result.returncode == 0


def _git_status_porcelain(path: Path) -> list[str]:
    result = _run_git(["status", "--porcelain"], path, check=False)
    if result.returncode != 0:
        return []
    return [line for line in result.stdout.splitlines() if line.strip()]


def _git_has_changes(path: Path) -> bool:
    return bool(_git_status_porcelain(path))


def _git_commits_ahead(path: Path, base: str, head: str = "HEAD") -> int:
    result = _run_git(["rev-list", "--count", f"{base}..{head}"], path)
    return int(result.stdout.strip() or 0)


def _git_is_ancestor(path: Path, ancestor: str, descendant: str) -> bool:
    result = _run_git(["merge-base", "--is-ancestor", ancestor, descendant], path, check=False)
    return result.returncode == 0


def _git_upstream(path: Path) -> Optional[str]:
    result = _run_git(["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"], path, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_has_unpushed_commits(path: Path, branch: Optional[str] = None) -> bool:
    """Return True when HEAD holds commits that exist nowhere else.

    With an upstream, that means commits ahead of it. Without one, it means
    commits not reachable from any other local branch or remote ref.
    """
    if _git_upstream(path):
        return _git_commits_ahead(path, "@{u}") > 0
    branch = branch or _git_current_branch(path)
    args = ["rev-list", "--count", "HEAD", "--not"]
    if branch and branch != "HEAD":
        args.append(f"--exclude={branch}")
    args.extend(["--branches", "--remotes"])
    result = _run_git(args, path, check=False)
    if result.returncode != 0:
        return False
    return int(result.stdout.strip() or 0) > 0


def _git_create_branch(repo_root: Path, branch: str, start_point: str) -> None:
    _run_git(["branch", branch, start_point], repo_root)


def _git_delete_branch(repo_root: Path, branch: str, *, force: bool = False) -> bool:
    result = _run_git(["branch", "-D" if force else "-d", branch], repo_root, check=False)
    if result.returncode != 0:
        logger.warning("Could not delete branch {}: {}", branch, result.stderr.strip())
        return False
    return True


def _git_checkout(path: Path, branch: str) -> None:
    """Switch ``path`` to ``branch``.

    A plain checkout leaves untracked files in place and refuses to overwrite
    them, so local untracked content always survives.
    """
    _run_git(["checkout", branch], path)


# ---------------------------------------------------------------------------
# Merges
# ---------------------------------------------------------------------------


@dataclass
class MergeResult:
    success: bool
    conflicts: list[str] = field(default_factory=list)
    output: str = ""


def _git_conflicted_files(path: Path) -> list[str]:
    result = _run_git(["diff", "--name-only", "--diff-filter=U"], path, check=False)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_merge_in_progress(path: Path) -> bool:
    result = _run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], path, check=False)
    return result.returncode == 0


def _git_merge_no_ff(path: Path, source: str, message: str) -> MergeResult:
    """Merge ``source`` into the branch checked out at ``path`` with a merge commit.

    Returns:
        A result listing conflicted files when the merge stops on conflicts.

    Raises:
        GitError: If the merge fails for a reason other than conflicts.
    """
    result = _run_git(["merge", "--no-ff", "-m", message, source], path, check=False)
    output = (result.stdout or "") + (result.stderr or "")
    if result.returncode == 0:
        return MergeResult(success=True, output=output)
    conflicts = _git_conflicted_files(path)
    if conflicts:
        return MergeResult(success=False, conflicts=conflicts, output=output)
    raise GitError(["git", "merge", "--no-ff", "-m", message, source], result.returncode, output)


def _git_merge_abort(path: Path) -> None:
    result = _run_git(["merge", "--abort"], path, check=False)
    if result.returncode != 0:
        logger.warning("git merge --abort failed in {}: {}", path, result.stderr.strip())


def _git_commit_merge(path: Path) -> None:
    _run_git(["commit", "--no-edit"], path)


def _git_add(path: Path, files: Sequence[str]) -> None:
    _run_git(["add", "--", *files], path)


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------


def _git_worktree_add(
    repo_root: Path,
    path: Path,
    branch: str,
    start_point: Optional[str] = None,
) -> None:
    """Register a worktree at ``path``.

    With ``start_point`` a new ``branch`` is created from it; otherwise the
    existing ``branch`` is checked out.
    """
    if start_point is not None:
        _run_git(["worktree", "add", "-b", branch, str(path), start_point], repo_root)
    else:
        _run_git(["worktree", "add", str(path), branch], repo_root)


def _git_worktree_remove(repo_root: Path, path: Path, *, force: bool = False) -> None:
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(path))
    _run_git(args, repo_root)


def _git_worktree_paths(repo_root: Path) -> list[Path]:
    result = _run_git(["worktree", "list", "--porcelain"], repo_root, check=False)
    if result.returncode != 0:
        return []
    paths: list[Path] = []
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            paths.append(Path(line[len("worktree ") :].strip()).resolve())
    return paths


def _git_worktree_prune(repo_root: Path) -> None:
    result = _run_git(["worktree", "prune"], repo_root, check=False)
    if result.returncode != 0:
        logger.warning("git worktree prune failed: {}", result.stderr.strip())
