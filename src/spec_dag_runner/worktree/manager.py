"""Create, track and remove isolated git worktrees.

Tracked worktrees are recorded in ``.spec_dag/worktrees.yaml`` so duplicate
names are refused and stale entries can be pruned after directories vanish.
"""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..config import WorktreeConfig
from ..constants import STATE_DIR_NAME, WORKTREE_REGISTRY_FILE
from ..errors import GitError, SetupError, UnsafeRemovalError, WorktreeError, WorktreeExistsError
from ..git_coordinator import get_git_coordinator
from ..git_utils import (
    _git_branch_exists,
    _git_delete_branch,
    _git_has_changes,
    _git_has_unpushed_commits,
    _git_worktree_add,
    _git_worktree_paths,
    _git_worktree_prune,
    _git_worktree_remove,
)
from ..io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from ..utils import _now_iso
from .setup import copy_dirs, run_setup_script
from .validate import validate_worktree

WORKTREE_STATUSES = {"active", "merged", "abandoned", "stale", "broken"}


@dataclass
class Worktree:
    name: str
    path: Path
    branch: str
    base_ref: Optional[str] = None
    status: str = "active"
    created_at: Optional[str] = None
    setup_completed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Worktree":
        return cls(
            name=str(data.get("name") or ""),
            path=Path(str(data.get("path") or "")),
            branch=str(data.get("branch") or ""),
            base_ref=data.get("base_ref"),
            status=str(data.get("status") or "active"),
            created_at=data.get("created_at"),
            setup_completed=bool(data.get("setup_completed", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "branch": self.branch,
            "base_ref": self.base_ref,
            "status": self.status,
            "created_at": self.created_at,
            "setup_completed": self.setup_completed,
        }


class WorktreeManager:
    """Manage the lifecycle of worktrees created from one source repository."""

    def __init__(self, repo_root: Path, config: Optional[WorktreeConfig] = None):
        self.repo_root = repo_root.resolve()
        self.config = config or WorktreeConfig()
        self.base_dir = (self.config.base_dir or self.repo_root.parent).resolve()
        self.registry_path = self.repo_root / STATE_DIR_NAME / WORKTREE_REGISTRY_FILE
        self.registry_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._file_lock = FileLock(self.registry_path.with_name(self.registry_path.name + ".lock"))
        self._git = get_git_coordinator()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _load(self) -> list[Worktree]:
        data, err = _load_data_with_error(self.registry_path, {})
        if err:
            raise WorktreeError(f"worktree registry unreadable: {err}")
        return [Worktree.from_dict(item) for item in data.get("worktrees") or [] if isinstance(item, dict)]

    def _save(self, worktrees: list[Worktree]) -> None:
        _atomic_write_yaml(self.registry_path, {"worktrees": [wt.to_dict() for wt in worktrees]})

    def list(self) -> list[Worktree]:
        with self._lock, self._file_lock:
            return self._load()

    def get(self, name: str) -> Optional[Worktree]:
        for worktree in self.list():
            if worktree.name == name:
                return worktree
        return None

    def _put(self, worktree: Worktree) -> None:
        with self._lock, self._file_lock:
            worktrees = [wt for wt in self._load() if wt.name != worktree.name]
            worktrees.append(worktree)
            self._save(worktrees)

    def _drop(self, name: str) -> None:
        with self._lock, self._file_lock:
            self._save([wt for wt in self._load() if wt.name != name])

    def update_status(self, name: str, status: str) -> None:
        if status not in WORKTREE_STATUSES:
            raise ValueError(f"unknown worktree status {status!r}")
        if not self.config.track_status:
            return
        worktree = self.get(name)
        if worktree is None:
            return
        worktree.status = status
        self._put(worktree)

    def path_for(self, name: str) -> Path:
        return self.base_dir / name

    def is_usable(self, name: str) -> bool:
        """True when ``name`` is tracked, set up, and still registered with git."""
        worktree = self.get(name)
        if worktree is None or not worktree.setup_completed:
            return False
        return worktree.path.is_dir() and worktree.path.resolve() in _git_worktree_paths(self.repo_root)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        branch: str,
        base_ref: str,
        *,
        path: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
        log_path: Optional[Path] = None,
    ) -> Worktree:
        """Create, set up and validate a worktree.

        Args:
            name: Unique worktree name.
            branch: Branch to check out. Created from ``base_ref`` unless it already exists.
            base_ref: Reference the new branch starts from.
            path: Destination directory (defaults to ``base_dir / name``).
            cancel_event: Cancels a running setup script.
            log_path: Receives setup script output.

        Returns:
            The tracked worktree.

        Raises:
            WorktreeExistsError: If ``name`` is already tracked.
            WorktreeError: If creation, setup or validation fails. Unless
                ``preserve_on_failure`` is configured, nothing is left behind.
        """
        path = (path or self.path_for(name)).resolve()
        created_branch = False
        with self._lock, self._file_lock:
            if any(wt.name == name for wt in self._load()):
                raise WorktreeExistsError(f"worktree {name!r} already exists")
            if path.exists():
                raise WorktreeError(f"destination {path} already exists and is not a tracked worktree")

            def _add() -> bool:
                if _git_branch_exists(self.repo_root, branch):
                    _git_worktree_add(self.repo_root, path, branch)
                    return False
                _git_worktree_add(self.repo_root, path, branch, start_point=base_ref)
                return True

            try:
                created_branch = self._git.execute_git_operation(_add, f"worktree add {name}")
            except GitError as exc:
                raise WorktreeError(f"git worktree add failed for {name}: {exc}") from exc

            worktree = Worktree(name=name, path=path, branch=branch, base_ref=base_ref, created_at=_now_iso())
            worktrees = self._load()
            worktrees.append(worktree)
            self._save(worktrees)

        logger.info("Created worktree {} at {} ({} from {})", name, path, branch, base_ref)
        try:
            if self.config.copy_dirs:
                copy_dirs(self.repo_root, path, self.config.copy_dirs)
            if self.config.auto_setup:
                run_setup_script(
                    self.config.setup_script,
                    source_root=self.repo_root,
                    worktree_path=path,
                    name=name,
                    branch=branch,
                    timeout_seconds=self.config.setup_timeout,
                    cancel_event=cancel_event,
                    log_path=log_path,
                )
            validate_worktree(self.repo_root, path)
        except (SetupError, WorktreeError, OSError) as exc:
            if self.config.preserve_on_failure:
                logger.warning("Worktree {} failed setup; preserving {} for inspection", name, path)
                worktree.status = "broken"
                self._put(worktree)
                raise WorktreeError(f"worktree {name} failed: {exc} (preserved at {path})") from exc
            self._rollback(worktree, delete_branch=created_branch)
            raise WorktreeError(f"worktree {name} failed: {exc}") from exc

        worktree.setup_completed = True
        self._put(worktree)
        return worktree

    def _rollback(self, worktree: Worktree, *, delete_branch: bool) -> None:
        logger.warning("Rolling back worktree {}", worktree.name)

        def _remove() -> None:
            try:
                _git_worktree_remove(self.repo_root, worktree.path, force=True)
            except GitError as exc:
                logger.warning("git worktree remove failed during rollback: {}", exc)
            if worktree.path.exists():
                shutil.rmtree(worktree.path, ignore_errors=True)
            _git_worktree_prune(self.repo_root)
            if delete_branch:
                _git_delete_branch(self.repo_root, worktree.branch, force=True)

        self._git.execute_git_operation(_remove, f"rollback {worktree.name}")
        self._drop(worktree.name)

    # ------------------------------------------------------------------
    # Remove / prune
    # ------------------------------------------------------------------

    def remove(self, name: str, *, force: bool = False, delete_branch: bool = False) -> None:
        """Remove a tracked worktree.

        Raises:
            WorktreeError: If ``name`` is not tracked.
            UnsafeRemovalError: If the worktree has uncommitted changes or
                unpushed commits and ``force`` is not set.
        """
        worktree = self.get(name)
        if worktree is None:
            raise WorktreeError(f"worktree {name!r} is not tracked")

        if worktree.path.exists() and not force:
            if _git_has_changes(worktree.path):
                raise UnsafeRemovalError(f"worktree {name} has uncommitted changes (use --force)")
            if _git_has_unpushed_commits(worktree.path, worktree.branch):
                raise UnsafeRemovalError(f"worktree {name} has unpushed commits (use --force)")

        def _remove() -> None:
            if worktree.path.exists():
                try:
                    _git_worktree_remove(self.repo_root, worktree.path, force=force)
                except GitError:
                    if not force:
                        raise
                    shutil.rmtree(worktree.path, ignore_errors=True)
            _git_worktree_prune(self.repo_root)
            if delete_branch:
                _git_delete_branch(self.repo_root, worktree.branch, force=force)

        try:
            self._git.execute_git_operation(_remove, f"worktree remove {name}")
        except GitError as exc:
            raise WorktreeError(f"could not remove worktree {name}: {exc}") from exc
        self._drop(name)
        logger.info("Removed worktree {}", name)

    def prune(self) -> list[str]:
        """Forget tracked worktrees whose directories no longer exist."""
        with self._lock, self._file_lock:
            worktrees = self._load()
            kept = [wt for wt in worktrees if wt.path.exists()]
            pruned = [wt.name for wt in worktrees if not wt.path.exists()]
            if pruned:
                self._save(kept)
        self._git.execute_git_operation(lambda: _git_worktree_prune(self.repo_root), "worktree prune")
        for name in pruned:
            logger.info("Pruned stale worktree entry {}", name)
        return pruned
