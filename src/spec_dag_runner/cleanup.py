"""Remove worktrees and locks a run no longer needs."""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from .context import RunContext
from .errors import GitError, UnsafeRemovalError, WorktreeError
from .git_coordinator import get_git_coordinator
from .git_utils import _git_merge_in_progress, _git_worktree_paths, _git_worktree_prune, _git_worktree_remove
from .models import MergeStatus
from .speclock import SpecLockManager
from .staging import StagingManager
from .worktree import WorktreeManager


@dataclass
class CleanupReport:
    removed: list[str] = field(default_factory=list)
    kept: dict[str, str] = field(default_factory=dict)
    pruned: list[str] = field(default_factory=list)
    locks_released: list[str] = field(default_factory=list)


class CleanupManager:
    """Remove spec worktrees once their work is merged.

    Without ``force`` only worktrees of merged specs are removed, and the
    removal still refuses uncommitted changes. With ``force`` every worktree of
    the run is removed regardless of state.
    """

    def __init__(self, ctx: RunContext, worktrees: WorktreeManager, staging: StagingManager):
        self.ctx = ctx
        self.worktrees = worktrees
        self.staging = staging

    def run(self, force: bool = False) -> CleanupReport:
        report = CleanupReport()
        snapshot = self.ctx.store.snapshot()
        for spec_id in self.ctx.graph.spec_ids():
            state = snapshot.specs.get(spec_id)
            if state is None or not state.worktree:
                continue
            if self.worktrees.get(state.worktree) is None:
                continue
            if state.merge.status != MergeStatus.MERGED and not force:
                report.kept[state.worktree] = f"spec {spec_id} is not merged"
                continue
            try:
                self.worktrees.remove(state.worktree, force=force)
            except (UnsafeRemovalError, WorktreeError) as exc:
                report.kept[state.worktree] = str(exc)
                logger.warning("Keeping {}: {}", state.worktree, exc)
                continue
            self.ctx.store.update_spec(spec_id, worktree=None)
            report.removed.append(state.worktree)

        self._remove_integration(report, force)
        report.pruned = self.worktrees.prune()
        self._release_stale_locks(report)
        return report

    def _remove_integration(self, report: CleanupReport, force: bool) -> None:
        path = self.staging.integration_path
        name = self.ctx.integration_worktree_name
        repo = self.ctx.repo_root
        if path.resolve() not in _git_worktree_paths(repo):
            return
        if self.staging.pending_conflict() is not None or _git_merge_in_progress(path):
            report.kept[name] = "a merge conflict is awaiting resolution"
            return

        def _remove() -> None:
            _git_worktree_remove(repo, path, force=force)
            _git_worktree_prune(repo)

        try:
            get_git_coordinator().execute_git_operation(_remove, "remove integration worktree")
        except GitError as exc:
            report.kept[name] = str(exc)
            logger.warning("Keeping integration worktree: {}", exc)
            return
        report.removed.append(name)

    def _release_stale_locks(self, report: CleanupReport) -> None:
        locks = SpecLockManager(
            self.ctx.locks_dir,
            heartbeat_seconds=self.ctx.config.heartbeat_seconds,
            grace_seconds=self.ctx.config.heartbeat_grace_seconds,
        )
        if not self.ctx.locks_dir.is_dir():
            return
        for lock_path in sorted(self.ctx.locks_dir.glob("*.lock")):
            spec_id = lock_path.stem
            if locks.is_stale(locks.read(spec_id)):
                locks.release(spec_id)
                report.locks_released.append(spec_id)
