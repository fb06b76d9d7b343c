"""Per-layer staging branches and the merges that feed them.

Layer staging branches form a chain: the first layer's branch starts at the
base branch and every later layer's branch starts at the previous layer's.
Merges into staging branches run inside a dedicated integration worktree so
the user's checkout is never switched. Final merges, and direct merges when
staging is disabled, run in the repository root after a plain checkout.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .conflict import ConflictResolver, build_conflict_contexts, format_manual_block, has_conflict_markers
from .constants import BRANCH_PREFIX, STAGE_BRANCH_PREFIX
from .context import RunContext
from .errors import GitError, MergeError, WorktreeError
from .git_coordinator import get_git_coordinator, with_git_lock
from .git_utils import (
    MergeResult,
    _git_branch_exists,
    _git_checkout,
    _git_commit_merge,
    _git_conflicted_files,
    _git_create_branch,
    _git_current_branch,
    _git_head_sha,
    _git_is_ancestor,
    _git_merge_abort,
    _git_merge_in_progress,
    _git_merge_no_ff,
    _git_worktree_add,
    _git_worktree_paths,
    _git_worktree_prune,
)
from .models import MergeStatus
from .utils import _now_iso
from .worktree import WorktreeManager


@dataclass
class SpecMergeResult:
    spec_id: str
    status: MergeStatus
    target: str
    block: Optional[str] = None
    error: Optional[str] = None


class StagingManager:
    """Create staging branches and merge spec branches into them."""

    def __init__(self, ctx: RunContext, resolver: ConflictResolver, worktrees: WorktreeManager):
        self.ctx = ctx
        self.resolver = resolver
        self.worktrees = worktrees
        self._git = get_git_coordinator()

    @property
    def enabled(self) -> bool:
        return self.ctx.config.layer_staging

    @property
    def integration_path(self) -> Path:
        return self.worktrees.path_for(self.ctx.integration_worktree_name)

    def is_stage_branch(self, branch: Optional[str]) -> bool:
        return bool(branch) and str(branch).startswith(f"{BRANCH_PREFIX}/{self.ctx.dag_id}/{STAGE_BRANCH_PREFIX}")

    def workdir_for_target(self, target: Optional[str]) -> Path:
        return self.integration_path if self.is_stage_branch(target) else self.ctx.repo_root

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def base_ref_for_layer(self, layer_id: str) -> str:
        """Where worktrees and the staging branch of ``layer_id`` start from."""
        if not self.enabled:
            return self.ctx.config.base_branch
        previous = self.ctx.graph.previous_layer(layer_id)
        if previous is None:
            return self.ctx.config.base_branch
        return self.ctx.stage_branch(previous.id)

    def ensure_layer_branch(self, layer_id: str) -> str:
        """Create the staging branch of ``layer_id`` if it does not exist yet.

        Raises:
            MergeError: If the base reference is missing.
        """
        branch = self.ctx.stage_branch(layer_id)
        base = self.base_ref_for_layer(layer_id)
        repo = self.ctx.repo_root

        def _create() -> bool:
            if _git_branch_exists(repo, branch):
                return False
            _git_create_branch(repo, branch, base)
            return True

        try:
            created = self._git.execute_git_operation(_create, f"create {branch}")
        except GitError as exc:
            raise MergeError(f"cannot create staging branch {branch} from {base}: {exc}") from exc
        if created:
            logger.info("Opened layer {}: staging branch {} from {}", layer_id, branch, base)
        staging = self.ctx.store.staging(layer_id)
        if staging is None or staging.branch != branch:
            self.ctx.store.update_layer(layer_id, branch=branch, base=base, created_at=_now_iso())
        return branch

    def ensure_integration_worktree(self, branch: str) -> Path:
        """Return the integration worktree with ``branch`` checked out."""
        path = self.integration_path
        repo = self.ctx.repo_root

        def _prepare() -> None:
            if path.is_dir() and path.resolve() in _git_worktree_paths(repo):
                if _git_current_branch(path) != branch:
                    if _git_merge_in_progress(path):
                        raise MergeError(f"a merge is still in progress in {path}")
                    _git_checkout(path, branch)
                return
            if path.exists():
                raise WorktreeError(f"destination {path} already exists and is not a git worktree")
            _git_worktree_prune(repo)
            _git_worktree_add(repo, path, branch)
            logger.info("Created integration worktree at {}", path)

        try:
            self._git.execute_git_operation(_prepare, "integration worktree")
        except GitError as exc:
            raise MergeError(f"cannot prepare integration worktree: {exc}") from exc
        return path

    def sync_layer_branch(self, layer_id: str) -> bool:
        """Bring the previous layer's staging work into the staging branch of ``layer_id``.

        A layer's branch is cut from the previous one when the layer opens.
        Work merged into the previous layer afterwards (a retried spec, or a
        ``merge --skip-failed`` pass) is carried forward here.

        Returns:
            True when a merge commit was made.

        Raises:
            MergeError: If the two staging branches conflict.
        """
        previous = self.ctx.graph.previous_layer(layer_id)
        if not self.enabled or previous is None:
            return False
        source = self.ctx.stage_branch(previous.id)
        branch = self.ensure_layer_branch(layer_id)
        if _git_is_ancestor(self.ctx.repo_root, source, branch):
            return False
        workdir = self.ensure_integration_worktree(branch)

        def _sync() -> MergeResult:
            result = _git_merge_no_ff(workdir, source, f"Merge {source} into {branch}")
            if not result.success:
                _git_merge_abort(workdir)
            return result

        try:
            result = self._git.execute_git_operation(_sync, f"sync {branch}")
        except GitError as exc:
            raise MergeError(f"cannot merge {source} into {branch}: {exc}") from exc
        if not result.success:
            raise MergeError(
                f"{source} conflicts with {branch} in {', '.join(result.conflicts)}; "
                f"merge {source} into {branch} by hand in {workdir}"
            )
        logger.info("Brought {} up to date with {}", branch, source)
        return True

    # ------------------------------------------------------------------
    # Spec merges
    # ------------------------------------------------------------------

    def pending_conflict(self) -> Optional[str]:
        for spec_id, state in self.ctx.store.snapshot().specs.items():
            if state.merge.status == MergeStatus.CONFLICT:
                return spec_id
        return None

    def _mark_merged(self, spec_id: str, target: str, resolution: Optional[str] = None) -> None:
        self.ctx.store.update_merge(
            spec_id,
            status=MergeStatus.MERGED,
            target=target,
            conflicts=[],
            error=None,
            resolution=resolution,
            merged_at=_now_iso(),
        )
        if self.is_stage_branch(target):
            self.ctx.store.record_layer_merge(self.ctx.graph.layer_of(spec_id).id, spec_id)
        state = self.ctx.store.spec(spec_id)
        if state.worktree:
            self.worktrees.update_status(state.worktree, "merged")

    @with_git_lock
    def _start_merge(
        self,
        spec_id: str,
        source: str,
        target: str,
        workdir: Path,
    ) -> tuple[Optional[SpecMergeResult], list[str]]:
        """Begin merging ``source``; return the final result, or the conflicted files."""
        log = logger.bind(spec_id=spec_id)
        if _git_merge_in_progress(workdir):
            raise MergeError(f"a merge is already in progress in {workdir}")
        if _git_branch_exists(self.ctx.repo_root, source) and _git_is_ancestor(workdir, source, "HEAD"):
            self._mark_merged(spec_id, target)
            return SpecMergeResult(spec_id=spec_id, status=MergeStatus.MERGED, target=target), []

        try:
            result = _git_merge_no_ff(workdir, source, f"Merge spec {spec_id} into {target}")
        except GitError as exc:
            log.error("Merge of {} into {} failed: {}", spec_id, target, exc)
            self.ctx.store.update_merge(spec_id, status=MergeStatus.MERGE_FAILED, target=target, error=str(exc))
            failed = SpecMergeResult(spec_id=spec_id, status=MergeStatus.MERGE_FAILED, target=target, error=str(exc))
            return failed, []

        if result.success:
            log.info("Merged {} into {}", source, target)
            self._mark_merged(spec_id, target)
            return SpecMergeResult(spec_id=spec_id, status=MergeStatus.MERGED, target=target), []
        return None, list(result.conflicts)

    def _merge_into(
        self,
        spec_id: str,
        target: str,
        workdir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> SpecMergeResult:
        state = self.ctx.store.spec(spec_id)
        source = state.branch or self.ctx.spec_branch(spec_id)
        log = logger.bind(spec_id=spec_id)
        done, conflicts = self._start_merge(spec_id, source, target, workdir)
        if done is not None:
            return done

        # Resolution runs without the git lock; only this thread touches ``workdir``.
        log.warning("Merge of {} into {} stopped on conflicts: {}", spec_id, target, ", ".join(conflicts))
        contexts = build_conflict_contexts(
            workdir,
            conflicts,
            spec_id=spec_id,
            description=self.ctx.graph.spec(spec_id).description,
            source_branch=source,
            target_branch=target,
        )
        resolution = self.resolver.resolve(
            contexts,
            self.ctx.continue_command(),
            cancel_event=cancel_event,
            log_path=self.ctx.log_path(spec_id),
        )
        if resolution.resolved:
            self._git.execute_git_operation(lambda: _git_commit_merge(workdir), f"commit merge of {spec_id}")
            self._mark_merged(spec_id, target, resolution=resolution.method)
            log.info("Agent resolved conflicts merging {} into {}", spec_id, target)
            return SpecMergeResult(spec_id=spec_id, status=MergeStatus.MERGED, target=target)

        self.ctx.store.update_merge(
            spec_id,
            status=MergeStatus.CONFLICT,
            target=target,
            conflicts=conflicts,
            resolution=None,
        )
        return SpecMergeResult(spec_id=spec_id, status=MergeStatus.CONFLICT, target=target, block=resolution.block)

    def merge_spec(self, spec_id: str, cancel_event: Optional[threading.Event] = None) -> SpecMergeResult:
        """Merge a completed spec into its layer's staging branch."""
        layer_id = self.ctx.graph.layer_of(spec_id).id
        branch = self.ensure_layer_branch(layer_id)
        workdir = self.ensure_integration_worktree(branch)
        return self._merge_into(spec_id, branch, workdir, cancel_event)

    def merge_direct(self, spec_id: str, target: str) -> SpecMergeResult:
        """Merge a completed spec branch straight into ``target`` in the repository root."""
        self._checkout_root(target)
        return self._merge_into(spec_id, target, self.ctx.repo_root)

    def conflict_block(self, spec_id: str) -> str:
        """Rebuild the manual block for a conflict left by an earlier invocation."""
        state = self.ctx.store.spec(spec_id)
        workdir = self.workdir_for_target(state.merge.target)
        files = _git_conflicted_files(workdir) or list(state.merge.conflicts)
        contexts = build_conflict_contexts(
            workdir,
            files,
            spec_id=spec_id,
            description=self.ctx.graph.spec(spec_id).description,
            source_branch=state.branch or self.ctx.spec_branch(spec_id),
            target_branch=state.merge.target or "",
        )
        return format_manual_block(contexts, self.ctx.continue_command())

    def continue_pending(self) -> Optional[str]:
        """Commit a manually resolved spec merge.

        Returns:
            The spec id that was completed, or None when nothing was pending.

        Raises:
            MergeError: If conflicted files remain unstaged or still carry markers.
        """
        spec_id = self.pending_conflict()
        if spec_id is None:
            return None
        state = self.ctx.store.spec(spec_id)
        target = state.merge.target or ""
        workdir = self.workdir_for_target(target)
        source = state.branch or self.ctx.spec_branch(spec_id)

        def _finish() -> None:
            if not _git_merge_in_progress(workdir):
                if _git_is_ancestor(workdir, source, "HEAD"):
                    return
                raise MergeError(f"no merge in progress in {workdir} and {source} is not merged into {target}")
            unresolved = _git_conflicted_files(workdir)
            if unresolved:
                raise MergeError(f"unresolved files remain: {', '.join(unresolved)} (stage them with git add)")
            marked = [name for name in state.merge.conflicts if has_conflict_markers(workdir / name)]
            if marked:
                raise MergeError(f"conflict markers remain in: {', '.join(marked)}")
            _git_commit_merge(workdir)

        try:
            self._git.execute_git_operation(_finish, f"continue merge {spec_id}")
        except GitError as exc:
            raise MergeError(f"could not commit the resolved merge of {spec_id}: {exc}") from exc
        self._mark_merged(spec_id, target, resolution="manual")
        logger.info("Resolved merge of {} into {} recorded", spec_id, target)
        return spec_id

    # ------------------------------------------------------------------
    # Final merge
    # ------------------------------------------------------------------

    def _checkout_root(self, target: str) -> None:
        root = self.ctx.repo_root

        def _checkout() -> None:
            if _git_merge_in_progress(root):
                raise MergeError(f"a merge is already in progress in {root}")
            if _git_current_branch(root) != target:
                _git_checkout(root, target)

        try:
            self._git.execute_git_operation(_checkout, f"checkout {target}")
        except GitError as exc:
            raise MergeError(f"cannot check out {target} in {root}: {exc}") from exc

    def final_merge(self, source: str, target: str) -> Optional[str]:
        """Merge the last staging branch into ``target``.

        Returns:
            None on success, or the manual conflict block when the merge stopped.
        """
        root = self.ctx.repo_root
        if _git_is_ancestor(root, source, target):
            logger.info("{} is already merged into {}", source, target)
            run = self.ctx.store.snapshot().run
            if run is None or run.merged_into != target:
                self.ctx.store.update_run(merged_into=target, merged_at=_now_iso())
            return None
        self._checkout_root(target)

        def _merge() -> MergeResult:
            return _git_merge_no_ff(root, source, f"Merge {source} into {target}")

        try:
            result = self._git.execute_git_operation(_merge, f"final merge into {target}")
        except GitError as exc:
            raise MergeError(f"final merge of {source} into {target} failed: {exc}") from exc
        if not result.success:
            contexts = build_conflict_contexts(
                root,
                result.conflicts,
                spec_id=self.ctx.dag_id,
                description=self.ctx.definition.name,
                source_branch=source,
                target_branch=target,
            )
            resolution = self.resolver.resolve(contexts, self.ctx.continue_command())
            if not resolution.resolved:
                return resolution.block
            self._git.execute_git_operation(lambda: _git_commit_merge(root), "commit final merge")
        self.ctx.store.update_run(merged_into=target, merged_at=_now_iso())
        logger.info("Merged {} into {}", source, target)
        return None

    def continue_final(self, source: str, target: str) -> bool:
        """Commit a manually resolved final merge left in the repository root."""
        root = self.ctx.repo_root
        if not _git_merge_in_progress(root):
            return False
        if _git_head_sha(root, "MERGE_HEAD") != _git_head_sha(root, source):
            return False
        unresolved = _git_conflicted_files(root)
        if unresolved:
            raise MergeError(f"unresolved files remain: {', '.join(unresolved)} (stage them with git add)")
        self._git.execute_git_operation(lambda: _git_commit_merge(root), "commit final merge")
        self.ctx.store.update_run(merged_into=target, merged_at=_now_iso())
        return True
