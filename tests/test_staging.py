"""Tests for staging branches, conflict pauses and the merge operation."""

from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import Any, Callable

import pytest

from spec_dag_runner.agents import get_agent
from spec_dag_runner.cleanup import CleanupManager
from spec_dag_runner.conflict import ConflictResolver
from spec_dag_runner.context import RunContext, open_context
from spec_dag_runner.errors import MergeError
from spec_dag_runner.git_coordinator import get_git_coordinator
from spec_dag_runner.git_utils import _git_branch_exists, _git_is_ancestor
from spec_dag_runner.merge import MergeManager
from spec_dag_runner.models import MergeStatus, SpecStatus
from spec_dag_runner.staging import StagingManager
from spec_dag_runner.worktree import WorktreeManager

DEFINITION = """schema_version: "1.0"
dag:
  name: Greeting
  id: checkout
layers:
  - id: L0
    features:
      - id: A
        description: Rename the greeting
      - id: B
        description: Translate the greeting
  - id: L1
    depends_on: [L0]
    features:
      - id: C
        description: Document the greeting
"""


def _git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _spec_branch(repo: Path, branch: str, base: str, filename: str, content: str) -> None:
    _git(repo, "checkout", "-q", "-b", branch, base)
    (repo / filename).write_text(content, encoding="utf-8")
    _git(repo, "add", filename)
    _git(repo, "commit", "-q", "-m", f"work on {branch}")
    _git(repo, "checkout", "-q", "main")


def _complete(ctx: RunContext, spec_id: str) -> None:
    ctx.store.update_spec(spec_id, branch=ctx.spec_branch(spec_id))
    ctx.store.transition(spec_id, SpecStatus.RUNNING)
    ctx.store.transition(spec_id, SpecStatus.COMPLETED)


def _staging(ctx: RunContext, resolver: ConflictResolver | None = None) -> tuple[WorktreeManager, StagingManager]:
    worktrees = WorktreeManager(ctx.repo_root, ctx.config.worktree)
    return worktrees, StagingManager(ctx, resolver or ConflictResolver("manual"), worktrees)


@pytest.fixture
def ctx(repo: Path, write_definition: Callable[..., Path]) -> RunContext:
    context = open_context(write_definition(DEFINITION), env={})
    context.store.ensure_specs({"A": "L0", "B": "L0", "C": "L1"})
    return context


def test_layer_branches_form_a_chain(ctx: RunContext) -> None:
    _, staging = _staging(ctx)

    assert staging.base_ref_for_layer("L0") == "main"
    assert staging.base_ref_for_layer("L1") == "dag/checkout/stage-L0"

    staging.ensure_layer_branch("L0")
    staging.ensure_layer_branch("L1")

    assert _git_branch_exists(ctx.repo_root, "dag/checkout/stage-L0")
    assert _git_branch_exists(ctx.repo_root, "dag/checkout/stage-L1")
    layer = ctx.store.staging("L1")
    assert layer is not None
    assert layer.base == "dag/checkout/stage-L0"


def test_merge_into_staging_uses_integration_worktree(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "a.txt", "alpha\n")
    _complete(ctx, "A")
    _, staging = _staging(ctx)

    result = staging.merge_spec("A")

    assert result.status == MergeStatus.MERGED
    assert result.target == "dag/checkout/stage-L0"
    assert staging.integration_path == (repo.parent / "dag-checkout--integration").resolve()
    assert _git(staging.integration_path, "rev-parse", "--abbrev-ref", "HEAD") == "dag/checkout/stage-L0"
    assert _git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert _git_is_ancestor(repo, "dag/checkout/A", "dag/checkout/stage-L0")
    parents = _git(repo, "rev-list", "--parents", "-n", "1", "dag/checkout/stage-L0").split()
    assert len(parents) == 3
    assert ctx.store.staging("L0").specs_merged == ["A"]


def test_conflict_pauses_with_block_and_continue_records_merge(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "greeting.txt", "hello\n")
    _spec_branch(repo, "dag/checkout/B", "main", "greeting.txt", "bonjour\n")
    _complete(ctx, "A")
    _complete(ctx, "B")
    _, staging = _staging(ctx)

    assert staging.merge_spec("A").status == MergeStatus.MERGED
    result = staging.merge_spec("B")

    assert result.status == MergeStatus.CONFLICT
    assert result.block is not None
    assert "greeting.txt" in result.block
    assert "Translate the greeting" in result.block
    assert f"spec-dag merge {ctx.definition_path} --continue" in result.block
    assert staging.pending_conflict() == "B"
    assert ctx.store.spec("B").merge.conflicts == ["greeting.txt"]

    with pytest.raises(MergeError, match="unresolved"):
        staging.continue_pending()

    workdir = staging.integration_path
    (workdir / "greeting.txt").write_text("hello / bonjour\n", encoding="utf-8")
    _git(workdir, "add", "greeting.txt")

    assert staging.continue_pending() == "B"

    merge = ctx.store.spec("B").merge
    assert merge.status == MergeStatus.MERGED
    assert merge.resolution == "manual"
    assert staging.pending_conflict() is None
    assert ctx.store.staging("L0").specs_merged == ["A", "B"]
    assert _git_is_ancestor(repo, "dag/checkout/B", "dag/checkout/stage-L0")


def test_agent_resolves_conflict(ctx: RunContext, repo: Path, tmp_path: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "greeting.txt", "hello\n")
    _spec_branch(repo, "dag/checkout/B", "main", "greeting.txt", "bonjour\n")
    _complete(ctx, "A")
    _complete(ctx, "B")
    script = tmp_path / "resolve.sh"
    script.write_text("#!/bin/sh\necho 'hello / bonjour' > greeting.txt\n", encoding="utf-8")
    resolver = ConflictResolver("agent", get_agent("custom", f"sh {script}"))
    _, staging = _staging(ctx, resolver)

    staging.merge_spec("A")
    result = staging.merge_spec("B")

    assert result.status == MergeStatus.MERGED
    assert ctx.store.spec("B").merge.resolution == "agent"
    assert (staging.integration_path / "greeting.txt").read_text(encoding="utf-8") == "hello / bonjour\n"


class _LockCheckingResolver(ConflictResolver):
    """Record whether another thread could take the git lock while resolving."""

    def __init__(self) -> None:
        super().__init__("manual")
        self.lock_was_free: list[bool] = []

    def resolve(self, contexts: Any, continue_command: str, **kwargs: Any):
        outcome: list[bool] = []

        def _try_lock() -> None:
            lock = get_git_coordinator()._git_lock
            acquired = lock.acquire(timeout=2)
            if acquired:
                lock.release()
            outcome.append(acquired)

        worker = threading.Thread(target=_try_lock)
        worker.start()
        worker.join()
        self.lock_was_free.append(outcome[0])
        return super().resolve(contexts, continue_command, **kwargs)


def test_conflict_resolution_does_not_hold_the_git_lock(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "greeting.txt", "hello\n")
    _spec_branch(repo, "dag/checkout/B", "main", "greeting.txt", "bonjour\n")
    _complete(ctx, "A")
    _complete(ctx, "B")
    resolver = _LockCheckingResolver()
    _, staging = _staging(ctx, resolver)

    staging.merge_spec("A")
    result = staging.merge_spec("B")

    assert result.status == MergeStatus.CONFLICT
    assert resolver.lock_was_free == [True]
    assert ctx.store.spec("B").merge.conflicts == ["greeting.txt"]


def test_merge_refuses_incomplete_specs_without_skip_failed(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "a.txt", "alpha\n")
    _complete(ctx, "A")
    worktrees, staging = _staging(ctx)

    report = MergeManager(ctx, staging, worktrees).run()

    assert report.status == "failed"
    assert report.exit_code == 1
    assert report.failed == ["B", "C"]
    assert "--skip-failed" in (report.message or "")


def test_merge_with_skip_failed_lands_completed_work(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "a.txt", "alpha\n")
    _complete(ctx, "A")
    worktrees, staging = _staging(ctx)

    report = MergeManager(ctx, staging, worktrees).run(skip_failed=True)

    assert report.status == "completed"
    assert report.exit_code == 0
    assert report.merged == ["A"]
    assert report.skipped == ["B", "C"]
    assert (repo / "a.txt").read_text(encoding="utf-8") == "alpha\n"
    assert _git_is_ancestor(repo, "dag/checkout/stage-L1", "main")
    run = ctx.store.snapshot().run
    assert run is not None
    assert run.merged_into == "main"
    assert ctx.store.spec("B").merge.status == MergeStatus.SKIPPED


def test_full_merge_and_cleanup(ctx: RunContext, repo: Path) -> None:
    _spec_branch(repo, "dag/checkout/A", "main", "a.txt", "alpha\n")
    _spec_branch(repo, "dag/checkout/B", "main", "b.txt", "beta\n")
    _spec_branch(repo, "dag/checkout/C", "main", "c.txt", "gamma\n")
    for spec_id in ("A", "B", "C"):
        _complete(ctx, spec_id)
    worktrees, staging = _staging(ctx)

    report = MergeManager(ctx, staging, worktrees).run(cleanup=True)

    assert report.status == "completed"
    assert report.merged == ["A", "B", "C"]
    for name in ("a.txt", "b.txt", "c.txt"):
        assert (repo / name).exists()
    assert report.cleanup is not None
    assert "dag-checkout--integration" in report.cleanup.removed
    assert not staging.integration_path.exists()

    again = MergeManager(ctx, staging, worktrees).run()
    assert again.status == "completed"
    assert again.merged == []


def test_direct_merge_without_staging(repo: Path, write_definition: Callable[..., Path]) -> None:
    definition = DEFINITION.replace("  id: checkout\n", "  id: checkout\nexecution:\n  layer_staging: false\n")
    ctx = open_context(write_definition(definition), env={})
    ctx.store.ensure_specs({"A": "L0", "B": "L0", "C": "L1"})
    _spec_branch(repo, "dag/checkout/A", "main", "a.txt", "alpha\n")
    _complete(ctx, "A")
    worktrees, staging = _staging(ctx)

    assert staging.base_ref_for_layer("L1") == "main"
    report = MergeManager(ctx, staging, worktrees).run("main", skip_failed=True)

    assert report.status == "completed"
    assert report.merged == ["A"]
    assert ctx.store.spec("A").merge.target == "main"
    assert not _git_branch_exists(repo, "dag/checkout/stage-L0")
    assert (repo / "a.txt").exists()


def test_cleanup_keeps_unmerged_worktrees(ctx: RunContext, repo: Path) -> None:
    worktrees, staging = _staging(ctx)
    worktree = worktrees.create(ctx.worktree_name("A"), "dag/checkout/A", "main")
    ctx.store.update_spec("A", worktree=worktree.name, branch=worktree.branch)

    report = CleanupManager(ctx, worktrees, staging).run()

    assert report.kept == {worktree.name: "spec A is not merged"}
    assert worktree.path.exists()

    forced = CleanupManager(ctx, worktrees, staging).run(force=True)

    assert forced.removed == [worktree.name]
    assert not worktree.path.exists()
    assert ctx.store.spec("A").worktree is None
